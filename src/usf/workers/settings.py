"""arq worker settings module.

Import path for arq CLI: arq usf.workers.settings.WorkerSettings
"""

from __future__ import annotations

from usf.workers.entitlement_worker import WorkerSettings

__all__ = ["WorkerSettings"]
