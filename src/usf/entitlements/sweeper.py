"""Expiration sweeper: deactivates time-bound grants past their expiry."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

import structlog

from usf.entitlements.store import EntitlementStore
from usf.entitlements.types import ExpiredGrant, utcnow

logger = structlog.get_logger()


@dataclass
class SweepResult:
    expired: int = 0
    roles_cleared: int = 0
    grants: list[ExpiredGrant] = field(default_factory=list)


class ExpirationSweeper:
    """Stateless pass; safe to run on any schedule and from several workers."""

    def __init__(self, store: EntitlementStore, clock: Callable[[], datetime] = utcnow) -> None:
        self.store = store
        self.clock = clock

    async def sweep(self, now: datetime | None = None) -> SweepResult:
        now = now or self.clock()
        expired = await self.store.expire_grants(now)
        # The custom role is an active-supporter perk and must not outlive it.
        # Derived from grant state rather than this pass's rows, so a sweep that
        # died after deactivation is repaired by the next one.
        roles_cleared = await self.store.clear_lapsed_custom_roles(now)
        if not expired and not roles_cleared:
            logger.debug("sweep_noop", now=now.isoformat())
            return SweepResult()

        logger.info(
            "grants_expired",
            expired=len(expired),
            roles_cleared=roles_cleared,
            users=sorted({g.user_id for g in expired}),
        )
        return SweepResult(expired=len(expired), roles_cleared=roles_cleared, grants=expired)
