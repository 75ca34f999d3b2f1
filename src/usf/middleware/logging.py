"""structlog setup shared by the API and the worker.

Ko-fi payloads carry the shared verification token and donor e-mail
addresses; both are masked before any renderer sees them.
"""

import logging
from collections.abc import MutableMapping
from typing import Any

import structlog

from usf.config import Settings

REDACTED = "***"
SENSITIVE_KEYS = frozenset({"verification_token", "email", "donor_email", "x_admin_key", "admin_api_key"})


def _mask(value: Any) -> Any:  # noqa: ANN401
    if isinstance(value, dict):
        return {k: REDACTED if k in SENSITIVE_KEYS and v else _mask(v) for k, v in value.items()}
    return value


def redact_sensitive(_logger: Any, _method: str, event_dict: MutableMapping[str, Any]) -> MutableMapping[str, Any]:  # noqa: ANN401
    for key, value in list(event_dict.items()):
        if key in SENSITIVE_KEYS and value:
            event_dict[key] = REDACTED
        elif isinstance(value, dict):
            event_dict[key] = _mask(value)
    return event_dict


def setup_logging(settings: Settings) -> None:
    json_output = settings.log_format == "json"
    renderer: structlog.types.Processor = (
        structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            redact_sensitive,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(level=level)
    # SQL echo only when explicitly debugging.
    logging.getLogger("sqlalchemy.engine").setLevel(logging.DEBUG if level <= logging.DEBUG else logging.WARNING)
