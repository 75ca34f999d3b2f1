"""Exception hierarchy for the donation and entitlement engine.

The HTTP layer maps these onto status codes in
``usf.middleware.error_handler``; the engine itself never imports FastAPI.
"""

from __future__ import annotations


class SupporterEngineError(Exception):
    """Base class for all engine errors."""

    status_code: int = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class WebhookRejected(SupporterEngineError):
    """Inbound webhook rejected before any side effect."""


class ValidationRejected(WebhookRejected):
    """Malformed, missing, out-of-range or stale webhook fields."""

    status_code = 400

    def __init__(self, message: str, errors: list[dict] | None = None) -> None:
        super().__init__(message)
        self.errors = errors or []


class AuthenticityRejected(WebhookRejected):
    """Shared verification token did not match."""

    status_code = 401


class NotFoundError(SupporterEngineError):
    """Unknown badge, user, donation or grant."""

    status_code = 404


class GrantConflictError(SupporterEngineError):
    """Manual award would break a grant uniqueness invariant."""

    status_code = 409


class InvalidTransitionError(SupporterEngineError):
    """Donation status change not allowed by the state machine."""

    status_code = 409


class EntitlementPreconditionError(SupporterEngineError):
    """Engine invoked for a donation that is not completed or has no owner."""

    status_code = 422
