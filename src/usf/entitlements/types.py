"""Plain domain records shared by the engine, the store adapters and the API.

Storage adapters translate to and from these; nothing here knows about
SQLAlchemy rows.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any

CENTS = Decimal("0.01")


def to_money(value: Decimal | str | int) -> Decimal:
    """Quantize to two decimal places. Floats are refused."""
    if isinstance(value, float):
        msg = "Monetary values must not be floats"
        raise TypeError(msg)
    return Decimal(value).quantize(CENTS, rounding=ROUND_HALF_UP)


class BadgeKind(str, Enum):
    SUPPORTER = "supporter"
    ACTIVE_SUPPORTER = "active_supporter"
    SPONSOR = "sponsor"
    CUSTOM = "custom"


class DonationStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class DonationProvider(str, Enum):
    KOFI = "kofi"
    MANUAL = "manual"


# Allowed Donation.status moves; anything else is an InvalidTransitionError.
STATUS_TRANSITIONS: dict[DonationStatus, frozenset[DonationStatus]] = {
    DonationStatus.PENDING: frozenset({DonationStatus.COMPLETED, DonationStatus.FAILED}),
    DonationStatus.COMPLETED: frozenset({DonationStatus.REFUNDED}),
    DonationStatus.FAILED: frozenset(),
    DonationStatus.REFUNDED: frozenset(),
}


@dataclass
class UserRecord:
    """The slice of a site user the engine reads or touches."""

    id: int
    username: str
    email: str | None = None
    discord_username: str | None = None
    custom_role: str | None = None


@dataclass
class Donation:
    amount: Decimal
    currency: str
    occurred_at: datetime
    provider: DonationProvider
    external_id: str
    status: DonationStatus = DonationStatus.PENDING
    owner_user_id: int | None = None
    donor_name: str | None = None
    donor_email: str | None = None
    message: str | None = None
    is_anonymous: bool = False
    raw_payload: dict[str, Any] | None = None
    entitlements_processed: bool = False
    admin_notes: str | None = None
    id: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_resolved(self) -> bool:
        return self.owner_user_id is not None

    @property
    def idempotency_key(self) -> tuple[str, str]:
        return (self.provider.value, self.external_id)


@dataclass
class Badge:
    name: str
    kind: BadgeKind
    icon: str
    color: str
    description: str | None = None
    background_color: str | None = None
    display_order: int = 0
    is_active: bool = True
    is_manually_awardable: bool = False
    id: int | None = None


@dataclass
class Grant:
    """A badge awarded to a user (stored as ``user_badges``)."""

    user_id: int
    badge_id: int
    awarded_at: datetime
    expires_at: datetime | None = None
    year: int | None = None
    reason: str | None = None
    awarded_by_user_id: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    is_active: bool = True
    revoked_at: datetime | None = None
    revoked_reason: str | None = None
    revoked_by_user_id: int | None = None
    id: int | None = None

    def is_current(self, now: datetime) -> bool:
        """Active and not past its expiry (the sweeper may not have run yet)."""
        return self.is_active and (self.expires_at is None or self.expires_at > now)


@dataclass
class ExpiredGrant:
    """Row deactivated by a sweep, with the badge kind needed for cascades."""

    grant_id: int
    user_id: int
    badge_id: int
    kind: BadgeKind


@dataclass
class DonationTotals:
    total_amount: Decimal = Decimal("0.00")
    total_donations: int = 0
    unique_donors: int = 0


@dataclass
class DonorTotal:
    user_id: int
    username: str
    total_amount: Decimal
    donation_count: int


@dataclass
class KindCount:
    kind: BadgeKind
    active_count: int


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
