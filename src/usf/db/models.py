"""ORM models for the supporter programme tables.

Tables are created by the Alembic migration in ``alembic/versions``; the
partial unique indexes declared here mirror it so ``ON CONFLICT`` targets
resolve to real constraints.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from usf.db.base import Base
from usf.entitlements.types import BadgeKind, DonationProvider, DonationStatus


def _enum(enum_cls: type, name: str) -> Enum:
    return Enum(enum_cls, name=name, values_callable=lambda e: [m.value for m in e])


# ---------------------------------------------------------------------------
# Users (owned by the site's auth module; only the columns we touch)
# ---------------------------------------------------------------------------


class User(Base):
    """Maps to the 'users' table."""

    __tablename__ = "users"
    __table_args__ = {"extend_existing": True}  # noqa: RUF012

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True, unique=True)
    discord_username: Mapped[str | None] = mapped_column(String(64), nullable=True)
    custom_role: Mapped[str | None] = mapped_column(String(50), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


# ---------------------------------------------------------------------------
# Badge catalog
# ---------------------------------------------------------------------------


class BadgeRow(Base):
    """Badge catalog, seeded on startup, rarely mutated."""

    __tablename__ = "badges"
    __table_args__ = {"extend_existing": True}  # noqa: RUF012

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    kind: Mapped[BadgeKind] = mapped_column(_enum(BadgeKind, "badge_kind"), nullable=False)
    icon: Mapped[str] = mapped_column(String(64), nullable=False)
    color: Mapped[str] = mapped_column(String(16), nullable=False)
    background_color: Mapped[str | None] = mapped_column(String(16), nullable=True)
    display_order: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default="true")
    is_manually_awardable: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default="false")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class UserBadge(Base):
    """Grants. Rows are never deleted by revoke or expiry."""

    __tablename__ = "user_badges"
    __table_args__ = (
        # Supporter: one per (user, badge, year), permanent.
        Index(
            "uq_user_badges_user_badge_year",
            "user_id", "badge_id", "year",
            unique=True,
            postgresql_where=text("year IS NOT NULL"),
        ),
        # Sponsor / custom / active supporter: one active per (user, badge).
        Index(
            "uq_user_badges_user_badge_active",
            "user_id", "badge_id",
            unique=True,
            postgresql_where=text("is_active AND year IS NULL"),
        ),
        Index("ix_user_badges_expiry", "expires_at", postgresql_where=text("is_active AND expires_at IS NOT NULL")),
        {"extend_existing": True},
    )

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    badge_id: Mapped[int] = mapped_column(Integer, ForeignKey("badges.id"), nullable=False)
    awarded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    year: Mapped[int | None] = mapped_column(Integer, nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    awarded_by_user_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("users.id"), nullable=True)
    grant_metadata: Mapped[dict[str, Any]] = mapped_column("metadata", JSONB, nullable=False, server_default="{}")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default="true")
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    revoked_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    revoked_by_user_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("users.id"), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )

    badge: Mapped[BadgeRow] = relationship("BadgeRow", lazy="joined")


# ---------------------------------------------------------------------------
# Donations
# ---------------------------------------------------------------------------


class DonationRow(Base):
    """Donation ledger; UNIQUE(provider, external_id) is the idempotency anchor."""

    __tablename__ = "donations"
    __table_args__ = (
        UniqueConstraint("provider", "external_id", name="uq_donations_provider_external_id"),
        Index("ix_donations_owner_status", "owner_user_id", "status"),
        {"extend_existing": True},
    )

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    owner_user_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("users.id", ondelete="CASCADE"), nullable=True
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(8), nullable=False, server_default="USD")
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    provider: Mapped[DonationProvider] = mapped_column(_enum(DonationProvider, "donation_provider"), nullable=False)
    external_id: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[DonationStatus] = mapped_column(
        _enum(DonationStatus, "donation_status"), nullable=False, server_default="pending"
    )
    donor_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    donor_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_anonymous: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default="false")
    raw_payload: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)
    entitlements_processed: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default="false")
    admin_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )

