"""Pydantic request/response models for badge endpoints."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field

from usf.entitlements.types import Badge, Grant


# --- Badge ---


class BadgeResponse(BaseModel):
    id: int
    name: str
    kind: str
    description: str | None = None
    icon: str
    color: str
    background_color: str | None = None
    display_order: int = 0
    is_manually_awardable: bool = False

    @classmethod
    def from_domain(cls, badge: Badge) -> BadgeResponse:
        return cls(
            id=badge.id,  # type: ignore[arg-type]
            name=badge.name,
            kind=badge.kind.value,
            description=badge.description,
            icon=badge.icon,
            color=badge.color,
            background_color=badge.background_color,
            display_order=badge.display_order,
            is_manually_awardable=badge.is_manually_awardable,
        )


class AllBadgesResponse(BaseModel):
    badges: list[BadgeResponse]


# --- Grants ---


class GrantResponse(BaseModel):
    id: int
    user_id: int
    badge_id: int
    awarded_at: datetime
    expires_at: datetime | None = None
    year: int | None = None
    reason: str | None = None
    awarded_by_user_id: int | None = None
    metadata: dict = {}
    is_active: bool = True
    revoked_at: datetime | None = None
    revoked_reason: str | None = None
    revoked_by_user_id: int | None = None

    @classmethod
    def from_domain(cls, grant: Grant) -> GrantResponse:
        return cls(
            id=grant.id,  # type: ignore[arg-type]
            user_id=grant.user_id,
            badge_id=grant.badge_id,
            awarded_at=grant.awarded_at,
            expires_at=grant.expires_at,
            year=grant.year,
            reason=grant.reason,
            awarded_by_user_id=grant.awarded_by_user_id,
            metadata=grant.metadata,
            is_active=grant.is_active,
            revoked_at=grant.revoked_at,
            revoked_reason=grant.revoked_reason,
            revoked_by_user_id=grant.revoked_by_user_id,
        )


class UserBadgesResponse(BaseModel):
    user_id: int
    grants: list[GrantResponse]
    total: int


class SupporterEntry(BaseModel):
    user_id: int
    badge: BadgeResponse
    awarded_at: datetime
    year: int | None = None


class SupportersResponse(BaseModel):
    supporters: list[SupporterEntry]


class AwardBadgeRequest(BaseModel):
    user_id: int
    badge_id: int
    reason: str | None = Field(default=None, max_length=500)
    year: int | None = Field(default=None, ge=2000, le=2100)
    expires_at: datetime | None = None
    metadata: dict | None = None


class RevokeBadgeRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


# --- Admin reporting ---


class ExpireResponse(BaseModel):
    expired: int
    roles_cleared: int


class KindCountEntry(BaseModel):
    kind: str
    active_count: int


class DonationStatsEntry(BaseModel):
    total_amount: Decimal
    total_donations: int
    unique_donors: int


class StatisticsResponse(BaseModel):
    badges: list[KindCountEntry]
    expiring_in_7_days: int
    donations: DonationStatsEntry
    generated_at: datetime
