"""Badge admin operations: manual award/revoke, listings and statistics."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

import structlog

from usf.donations.ledger import DonationLedger
from usf.entitlements.engine import EntitlementEngine
from usf.entitlements.store import EntitlementStore
from usf.entitlements.types import (
    Badge,
    BadgeKind,
    DonationTotals,
    Grant,
    KindCount,
    utcnow,
)
from usf.errors import GrantConflictError, NotFoundError

logger = structlog.get_logger()

DEFAULT_REVOKE_REASON = "No reason provided"
EXPIRING_SOON = timedelta(days=7)


@dataclass
class BadgeStatistics:
    badges: list[KindCount]
    expiring_in_7_days: int
    donations: DonationTotals
    generated_at: datetime = field(default_factory=utcnow)


class BadgeService:
    def __init__(
        self,
        store: EntitlementStore,
        engine: EntitlementEngine,
        ledger: DonationLedger,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.engine = engine
        self.ledger = ledger
        self.clock = clock

    # --- Catalog ---

    async def list_badges(self) -> list[Badge]:
        return await self.store.list_badges(active_only=True)

    async def get_badge(self, badge_id: int) -> Badge:
        badge = await self.store.get_badge(badge_id)
        if badge is None:
            msg = f"Badge with ID {badge_id} not found"
            raise NotFoundError(msg)
        return badge

    # --- Grants ---

    async def user_grants(self, user_id: int, include_inactive: bool = False) -> list[Grant]:
        return await self.store.list_user_grants(user_id, active_only=not include_inactive)

    async def active_grants(self, user_id: int) -> list[Grant]:
        """Grants that count right now, even if the sweeper has not caught up."""
        now = self.clock()
        return [g for g in await self.store.list_user_grants(user_id, active_only=True) if g.is_current(now)]

    async def has_active_supporter(self, user_id: int) -> bool:
        badge = await self.store.get_badge_by_kind(BadgeKind.ACTIVE_SUPPORTER)
        if badge is None:
            return False
        grant = await self.store.find_grant(user_id, badge.id, active_only=True)  # type: ignore[arg-type]
        return grant is not None and grant.is_current(self.clock())

    async def supporters(self) -> list[tuple[Grant, Badge]]:
        return await self.store.list_active_grants_by_kind([BadgeKind.SUPPORTER, BadgeKind.SPONSOR])

    async def award(
        self,
        user_id: int,
        badge_id: int,
        reason: str | None = None,
        awarded_by_user_id: int | None = None,
        metadata: dict[str, Any] | None = None,
        year: int | None = None,
        expires_at: datetime | None = None,
    ) -> Grant:
        """Manually award a badge.

        Raises:
            NotFoundError: unknown user or badge.
            GrantConflictError: the user already holds it (for the given year
                in the case of supporter badges).
        """
        logger.info(
            "badge_award_requested",
            user_id=user_id,
            badge_id=badge_id,
            reason=reason or "Not specified",
            awarded_by=awarded_by_user_id,
        )
        if await self.store.get_user(user_id) is None:
            msg = f"User with ID {user_id} not found"
            raise NotFoundError(msg)
        badge = await self.get_badge(badge_id)

        match badge.kind:
            case BadgeKind.ACTIVE_SUPPORTER:
                # Fixed one-year window; any caller-supplied expiry is ignored.
                return await self.engine.renew_active_supporter(
                    user_id, badge, reason=reason, metadata=metadata, awarded_by_user_id=awarded_by_user_id
                )
            case BadgeKind.SUPPORTER:
                grant_year = year or self.clock().year
                grant = Grant(
                    user_id=user_id,
                    badge_id=badge_id,
                    awarded_at=self.clock(),
                    year=grant_year,
                    reason=reason,
                    awarded_by_user_id=awarded_by_user_id,
                    metadata=metadata or {},
                )
                conflict = f"User already has this badge for year {grant_year}"
            case BadgeKind.SPONSOR | BadgeKind.CUSTOM:
                grant = Grant(
                    user_id=user_id,
                    badge_id=badge_id,
                    awarded_at=self.clock(),
                    expires_at=expires_at,
                    reason=reason,
                    awarded_by_user_id=awarded_by_user_id,
                    metadata=metadata or {},
                )
                conflict = "User already has this active badge"

        stored = await self.store.insert_grant(grant)
        if stored is None:
            logger.warning("badge_award_conflict", user_id=user_id, badge_id=badge_id, badge=badge.name)
            raise GrantConflictError(conflict)
        logger.info("badge_awarded", user_id=user_id, badge=badge.name, grant_id=stored.id)
        return stored

    async def revoke(
        self,
        user_id: int,
        badge_id: int,
        reason: str | None = None,
        revoked_by_user_id: int | None = None,
    ) -> Grant:
        """Deactivate the user's active grant and record who/when/why."""
        grant = await self.store.find_grant(user_id, badge_id, active_only=True)
        if grant is None:
            msg = "Active user badge not found"
            raise NotFoundError(msg)

        grant.is_active = False
        grant.revoked_at = self.clock()
        grant.revoked_reason = reason or DEFAULT_REVOKE_REASON
        grant.revoked_by_user_id = revoked_by_user_id
        stored = await self.store.update_grant(grant)
        logger.info(
            "badge_revoked",
            user_id=user_id,
            badge_id=badge_id,
            grant_id=stored.id,
            revoked_by=revoked_by_user_id,
        )
        return stored

    # --- Reporting ---

    async def statistics(self) -> BadgeStatistics:
        now = self.clock()
        return BadgeStatistics(
            badges=await self.store.count_active_grants_by_kind(),
            expiring_in_7_days=await self.store.count_grants_expiring(now, now + EXPIRING_SOON),
            donations=await self.ledger.totals(),
            generated_at=now,
        )
