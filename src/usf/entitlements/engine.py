"""Entitlement engine: derives supporter badge grants from donation history.

For each completed, owned donation three steps run in order:

1. Supporter: permanent, one grant per calendar year of the donation.
2. Active Supporter: renewed on every donation; one row per user whose
   expiry restarts at award time + ``active_supporter_days``.
3. Sponsor: permanent, awarded once when the lifetime completed total reaches
   the sponsor threshold. Never re-derived once granted or revoked.

A failing step is logged and does not stop the others. The donation's
``entitlements_processed`` flag is set only when every step succeeded, so a
retry finishes whatever is left. Every step is safe to repeat.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, assert_never

import structlog

from usf.donations.ledger import DonationLedger
from usf.entitlements.store import EntitlementStore
from usf.entitlements.types import (
    Badge,
    BadgeKind,
    Donation,
    DonationProvider,
    DonationStatus,
    Grant,
    utcnow,
)
from usf.errors import EntitlementPreconditionError

logger = structlog.get_logger()

DEFAULT_SPONSOR_THRESHOLD = Decimal("25.00")
DEFAULT_ACTIVE_SUPPORTER_DAYS = 365

# Kinds derived from donations, in the order the steps run. CUSTOM badges
# are only ever awarded by an admin.
AUTOMATIC_KINDS: tuple[BadgeKind, ...] = (
    BadgeKind.SUPPORTER,
    BadgeKind.ACTIVE_SUPPORTER,
    BadgeKind.SPONSOR,
)


@dataclass
class EntitlementReport:
    donation_id: int | None
    awarded: list[Grant] = field(default_factory=list)
    failed_steps: list[str] = field(default_factory=list)
    completed: bool = False


def _donation_label(donation: Donation) -> str:
    source = "Ko-fi" if donation.provider is DonationProvider.KOFI else "Manual"
    return f"{source} donation of ${donation.amount}"


def _donation_metadata(donation: Donation) -> dict[str, Any]:
    # JSON-safe: amounts are kept as strings so no float ever enters storage.
    return {
        "donation_amount": str(donation.amount),
        "donation_currency": donation.currency,
        "donation_id": donation.external_id,
        "donation_date": donation.occurred_at.isoformat(),
    }


class EntitlementEngine:
    """Evaluates and persists supporter grants for one donation at a time."""

    def __init__(
        self,
        store: EntitlementStore,
        ledger: DonationLedger,
        sponsor_threshold: Decimal = DEFAULT_SPONSOR_THRESHOLD,
        active_supporter_days: int = DEFAULT_ACTIVE_SUPPORTER_DAYS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.sponsor_threshold = sponsor_threshold
        self.active_supporter_days = active_supporter_days
        self.clock = clock

    async def process(self, donation: Donation) -> EntitlementReport:
        """Run every automatic step for ``donation``.

        Raises:
            EntitlementPreconditionError: donation is not completed or has no owner.
        """
        if donation.status is not DonationStatus.COMPLETED:
            msg = f"Donation {donation.id} is {donation.status.value}, not completed"
            raise EntitlementPreconditionError(msg)
        if donation.owner_user_id is None:
            msg = f"Donation {donation.id} has no owner"
            raise EntitlementPreconditionError(msg)

        report = EntitlementReport(donation_id=donation.id)
        log = logger.bind(donation_id=donation.id, user_id=donation.owner_user_id)

        for kind in AUTOMATIC_KINDS:
            try:
                grant = await self._step_for(kind)(donation)
            except Exception:
                log.error("entitlement_step_failed", step=kind.value, exc_info=True)
                report.failed_steps.append(kind.value)
                continue
            if grant is not None:
                report.awarded.append(grant)

        if report.failed_steps:
            log.warning("entitlements_incomplete", failed_steps=report.failed_steps)
            return report

        if donation.id is not None:
            await self.ledger.mark_entitlements_processed(donation.id)
        report.completed = True
        log.info(
            "entitlements_processed",
            awarded=[g.badge_id for g in report.awarded],
        )
        return report

    def _step_for(self, kind: BadgeKind) -> Callable[[Donation], Awaitable[Grant | None]]:
        match kind:
            case BadgeKind.SUPPORTER:
                return self._award_supporter
            case BadgeKind.ACTIVE_SUPPORTER:
                return self._renew_active_supporter
            case BadgeKind.SPONSOR:
                return self._check_sponsor
            case BadgeKind.CUSTOM:
                msg = "Custom badges are not derived from donations"
                raise ValueError(msg)
            case _:
                assert_never(kind)

    # --- Steps ---

    async def _award_supporter(self, donation: Donation) -> Grant | None:
        badge = await self.store.get_badge_by_kind(BadgeKind.SUPPORTER)
        if badge is None:
            return None

        user_id = donation.owner_user_id
        assert user_id is not None
        year = donation.occurred_at.year
        if await self.store.find_year_grant(user_id, badge.id, year) is not None:  # type: ignore[arg-type]
            return None

        grant = await self.store.insert_grant(
            Grant(
                user_id=user_id,
                badge_id=badge.id,  # type: ignore[arg-type]
                awarded_at=self.clock(),
                year=year,
                reason=_donation_label(donation),
                metadata=_donation_metadata(donation),
            )
        )
        if grant is not None:
            logger.info("supporter_awarded", user_id=user_id, year=year, grant_id=grant.id)
        return grant

    async def _renew_active_supporter(self, donation: Donation) -> Grant | None:
        badge = await self.store.get_badge_by_kind(BadgeKind.ACTIVE_SUPPORTER)
        if badge is None:
            return None
        assert donation.owner_user_id is not None
        return await self.renew_active_supporter(
            donation.owner_user_id,
            badge,
            reason=f"{_donation_label(donation)} - Active for 1 year",
            metadata=_donation_metadata(donation),
        )

    async def _check_sponsor(self, donation: Donation) -> Grant | None:
        badge = await self.store.get_badge_by_kind(BadgeKind.SPONSOR)
        if badge is None:
            return None

        user_id = donation.owner_user_id
        assert user_id is not None
        # Any earlier grant, active or revoked, means sponsor is never re-derived.
        if await self.store.find_grant(user_id, badge.id) is not None:  # type: ignore[arg-type]
            return None

        total = await self.ledger.completed_total(user_id)
        if total < self.sponsor_threshold:
            return None

        grant = await self.store.insert_grant(
            Grant(
                user_id=user_id,
                badge_id=badge.id,  # type: ignore[arg-type]
                awarded_at=self.clock(),
                reason=f"Total donations of ${total:.2f}",
                metadata={
                    "total_donations": f"{total:.2f}",
                    "qualifying_donation_id": donation.external_id,
                },
            )
        )
        if grant is None:
            logger.info("sponsor_award_lost_race", user_id=user_id)
            return None
        logger.info("sponsor_awarded", user_id=user_id, total=f"{total:.2f}", grant_id=grant.id)
        return grant

    # --- Shared with manual awards ---

    async def renew_active_supporter(
        self,
        user_id: int,
        badge: Badge,
        reason: str | None = None,
        metadata: dict[str, Any] | None = None,
        awarded_by_user_id: int | None = None,
    ) -> Grant:
        """Replace the user's active supporter grant with a fresh one.

        The expiry is always award time + ``active_supporter_days``.
        """
        now = self.clock()
        grant = await self.store.upsert_exclusive_grant(
            Grant(
                user_id=user_id,
                badge_id=badge.id,  # type: ignore[arg-type]
                awarded_at=now,
                expires_at=now + timedelta(days=self.active_supporter_days),
                reason=reason,
                awarded_by_user_id=awarded_by_user_id,
                metadata=metadata or {},
            )
        )
        logger.info(
            "active_supporter_renewed",
            user_id=user_id,
            grant_id=grant.id,
            expires_at=grant.expires_at.isoformat() if grant.expires_at else None,
        )
        return grant
