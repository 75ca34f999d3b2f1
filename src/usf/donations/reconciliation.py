"""Admin reconciliation: resolve donations the webhook could not match.

Also hosts the other admin-only donation moves: status transitions
(refunds, failures) and manually recorded donations.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

import structlog

from usf.donations.ledger import DonationLedger
from usf.entitlements.engine import EntitlementEngine, EntitlementReport
from usf.entitlements.store import EntitlementStore
from usf.entitlements.types import (
    STATUS_TRANSITIONS,
    Donation,
    DonationProvider,
    DonationStatus,
    to_money,
)
from usf.errors import InvalidTransitionError, NotFoundError

logger = structlog.get_logger()

_ASSIGNABLE = frozenset({DonationStatus.PENDING, DonationStatus.COMPLETED})


@dataclass
class ReconciliationResult:
    donation: Donation
    entitlements: EntitlementReport | None = None


def _append_note(existing: str | None, note: str) -> str:
    return f"{existing}\n{note}" if existing else note


class AdminReconciliation:
    def __init__(self, store: EntitlementStore, ledger: DonationLedger, engine: EntitlementEngine) -> None:
        self.store = store
        self.ledger = ledger
        self.engine = engine

    async def _require_user(self, user_id: int) -> None:
        if await self.store.get_user(user_id) is None:
            msg = f"User with ID {user_id} not found"
            raise NotFoundError(msg)

    async def assign(
        self,
        donation_id: int,
        user_id: int,
        admin_user_id: int | None = None,
    ) -> ReconciliationResult:
        """Give ``donation_id`` to ``user_id`` and mark it completed.

        Entitlements run only while the donation's processed flag is unset,
        so repeating the call never double-grants.
        """
        donation = await self.ledger.get(donation_id)
        await self._require_user(user_id)
        if donation.status not in _ASSIGNABLE:
            msg = f"Cannot assign a {donation.status.value} donation"
            raise InvalidTransitionError(msg)

        logger.info(
            "donation_assigned",
            donation_id=donation_id,
            user_id=user_id,
            previous_owner=donation.owner_user_id,
            admin_user_id=admin_user_id,
        )
        donation.owner_user_id = user_id
        donation.status = DonationStatus.COMPLETED
        donation.admin_notes = _append_note(
            donation.admin_notes,
            f"Assigned to user {user_id}" + (f" by admin {admin_user_id}" if admin_user_id else ""),
        )
        donation = await self.ledger.save(donation)

        if donation.entitlements_processed:
            return ReconciliationResult(donation=donation)

        report = await self.engine.process(donation)
        return ReconciliationResult(donation=await self.ledger.get(donation_id), entitlements=report)

    async def set_status(
        self,
        donation_id: int,
        status: DonationStatus,
        admin_user_id: int | None = None,
        note: str | None = None,
    ) -> ReconciliationResult:
        """Move a donation along the status machine (e.g. completed -> refunded).

        A move to completed on an owned donation runs the engine, as the
        webhook would have.
        """
        donation = await self.ledger.get(donation_id)
        if status not in STATUS_TRANSITIONS[donation.status]:
            msg = f"Cannot move donation from {donation.status.value} to {status.value}"
            raise InvalidTransitionError(msg)

        previous = donation.status
        donation.status = status
        if note:
            donation.admin_notes = _append_note(donation.admin_notes, note)
        donation = await self.ledger.save(donation)
        logger.info(
            "donation_status_changed",
            donation_id=donation_id,
            from_status=previous.value,
            to_status=status.value,
            admin_user_id=admin_user_id,
        )

        if status is DonationStatus.COMPLETED and donation.is_resolved and not donation.entitlements_processed:
            report = await self.engine.process(donation)
            return ReconciliationResult(donation=await self.ledger.get(donation_id), entitlements=report)
        return ReconciliationResult(donation=donation)

    async def record_manual(
        self,
        user_id: int,
        amount: Decimal,
        occurred_at: datetime,
        currency: str = "USD",
        notes: str | None = None,
        admin_user_id: int | None = None,
    ) -> ReconciliationResult:
        """Record a donation received outside Ko-fi and process its entitlements."""
        await self._require_user(user_id)
        donation, _ = await self.ledger.record(
            Donation(
                amount=to_money(amount),
                currency=currency,
                occurred_at=occurred_at,
                provider=DonationProvider.MANUAL,
                external_id=f"manual-{uuid.uuid4()}",
                status=DonationStatus.COMPLETED,
                owner_user_id=user_id,
                admin_notes=_append_note(notes, f"Recorded by admin {admin_user_id}") if admin_user_id else notes,
            )
        )
        report = await self.engine.process(donation)
        return ReconciliationResult(donation=await self.ledger.get(donation.id), entitlements=report)  # type: ignore[arg-type]
