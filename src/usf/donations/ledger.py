"""Donation ledger: durable donation records keyed by (provider, external_id)."""

from __future__ import annotations

from decimal import Decimal

import structlog

from usf.entitlements.store import EntitlementStore
from usf.entitlements.types import Donation, DonationProvider, DonationTotals, DonorTotal
from usf.errors import NotFoundError

logger = structlog.get_logger()


class DonationLedger:
    """Thin domain layer over the store's donation operations."""

    def __init__(self, store: EntitlementStore) -> None:
        self.store = store

    async def record(self, donation: Donation) -> tuple[Donation, bool]:
        """Persist ``donation`` unless its idempotency key is already recorded.

        Returns ``(stored, created)``. When another delivery of the same event
        won the insert, ``stored`` is that earlier record and ``created`` is
        False.
        """
        inserted = await self.store.insert_donation(donation)
        if inserted is not None:
            logger.info(
                "donation_recorded",
                donation_id=inserted.id,
                provider=inserted.provider.value,
                external_id=inserted.external_id,
                owner_user_id=inserted.owner_user_id,
                status=inserted.status.value,
            )
            return inserted, True

        existing = await self.store.find_donation(donation.provider, donation.external_id)
        if existing is None:
            msg = f"Insert conflict for {donation.idempotency_key} but no row found"
            raise RuntimeError(msg)
        logger.info(
            "donation_duplicate",
            donation_id=existing.id,
            provider=existing.provider.value,
            external_id=existing.external_id,
        )
        return existing, False

    async def get(self, donation_id: int) -> Donation:
        donation = await self.store.get_donation(donation_id)
        if donation is None:
            msg = f"Donation with ID {donation_id} not found"
            raise NotFoundError(msg)
        return donation

    async def find(self, provider: DonationProvider, external_id: str) -> Donation | None:
        return await self.store.find_donation(provider, external_id)

    async def save(self, donation: Donation) -> Donation:
        return await self.store.update_donation(donation)

    async def mark_entitlements_processed(self, donation_id: int) -> bool:
        return await self.store.mark_entitlements_processed(donation_id)

    async def completed_total(self, user_id: int) -> Decimal:
        return await self.store.sum_completed_donations(user_id)

    async def list_donations(self, owner_user_id: int | None = None, limit: int | None = None) -> list[Donation]:
        return await self.store.list_donations(owner_user_id=owner_user_id, limit=limit)

    async def unresolved(self, limit: int | None = None) -> list[Donation]:
        """The admin reconciliation queue: donations with no owner yet."""
        return await self.store.list_donations(unresolved_only=True, limit=limit)

    async def unprocessed(self, limit: int) -> list[Donation]:
        return await self.store.list_unprocessed_donations(limit)

    async def totals(self) -> DonationTotals:
        return await self.store.donation_totals()

    async def top_donors(self, limit: int = 10) -> list[DonorTotal]:
        return await self.store.top_donors(limit)
