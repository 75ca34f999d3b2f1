"""Entitlement worker job tests (run against the memory backend)."""

from __future__ import annotations

from collections.abc import AsyncGenerator
from datetime import timedelta
from decimal import Decimal

import pytest_asyncio
from conftest import ALICE, BOB, CAROL

from usf.config import get_settings
from usf.dependencies import get_memory_store, reset_memory_store
from usf.donations.ledger import DonationLedger
from usf.entitlements.seed import seed_badges
from usf.entitlements.types import Badge, BadgeKind, Donation, DonationProvider, DonationStatus, Grant, utcnow
from usf.workers.entitlement_worker import (
    WorkerSettings,
    process_donation_entitlements,
    retry_unprocessed_donations,
    sweep_expired_grants,
)


@pytest_asyncio.fixture
async def ctx() -> AsyncGenerator[dict, None]:
    """Worker context over a fresh process-wide memory store."""
    get_settings.cache_clear()
    reset_memory_store()
    store = get_memory_store()
    await seed_badges(store)
    for user in (ALICE, BOB, CAROL):
        store.add_user(user)
    yield {"settings": get_settings()}
    reset_memory_store()


async def _record(external_id: str, owner_user_id: int | None = ALICE.id, amount: str = "10.00") -> Donation:
    donation, _ = await DonationLedger(get_memory_store()).record(
        Donation(
            amount=Decimal(amount),
            currency="USD",
            occurred_at=utcnow(),
            provider=DonationProvider.KOFI,
            external_id=external_id,
            status=DonationStatus.COMPLETED,
            owner_user_id=owner_user_id,
        )
    )
    return donation


class TestProcessDonation:
    """Deferred entitlement job."""

    async def test_processes_deferred_donation(self, ctx) -> None:
        donation = await _record("deferred-1")

        assert await process_donation_entitlements(ctx, donation.id) is True

        store = get_memory_store()
        assert (await store.get_donation(donation.id)).entitlements_processed is True
        assert len(await store.list_user_grants(ALICE.id)) == 2

    async def test_already_processed_is_skipped(self, ctx) -> None:
        donation = await _record("deferred-2")
        await process_donation_entitlements(ctx, donation.id)
        grants = await get_memory_store().list_user_grants(ALICE.id)

        assert await process_donation_entitlements(ctx, donation.id) is True
        assert await get_memory_store().list_user_grants(ALICE.id) == grants

    async def test_missing_donation(self, ctx) -> None:
        assert await process_donation_entitlements(ctx, 12345) is False

    async def test_unowned_donation_skipped(self, ctx) -> None:
        donation = await _record("deferred-3", owner_user_id=None)
        assert await process_donation_entitlements(ctx, donation.id) is False


class TestCronJobs:
    """Scheduled sweep and retry."""

    async def test_retry_finishes_unprocessed(self, ctx) -> None:
        await _record("retry-1", owner_user_id=ALICE.id)
        await _record("retry-2", owner_user_id=BOB.id)
        await _record("retry-3", owner_user_id=None)

        assert await retry_unprocessed_donations(ctx) == 2
        assert await retry_unprocessed_donations(ctx) == 0

    async def test_sweep_expires_lapsed_grants(self, ctx) -> None:
        store = get_memory_store()
        badge: Badge = await store.get_badge_by_kind(BadgeKind.ACTIVE_SUPPORTER)
        past = utcnow() - timedelta(days=400)
        await store.upsert_exclusive_grant(
            Grant(user_id=ALICE.id, badge_id=badge.id, awarded_at=past, expires_at=past + timedelta(days=365))
        )

        assert await sweep_expired_grants(ctx) == 1
        assert (await store.get_user(ALICE.id)).custom_role is None
        assert await sweep_expired_grants(ctx) == 0


class TestWorkerSettings:
    def test_registers_jobs(self) -> None:
        names = {f.__name__ for f in WorkerSettings.functions}
        assert names == {"process_donation_entitlements", "sweep_expired_grants", "retry_unprocessed_donations"}
        assert len(WorkerSettings.cron_jobs) == 2
