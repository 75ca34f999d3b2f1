"""Entitlement engine tests: supporter, active supporter and sponsor derivation."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from conftest import ALICE, BOB, NOW

from usf.entitlements.types import BadgeKind, DonationStatus
from usf.errors import EntitlementPreconditionError


async def _grants_of_kind(store, user_id: int, kind: BadgeKind, active_only: bool = False):
    badge = await store.get_badge_by_kind(kind)
    return [g for g in await store.list_user_grants(user_id, active_only=active_only) if g.badge_id == badge.id]


class TestSupporter:
    """Supporter badge: one permanent grant per calendar year."""

    async def test_first_donation_awards_supporter_for_its_year(self, store, engine, make_donation):
        donation = await make_donation(amount="5.00")
        report = await engine.process(donation)

        assert report.completed is True
        grants = await _grants_of_kind(store, ALICE.id, BadgeKind.SUPPORTER)
        assert len(grants) == 1
        assert grants[0].year == 2025
        assert grants[0].expires_at is None
        assert grants[0].reason == "Ko-fi donation of $5.00"
        assert grants[0].metadata["donation_amount"] == "5.00"
        assert grants[0].metadata["donation_id"] == donation.external_id

    async def test_two_donations_same_year_one_grant(self, store, engine, make_donation):
        await engine.process(await make_donation(amount="5.00"))
        await engine.process(await make_donation(amount="7.00", occurred_at=NOW + timedelta(days=30)))

        grants = await _grants_of_kind(store, ALICE.id, BadgeKind.SUPPORTER)
        assert len(grants) == 1

    async def test_donations_in_different_years_get_separate_grants(self, store, engine, make_donation):
        await engine.process(await make_donation(occurred_at=datetime(2024, 12, 31, 23, 0, tzinfo=timezone.utc)))
        await engine.process(await make_donation(occurred_at=NOW))

        grants = await _grants_of_kind(store, ALICE.id, BadgeKind.SUPPORTER)
        assert sorted(g.year for g in grants) == [2024, 2025]


class TestActiveSupporter:
    """Active supporter: a single grant whose expiry restarts on each donation."""

    async def test_expires_one_year_after_award(self, store, engine, make_donation, clock):
        await engine.process(await make_donation())

        grants = await _grants_of_kind(store, ALICE.id, BadgeKind.ACTIVE_SUPPORTER)
        assert len(grants) == 1
        assert grants[0].expires_at == NOW + timedelta(days=365)
        assert grants[0].reason.endswith("- Active for 1 year")

    async def test_second_award_refreshes_single_grant(self, store, engine, make_donation, clock):
        await engine.process(await make_donation())
        later = clock.advance(days=100)
        await engine.process(await make_donation())

        grants = await _grants_of_kind(store, ALICE.id, BadgeKind.ACTIVE_SUPPORTER)
        assert len(grants) == 1
        assert grants[0].is_active is True
        assert grants[0].awarded_at == later
        assert grants[0].expires_at == later + timedelta(days=365)

    async def test_expiry_uses_configured_days(self, store, ledger, make_donation, clock):
        from usf.entitlements.engine import EntitlementEngine

        short = EntitlementEngine(store, ledger, active_supporter_days=30, clock=clock)
        await short.process(await make_donation())

        grants = await _grants_of_kind(store, ALICE.id, BadgeKind.ACTIVE_SUPPORTER)
        assert grants[0].expires_at == NOW + timedelta(days=30)


class TestSponsor:
    """Sponsor: permanent once the completed total reaches the threshold."""

    async def test_just_below_threshold_no_sponsor(self, store, engine, make_donation):
        await engine.process(await make_donation(amount="20.00"))
        await engine.process(await make_donation(amount="4.99"))

        assert await _grants_of_kind(store, ALICE.id, BadgeKind.SPONSOR) == []

    async def test_reaching_threshold_awards_sponsor_once(self, store, engine, make_donation):
        await engine.process(await make_donation(amount="20.00"))
        await engine.process(await make_donation(amount="4.99"))
        report = await engine.process(await make_donation(amount="0.01"))

        sponsor = await _grants_of_kind(store, ALICE.id, BadgeKind.SPONSOR)
        assert len(sponsor) == 1
        assert sponsor[0].reason == "Total donations of $25.00"
        assert sponsor[0].metadata["total_donations"] == "25.00"
        assert sponsor[0].badge_id in [g.badge_id for g in report.awarded]

        await engine.process(await make_donation(amount="50.00"))
        assert len(await _grants_of_kind(store, ALICE.id, BadgeKind.SPONSOR)) == 1

    async def test_single_large_donation(self, store, engine, make_donation):
        await engine.process(await make_donation(amount="25.00"))
        assert len(await _grants_of_kind(store, ALICE.id, BadgeKind.SPONSOR)) == 1

    async def test_refunded_donations_do_not_count(self, store, engine, make_donation):
        await make_donation(amount="20.00", status=DonationStatus.REFUNDED)
        await engine.process(await make_donation(amount="10.00"))

        assert await _grants_of_kind(store, ALICE.id, BadgeKind.SPONSOR) == []

    async def test_concurrent_donations_award_one_sponsor(self, store, engine, make_donation, monkeypatch):
        first = await make_donation(amount="15.00")
        second = await make_donation(amount="15.00")

        # Suspend between the "no sponsor yet" check and the insert so both
        # tasks see the threshold met before either writes.
        real_sum = store.sum_completed_donations

        async def slow_sum(user_id):
            await asyncio.sleep(0)
            return await real_sum(user_id)

        monkeypatch.setattr(store, "sum_completed_donations", slow_sum)
        reports = await asyncio.gather(engine.process(first), engine.process(second))

        assert all(r.completed for r in reports)
        assert len(await _grants_of_kind(store, ALICE.id, BadgeKind.SPONSOR)) == 1
        assert len(await _grants_of_kind(store, ALICE.id, BadgeKind.SUPPORTER)) == 1
        assert len(await _grants_of_kind(store, ALICE.id, BadgeKind.ACTIVE_SUPPORTER)) == 1

    async def test_revoked_sponsor_is_not_rederived(self, store, engine, badge_service, make_donation):
        await engine.process(await make_donation(amount="30.00"))
        sponsor = await store.get_badge_by_kind(BadgeKind.SPONSOR)
        await badge_service.revoke(ALICE.id, sponsor.id, reason="chargeback")

        await engine.process(await make_donation(amount="30.00"))

        grants = await _grants_of_kind(store, ALICE.id, BadgeKind.SPONSOR)
        assert len(grants) == 1
        assert grants[0].is_active is False

    async def test_totals_are_per_user(self, store, engine, make_donation):
        await engine.process(await make_donation(owner_user_id=ALICE.id, amount="15.00"))
        await engine.process(await make_donation(owner_user_id=BOB.id, amount="15.00"))

        assert await _grants_of_kind(store, ALICE.id, BadgeKind.SPONSOR) == []
        assert await _grants_of_kind(store, BOB.id, BadgeKind.SPONSOR) == []


class TestProcessing:
    """Preconditions, the processed flag and retries."""

    async def test_pending_donation_rejected(self, engine, make_donation):
        donation = await make_donation(status=DonationStatus.PENDING)
        with pytest.raises(EntitlementPreconditionError):
            await engine.process(donation)

    async def test_unowned_donation_rejected(self, engine, make_donation):
        donation = await make_donation(owner_user_id=None)
        with pytest.raises(EntitlementPreconditionError):
            await engine.process(donation)

    async def test_success_marks_donation_processed(self, ledger, engine, make_donation):
        donation = await make_donation()
        await engine.process(donation)
        assert (await ledger.get(donation.id)).entitlements_processed is True

    async def test_failed_step_leaves_others_and_allows_retry(self, store, ledger, engine, make_donation, monkeypatch):
        donation = await make_donation(amount="30.00")

        async def broken(_donation):
            raise RuntimeError("database went away")

        monkeypatch.setattr(engine, "_check_sponsor", broken)
        report = await engine.process(donation)

        assert report.completed is False
        assert report.failed_steps == ["sponsor"]
        assert len(await _grants_of_kind(store, ALICE.id, BadgeKind.SUPPORTER)) == 1
        assert (await ledger.get(donation.id)).entitlements_processed is False

        monkeypatch.undo()
        retry = await engine.process(await ledger.get(donation.id))

        assert retry.completed is True
        assert len(await _grants_of_kind(store, ALICE.id, BadgeKind.SUPPORTER)) == 1
        assert len(await _grants_of_kind(store, ALICE.id, BadgeKind.SPONSOR)) == 1
        assert (await ledger.get(donation.id)).entitlements_processed is True

    async def test_money_stays_decimal(self, ledger, make_donation):
        await make_donation(amount="0.10")
        await make_donation(amount="0.20")
        total = await ledger.completed_total(ALICE.id)
        assert isinstance(total, Decimal)
        assert total == Decimal("0.30")
