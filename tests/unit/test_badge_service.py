"""Badge service tests — manual award, revoke audit trail and statistics."""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

import pytest
from conftest import ALICE, BOB, NOW

from usf.entitlements.seed import BADGE_SEED_DATA, seed_badges
from usf.entitlements.types import BadgeKind
from usf.errors import GrantConflictError, NotFoundError


async def _badge(store, name: str):
    return next(b for b in await store.list_badges() if b.name == name)


class TestSeed:
    """Badge catalog seeding."""

    async def test_catalog_seeded_in_display_order(self, store):
        badges = await store.list_badges()
        assert [b.name for b in badges] == [d["name"] for d in BADGE_SEED_DATA]
        assert {b.kind for b in badges} == set(BadgeKind)

    async def test_seed_is_idempotent(self, store):
        assert await seed_badges(store) == 0
        assert len(await store.list_badges()) == len(BADGE_SEED_DATA)


class TestAward:
    """Admin awards."""

    async def test_award_custom_badge(self, store, badge_service):
        hero = await _badge(store, "Community Hero")
        grant = await badge_service.award(ALICE.id, hero.id, reason="Ran the wiki", awarded_by_user_id=BOB.id)

        assert grant.id is not None
        assert grant.is_active is True
        assert grant.awarded_by_user_id == BOB.id
        assert grant.reason == "Ran the wiki"

    async def test_duplicate_active_custom_badge_conflicts(self, store, badge_service):
        hero = await _badge(store, "Community Hero")
        await badge_service.award(ALICE.id, hero.id)
        with pytest.raises(GrantConflictError):
            await badge_service.award(ALICE.id, hero.id)

    async def test_reaward_after_revoke(self, store, badge_service):
        hero = await _badge(store, "Community Hero")
        await badge_service.award(ALICE.id, hero.id)
        await badge_service.revoke(ALICE.id, hero.id)

        grant = await badge_service.award(ALICE.id, hero.id)

        assert grant.is_active is True
        assert len(await store.list_user_grants(ALICE.id)) == 2

    async def test_supporter_defaults_to_current_year(self, store, badge_service):
        supporter = await store.get_badge_by_kind(BadgeKind.SUPPORTER)
        grant = await badge_service.award(ALICE.id, supporter.id)
        assert grant.year == NOW.year

    async def test_supporter_same_year_conflicts(self, store, badge_service):
        supporter = await store.get_badge_by_kind(BadgeKind.SUPPORTER)
        await badge_service.award(ALICE.id, supporter.id, year=2023)
        with pytest.raises(GrantConflictError):
            await badge_service.award(ALICE.id, supporter.id, year=2023)
        assert (await badge_service.award(ALICE.id, supporter.id, year=2024)).year == 2024

    async def test_active_supporter_ignores_requested_expiry(self, store, badge_service):
        active = await store.get_badge_by_kind(BadgeKind.ACTIVE_SUPPORTER)
        grant = await badge_service.award(ALICE.id, active.id, expires_at=NOW + timedelta(days=3))
        assert grant.expires_at == NOW + timedelta(days=365)

        again = await badge_service.award(ALICE.id, active.id)
        assert again.id == grant.id

    async def test_unknown_user_or_badge(self, store, badge_service):
        hero = await _badge(store, "Community Hero")
        with pytest.raises(NotFoundError):
            await badge_service.award(404, hero.id)
        with pytest.raises(NotFoundError):
            await badge_service.award(ALICE.id, 404)


class TestRevoke:
    """Revocation never deletes."""

    async def test_revoke_sets_audit_fields(self, store, badge_service, clock):
        hero = await _badge(store, "Community Hero")
        grant = await badge_service.award(ALICE.id, hero.id)
        clock.advance(hours=1)

        revoked = await badge_service.revoke(ALICE.id, hero.id, reason="Spam", revoked_by_user_id=BOB.id)

        assert revoked.id == grant.id
        assert revoked.is_active is False
        assert revoked.revoked_at == NOW + timedelta(hours=1)
        assert revoked.revoked_reason == "Spam"
        assert revoked.revoked_by_user_id == BOB.id
        assert await store.get_grant(grant.id) == revoked

    async def test_revoke_default_reason(self, store, badge_service):
        hero = await _badge(store, "Community Hero")
        await badge_service.award(ALICE.id, hero.id)
        revoked = await badge_service.revoke(ALICE.id, hero.id)
        assert revoked.revoked_reason == "No reason provided"

    async def test_revoke_without_active_grant(self, store, badge_service):
        hero = await _badge(store, "Community Hero")
        with pytest.raises(NotFoundError):
            await badge_service.revoke(ALICE.id, hero.id)


class TestQueries:
    """Listings and statistics."""

    async def test_active_grants_hide_lapsed_before_sweep(self, store, engine, badge_service, make_donation, clock):
        await engine.process(await make_donation())
        clock.advance(days=400)

        kinds = {(await store.get_badge(g.badge_id)).kind for g in await badge_service.active_grants(ALICE.id)}

        assert kinds == {BadgeKind.SUPPORTER}
        assert await badge_service.has_active_supporter(ALICE.id) is False

    async def test_supporters_listing(self, engine, badge_service, make_donation):
        await engine.process(await make_donation(owner_user_id=ALICE.id, amount="30.00"))
        await engine.process(await make_donation(owner_user_id=BOB.id, amount="5.00"))

        rows = await badge_service.supporters()

        assert sorted((g.user_id, b.kind) for g, b in rows) == [
            (ALICE.id, BadgeKind.SPONSOR),
            (ALICE.id, BadgeKind.SUPPORTER),
            (BOB.id, BadgeKind.SUPPORTER),
        ]

    async def test_statistics(self, engine, badge_service, make_donation, clock):
        await engine.process(await make_donation(owner_user_id=ALICE.id, amount="30.00"))
        await engine.process(await make_donation(owner_user_id=BOB.id, amount="5.00"))
        clock.advance(days=360)

        stats = await badge_service.statistics()

        counts = {c.kind: c.active_count for c in stats.badges}
        assert counts[BadgeKind.SUPPORTER] == 2
        assert counts[BadgeKind.ACTIVE_SUPPORTER] == 2
        assert counts[BadgeKind.SPONSOR] == 1
        assert stats.expiring_in_7_days == 2
        assert stats.donations.total_amount == Decimal("35.00")
        assert stats.donations.total_donations == 2
        assert stats.donations.unique_donors == 2
        assert stats.generated_at == clock.now
