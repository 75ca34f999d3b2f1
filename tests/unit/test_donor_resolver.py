"""Donor resolver tests: lookup priority and misses."""

from __future__ import annotations

from conftest import ALICE, BOB

from usf.entitlements.types import UserRecord


class TestResolve:
    async def test_email_match(self, resolver):
        resolution = await resolver.resolve("alice@example.com", "whoever")
        assert resolution.resolved
        assert resolution.user.id == ALICE.id
        assert resolution.matched_by == "email"

    async def test_email_match_ignores_case(self, resolver):
        resolution = await resolver.resolve("Alice@Example.COM", None)
        assert resolution.user.id == ALICE.id

    async def test_username_match_is_case_sensitive(self, resolver):
        resolution = await resolver.resolve(None, "BOB")
        assert not resolution.resolved

    async def test_email_wins_over_username(self, resolver):
        # Email says alice, display name says bob.
        resolution = await resolver.resolve("alice@example.com", "bob")
        assert resolution.user.id == ALICE.id

    async def test_username_fallback(self, resolver):
        resolution = await resolver.resolve("nobody@example.com", "bob")
        assert resolution.user.id == BOB.id
        assert resolution.matched_by == "username"

    async def test_discord_username_fallback(self, resolver):
        resolution = await resolver.resolve(None, "bobby")
        assert resolution.user.id == BOB.id
        assert resolution.matched_by == "discord_username"

    async def test_username_beats_discord_username(self, store, resolver):
        # A user whose Discord handle collides with another user's site username.
        store.add_user(UserRecord(id=10, username="mallory", discord_username="bob"))
        resolution = await resolver.resolve(None, "bob")
        assert resolution.user.id == BOB.id

    async def test_no_match(self, resolver):
        resolution = await resolver.resolve("ghost@example.com", "Ghost")
        assert not resolution.resolved
        assert resolution.matched_by is None

    async def test_nothing_to_match_on(self, resolver):
        resolution = await resolver.resolve(None, None)
        assert resolution.user is None
