"""In-process EntitlementStore.

Used by the test suite and by ``storage_backend = "memory"`` for local runs.
Mutations are serialised with an asyncio.Lock and enforce the same unique
indexes as the Postgres schema, so races behave the same way: the loser of
an insert gets ``None``.
"""

from __future__ import annotations

import asyncio
import copy
from collections import defaultdict
from collections.abc import Iterable
from datetime import datetime, timezone
from decimal import Decimal

from usf.entitlements.store import EntitlementStore
from usf.entitlements.types import (
    Badge,
    BadgeKind,
    Donation,
    DonationProvider,
    DonationStatus,
    DonationTotals,
    DonorTotal,
    ExpiredGrant,
    Grant,
    KindCount,
    UserRecord,
)


class InMemoryStore(EntitlementStore):
    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._users: dict[int, UserRecord] = {}
        self._badges: dict[int, Badge] = {}
        self._donations: dict[int, Donation] = {}
        self._grants: dict[int, Grant] = {}
        self._next_id: dict[str, int] = defaultdict(lambda: 1)

    def _allocate(self, table: str) -> int:
        value = self._next_id[table]
        self._next_id[table] = value + 1
        return value

    # --- Users ---

    def add_user(self, user: UserRecord) -> UserRecord:
        """Seed a user row (users are owned by the site's auth module)."""
        self._users[user.id] = copy.deepcopy(user)
        return user

    async def get_user(self, user_id: int) -> UserRecord | None:
        user = self._users.get(user_id)
        return copy.deepcopy(user) if user else None

    async def find_user_by_email(self, email: str) -> UserRecord | None:
        needle = email.strip().lower()
        for user in self._users.values():
            if user.email and user.email.lower() == needle:
                return copy.deepcopy(user)
        return None

    async def find_user_by_username(self, username: str) -> UserRecord | None:
        for user in self._users.values():
            if user.username == username:
                return copy.deepcopy(user)
        return None

    async def find_user_by_discord_username(self, discord_username: str) -> UserRecord | None:
        for user in self._users.values():
            if user.discord_username == discord_username:
                return copy.deepcopy(user)
        return None

    async def clear_lapsed_custom_roles(self, now: datetime) -> int:
        changed = 0
        async with self._lock:
            holders: set[int] = set()
            current: set[int] = set()
            for g in self._grants.values():
                if self._badges[g.badge_id].kind is not BadgeKind.ACTIVE_SUPPORTER:
                    continue
                holders.add(g.user_id)
                if g.is_active and (g.expires_at is None or g.expires_at > now):
                    current.add(g.user_id)
            for user_id in holders - current:
                user = self._users.get(user_id)
                if user is not None and user.custom_role is not None:
                    user.custom_role = None
                    changed += 1
        return changed

    # --- Badges ---

    async def get_badge(self, badge_id: int) -> Badge | None:
        badge = self._badges.get(badge_id)
        return copy.deepcopy(badge) if badge else None

    async def get_badge_by_kind(self, kind: BadgeKind) -> Badge | None:
        candidates = [b for b in self._badges.values() if b.kind is kind and b.is_active]
        if not candidates:
            return None
        return copy.deepcopy(min(candidates, key=lambda b: (b.display_order, b.id or 0)))

    async def list_badges(self, active_only: bool = True) -> list[Badge]:
        badges = [b for b in self._badges.values() if b.is_active or not active_only]
        badges.sort(key=lambda b: (b.display_order, b.name))
        return copy.deepcopy(badges)

    async def insert_badge(self, badge: Badge) -> Badge | None:
        async with self._lock:
            if any(b.name == badge.name for b in self._badges.values()):
                return None
            stored = copy.deepcopy(badge)
            stored.id = self._allocate("badges")
            self._badges[stored.id] = stored
            return copy.deepcopy(stored)

    # --- Donations ---

    async def get_donation(self, donation_id: int) -> Donation | None:
        donation = self._donations.get(donation_id)
        return copy.deepcopy(donation) if donation else None

    async def find_donation(self, provider: DonationProvider, external_id: str) -> Donation | None:
        for donation in self._donations.values():
            if donation.provider is provider and donation.external_id == external_id:
                return copy.deepcopy(donation)
        return None

    async def insert_donation(self, donation: Donation) -> Donation | None:
        async with self._lock:
            key = donation.idempotency_key
            if any(d.idempotency_key == key for d in self._donations.values()):
                return None
            now = datetime.now(timezone.utc)
            stored = copy.deepcopy(donation)
            stored.id = self._allocate("donations")
            stored.created_at = now
            stored.updated_at = now
            self._donations[stored.id] = stored
            return copy.deepcopy(stored)

    async def update_donation(self, donation: Donation) -> Donation:
        async with self._lock:
            if donation.id not in self._donations:
                msg = f"Donation {donation.id} does not exist"
                raise KeyError(msg)
            stored = copy.deepcopy(donation)
            # The processed flag only moves forward.
            stored.entitlements_processed = (
                stored.entitlements_processed or self._donations[donation.id].entitlements_processed
            )
            stored.updated_at = datetime.now(timezone.utc)
            self._donations[donation.id] = stored
            return copy.deepcopy(stored)

    async def mark_entitlements_processed(self, donation_id: int) -> bool:
        async with self._lock:
            donation = self._donations[donation_id]
            if donation.entitlements_processed:
                return False
            donation.entitlements_processed = True
            donation.updated_at = datetime.now(timezone.utc)
            return True

    async def sum_completed_donations(self, user_id: int) -> Decimal:
        total = Decimal("0.00")
        for donation in self._donations.values():
            if donation.owner_user_id == user_id and donation.status is DonationStatus.COMPLETED:
                total += donation.amount
        return total

    async def list_donations(
        self,
        owner_user_id: int | None = None,
        unresolved_only: bool = False,
        limit: int | None = None,
    ) -> list[Donation]:
        rows = list(self._donations.values())
        if owner_user_id is not None:
            rows = [d for d in rows if d.owner_user_id == owner_user_id]
        if unresolved_only:
            rows = [d for d in rows if d.owner_user_id is None]
        rows.sort(key=lambda d: (d.occurred_at, d.id or 0), reverse=True)
        if limit is not None:
            rows = rows[:limit]
        return copy.deepcopy(rows)

    async def list_unprocessed_donations(self, limit: int) -> list[Donation]:
        rows = [
            d for d in self._donations.values()
            if d.status is DonationStatus.COMPLETED
            and d.owner_user_id is not None
            and not d.entitlements_processed
        ]
        rows.sort(key=lambda d: d.id or 0)
        return copy.deepcopy(rows[:limit])

    async def donation_totals(self) -> DonationTotals:
        completed = [d for d in self._donations.values() if d.status is DonationStatus.COMPLETED]
        return DonationTotals(
            total_amount=sum((d.amount for d in completed), Decimal("0.00")),
            total_donations=len(completed),
            unique_donors=len({d.owner_user_id for d in completed if d.owner_user_id is not None}),
        )

    async def top_donors(self, limit: int) -> list[DonorTotal]:
        totals: dict[int, DonorTotal] = {}
        for d in self._donations.values():
            if d.status is not DonationStatus.COMPLETED or d.is_anonymous or d.owner_user_id is None:
                continue
            entry = totals.get(d.owner_user_id)
            if entry is None:
                user = self._users.get(d.owner_user_id)
                entry = DonorTotal(
                    user_id=d.owner_user_id,
                    username=user.username if user else "",
                    total_amount=Decimal("0.00"),
                    donation_count=0,
                )
                totals[d.owner_user_id] = entry
            entry.total_amount += d.amount
            entry.donation_count += 1
        ranked = sorted(totals.values(), key=lambda t: t.total_amount, reverse=True)
        return ranked[:limit]

    # --- Grants ---

    def _conflicts(self, grant: Grant, ignore_id: int | None = None) -> bool:
        for other in self._grants.values():
            if other.id == ignore_id or other.user_id != grant.user_id or other.badge_id != grant.badge_id:
                continue
            if grant.year is not None and other.year == grant.year:
                return True
            if grant.year is None and other.year is None and grant.is_active and other.is_active:
                return True
        return False

    async def get_grant(self, grant_id: int) -> Grant | None:
        grant = self._grants.get(grant_id)
        return copy.deepcopy(grant) if grant else None

    async def find_grant(self, user_id: int, badge_id: int, active_only: bool = False) -> Grant | None:
        matches = [
            g for g in self._grants.values()
            if g.user_id == user_id and g.badge_id == badge_id and (g.is_active or not active_only)
        ]
        if not matches:
            return None
        return copy.deepcopy(max(matches, key=lambda g: (g.awarded_at, g.id or 0)))

    async def find_year_grant(self, user_id: int, badge_id: int, year: int) -> Grant | None:
        for g in self._grants.values():
            if g.user_id == user_id and g.badge_id == badge_id and g.year == year:
                return copy.deepcopy(g)
        return None

    async def insert_grant(self, grant: Grant) -> Grant | None:
        async with self._lock:
            if self._conflicts(grant):
                return None
            stored = copy.deepcopy(grant)
            stored.id = self._allocate("grants")
            self._grants[stored.id] = stored
            return copy.deepcopy(stored)

    async def upsert_exclusive_grant(self, grant: Grant) -> Grant:
        async with self._lock:
            existing = [
                g for g in self._grants.values()
                if g.user_id == grant.user_id and g.badge_id == grant.badge_id
            ]
            stored = copy.deepcopy(grant)
            if existing:
                keep = min(existing, key=lambda g: g.id or 0)
                for extra in existing:
                    if extra is not keep:
                        del self._grants[extra.id]  # type: ignore[arg-type]
                stored.id = keep.id
            else:
                stored.id = self._allocate("grants")
            self._grants[stored.id] = stored  # type: ignore[index]
            return copy.deepcopy(stored)

    async def update_grant(self, grant: Grant) -> Grant:
        async with self._lock:
            if grant.id not in self._grants:
                msg = f"Grant {grant.id} does not exist"
                raise KeyError(msg)
            self._grants[grant.id] = copy.deepcopy(grant)
            return copy.deepcopy(grant)

    async def list_user_grants(self, user_id: int, active_only: bool = False) -> list[Grant]:
        rows = [g for g in self._grants.values() if g.user_id == user_id and (g.is_active or not active_only)]

        def order(g: Grant) -> tuple[int, float]:
            badge = self._badges.get(g.badge_id)
            return (badge.display_order if badge else 0, -g.awarded_at.timestamp())

        rows.sort(key=order)
        return copy.deepcopy(rows)

    async def list_active_grants_by_kind(self, kinds: Iterable[BadgeKind]) -> list[tuple[Grant, Badge]]:
        wanted = set(kinds)
        rows = []
        for g in self._grants.values():
            badge = self._badges.get(g.badge_id)
            if g.is_active and badge is not None and badge.kind in wanted:
                rows.append((copy.deepcopy(g), copy.deepcopy(badge)))
        rows.sort(key=lambda pair: pair[0].awarded_at)
        return rows

    async def expire_grants(self, now: datetime) -> list[ExpiredGrant]:
        expired: list[ExpiredGrant] = []
        async with self._lock:
            for g in self._grants.values():
                if g.is_active and g.expires_at is not None and g.expires_at <= now:
                    g.is_active = False
                    badge = self._badges[g.badge_id]
                    expired.append(ExpiredGrant(grant_id=g.id, user_id=g.user_id, badge_id=g.badge_id, kind=badge.kind))  # type: ignore[arg-type]
        return expired

    async def count_active_grants_by_kind(self) -> list[KindCount]:
        counts: dict[BadgeKind, int] = defaultdict(int)
        for g in self._grants.values():
            if g.is_active:
                counts[self._badges[g.badge_id].kind] += 1
        return [KindCount(kind=k, active_count=v) for k, v in sorted(counts.items(), key=lambda kv: kv[0].value)]

    async def count_grants_expiring(self, start: datetime, end: datetime) -> int:
        return sum(
            1 for g in self._grants.values()
            if g.is_active and g.expires_at is not None and start <= g.expires_at <= end
        )
