"""Persistence port for donations, badges, grants and the user fields we touch.

Every mutating call is atomic and durable when it returns. Inserts that hit
a uniqueness constraint return ``None`` instead of raising, so callers can
treat a lost race as "someone else already did it".
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable
from datetime import datetime
from decimal import Decimal

from usf.entitlements.types import (
    Badge,
    BadgeKind,
    Donation,
    DonationProvider,
    DonationTotals,
    DonorTotal,
    ExpiredGrant,
    Grant,
    KindCount,
    UserRecord,
)


class EntitlementStore(ABC):
    """Storage capability the engine depends on. Implement per backend."""

    # --- Users ---

    @abstractmethod
    async def get_user(self, user_id: int) -> UserRecord | None: ...

    @abstractmethod
    async def find_user_by_email(self, email: str) -> UserRecord | None:
        """Case-insensitive exact match."""

    @abstractmethod
    async def find_user_by_username(self, username: str) -> UserRecord | None: ...

    @abstractmethod
    async def find_user_by_discord_username(self, discord_username: str) -> UserRecord | None: ...

    @abstractmethod
    async def clear_lapsed_custom_roles(self, now: datetime) -> int:
        """Null out custom_role for users whose active supporter grant has lapsed.

        A user qualifies when they have at least one active supporter grant
        row and none of them is current at ``now``. Users who never held the
        badge keep their role. Returns the number of users changed.
        """

    # --- Badges ---

    @abstractmethod
    async def get_badge(self, badge_id: int) -> Badge | None: ...

    @abstractmethod
    async def get_badge_by_kind(self, kind: BadgeKind) -> Badge | None:
        """First active badge of ``kind`` by display order."""

    @abstractmethod
    async def list_badges(self, active_only: bool = True) -> list[Badge]: ...

    @abstractmethod
    async def insert_badge(self, badge: Badge) -> Badge | None:
        """Insert a catalog badge; ``None`` when the name already exists."""

    # --- Donations ---

    @abstractmethod
    async def get_donation(self, donation_id: int) -> Donation | None: ...

    @abstractmethod
    async def find_donation(self, provider: DonationProvider, external_id: str) -> Donation | None: ...

    @abstractmethod
    async def insert_donation(self, donation: Donation) -> Donation | None:
        """Insert guarded by UNIQUE(provider, external_id); ``None`` on conflict."""

    @abstractmethod
    async def update_donation(self, donation: Donation) -> Donation: ...

    @abstractmethod
    async def mark_entitlements_processed(self, donation_id: int) -> bool:
        """Flip the flag false -> true. Returns False if it was already set."""

    @abstractmethod
    async def sum_completed_donations(self, user_id: int) -> Decimal:
        """Lifetime sum of the user's completed donation amounts."""

    @abstractmethod
    async def list_donations(
        self,
        owner_user_id: int | None = None,
        unresolved_only: bool = False,
        limit: int | None = None,
    ) -> list[Donation]:
        """Newest first."""

    @abstractmethod
    async def list_unprocessed_donations(self, limit: int) -> list[Donation]:
        """Completed, owned donations whose entitlements have not completed."""

    @abstractmethod
    async def donation_totals(self) -> DonationTotals: ...

    @abstractmethod
    async def top_donors(self, limit: int) -> list[DonorTotal]:
        """Completed, non-anonymous donations grouped per owner, largest first."""

    # --- Grants ---

    @abstractmethod
    async def get_grant(self, grant_id: int) -> Grant | None: ...

    @abstractmethod
    async def find_grant(self, user_id: int, badge_id: int, active_only: bool = False) -> Grant | None:
        """Most recently awarded matching grant."""

    @abstractmethod
    async def find_year_grant(self, user_id: int, badge_id: int, year: int) -> Grant | None: ...

    @abstractmethod
    async def insert_grant(self, grant: Grant) -> Grant | None:
        """Insert guarded by the grant unique indexes; ``None`` on conflict.

        Grants with a year are unique on (user, badge, year); grants without
        one are unique on (user, badge) among active rows.
        """

    @abstractmethod
    async def upsert_exclusive_grant(self, grant: Grant) -> Grant:
        """Keep exactly one row per (user, badge), replacing whatever was there."""

    @abstractmethod
    async def update_grant(self, grant: Grant) -> Grant: ...

    @abstractmethod
    async def list_user_grants(self, user_id: int, active_only: bool = False) -> list[Grant]: ...

    @abstractmethod
    async def list_active_grants_by_kind(self, kinds: Iterable[BadgeKind]) -> list[tuple[Grant, Badge]]:
        """Active grants of the given badge kinds, oldest award first."""

    @abstractmethod
    async def expire_grants(self, now: datetime) -> list[ExpiredGrant]:
        """Deactivate active grants with ``expires_at <= now``.

        Conditional on ``is_active`` so concurrent sweeps deactivate each row
        exactly once; only rows changed by this call are returned.
        """

    @abstractmethod
    async def count_active_grants_by_kind(self) -> list[KindCount]: ...

    @abstractmethod
    async def count_grants_expiring(self, start: datetime, end: datetime) -> int: ...
