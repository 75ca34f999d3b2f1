"""Match a Ko-fi donor to a site user."""

from __future__ import annotations

from dataclasses import dataclass

import structlog

from usf.entitlements.store import EntitlementStore
from usf.entitlements.types import UserRecord

logger = structlog.get_logger()

UNRESOLVED_NOTE = "User not found automatically - requires manual assignment"


@dataclass
class Resolution:
    user: UserRecord | None
    matched_by: str | None = None  # "email" | "username" | "discord_username"

    @property
    def resolved(self) -> bool:
        return self.user is not None


class DonorResolver:
    """Exact-match lookups in priority order: email, username, Discord username.

    Email compares case-insensitively after trimming; usernames compare exactly.
    """

    def __init__(self, store: EntitlementStore) -> None:
        self.store = store

    async def resolve(self, email: str | None, from_name: str | None) -> Resolution:
        if email:
            user = await self.store.find_user_by_email(email)
            if user is not None:
                return self._hit(user, "email")

        if from_name:
            user = await self.store.find_user_by_username(from_name)
            if user is not None:
                return self._hit(user, "username")

            user = await self.store.find_user_by_discord_username(from_name)
            if user is not None:
                return self._hit(user, "discord_username")

        logger.info("donor_unresolved", from_name=from_name, has_email=bool(email))
        return Resolution(user=None)

    @staticmethod
    def _hit(user: UserRecord, matched_by: str) -> Resolution:
        logger.debug("donor_resolved", user_id=user.id, matched_by=matched_by)
        return Resolution(user=user, matched_by=matched_by)
