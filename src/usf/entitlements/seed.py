"""Badge catalog seed data: the supporter tiers plus the hand-awarded badges."""

from __future__ import annotations

import structlog

from usf.entitlements.store import EntitlementStore
from usf.entitlements.types import Badge, BadgeKind

logger = structlog.get_logger()

BADGE_SEED_DATA: list[dict] = [
    # Donation-derived tiers
    {
        "name": "Supporter",
        "description": "Awarded to supporters who have made a donation",
        "kind": BadgeKind.SUPPORTER,
        "icon": "\U0001f48e",
        "color": "#FFD700",
        "background_color": "#1A1A1A",
        "display_order": 1,
    },
    {
        "name": "Active Supporter",
        "description": "Active supporter with donation in the last year",
        "kind": BadgeKind.ACTIVE_SUPPORTER,
        "icon": "⭐",
        "color": "#00FF00",
        "background_color": "#0D1B2A",
        "display_order": 2,
    },
    {
        "name": "Sponsor",
        "description": "Generous sponsor with $25+ in total donations",
        "kind": BadgeKind.SPONSOR,
        "icon": "\U0001f451",
        "color": "#FF6B35",
        "background_color": "#2D1B69",
        "display_order": 3,
    },
    # Admin-awarded
    {
        "name": "Community Hero",
        "description": "Outstanding contribution to the community",
        "kind": BadgeKind.CUSTOM,
        "icon": "\U0001f3c6",
        "color": "#FFA500",
        "background_color": "#8B0000",
        "display_order": 10,
        "is_manually_awardable": True,
    },
    {
        "name": "Beta Tester",
        "description": "Helped test new features",
        "kind": BadgeKind.CUSTOM,
        "icon": "\U0001f9ea",
        "color": "#9370DB",
        "background_color": "#191970",
        "display_order": 11,
        "is_manually_awardable": True,
    },
    {
        "name": "Content Creator",
        "description": "Created exceptional guides or content",
        "kind": BadgeKind.CUSTOM,
        "icon": "✍️",
        "color": "#20B2AA",
        "background_color": "#2F4F4F",
        "display_order": 12,
        "is_manually_awardable": True,
    },
]


async def seed_badges(store: EntitlementStore) -> int:
    """Insert missing catalog badges (idempotent, keyed on name). Returns inserted count."""
    inserted = 0
    for data in BADGE_SEED_DATA:
        if await store.insert_badge(Badge(**data)) is not None:
            inserted += 1
    if inserted:
        logger.info("badges_seeded", inserted=inserted, total=len(BADGE_SEED_DATA))
    return inserted
