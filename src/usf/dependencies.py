"""Shared FastAPI dependencies and the service wiring used by the workers."""

from __future__ import annotations

import secrets
from collections.abc import AsyncGenerator
from dataclasses import dataclass

from fastapi import Depends, Header, HTTPException

from usf.config import Settings, get_settings
from usf.database import get_session_factory
from usf.donations.ingestor import IngestorConfig, WebhookIngestor
from usf.donations.ledger import DonationLedger
from usf.donations.reconciliation import AdminReconciliation
from usf.donations.resolver import DonorResolver
from usf.entitlements.badge_service import BadgeService
from usf.entitlements.engine import EntitlementEngine
from usf.entitlements.memory_store import InMemoryStore
from usf.entitlements.sql_store import SqlAlchemyStore
from usf.entitlements.store import EntitlementStore
from usf.entitlements.sweeper import ExpirationSweeper

_memory_store: InMemoryStore | None = None


def get_memory_store() -> InMemoryStore:
    """Process-wide store for ``storage_backend = "memory"`` (dev and tests)."""
    global _memory_store  # noqa: PLW0603
    if _memory_store is None:
        _memory_store = InMemoryStore()
    return _memory_store


def reset_memory_store() -> None:
    global _memory_store  # noqa: PLW0603
    _memory_store = None


@dataclass
class Services:
    store: EntitlementStore
    ledger: DonationLedger
    resolver: DonorResolver
    engine: EntitlementEngine
    ingestor: WebhookIngestor
    reconciliation: AdminReconciliation
    badges: BadgeService
    sweeper: ExpirationSweeper


def build_services(store: EntitlementStore, settings: Settings) -> Services:
    ledger = DonationLedger(store)
    resolver = DonorResolver(store)
    engine = EntitlementEngine(
        store,
        ledger,
        sponsor_threshold=settings.sponsor_threshold,
        active_supporter_days=settings.active_supporter_days,
    )
    return Services(
        store=store,
        ledger=ledger,
        resolver=resolver,
        engine=engine,
        ingestor=WebhookIngestor(
            IngestorConfig.from_settings(settings),
            resolver,
            ledger,
            engine,
            defer_entitlements=settings.defer_entitlements,
        ),
        reconciliation=AdminReconciliation(store, ledger, engine),
        badges=BadgeService(store, engine, ledger),
        sweeper=ExpirationSweeper(store),
    )


async def get_store(
    settings: Settings = Depends(get_settings),  # noqa: B008
) -> AsyncGenerator[EntitlementStore, None]:
    """Yield the configured store; SQL stores get a session per request."""
    if settings.storage_backend == "memory":
        yield get_memory_store()
        return
    async with get_session_factory()() as db:
        yield SqlAlchemyStore(db)


async def get_services(
    store: EntitlementStore = Depends(get_store),  # noqa: B008
    settings: Settings = Depends(get_settings),  # noqa: B008
) -> Services:
    return build_services(store, settings)


async def require_admin(
    x_admin_key: str | None = Header(default=None),
    x_admin_user_id: int | None = Header(default=None),
    settings: Settings = Depends(get_settings),  # noqa: B008
) -> int | None:
    """Admin guard. Returns the acting admin's user id when the caller sent one."""
    expected = settings.admin_api_key
    if not expected or not x_admin_key or not secrets.compare_digest(x_admin_key.encode(), expected.encode()):
        raise HTTPException(status_code=403, detail="Admin access required")
    return x_admin_user_id
