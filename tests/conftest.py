"""Shared test fixtures."""

from __future__ import annotations

import os

# Settings are read (and cached) at import time by the app and worker modules.
os.environ["USF_STORAGE_BACKEND"] = "memory"
os.environ["USF_ADMIN_API_KEY"] = "test-admin-key"
os.environ["USF_KOFI_VERIFICATION_TOKEN"] = "test-kofi-token"
os.environ["USF_LOG_FORMAT"] = "console"
os.environ["USF_DEFER_ENTITLEMENTS"] = "false"

from collections.abc import AsyncGenerator, Callable  # noqa: E402
from datetime import datetime, timedelta, timezone  # noqa: E402
from decimal import Decimal  # noqa: E402
from typing import Any  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402

from usf.config import get_settings  # noqa: E402
from usf.dependencies import get_memory_store, reset_memory_store  # noqa: E402
from usf.donations.ingestor import IngestorConfig, WebhookIngestor  # noqa: E402
from usf.donations.ledger import DonationLedger  # noqa: E402
from usf.donations.reconciliation import AdminReconciliation  # noqa: E402
from usf.donations.resolver import DonorResolver  # noqa: E402
from usf.entitlements.badge_service import BadgeService  # noqa: E402
from usf.entitlements.engine import EntitlementEngine  # noqa: E402
from usf.entitlements.memory_store import InMemoryStore  # noqa: E402
from usf.entitlements.seed import seed_badges  # noqa: E402
from usf.entitlements.sweeper import ExpirationSweeper  # noqa: E402
from usf.entitlements.types import (  # noqa: E402
    Donation,
    DonationProvider,
    DonationStatus,
    UserRecord,
)

KOFI_TOKEN = "test-kofi-token"
ADMIN_KEY = "test-admin-key"
NOW = datetime(2025, 6, 15, 12, 0, tzinfo=timezone.utc)

ALICE = UserRecord(id=1, username="alice", email="alice@example.com", discord_username="alice_d", custom_role="Patron")
BOB = UserRecord(id=2, username="bob", email="bob@example.com", discord_username="bobby")
CAROL = UserRecord(id=3, username="carol", email=None, discord_username=None)


class FrozenClock:
    """Injectable clock that only moves when told to."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


def _add_users(store: InMemoryStore) -> None:
    for user in (ALICE, BOB, CAROL):
        store.add_user(user)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest_asyncio.fixture
async def store() -> InMemoryStore:
    """Memory store with the badge catalog seeded and three users."""
    s = InMemoryStore()
    await seed_badges(s)
    _add_users(s)
    return s


@pytest.fixture
def ledger(store: InMemoryStore) -> DonationLedger:
    return DonationLedger(store)


@pytest.fixture
def engine(store: InMemoryStore, ledger: DonationLedger, clock: FrozenClock) -> EntitlementEngine:
    return EntitlementEngine(store, ledger, clock=clock)


@pytest.fixture
def resolver(store: InMemoryStore) -> DonorResolver:
    return DonorResolver(store)


@pytest.fixture
def ingestor(
    resolver: DonorResolver, ledger: DonationLedger, engine: EntitlementEngine, clock: FrozenClock
) -> WebhookIngestor:
    return WebhookIngestor(IngestorConfig(verification_token=KOFI_TOKEN), resolver, ledger, engine, clock=clock)


@pytest.fixture
def sweeper(store: InMemoryStore, clock: FrozenClock) -> ExpirationSweeper:
    return ExpirationSweeper(store, clock=clock)


@pytest.fixture
def reconciliation(store: InMemoryStore, ledger: DonationLedger, engine: EntitlementEngine) -> AdminReconciliation:
    return AdminReconciliation(store, ledger, engine)


@pytest.fixture
def badge_service(
    store: InMemoryStore, engine: EntitlementEngine, ledger: DonationLedger, clock: FrozenClock
) -> BadgeService:
    return BadgeService(store, engine, ledger, clock=clock)


@pytest.fixture
def make_payload() -> Callable[..., dict[str, Any]]:
    """Factory for Ko-fi webhook ``data`` objects; timestamps default to a minute before NOW."""

    def _make(**overrides: Any) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "verification_token": KOFI_TOKEN,
            "message_id": "abc1",
            "timestamp": (NOW - timedelta(minutes=1)).isoformat(),
            "type": "Donation",
            "is_public": True,
            "from_name": "alice",
            "message": "Love the site",
            "amount": "10.00",
            "url": "https://ko-fi.com/Home/CoffeeShop?txid=abc1",
            "email": "alice@example.com",
            "currency": "USD",
            "is_subscription_payment": False,
            "is_first_subscription_payment": False,
            "kofi_transaction_id": "txn-abc1",
        }
        payload.update(overrides)
        return payload

    return _make


@pytest.fixture
def make_donation(ledger: DonationLedger) -> Callable[..., Any]:
    """Factory that records a donation straight into the ledger."""
    counter = {"n": 0}

    async def _make(
        owner_user_id: int | None = ALICE.id,
        amount: str = "10.00",
        occurred_at: datetime = NOW,
        status: DonationStatus = DonationStatus.COMPLETED,
        external_id: str | None = None,
    ) -> Donation:
        counter["n"] += 1
        donation, _ = await ledger.record(
            Donation(
                amount=Decimal(amount),
                currency="USD",
                occurred_at=occurred_at,
                provider=DonationProvider.KOFI,
                external_id=external_id or f"msg-{counter['n']}",
                status=status,
                owner_user_id=owner_user_id,
            )
        )
        return donation

    return _make


# --- HTTP ---


@pytest_asyncio.fixture
async def client() -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client over a fresh app backed by a fresh memory store."""
    from usf.main import create_app

    get_settings.cache_clear()
    reset_memory_store()
    app = create_app()

    async with app.router.lifespan_context(app):
        _add_users(get_memory_store())
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            yield ac

    reset_memory_store()


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"X-Admin-Key": ADMIN_KEY, "X-Admin-User-Id": "99"}


@pytest.fixture
def live_payload(make_payload: Callable[..., dict[str, Any]]) -> Callable[..., dict[str, Any]]:
    """Webhook payloads stamped against the real clock, for HTTP tests."""

    def _make(**overrides: Any) -> dict[str, Any]:
        overrides.setdefault("timestamp", (datetime.now(timezone.utc) - timedelta(minutes=1)).isoformat())
        return make_payload(**overrides)

    return _make
