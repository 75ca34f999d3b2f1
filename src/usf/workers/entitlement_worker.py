"""Entitlement arq worker: expiry sweeps, deferred processing and retries.

Run with: arq usf.workers.settings.WorkerSettings
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from arq import cron
from arq.connections import RedisSettings

from usf.config import Settings, get_settings
from usf.database import close_db, get_session_factory, init_db
from usf.dependencies import Services, build_services, get_memory_store
from usf.entitlements.sql_store import SqlAlchemyStore
from usf.entitlements.types import DonationStatus
from usf.errors import NotFoundError

logger = logging.getLogger(__name__)

RETRY_MINUTES = {0, 15, 30, 45}


@asynccontextmanager
async def _services(ctx: dict) -> AsyncIterator[Services]:  # type: ignore[type-arg]
    """One store (and DB session) per job."""
    settings: Settings = ctx["settings"]
    if settings.storage_backend == "memory":
        yield build_services(get_memory_store(), settings)
        return
    async with get_session_factory()() as db:
        yield build_services(SqlAlchemyStore(db), settings)


async def entitlement_startup(ctx: dict) -> None:  # type: ignore[type-arg]
    settings = get_settings()
    ctx["settings"] = settings
    if settings.storage_backend != "memory":
        await init_db(settings.database_url)
    logger.info("Entitlement worker started (backend=%s)", settings.storage_backend)


async def entitlement_shutdown(ctx: dict) -> None:  # type: ignore[type-arg]
    settings: Settings = ctx["settings"]
    if settings.storage_backend != "memory":
        await close_db()
    logger.info("Entitlement worker shut down")


async def sweep_expired_grants(ctx: dict) -> int:  # type: ignore[type-arg]
    """Scheduled task: deactivate grants whose expiry has passed."""
    async with _services(ctx) as services:
        result = await services.sweeper.sweep()
    if result.expired:
        logger.info("Expired %d grants, cleared %d custom roles", result.expired, result.roles_cleared)
    return result.expired


async def process_donation_entitlements(ctx: dict, donation_id: int) -> bool:  # type: ignore[type-arg]
    """Queued task: run the engine for one donation the webhook deferred.

    Returns True when every step succeeded. Donations that were already
    processed, or are no longer completed and owned, are skipped.
    """
    async with _services(ctx) as services:
        try:
            donation = await services.ledger.get(donation_id)
        except NotFoundError:
            logger.warning("Donation %s vanished before processing", donation_id)
            return False
        if (
            donation.entitlements_processed
            or donation.status is not DonationStatus.COMPLETED
            or not donation.is_resolved
        ):
            return donation.entitlements_processed
        report = await services.engine.process(donation)
    return report.completed


async def retry_unprocessed_donations(ctx: dict) -> int:  # type: ignore[type-arg]
    """Scheduled task: finish donations whose entitlements are incomplete.

    Picks up deferred jobs that never ran and donations where a step failed.
    """
    settings: Settings = ctx["settings"]
    completed = 0
    async with _services(ctx) as services:
        pending = await services.ledger.unprocessed(settings.retry_batch_size)
        for donation in pending:
            try:
                report = await services.engine.process(donation)
            except Exception:
                logger.exception("Entitlement retry failed for donation %s", donation.id)
                continue
            if report.completed:
                completed += 1
    if pending:
        logger.info("Retried %d donations, %d now complete", len(pending), completed)
    return completed


def _sweep_minutes(interval: int) -> set[int]:
    return set(range(0, 60, max(1, min(interval, 60))))


class WorkerSettings:
    """arq worker settings for entitlement jobs."""

    functions = [process_donation_entitlements, sweep_expired_grants, retry_unprocessed_donations]
    cron_jobs = [
        cron(
            sweep_expired_grants,
            minute=_sweep_minutes(get_settings().sweep_interval_minutes),
            run_at_startup=True,
        ),
        cron(retry_unprocessed_donations, minute=RETRY_MINUTES),
    ]
    on_startup = entitlement_startup
    on_shutdown = entitlement_shutdown
    redis_settings = RedisSettings.from_dsn(get_settings().arq_redis_url)
    max_jobs = 10
