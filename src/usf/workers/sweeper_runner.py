"""Standalone expiration sweeper loop, for deployments without arq.

Usage: python -m usf.workers.sweeper_runner
"""

from __future__ import annotations

import asyncio
import logging
import signal

from usf.config import get_settings
from usf.database import close_db, init_db
from usf.workers.entitlement_worker import sweep_expired_grants

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")
logger = logging.getLogger(__name__)


async def run(stop: asyncio.Event) -> None:
    settings = get_settings()
    if settings.storage_backend != "memory":
        await init_db(settings.database_url)
    ctx = {"settings": settings}
    interval = settings.sweep_interval_minutes * 60
    logger.info("Sweeper started, interval=%ss", interval)

    try:
        while not stop.is_set():
            try:
                await sweep_expired_grants(ctx)
            except Exception:
                logger.exception("Sweep failed")
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except TimeoutError:
                pass
    finally:
        if settings.storage_backend != "memory":
            await close_db()
        logger.info("Sweeper stopped")


def main() -> None:
    async def _main() -> None:
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop.set)
        await run(stop)

    asyncio.run(_main())


if __name__ == "__main__":
    main()
