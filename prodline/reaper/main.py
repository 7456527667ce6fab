"""
Lock reaper for recovering items of dead engine instances.

The reaper runs periodically to find PROCESSING items whose owner stopped
heartbeating and releases their lock. The items keep their stage and
history and become orphans that the next idle engine adopts.
"""

import asyncio
import logging
import signal
from datetime import timedelta

from prodline.config import get_settings
from prodline.db import close_db, get_engine, init_db
from prodline.db.contracts import ItemStore
from prodline.db.store import SqlItemStore
from prodline.engine.timing import Clock, SystemClock
from prodline.observability.logging import bind_worker_context, setup_logging
from prodline.observability.metrics import MetricsCollector, get_metrics
from prodline.observability.tracing import instrument_sqlalchemy, setup_tracing

logger = logging.getLogger(__name__)


class LockReaper:
    """
    Reaper that releases stale item locks.

    Runs periodically to:
    1. Find PROCESSING items whose heartbeat is older than the stale threshold
    2. Clear their lock so any engine can adopt them
    3. Record metrics for monitoring
    """

    def __init__(
        self,
        store: ItemStore,
        interval_seconds: int | None = None,
        stale_after_seconds: int | None = None,
        clock: Clock | None = None,
        metrics: MetricsCollector | None = None,
    ):
        """
        Initialize the reaper.

        Args:
            store: The item store.
            interval_seconds: Seconds between reaper runs.
            stale_after_seconds: Heartbeat age after which a lock is stale.
            clock: Time source.
            metrics: Metrics collector override.
        """
        settings = get_settings()
        self.interval = interval_seconds or settings.reaper_interval_seconds
        self.stale_after = timedelta(
            seconds=stale_after_seconds or settings.engine_stale_lock_seconds
        )
        self._store = store
        self._clock = clock or SystemClock()
        self._running = False
        self._metrics = metrics or get_metrics()

    async def start(self) -> None:
        """Start the reaper loop."""
        logger.info(f"Reaper starting with interval {self.interval}s")
        self._running = True

        while self._running:
            try:
                released = await self.run_once()

                if released > 0:
                    logger.info(f"Released {released} stale locks")

            except Exception as e:
                logger.exception(f"Error in reaper loop: {e}")

            await asyncio.sleep(self.interval)

        logger.info("Reaper stopped")

    async def stop(self) -> None:
        """Stop the reaper."""
        logger.info("Reaper stopping")
        self._running = False

    async def run_once(self) -> int:
        """
        Release stale locks once (for testing or cron-style execution).

        Returns:
            Number of items released.
        """
        now = self._clock.now()
        count = await self._store.release_stale_locks(now - self.stale_after, now)
        if count > 0:
            self._metrics.record_locks_released(count)
        return count


async def run_async() -> None:
    """Run the reaper asynchronously."""
    setup_logging()
    setup_tracing()
    bind_worker_context("reaper", "reaper")

    session_factory = await init_db()
    instrument_sqlalchemy(get_engine().sync_engine)
    reaper = LockReaper(SqlItemStore(session_factory))

    # Handle shutdown signals
    loop = asyncio.get_running_loop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: asyncio.create_task(reaper.stop())
        )

    try:
        await reaper.start()
    finally:
        await close_db()


def run() -> None:
    """Run the reaper."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
