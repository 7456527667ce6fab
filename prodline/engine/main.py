"""
Engine process entry point.

Runs one stage engine against the configured database until SIGTERM/SIGINT.
"""

import asyncio
import logging
import signal

from prodline.config import get_settings
from prodline.db import close_db, create_schema, get_engine, init_db
from prodline.db.store import SqlItemStore
from prodline.engine.notifier import HttpNotifier
from prodline.engine.pipeline import Pipeline
from prodline.engine.simulator import StageEngine
from prodline.observability.logging import bind_worker_context, setup_logging
from prodline.observability.metrics import setup_metrics
from prodline.observability.tracing import instrument_sqlalchemy, setup_tracing

logger = logging.getLogger(__name__)


async def run_async() -> None:
    """Run the engine asynchronously."""
    settings = get_settings()
    setup_logging()
    setup_tracing()
    setup_metrics(port=settings.prometheus_port)

    session_factory = await init_db()
    instrument_sqlalchemy(get_engine().sync_engine)
    await create_schema(get_engine())

    pipeline = Pipeline.from_settings(settings)
    store = SqlItemStore(session_factory, first_stage=pipeline.first.name)
    engine = StageEngine(store, notifier=HttpNotifier(), pipeline=pipeline, settings=settings)
    bind_worker_context(engine.worker_id, "engine")

    # Handle shutdown signals
    shutdown = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, shutdown.set)

    engine.start()
    try:
        await shutdown.wait()
    finally:
        logger.info("Shutdown requested", extra={"worker_id": engine.worker_id})
        await engine.stop()
        await close_db()


def run() -> None:
    """Run the engine."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
