"""
Standalone triage queue worker.

Runs the worker pool outside the HTTP app until the process is cancelled,
flushing the pipeline and stopping workers on the way out.
"""

import asyncio

from inbox_triage.config import settings
from inbox_triage.db.pool import db_pool
from inbox_triage.infrastructure.observability.logging import get_logger
from inbox_triage.runtime import build_runtime, set_runtime

logger = get_logger(__name__)


async def start_triage_queue_worker(stop_event: asyncio.Event | None = None) -> None:
    """Run the queue until ``stop_event`` is set (or forever)."""
    stop_event = stop_event or asyncio.Event()

    if settings.SUPABASE_DB_URL:
        await db_pool.initialize()

    runtime = build_runtime()
    await runtime.start()
    set_runtime(runtime)
    logger.info("Triage queue worker running", max_concurrency=runtime.pool.options.max_concurrency)

    try:
        await stop_event.wait()
    finally:
        await runtime.stop()
        set_runtime(None)
        if db_pool.is_initialized:
            await db_pool.close()
        logger.info("Triage queue worker stopped")
