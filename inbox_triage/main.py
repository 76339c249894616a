"""
FastAPI application with triage runtime and database pool lifecycle management.
"""

import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from inbox_triage.config import settings
from inbox_triage.db.pool import db_pool
from inbox_triage.infrastructure.observability.logging import get_logger, setup_logging
from inbox_triage.routes import automation, events, health, queue, triage
from inbox_triage.runtime import build_runtime, set_runtime

# Setup logging before creating the app
setup_logging(log_level=settings.LOG_LEVEL)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle application startup and shutdown with proper resource management."""

    logger.info("Application starting", environment=settings.environment, debug=settings.debug)

    startup_tasks = []
    runtime = None

    try:
        if settings.SUPABASE_DB_URL:
            logger.info("Initializing database pool")
            await db_pool.initialize()
            startup_tasks.append("database_pool")

        runtime = build_runtime()
        await runtime.start()
        set_runtime(runtime)
        startup_tasks.append("triage_runtime")

        logger.info("All services initialized successfully", services=startup_tasks)

    except Exception as e:
        logger.error("Failed to initialize services", error=str(e), completed_tasks=startup_tasks)

        if runtime is not None and "triage_runtime" in startup_tasks:
            try:
                await runtime.stop()
            except Exception as cleanup_error:
                logger.error("Error stopping triage runtime", error=str(cleanup_error))
            set_runtime(None)

        if "database_pool" in startup_tasks:
            try:
                await db_pool.close()
            except Exception as cleanup_error:
                logger.error("Error cleaning up database pool", error=str(cleanup_error))

        raise

    yield

    # Shutdown sequence (reverse order)
    logger.info("Application shutting down")

    shutdown_errors = []

    # Flush buffered emails and let in-flight jobs finish while the store is still up
    try:
        await runtime.stop()
    except Exception as e:
        logger.error("Error stopping triage runtime", error=str(e))
        shutdown_errors.append(f"Runtime: {e}")
    finally:
        set_runtime(None)

    if "database_pool" in startup_tasks:
        try:
            logger.info("Closing database pool")
            await db_pool.close()
        except Exception as e:
            logger.error("Error closing database pool", error=str(e))
            shutdown_errors.append(f"Database: {e}")

    if shutdown_errors:
        logger.warning("Some services had shutdown errors", errors=shutdown_errors)
    else:
        logger.info("All services closed successfully")


app = FastAPI(
    title="Inbox Triage",
    description="Adaptive email triage with a priority job queue and automation rules",
    version="0.1.0",
    lifespan=lifespan,
)

# Include routers
app.include_router(health.router)
app.include_router(queue.router)
app.include_router(automation.router)
app.include_router(triage.router)
app.include_router(events.router)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log HTTP requests with timing."""
    start_time = time.time()
    response = await call_next(request)
    process_time = (time.time() - start_time) * 1000

    logger.info(
        "HTTP request completed",
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=round(process_time, 2),
    )
    return response


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
