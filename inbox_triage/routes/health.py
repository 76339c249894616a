"""
Health check endpoints: liveness, readiness with per-dependency checks.
"""

import time

from fastapi import APIRouter

from inbox_triage.config import settings
from inbox_triage.db.pool import db_health_check, db_pool
from inbox_triage.errors import QueueNotInitializedError
from inbox_triage.infrastructure.observability.logging import log_health_check
from inbox_triage.runtime import get_runtime

router = APIRouter()


@router.get("/healthz")
async def healthz():
    """Basic health check - always returns 200 if app is running."""
    return {"status": "ok", "service": "inbox-triage"}


@router.get("/readyz")
async def readyz():
    """
    Readiness check covering the job queue, triage pipeline and (when
    configured) the database pool.
    """
    started = time.time()
    checks = {}
    overall_ok = True

    # 1) Queue + pipeline
    try:
        runtime = get_runtime()
        queue_health = runtime.job_service.health()
        checks["queue"] = {
            "ok": queue_health["status"] == "healthy",
            "status": queue_health["status"],
            "running": queue_health["running"],
        }
        checks["pipeline"] = runtime.pipeline.health()
        overall_ok = overall_ok and checks["queue"]["ok"]
    except QueueNotInitializedError as e:
        checks["queue"] = {"ok": False, "status": "unavailable", "error": str(e)}
        overall_ok = False

    # 2) Database pool, only when Postgres backs the store
    if settings.SUPABASE_DB_URL:
        t0 = time.time()
        try:
            db_health = await db_health_check() if db_pool.is_initialized else {"healthy": False}
            is_healthy = db_health.get("healthy", False)
            checks["database"] = {
                "ok": is_healthy,
                "latency_ms": round((time.time() - t0) * 1000, 1),
            }
            if not is_healthy:
                checks["database"]["error"] = db_health.get("error", "Database unhealthy")
            overall_ok = overall_ok and is_healthy
        except Exception as e:
            checks["database"] = {
                "ok": False,
                "error": f"{type(e).__name__}: {e}",
                "latency_ms": round((time.time() - t0) * 1000, 1),
            }
            overall_ok = False

    # 3) Configuration
    checks["configuration"] = {
        "ok": True,
        "environment": settings.environment,
        "store": "postgres" if settings.SUPABASE_DB_URL else "memory",
        "ai_enabled": bool(settings.OPENAI_API_KEY),
    }

    log_health_check("readiness", overall_ok, round((time.time() - started) * 1000, 1))
    return {"overall_ok": overall_ok, "checks": checks, "timestamp": time.time()}
