"""
One-shot reprocessing job.

Re-scores the recent emails of the users listed in REPROCESS_USER_IDS
(comma separated) over the last REPROCESS_DAYS days (default 7).
"""

import os

from inbox_triage.config import settings
from inbox_triage.db.pool import db_pool
from inbox_triage.infrastructure.observability.logging import get_logger
from inbox_triage.runtime import build_runtime

logger = get_logger(__name__)


def _user_ids_from_env() -> list[str]:
    raw = os.getenv("REPROCESS_USER_IDS", "")
    return [u.strip() for u in raw.split(",") if u.strip()]


async def run_reprocess_job(user_ids: list[str] | None = None, days: int | None = None) -> dict[str, dict]:
    """
    Reprocess each user's recent emails.

    Returns:
        Per-user BatchResult summaries (without individual results)
    """
    user_ids = user_ids if user_ids is not None else _user_ids_from_env()
    days = days or int(os.getenv("REPROCESS_DAYS", "7"))
    if not user_ids:
        logger.warning("No users to reprocess; set REPROCESS_USER_IDS")
        return {}

    opened_pool = False
    if settings.SUPABASE_DB_URL and not db_pool.is_initialized:
        await db_pool.initialize()
        opened_pool = True

    try:
        runtime = build_runtime()
        summaries = {}
        for user_id in user_ids:
            result = await runtime.pipeline.reprocess_emails(user_id, days=days)
            summary = result.to_dict()
            summary.pop("results")
            summaries[user_id] = summary
            logger.info(
                "User reprocessed",
                user_id=user_id,
                processed=result.processed,
                ai_calls=result.ai_calls,
                errors=len(result.errors),
            )
        return summaries
    finally:
        if opened_pool:
            await db_pool.close()
