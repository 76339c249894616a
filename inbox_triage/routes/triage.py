"""
Triage API Routes
Per-user email ingestion, processing configuration, reprocessing and score statistics.
"""

from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Query, status

from inbox_triage.auth.verify import current_subject
from inbox_triage.errors import JobValidationError, QueueNotInitializedError
from inbox_triage.infrastructure.observability.logging import get_logger
from inbox_triage.models.api.triage_request import IngestEmailsRequest, ReprocessRequest
from inbox_triage.runtime import TriageRuntime, get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/triage", tags=["triage"])


def _runtime() -> TriageRuntime:
    try:
        return get_runtime()
    except QueueNotInitializedError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e)) from e


@router.get("/config")
async def get_processing_config(user_id: str = Depends(current_subject)):
    config = await _runtime().config_service.get_config(user_id)
    return config.to_dict()


@router.put("/config")
async def update_processing_config(
    updates: dict[str, Any] = Body(..., description="Config fields to override"),
    user_id: str = Depends(current_subject),
):
    """Override config fields for this user; values are clamped into safe ranges."""
    try:
        config = await _runtime().config_service.update_config(user_id, updates)
    except JobValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e
    return config.to_dict()


@router.post("/config/preset/{preset}")
async def apply_processing_preset(preset: str, user_id: str = Depends(current_subject)):
    try:
        config = await _runtime().config_service.apply_preset(user_id, preset)
    except JobValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e
    return config.to_dict()


@router.delete("/config")
async def reset_processing_config(user_id: str = Depends(current_subject)):
    config = await _runtime().config_service.reset_config(user_id)
    return config.to_dict()


@router.post("/emails", status_code=status.HTTP_202_ACCEPTED)
async def ingest_emails(request: IngestEmailsRequest, user_id: str = Depends(current_subject)):
    """
    Queue the caller's stored emails for triage.

    Emails are buffered until their batch fills or the wait timer fires; a batch
    filled by this request is processed before the response is sent.
    """
    runtime = _runtime()
    requested = list(dict.fromkeys(request.email_ids))
    try:
        emails = await runtime.store.get_emails(user_id, requested)
    except Exception as e:
        logger.error("Failed to load emails for ingestion", user_id=user_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Email store unavailable"
        ) from e

    found = {email.id for email in emails}
    missing = [email_id for email_id in requested if email_id not in found]
    if missing:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Emails not found or not owned by user: {missing}",
        )

    processed = 0
    for email in emails:
        batch = await runtime.pipeline.add_email(email)
        if batch is not None:
            processed += batch.processed

    logger.info("Emails ingested", user_id=user_id, accepted=len(emails), processed=processed)
    return {
        "accepted": len(emails),
        "processed": processed,
        "buffered": runtime.pipeline.buffered_count(user_id),
    }


@router.post("/reprocess")
async def reprocess_emails(request: ReprocessRequest, user_id: str = Depends(current_subject)):
    """Re-score stored emails synchronously; partial failures are reported, not raised."""
    result = await _runtime().pipeline.reprocess_emails(
        user_id, email_ids=request.email_ids, days=request.days
    )
    logger.info(
        "Reprocess requested via API",
        user_id=user_id,
        processed=result.processed,
        errors=len(result.errors),
    )
    return result.to_dict()


@router.get("/stats")
async def triage_stats(
    days: int = Query(default=7, ge=1, le=90, description="Window in days"),
    user_id: str = Depends(current_subject),
):
    return await _runtime().pipeline.processing_stats(user_id, days=days)
