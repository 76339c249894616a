"""
Server-sent event stream of the caller's triage events (rule executions,
applied rules, notifications).
"""

import uuid

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import StreamingResponse

from inbox_triage.auth.verify import current_subject
from inbox_triage.errors import QueueNotInitializedError
from inbox_triage.runtime import get_runtime

router = APIRouter(prefix="/events", tags=["events"])


@router.get("/stream")
async def stream_events(user_id: str = Depends(current_subject)):
    try:
        broadcaster = get_runtime().events
    except QueueNotInitializedError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e)) from e

    async def event_source():
        async for event in broadcaster.subscribe(f"sse-{uuid.uuid4()}", subject_id=user_id):
            yield event.to_sse()

    return StreamingResponse(
        event_source(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
