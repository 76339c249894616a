"""
Queue API request models.
Used by routes for input validation.
"""

from typing import Any

from pydantic import BaseModel, Field

from inbox_triage.queue.types import JobType


class SubmitJobRequest(BaseModel):
    """Request for submitting a triage job on behalf of the caller."""

    type: JobType = Field(..., description="Job type (email_scoring, email_summarization, webhook_processing)")
    payload: dict[str, Any] = Field(..., description="Job payload; user_id must be the caller")
    priority: int | None = Field(
        default=None, ge=0, le=10, description="Higher runs first (defaults per job type)"
    )
