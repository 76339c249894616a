"""
Triage API request models.
"""

from pydantic import BaseModel, Field


class ReprocessRequest(BaseModel):
    """Re-run triage over stored emails."""

    email_ids: list[str] | None = Field(
        default=None, max_length=500, description="Specific emails; omit for the recent window"
    )
    days: int = Field(default=7, ge=1, le=30, description="Window used when email_ids is omitted")


class IngestEmailsRequest(BaseModel):
    """Hand stored emails to the batching pipeline."""

    email_ids: list[str] = Field(..., min_length=1, max_length=500)
