"""
Queue API response models.
Used by routes for output formatting.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class SubmitJobResponse(BaseModel):
    job_id: str = Field(..., description="Generated job ID")
    status: str = Field(default="pending", description="Initial job status")


class JobResponse(BaseModel):
    """Public view of a job (payload omitted)."""

    id: str = Field(..., description="Job ID")
    type: str = Field(..., description="Job type")
    status: str = Field(..., description="pending, processing, completed, failed or dead_letter")
    priority: int = Field(..., description="Job priority")
    retries: int = Field(..., description="Retries consumed so far")
    max_retries: int = Field(..., description="Retry bound for this job")
    created_at: datetime
    updated_at: datetime
    scheduled_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    failed_at: datetime | None = None
    error: str | None = Field(None, description="Last error message")
    metadata: dict[str, Any] = Field(default_factory=dict)
    result: dict[str, Any] | None = Field(None, description="Processor output once completed")


class JobActionResponse(BaseModel):
    success: bool
    job_id: str
    message: str


class QueueStatsResponse(BaseModel):
    """Point-in-time queue counters."""

    pending: int
    processing: int
    completed: int
    failed: int
    dead_letter: int
    total_processed: int
    average_processing_time_ms: float
    error_rate: float = Field(..., description="Failed share of processed jobs, in percent")
    active_workers: int


class QueueHealthResponse(BaseModel):
    status: str = Field(..., description="healthy, degraded or unavailable")
    running: bool
    error_rate: float | None = None
    average_processing_time_ms: float | None = None
    stats: QueueStatsResponse | None = None
