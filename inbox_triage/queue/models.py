"""Job system data models."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from inbox_triage.queue.payloads import JobPayload
from inbox_triage.queue.types import JobStatus, JobType


@dataclass
class Job:
    """A job owned by the queue for its whole life."""

    id: str
    type: JobType
    payload: JobPayload
    created_at: datetime
    updated_at: datetime
    scheduled_at: datetime

    priority: int = 5
    status: JobStatus = JobStatus.PENDING

    # Retry handling
    retries: int = 0
    max_retries: int = 3
    # Per-job backoff base; None uses the queue option
    retry_delay_ms: int | None = None

    # Lifecycle timestamps
    started_at: datetime | None = None
    completed_at: datetime | None = None
    failed_at: datetime | None = None

    error: str | None = None
    subject_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    # Populated on completion
    result: dict[str, Any] | None = None
    processing_time_ms: float | None = None

    def to_public_dict(self) -> dict[str, Any]:
        """Job fields safe to hand back to the owning subject (no payload)."""
        return {
            "id": self.id,
            "type": self.type.value,
            "status": self.status.value,
            "priority": self.priority,
            "retries": self.retries,
            "max_retries": self.max_retries,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "scheduled_at": self.scheduled_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "failed_at": self.failed_at,
            "error": self.error,
            "metadata": dict(self.metadata),
        }


@dataclass
class Worker:
    """Ephemeral record of one execution slot. Observability only."""

    id: str
    job_type: JobType
    job_id: str
    started_at: datetime
    is_active: bool = True
    processed_jobs: int = 0
    failed_jobs: int = 0
    last_processed_at: datetime | None = None


@dataclass(frozen=True)
class QueueSnapshot:
    """Read-only counts and rates derived from the queue on demand."""

    pending: int
    processing: int
    completed: int
    failed: int
    dead_letter: int
    total_processed: int
    average_processing_time_ms: float
    error_rate: float
    active_workers: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "pending": self.pending,
            "processing": self.processing,
            "completed": self.completed,
            "failed": self.failed,
            "dead_letter": self.dead_letter,
            "total_processed": self.total_processed,
            "average_processing_time_ms": round(self.average_processing_time_ms, 2),
            "error_rate": round(self.error_rate, 2),
            "active_workers": self.active_workers,
        }


@dataclass
class ProcessingResult:
    """Outcome returned by every job processor."""

    success: bool
    processing_time_ms: float = 0.0
    data: dict[str, Any] | None = None
    error: str | None = None
    # False for permanent failures (missing email, bad payload) that must not be retried
    retryable: bool = True

    @classmethod
    def ok(cls, data: dict[str, Any], processing_time_ms: float) -> "ProcessingResult":
        return cls(success=True, data=data, processing_time_ms=processing_time_ms)

    @classmethod
    def failed(
        cls, error: str, processing_time_ms: float, retryable: bool = True, data: dict | None = None
    ) -> "ProcessingResult":
        return cls(
            success=False,
            error=error,
            processing_time_ms=processing_time_ms,
            retryable=retryable,
            data=data,
        )


@dataclass
class QueueOptions:
    """Admission control and retry settings for the queue and worker pool."""

    max_concurrency: int = 5
    retry_delay_ms: int = 1000
    max_retries: int = 3
    # Exhausted jobs go to dead-letter when True, to failed otherwise
    dead_letter_enabled: bool = True
    rate_limit_per_minute: int = 60
    processing_timeout_ms: int = 30000
    tick_interval_ms: int = 100
    rate_limit_defer_ms: int = 1000

    def __post_init__(self) -> None:
        if self.max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        if self.max_retries < 0:
            raise ValueError("max_retries cannot be negative")
        if self.rate_limit_per_minute < 1:
            raise ValueError("rate_limit_per_minute must be at least 1")
        if self.processing_timeout_ms <= 0:
            raise ValueError("processing_timeout_ms must be positive")

    def backoff_ms(self, retries: int, base_ms: int | None = None) -> int:
        """Exponential backoff for the given retry number (1-based)."""
        base = self.retry_delay_ms if base_ms is None else base_ms
        return int(base * (2 ** max(retries - 1, 0)))
