"""Job system type definitions."""

from enum import Enum


class JobType(str, Enum):
    """Job types handled by the worker pool."""

    EMAIL_SCORING = "email_scoring"
    EMAIL_SUMMARIZATION = "email_summarization"
    WEBHOOK_PROCESSING = "webhook_processing"


class JobStatus(str, Enum):
    """Queue partition a job currently lives in."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    DEAD_LETTER = "dead_letter"

    @property
    def is_terminal(self) -> bool:
        """Check if this status is terminal (job won't run again without a manual retry)."""
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.DEAD_LETTER)


# Default submission priorities per job type (higher runs first)
DEFAULT_PRIORITIES: dict[JobType, int] = {
    JobType.EMAIL_SCORING: 5,
    JobType.EMAIL_SUMMARIZATION: 3,
    JobType.WEBHOOK_PROCESSING: 8,
}

# Priority used when a webhook batch fans out into scoring jobs
WEBHOOK_FANOUT_PRIORITY = 6
