"""In-process priority job queue, worker pool and job service."""

from inbox_triage.queue.models import Job, ProcessingResult, QueueOptions, QueueSnapshot
from inbox_triage.queue.priority_queue import JobQueue
from inbox_triage.queue.registry import ProcessorRegistry
from inbox_triage.queue.service import JobService, get_job_service
from inbox_triage.queue.types import JobStatus, JobType
from inbox_triage.queue.worker_pool import WorkerPool

__all__ = [
    "Job",
    "JobQueue",
    "JobService",
    "JobStatus",
    "JobType",
    "ProcessingResult",
    "ProcessorRegistry",
    "QueueOptions",
    "QueueSnapshot",
    "WorkerPool",
    "get_job_service",
]
