"""Job processor registry."""

from collections.abc import Callable, Coroutine
from typing import Any

from inbox_triage.queue.models import Job, ProcessingResult
from inbox_triage.queue.types import JobType

# Processor signature: async def processor(job: Job) -> ProcessingResult
JobProcessor = Callable[[Job], Coroutine[Any, Any, ProcessingResult]]


class ProcessorRegistry:
    """Registry mapping job types to their processors."""

    def __init__(self):
        self._processors: dict[JobType, JobProcessor] = {}

    def register(self, job_type: JobType, processor: JobProcessor) -> None:
        """Register (or replace) the processor for a job type."""
        self._processors[JobType(job_type)] = processor

    def get_processor(self, job_type: JobType) -> JobProcessor:
        """Get the processor for a job type. Raises KeyError if not found."""
        if job_type not in self._processors:
            raise KeyError(f"No processor registered for job type: {job_type}")
        return self._processors[job_type]

    def processor(self, job_type: JobType) -> Callable[[JobProcessor], JobProcessor]:
        """Decorator to register a processor."""

        def decorator(fn: JobProcessor) -> JobProcessor:
            self.register(job_type, fn)
            return fn

        return decorator

    def registered_types(self) -> list[JobType]:
        return list(self._processors)

    def __contains__(self, job_type: object) -> bool:
        return job_type in self._processors
