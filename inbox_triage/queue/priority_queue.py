"""
In-memory priority job queue.

Jobs live in exactly one partition (pending, processing, completed, failed,
dead-letter). Pending is kept sorted by descending priority, then FIFO, so the
next eligible job is found by scanning from the head. Every mutation happens
under one re-entrant lock, which makes ``claim`` atomic: two concurrent
callers can never both move the same job to processing.

The queue is volatile by contract; nothing survives a process restart.
"""

import bisect
import threading
import uuid
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from itertools import count
from typing import Any

from inbox_triage.errors import JobValidationError
from inbox_triage.infrastructure.observability.logging import get_logger
from inbox_triage.queue.models import Job, QueueOptions, QueueSnapshot
from inbox_triage.queue.payloads import coerce_job_type, parse_payload
from inbox_triage.queue.types import JobStatus, JobType

logger = get_logger(__name__)

DEFAULT_PRIORITY = 5

# (negated priority, insertion sequence, job id)
PendingKey = tuple[int, int, str]


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _new_job_id() -> str:
    return str(uuid.uuid4())


class JobQueue:
    """Priority-ordered job storage with lifecycle partitions."""

    def __init__(
        self,
        options: QueueOptions | None = None,
        clock: Callable[[], datetime] = _utcnow,
        id_factory: Callable[[], str] = _new_job_id,
    ):
        self.options = options or QueueOptions()
        self._clock = clock
        self._id_factory = id_factory
        self._lock = threading.RLock()
        self._sequence = count()

        self._jobs: dict[str, Job] = {}
        self._pending: list[PendingKey] = []
        self._pending_keys: dict[str, PendingKey] = {}
        self._processing: dict[str, Job] = {}
        self._completed: dict[str, Job] = {}
        self._failed: dict[str, Job] = {}
        self._dead_letter: dict[str, Job] = {}

        self._listeners: list[Callable[[], None]] = []

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def enqueue(
        self,
        job_type: JobType | str,
        payload: Any,
        *,
        priority: int | None = None,
        delay_ms: int = 0,
        max_retries: int | None = None,
        retry_delay_ms: int | None = None,
        subject_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """
        Add a job to the pending partition.

        Args:
            job_type: One of JobType
            payload: Payload model or mapping for that type
            priority: Higher runs first (default 5)
            delay_ms: Delay before the job becomes eligible
            max_retries: Override the queue default
            retry_delay_ms: Backoff base for this job (None = queue default)
            subject_id: Owning user; defaults to the payload's user_id
            metadata: Free-form fields surfaced by get_job

        Returns:
            Generated job id

        Raises:
            JobValidationError: Invalid type, payload, or owner mismatch
        """
        job_type = coerce_job_type(job_type)
        parsed = parse_payload(job_type, payload)

        payload_owner = getattr(parsed, "user_id", None)
        if subject_id and payload_owner and subject_id != payload_owner:
            raise JobValidationError(
                "Job subject does not match payload user_id", field="subject_id"
            )
        if delay_ms < 0:
            raise JobValidationError("delay_ms cannot be negative", field="delay_ms")
        if max_retries is not None and max_retries < 0:
            raise JobValidationError("max_retries cannot be negative", field="max_retries")
        if retry_delay_ms is not None and retry_delay_ms < 0:
            raise JobValidationError("retry_delay_ms cannot be negative", field="retry_delay_ms")

        now = self._clock()
        job = Job(
            id=self._id_factory(),
            type=job_type,
            payload=parsed,
            priority=DEFAULT_PRIORITY if priority is None else priority,
            max_retries=self.options.max_retries if max_retries is None else max_retries,
            retry_delay_ms=retry_delay_ms,
            created_at=now,
            updated_at=now,
            scheduled_at=now + timedelta(milliseconds=delay_ms),
            subject_id=subject_id or payload_owner,
            metadata=dict(metadata or {}),
        )

        with self._lock:
            self._jobs[job.id] = job
            self._insert_pending(job)

        logger.info(
            "Job enqueued",
            job_id=job.id,
            job_type=job_type.value,
            priority=job.priority,
            subject_id=job.subject_id,
            delay_ms=delay_ms,
        )
        self._notify_listeners()
        return job.id

    def add_listener(self, callback: Callable[[], None]) -> None:
        """Register a callback fired whenever work becomes pending."""
        self._listeners.append(callback)

    def _notify_listeners(self) -> None:
        for callback in list(self._listeners):
            callback()

    # ------------------------------------------------------------------
    # Pending partition helpers (caller holds the lock)
    # ------------------------------------------------------------------

    def _insert_pending(self, job: Job) -> None:
        key = (-job.priority, next(self._sequence), job.id)
        bisect.insort(self._pending, key)
        self._pending_keys[job.id] = key
        job.status = JobStatus.PENDING

    def _remove_pending(self, job_id: str) -> bool:
        key = self._pending_keys.pop(job_id, None)
        if key is None:
            return False
        index = bisect.bisect_left(self._pending, key)
        if index < len(self._pending) and self._pending[index] == key:
            del self._pending[index]
        return True

    # ------------------------------------------------------------------
    # Scheduler operations
    # ------------------------------------------------------------------

    def next_eligible(self, exclude: set[str] | None = None) -> Job | None:
        """
        Highest-priority pending job whose scheduled_at has passed.

        The job stays pending; call ``claim`` to take it.

        Args:
            exclude: Job ids to skip (already inspected in this tick)
        """
        with self._lock:
            now = self._clock()
            for _, _, job_id in self._pending:
                if exclude and job_id in exclude:
                    continue
                job = self._jobs[job_id]
                if job.scheduled_at <= now:
                    return job
            return None

    def claim(self, job_id: str) -> Job | None:
        """
        Move a pending job to processing.

        Returns None when the job is unknown, not pending, or already claimed.
        """
        with self._lock:
            if not self._remove_pending(job_id):
                return None
            job = self._jobs[job_id]
            now = self._clock()
            job.status = JobStatus.PROCESSING
            job.started_at = now
            job.updated_at = now
            self._processing[job_id] = job
            return job

    def defer(self, job_id: str, delay_ms: int) -> bool:
        """
        Push a pending job's eligibility into the future.

        Keeps its place in priority order; used for rate-limit backpressure.
        """
        with self._lock:
            if job_id not in self._pending_keys:
                return False
            job = self._jobs[job_id]
            now = self._clock()
            job.scheduled_at = now + timedelta(milliseconds=delay_ms)
            job.updated_at = now
            return True

    def complete(
        self,
        job_id: str,
        result: dict[str, Any] | None = None,
        processing_time_ms: float | None = None,
    ) -> Job | None:
        """Move a processing job to completed."""
        with self._lock:
            job = self._processing.pop(job_id, None)
            if job is None:
                return None
            now = self._clock()
            job.status = JobStatus.COMPLETED
            job.completed_at = now
            job.updated_at = now
            job.result = result
            job.error = None
            if processing_time_ms is None and job.started_at:
                processing_time_ms = (now - job.started_at).total_seconds() * 1000
            job.processing_time_ms = processing_time_ms
            self._completed[job_id] = job
            return job

    def fail(self, job_id: str, error: str) -> Job | None:
        """Move a processing job to the failed partition (terminal)."""
        return self._terminate(job_id, error, JobStatus.FAILED, self._failed)

    def dead_letter(self, job_id: str, error: str) -> Job | None:
        """Move a processing job to the dead-letter partition (terminal)."""
        return self._terminate(job_id, error, JobStatus.DEAD_LETTER, self._dead_letter)

    def _terminate(
        self, job_id: str, error: str, status: JobStatus, partition: dict[str, Job]
    ) -> Job | None:
        with self._lock:
            job = self._processing.pop(job_id, None)
            if job is None:
                return None
            now = self._clock()
            job.status = status
            job.error = error
            job.failed_at = now
            job.updated_at = now
            partition[job_id] = job
            return job

    def requeue(self, job_id: str, delay_ms: int, error: str) -> Job | None:
        """
        Send a failed processing job back to pending for another attempt.

        Increments ``retries``; priority is preserved.

        Raises:
            ValueError: If the job has no retries left
        """
        with self._lock:
            job = self._processing.get(job_id)
            if job is None:
                return None
            if job.retries >= job.max_retries:
                raise ValueError(f"Job {job_id} has no retries left")
            del self._processing[job_id]
            now = self._clock()
            job.retries += 1
            job.error = error
            job.updated_at = now
            job.scheduled_at = now + timedelta(milliseconds=delay_ms)
            self._insert_pending(job)

        self._notify_listeners()
        return job

    # ------------------------------------------------------------------
    # Management operations
    # ------------------------------------------------------------------

    def now(self) -> datetime:
        return self._clock()

    def get(self, job_id: str) -> Job | None:
        with self._lock:
            return self._jobs.get(job_id)

    def remove(self, job_id: str) -> bool:
        """
        Purge a job from any partition.

        Claimed (processing) jobs cannot be removed.
        """
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job_id in self._processing:
                return False
            self._remove_pending(job_id)
            self._completed.pop(job_id, None)
            self._failed.pop(job_id, None)
            self._dead_letter.pop(job_id, None)
            del self._jobs[job_id]

        logger.info("Job removed", job_id=job_id)
        return True

    def retry(self, job_id: str) -> bool:
        """
        Reset retry counters and re-admit a job to pending, eligible now.

        Works for failed, dead-lettered, completed and pending jobs; a job
        that is currently processing is left alone.
        """
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job_id in self._processing:
                return False

            self._remove_pending(job_id)
            self._completed.pop(job_id, None)
            self._failed.pop(job_id, None)
            self._dead_letter.pop(job_id, None)

            now = self._clock()
            job.retries = 0
            job.error = None
            job.failed_at = None
            job.started_at = None
            job.completed_at = None
            job.result = None
            job.processing_time_ms = None
            job.scheduled_at = now
            job.updated_at = now
            self._insert_pending(job)

        logger.info("Job re-admitted", job_id=job_id)
        self._notify_listeners()
        return True

    def dead_letters(self) -> list[Job]:
        """Jobs held for manual inspection, oldest first."""
        with self._lock:
            return list(self._dead_letter.values())

    def cleanup(self, older_than: timedelta) -> int:
        """
        Drop completed and failed jobs that finished before ``now - older_than``.

        Dead-lettered jobs are kept until an operator retries or removes them.

        Returns:
            Number of jobs purged
        """
        with self._lock:
            cutoff = self._clock() - older_than
            stale = [
                job_id
                for job_id, job in self._completed.items()
                if job.completed_at and job.completed_at < cutoff
            ]
            stale += [
                job_id
                for job_id, job in self._failed.items()
                if job.failed_at and job.failed_at < cutoff
            ]
            for job_id in stale:
                self._completed.pop(job_id, None)
                self._failed.pop(job_id, None)
                self._jobs.pop(job_id, None)

        if stale:
            logger.info("Queue cleanup purged jobs", purged=len(stale))
        return len(stale)

    def stats(self, active_workers: int = 0) -> QueueSnapshot:
        """Compute a QueueSnapshot; no per-job detail is exposed."""
        with self._lock:
            completed = len(self._completed)
            failed = len(self._failed)
            dead = len(self._dead_letter)
            total_processed = completed + failed + dead

            times = [
                job.processing_time_ms
                for job in self._completed.values()
                if job.processing_time_ms is not None
            ]
            avg_time = sum(times) / len(times) if times else 0.0
            error_rate = ((failed + dead) / total_processed * 100) if total_processed else 0.0

            return QueueSnapshot(
                pending=len(self._pending),
                processing=len(self._processing),
                completed=completed,
                failed=failed,
                dead_letter=dead,
                total_processed=total_processed,
                average_processing_time_ms=avg_time,
                error_rate=error_rate,
                active_workers=active_workers,
            )

    @property
    def processing_count(self) -> int:
        with self._lock:
            return len(self._processing)

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)
