"""
Worker pool - schedules pending jobs onto bounded asyncio workers.

Each tick claims as many eligible jobs as free capacity allows, in priority
order. A job whose subject is over its per-minute quota is deferred and the
tick keeps looking, so one noisy subject never blocks the others. Workers run
the registered processor under a hard timeout and report the outcome back to
the queue (completed, rescheduled with backoff, dead-lettered or failed).

The scheduler never awaits a worker: dispatch is fire-and-forget, and each
finished worker wakes the loop so freed capacity is reused immediately.
"""

import asyncio
import time
import uuid
from datetime import timedelta

import structlog

from inbox_triage.errors import ConfigurationError, JobTimeoutError, TriageError
from inbox_triage.infrastructure.observability.logging import get_logger, log_job_outcome
from inbox_triage.queue.models import Job, ProcessingResult, QueueOptions, QueueSnapshot, Worker
from inbox_triage.queue.priority_queue import JobQueue
from inbox_triage.queue.rate_limiter import SubjectRateLimiter
from inbox_triage.queue.registry import ProcessorRegistry
from inbox_triage.queue.types import JobStatus

logger = get_logger(__name__)


class WorkerPool:
    """Concurrency- and rate-limited dispatcher for a JobQueue."""

    def __init__(
        self,
        queue: JobQueue,
        registry: ProcessorRegistry,
        options: QueueOptions | None = None,
        rate_limiter: SubjectRateLimiter | None = None,
        retention: timedelta = timedelta(hours=24),
        maintenance_interval_seconds: float | None = None,
    ):
        self.queue = queue
        self.registry = registry
        self.options = options or queue.options
        self.rate_limiter = rate_limiter or SubjectRateLimiter(
            limit=self.options.rate_limit_per_minute, window_seconds=60.0
        )
        self.retention = retention
        self.maintenance_interval_seconds = maintenance_interval_seconds

        self._workers: dict[str, Worker] = {}
        self._tasks: set[asyncio.Task] = set()
        self._running = False
        self._loop: asyncio.AbstractEventLoop | None = None
        self._wake: asyncio.Event | None = None
        self._loop_task: asyncio.Task | None = None
        self._maintenance_task: asyncio.Task | None = None
        self._listening = False

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def active_workers(self) -> int:
        return len(self._workers)

    def workers(self) -> list[Worker]:
        return list(self._workers.values())

    def stats(self) -> QueueSnapshot:
        return self.queue.stats(active_workers=self.active_workers)

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def tick(self) -> int:
        """
        Run one scheduling pass.

        Must be called from inside the event loop; dispatched workers are
        spawned as tasks and not awaited.

        Returns:
            Number of jobs dispatched
        """
        dispatched = 0
        inspected: set[str] = set()

        while self.active_workers < self.options.max_concurrency:
            job = self.queue.next_eligible(exclude=inspected)
            if job is None:
                break
            inspected.add(job.id)

            allowed, info = self.rate_limiter.check_rate_limit(job.subject_id)
            if not allowed:
                self.queue.defer(job.id, self.options.rate_limit_defer_ms)
                logger.info(
                    "Job deferred by subject rate limit",
                    job_id=job.id,
                    subject_id=job.subject_id,
                    retry_after=info.get("retry_after"),
                )
                continue

            claimed = self.queue.claim(job.id)
            if claimed is None:
                # Lost the claim (removed or claimed elsewhere); refund the admission
                self.rate_limiter.release(job.subject_id)
                continue

            self._spawn(claimed)
            dispatched += 1

        return dispatched

    def _spawn(self, job: Job) -> None:
        worker = Worker(
            id=str(uuid.uuid4()),
            job_type=job.type,
            job_id=job.id,
            started_at=job.started_at,
        )
        self._workers[worker.id] = worker

        task = asyncio.create_task(self._run_job(job, worker))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_job(self, job: Job, worker: Worker) -> None:
        structlog.contextvars.bind_contextvars(
            job_id=job.id, job_type=job.type.value, subject_id=job.subject_id
        )
        started = time.perf_counter()
        outcome = "failed"

        try:
            try:
                processor = self.registry.get_processor(job.type)
            except KeyError:
                error = ConfigurationError(f"No processor registered for job type: {job.type.value}")
                logger.error("Job has no processor", error=str(error))
                self.queue.fail(job.id, str(error))
                worker.failed_jobs += 1
                return

            result = await self._execute(processor, job, started)
            elapsed_ms = (time.perf_counter() - started) * 1000

            if result.success:
                self.queue.complete(job.id, result.data, elapsed_ms)
                worker.processed_jobs += 1
                outcome = "completed"
            else:
                status = self._handle_failure(job, result.error or "Unknown error", result.retryable)
                worker.failed_jobs += 1
                outcome = status.value

        except asyncio.CancelledError:
            self.queue.fail(job.id, "Cancelled during shutdown")
            outcome = "cancelled"
            raise

        finally:
            worker.is_active = False
            worker.last_processed_at = self.queue.now()
            self._workers.pop(worker.id, None)
            log_job_outcome(
                job.id,
                job.type.value,
                outcome,
                (time.perf_counter() - started) * 1000,
                subject_id=job.subject_id,
            )
            structlog.contextvars.unbind_contextvars("job_id", "job_type", "subject_id")
            self.notify()

    async def _execute(self, processor, job: Job, started: float) -> ProcessingResult:
        """Run the processor under the hard timeout; exceptions become failed results."""
        timeout_ms = self.options.processing_timeout_ms

        try:
            return await asyncio.wait_for(processor(job), timeout=timeout_ms / 1000)
        except asyncio.TimeoutError:
            error = JobTimeoutError(f"Job timed out after {timeout_ms}ms", timeout_ms=timeout_ms)
            logger.warning("Job timed out", timeout_ms=timeout_ms)
            return ProcessingResult.failed(str(error), self._elapsed(started), retryable=True)
        except TriageError as e:
            logger.warning("Job processor raised", error=str(e), recoverable=e.recoverable)
            return ProcessingResult.failed(str(e), self._elapsed(started), retryable=e.recoverable)
        except Exception as e:
            logger.error("Unexpected processor error", error=str(e), exc_info=True)
            return ProcessingResult.failed(str(e), self._elapsed(started), retryable=True)

    @staticmethod
    def _elapsed(started: float) -> float:
        return (time.perf_counter() - started) * 1000

    def _handle_failure(self, job: Job, error: str, retryable: bool) -> JobStatus:
        """
        Reschedule with exponential backoff or move the job to a terminal partition.

        Returns:
            The partition the job ended up in
        """
        if retryable and job.retries < job.max_retries:
            delay_ms = self.options.backoff_ms(job.retries + 1, job.retry_delay_ms)
            self.queue.requeue(job.id, delay_ms, error)
            logger.info(
                "Job rescheduled",
                retries=job.retries,
                max_retries=job.max_retries,
                delay_ms=delay_ms,
                error=error,
            )
            return JobStatus.PENDING

        if retryable and self.options.dead_letter_enabled:
            self.queue.dead_letter(job.id, error)
            logger.error("Job moved to dead-letter", retries=job.retries, error=error)
            return JobStatus.DEAD_LETTER

        self.queue.fail(job.id, error)
        logger.error("Job failed", retries=job.retries, retryable=retryable, error=error)
        return JobStatus.FAILED

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def notify(self) -> None:
        """Wake the scheduler loop early (new or freed work)."""
        if self._wake is None or self._loop is None:
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            self._wake.set()
        elif not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._wake.set)

    async def start(self) -> None:
        """Start the scheduler loop (and periodic maintenance, if configured)."""
        if self._running:
            return

        self._loop = asyncio.get_running_loop()
        self._wake = asyncio.Event()
        if not self._listening:
            self.queue.add_listener(self.notify)
            self._listening = True

        self._running = True
        self._loop_task = asyncio.create_task(self._scheduler_loop())
        if self.maintenance_interval_seconds:
            self._maintenance_task = asyncio.create_task(self._maintenance_loop())

        logger.info(
            "Worker pool started",
            max_concurrency=self.options.max_concurrency,
            rate_limit_per_minute=self.options.rate_limit_per_minute,
            processing_timeout_ms=self.options.processing_timeout_ms,
            processors=[t.value for t in self.registry.registered_types()],
        )

    async def stop(self, timeout: float | None = 10.0) -> None:
        """
        Stop scheduling and wait for in-flight workers.

        Workers still running after ``timeout`` seconds are cancelled.
        """
        if not self._running:
            return
        self._running = False

        for task in (self._loop_task, self._maintenance_task):
            if task is not None:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._loop_task = None
        self._maintenance_task = None

        if self._tasks:
            _, still_running = await asyncio.wait(set(self._tasks), timeout=timeout)
            for task in still_running:
                task.cancel()
            if still_running:
                await asyncio.gather(*still_running, return_exceptions=True)

        logger.info("Worker pool stopped", **self.stats().to_dict())

    async def drain(self) -> None:
        """Wait until no worker is running."""
        while self._tasks:
            await asyncio.gather(*set(self._tasks), return_exceptions=True)

    async def run_until_idle(self, max_rounds: int = 100) -> int:
        """
        Tick and drain repeatedly until nothing eligible is left.

        Jobs deferred or rescheduled into the future are left pending.

        Returns:
            Number of jobs dispatched
        """
        total = 0
        for _ in range(max_rounds):
            dispatched = self.tick()
            total += dispatched
            if dispatched == 0 and not self._tasks:
                break
            await self.drain()
        return total

    async def _scheduler_loop(self) -> None:
        interval = self.options.tick_interval_ms / 1000
        while self._running:
            self._wake.clear()
            try:
                self.tick()
            except Exception as e:
                logger.error("Scheduler tick failed", error=str(e), exc_info=True)
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

    async def _maintenance_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.maintenance_interval_seconds)
            try:
                self.run_maintenance()
            except Exception as e:
                logger.error("Queue maintenance failed", error=str(e), exc_info=True)

    def run_maintenance(self) -> int:
        """Purge old completed/failed jobs and log queue stats."""
        purged = self.queue.cleanup(self.retention)
        logger.info("Queue maintenance completed", purged=purged, **self.stats().to_dict())
        return purged
