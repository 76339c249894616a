"""
Job service - submission, query and management facade over the worker pool.

Typed submit_* helpers validate payloads and check that the caller owns the
email, thread or emails a job refers to before anything is queued.
"""

from typing import Any

from inbox_triage.errors import OwnershipError, QueueNotInitializedError
from inbox_triage.infrastructure.observability.logging import get_logger
from inbox_triage.queue.models import Job, QueueSnapshot
from inbox_triage.queue.payloads import coerce_job_type, parse_payload
from inbox_triage.queue.types import DEFAULT_PRIORITIES, JobType
from inbox_triage.queue.worker_pool import WorkerPool

logger = get_logger(__name__)

HEALTH_MAX_ERROR_RATE = 50.0


class JobService:
    """Facade used by routes, webhooks and the webhook processor."""

    def __init__(
        self,
        pool: WorkerPool | None,
        store=None,
        max_avg_processing_ms: float = 60000,
        config_service=None,
    ):
        self.pool = pool
        self.store = store
        self.max_avg_processing_ms = max_avg_processing_ms
        # Per-subject retry overrides (ProcessingConfigService); None = queue defaults
        self.config_service = config_service

    def _require_pool(self) -> WorkerPool:
        if self.pool is None:
            raise QueueNotInitializedError()
        return self.pool

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
        """Queue a job without ownership checks (internal callers)."""
        pool = self._require_pool()
        return pool.queue.enqueue(
            job_type,
            payload,
            priority=priority,
            delay_ms=delay_ms,
            max_retries=max_retries,
            retry_delay_ms=retry_delay_ms,
            subject_id=subject_id,
            metadata=metadata,
        )

    async def retry_policy(self, subject_id: str) -> dict[str, int]:
        """The subject's max_retries / retry_delay_ms overrides as enqueue kwargs."""
        if self.config_service is None:
            return {}
        config = await self.config_service.get_config(subject_id)
        return {"max_retries": config.max_retries, "retry_delay_ms": config.retry_delay_ms}

    def _check_payload_owner(self, subject_id: str, payload_user_id: str) -> None:
        if payload_user_id != subject_id:
            raise OwnershipError(
                "Payload user_id does not match the authenticated user", subject_id=subject_id
            )

    async def submit_email_scoring(
        self, subject_id: str, payload: Any, priority: int | None = None
    ) -> str:
        """
        Queue scoring for an email the subject owns.

        Raises:
            JobValidationError: Invalid payload
            OwnershipError: Email missing or owned by someone else
        """
        self._require_pool()
        parsed = parse_payload(JobType.EMAIL_SCORING, payload)
        self._check_payload_owner(subject_id, parsed.user_id)

        email = await self.store.get_email(parsed.email_id)
        if email is None or email.user_id != subject_id:
            logger.warning(
                "Rejected scoring job for unowned email",
                subject_id=subject_id,
                email_id=parsed.email_id,
            )
            raise OwnershipError(
                "Email not found or not owned by user",
                subject_id=subject_id,
                resource_id=parsed.email_id,
            )

        return self.enqueue(
            JobType.EMAIL_SCORING,
            parsed,
            priority=DEFAULT_PRIORITIES[JobType.EMAIL_SCORING] if priority is None else priority,
            subject_id=subject_id,
            metadata={"email_id": parsed.email_id},
            **await self.retry_policy(subject_id),
        )

    async def submit_email_summarization(
        self, subject_id: str, payload: Any, priority: int | None = None
    ) -> str:
        self._require_pool()
        parsed = parse_payload(JobType.EMAIL_SUMMARIZATION, payload)
        self._check_payload_owner(subject_id, parsed.user_id)

        owner = await self.store.get_thread_owner(parsed.thread_id)
        if owner != subject_id:
            raise OwnershipError(
                "Thread not found or not owned by user",
                subject_id=subject_id,
                resource_id=parsed.thread_id,
            )

        return self.enqueue(
            JobType.EMAIL_SUMMARIZATION,
            parsed,
            priority=DEFAULT_PRIORITIES[JobType.EMAIL_SUMMARIZATION] if priority is None else priority,
            subject_id=subject_id,
            metadata={"thread_id": parsed.thread_id, "email_count": len(parsed.emails)},
            **await self.retry_policy(subject_id),
        )

    async def submit_webhook_processing(
        self, subject_id: str, payload: Any, priority: int | None = None
    ) -> str:
        """Queue a webhook batch; every referenced email must belong to the subject."""
        self._require_pool()
        parsed = parse_payload(JobType.WEBHOOK_PROCESSING, payload)
        self._check_payload_owner(subject_id, parsed.user_id)

        owned = {email.id for email in await self.store.get_emails(subject_id, parsed.email_ids)}
        unowned = [email_id for email_id in parsed.email_ids if email_id not in owned]
        if unowned:
            raise OwnershipError(
                f"{len(unowned)} email(s) not found or not owned by user",
                subject_id=subject_id,
                resource_id=",".join(unowned[:10]),
            )

        return self.enqueue(
            JobType.WEBHOOK_PROCESSING,
            parsed,
            priority=DEFAULT_PRIORITIES[JobType.WEBHOOK_PROCESSING] if priority is None else priority,
            subject_id=subject_id,
            metadata={"email_count": len(parsed.email_ids), "source": parsed.source},
            **await self.retry_policy(subject_id),
        )

    async def submit(
        self, subject_id: str, job_type: JobType | str, payload: Any, priority: int | None = None
    ) -> str:
        """Dispatch to the typed submit helper for ``job_type``."""
        submitters = {
            JobType.EMAIL_SCORING: self.submit_email_scoring,
            JobType.EMAIL_SUMMARIZATION: self.submit_email_summarization,
            JobType.WEBHOOK_PROCESSING: self.submit_webhook_processing,
        }
        return await submitters[coerce_job_type(job_type)](subject_id, payload, priority=priority)

    # ------------------------------------------------------------------
    # Query and management
    # ------------------------------------------------------------------

    def get_job(self, job_id: str) -> Job | None:
        return self._require_pool().queue.get(job_id)

    def get_stats(self) -> QueueSnapshot:
        return self._require_pool().stats()

    def remove_job(self, job_id: str) -> bool:
        return self._require_pool().queue.remove(job_id)

    def retry_job(self, job_id: str) -> bool:
        return self._require_pool().queue.retry(job_id)

    def dead_letters(self) -> list[Job]:
        return self._require_pool().queue.dead_letters()

    def health(self) -> dict[str, Any]:
        """
        Healthy when the error rate is under 50% and average processing time
        is under the configured ceiling; degraded otherwise.
        """
        if self.pool is None:
            return {"status": "unavailable", "running": False}

        stats = self.pool.stats()
        healthy = (
            stats.error_rate < HEALTH_MAX_ERROR_RATE
            and stats.average_processing_time_ms < self.max_avg_processing_ms
        )
        return {
            "status": "healthy" if healthy else "degraded",
            "running": self.pool.is_running,
            "error_rate": round(stats.error_rate, 2),
            "average_processing_time_ms": round(stats.average_processing_time_ms, 2),
            "stats": stats.to_dict(),
        }

    def ping(self) -> str:
        return "ok" if self.pool is not None and self.pool.is_running else "unavailable"


# Process-wide instance, set during application startup
_job_service: JobService | None = None


def set_job_service(service: JobService | None) -> None:
    global _job_service
    _job_service = service


def get_job_service() -> JobService:
    """Get the running job service. Raises QueueNotInitializedError before startup."""
    if _job_service is None:
        raise QueueNotInitializedError()
    return _job_service
