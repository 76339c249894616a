"""
Job processors for the three triage job types.

Each processor turns a claimed Job into a ProcessingResult and never raises
for expected failures: a missing email is a permanent (non-retryable)
failure, store and AI outages are retryable, and an AI outage during scoring
or summarisation degrades to the deterministic fallback instead of failing.
"""

import time
from typing import Any

from inbox_triage.infrastructure.observability.logging import get_logger
from inbox_triage.queue.models import Job, ProcessingResult
from inbox_triage.queue.payloads import (
    EmailScoringPayload,
    EmailSummarizationPayload,
    ThreadMessage,
    WebhookProcessingPayload,
)
from inbox_triage.queue.registry import ProcessorRegistry
from inbox_triage.queue.types import WEBHOOK_FANOUT_PRIORITY, JobType
from inbox_triage.triage.budget import DailyCostBudget
from inbox_triage.triage.domain import ScoringResult, ThreadSummary
from inbox_triage.triage.pipeline import blend_scores
from inbox_triage.triage.processing_config import ProcessingConfig, ProcessingConfigService
from inbox_triage.triage.rule_scorer import calculate_rule_score, tier_for

logger = get_logger(__name__)

SCORED_NOT_PERSISTED = "scored but not persisted"

# Job metadata keys; a charged job keeps its AI verdict across retries
AI_CHARGE_KEY = "ai_charged_cents"
AI_VERDICT_KEY = "ai_verdict"


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000


def fallback_thread_summary(messages: list[ThreadMessage]) -> ThreadSummary:
    """Deterministic summary from message count, participants, subject and latest date."""
    main_subject = messages[0].subject if messages and messages[0].subject else "Unknown"
    senders = list(dict.fromkeys(m.from_email for m in messages if m.from_email))
    latest = messages[0].date if messages and messages[0].date else "Recent"

    return ThreadSummary(
        summary=(
            f'Thread of {len(messages)} emails about "{main_subject}" involving '
            f"{len(senders)} participants. Most recent messages discuss ongoing conversation."
        ),
        key_points=[
            f"{len(messages)} total messages in thread",
            f"{len(senders)} participants involved",
            f"Latest activity: {latest}",
            f"Primary topic: {main_subject}",
        ],
    )


class TriageProcessors:
    """Processors bound to the store, AI scorer, budget and job service."""

    def __init__(
        self,
        store,
        ai_scorer=None,
        job_service=None,
        budget: DailyCostBudget | None = None,
        config: ProcessingConfig | None = None,
        config_service: ProcessingConfigService | None = None,
    ):
        self.store = store
        self.ai_scorer = ai_scorer
        self.job_service = job_service
        self.budget = budget or DailyCostBudget()
        self.config = (config or ProcessingConfig()).validated()
        self.config_service = config_service

    def register(self, registry: ProcessorRegistry) -> ProcessorRegistry:
        registry.register(JobType.EMAIL_SCORING, self.email_scoring)
        registry.register(JobType.EMAIL_SUMMARIZATION, self.email_summarization)
        registry.register(JobType.WEBHOOK_PROCESSING, self.webhook_processing)
        return registry

    async def _config_for(self, subject_id: str) -> ProcessingConfig:
        if self.config_service is None:
            return self.config
        return await self.config_service.get_config(subject_id)

    # ------------------------------------------------------------------
    # email_scoring
    # ------------------------------------------------------------------

    async def email_scoring(self, job: Job) -> ProcessingResult:
        started = time.perf_counter()
        payload: EmailScoringPayload = job.payload

        try:
            email = await self.store.get_email(payload.email_id)
        except Exception as e:
            logger.warning("Email fetch failed", email_id=payload.email_id, error=str(e))
            return ProcessingResult.failed(f"Email fetch failed: {e}", _elapsed_ms(started))

        if email is None or email.user_id != payload.user_id:
            return ProcessingResult.failed(
                f"Email not found: {payload.email_id}",
                _elapsed_ms(started),
                retryable=False,
                data={"email_id": payload.email_id, "reason": "not_found"},
            )

        config = await self._config_for(email.user_id)

        try:
            vip_boost = await self.store.get_vip_boost(email.user_id, email.from_email)
        except Exception as e:
            logger.warning("VIP lookup failed, no boost applied", email_id=email.id, error=str(e))
            vip_boost = 0

        rule = calculate_rule_score(
            email,
            vip_boost=vip_boost or 0,
            tier_high=config.tier_high,
            tier_medium=config.tier_medium,
        )

        ai_score, reasoning, error, cost_cents = await self._ai_verdict(
            job, email, rule.final_score, config
        )

        final = blend_scores(rule.final_score, ai_score, config)
        result = ScoringResult(
            email_id=email.id,
            subject_id=email.user_id,
            rule_score=rule.final_score,
            ai_score=ai_score,
            final_score=final,
            tier=tier_for(final, config.tier_high, config.tier_medium),
            cost_cents=cost_cents,
            error=error,
            factors=rule.factors,
            ai_reasoning=reasoning,
        )

        try:
            await self.store.persist_scoring(email, result)
        except Exception as e:
            logger.error("Failed to persist email score", email_id=email.id, error=str(e))
            return ProcessingResult.failed(
                f"Email {email.id} {SCORED_NOT_PERSISTED}: {e}",
                _elapsed_ms(started),
                retryable=True,
                data=result.to_dict(),
            )

        return ProcessingResult.ok(result.to_dict(), _elapsed_ms(started))

    async def _ai_verdict(
        self, job: Job, email, rule_score: int, config: ProcessingConfig
    ) -> tuple[float | None, str | None, str | None, int]:
        """
        AI score for one scoring job, charged at most once per job.

        The charge and the verdict are kept in ``job.metadata``, which survives
        requeues, so a retry after a failed write reuses the paid-for verdict.

        Returns:
            (ai_score, reasoning, error, cost_cents)
        """
        recorded = job.metadata.get(AI_VERDICT_KEY)
        if recorded is not None:
            return recorded["score"], recorded["reasoning"], recorded["error"], recorded["cost_cents"]
        if self.ai_scorer is None:
            return None, None, None, 0

        cost_cents = job.metadata.get(AI_CHARGE_KEY)
        if cost_cents is None:
            if not self.budget.reserve(
                email.user_id,
                1,
                config.estimated_cost_per_call,
                config.cost_budget_cents,
                max_cost_per_call=config.max_cost_per_email,
            ):
                return None, None, None, 0
            cost_cents = config.estimated_cost_per_call
            job.metadata[AI_CHARGE_KEY] = cost_cents

        score = reasoning = error = None
        try:
            verdict = await self.ai_scorer.score_email(email, rule_score)
            score, reasoning = verdict.score, verdict.reasoning
        except Exception as e:
            logger.warning("AI scoring failed, using rule score", email_id=email.id, error=str(e))
            error = f"AI scoring failed: {e}"

        job.metadata[AI_VERDICT_KEY] = {
            "score": score,
            "reasoning": reasoning,
            "error": error,
            "cost_cents": cost_cents,
        }
        return score, reasoning, error, cost_cents

    # ------------------------------------------------------------------
    # email_summarization
    # ------------------------------------------------------------------

    async def email_summarization(self, job: Job) -> ProcessingResult:
        started = time.perf_counter()
        payload: EmailSummarizationPayload = job.payload
        subject = payload.emails[0].subject or "Unknown"

        generated_by = "fallback"
        summary = None
        if self.ai_scorer is not None:
            try:
                summary = await self.ai_scorer.summarize_thread(subject, payload.emails)
                generated_by = "ai"
            except Exception as e:
                logger.warning(
                    "Thread summarisation failed, using fallback",
                    thread_id=payload.thread_id,
                    error=str(e),
                )
        if summary is None:
            summary = fallback_thread_summary(payload.emails)

        data: dict[str, Any] = {
            "thread_id": payload.thread_id,
            "summary": summary.summary,
            "key_points": summary.key_points,
            "email_count": len(payload.emails),
            "generated_by": generated_by,
        }

        try:
            await self.store.save_thread_summary(
                payload.user_id, payload.thread_id, summary, generated_by
            )
        except Exception as e:
            logger.error("Failed to persist thread summary", thread_id=payload.thread_id, error=str(e))
            return ProcessingResult.failed(
                f"Thread {payload.thread_id} summary not persisted: {e}",
                _elapsed_ms(started),
                retryable=True,
                data=data,
            )

        return ProcessingResult.ok(data, _elapsed_ms(started))

    # ------------------------------------------------------------------
    # webhook_processing
    # ------------------------------------------------------------------

    async def webhook_processing(self, job: Job) -> ProcessingResult:
        """Fan a notification out into one email_scoring job per known email."""
        started = time.perf_counter()
        payload: WebhookProcessingPayload = job.payload

        if self.job_service is None:
            return ProcessingResult.failed(
                "Webhook processing requires a job service", _elapsed_ms(started), retryable=False
            )

        try:
            emails = await self.store.get_emails(payload.user_id, payload.email_ids)
        except Exception as e:
            return ProcessingResult.failed(f"Failed to fetch emails: {e}", _elapsed_ms(started))

        retry_policy = await self.job_service.retry_policy(payload.user_id)
        job_ids = []
        for email in emails:
            job_ids.append(
                self.job_service.enqueue(
                    JobType.EMAIL_SCORING,
                    {
                        "user_id": payload.user_id,
                        "email_id": email.id,
                        "subject": email.subject,
                        "from": email.from_email,
                        "snippet": email.snippet,
                        "is_important": email.is_important,
                        "is_starred": email.is_starred,
                        "is_unread": email.is_unread,
                    },
                    priority=WEBHOOK_FANOUT_PRIORITY,
                    subject_id=payload.user_id,
                    metadata={"email_id": email.id, "parent_job_id": job.id},
                    **retry_policy,
                )
            )

        found = {email.id for email in emails}
        missing = [email_id for email_id in payload.email_ids if email_id not in found]
        if missing:
            logger.warning("Webhook referenced unknown emails", missing=len(missing))

        logger.info(
            "Webhook fanned out into scoring jobs",
            source=payload.source,
            enqueued=len(job_ids),
        )
        return ProcessingResult.ok(
            {
                "emails_processed": len(emails),
                "enqueued_jobs": job_ids,
                "missing_email_ids": missing,
                "source": payload.source,
            },
            _elapsed_ms(started),
        )
