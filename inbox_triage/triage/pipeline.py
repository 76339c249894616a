"""
Batch triage pipeline - two-phase scoring with micro-batching.

Incoming emails are buffered until the batch is full or the oldest email has
waited ``max_wait_time_ms``. Each batch then runs:

1. Rule scoring for every email (cheap, deterministic)
2. AI scoring for candidates at or above the AI threshold, capped per subject
   by the remaining daily budget; the rest silently stay rule-only
3. Blend + tier, persisted per email (a failed write is recorded, the batch
   carries on)
4. Automation rules for every persisted email

Callers always get a BatchResult; partial failures are reported in it.
"""

import asyncio
import time
from collections import defaultdict
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from inbox_triage.infrastructure.events import EventSink
from inbox_triage.infrastructure.events.schemas import DomainEvent, batch_completed
from inbox_triage.infrastructure.observability.logging import get_logger
from inbox_triage.rules.engine import RulesEngine
from inbox_triage.triage.budget import DailyCostBudget
from inbox_triage.triage.domain import (
    AIScore,
    BatchError,
    BatchResult,
    BatchState,
    EmailRecord,
    RuleScore,
    ScoredEmail,
    ScoringResult,
)
from inbox_triage.triage.processing_config import ProcessingConfig, ProcessingConfigService
from inbox_triage.triage.rule_scorer import calculate_rule_score, is_marketing, is_urgent, tier_for

logger = get_logger(__name__)

IMMEDIATE_AI_THRESHOLD = 0
REPROCESS_AI_THRESHOLD = 50
REPROCESS_DEFAULT_DAYS = 7
MAX_CONCURRENT_AI_CALLS = 5


def _utcnow() -> datetime:
    return datetime.now(UTC)


def blend_scores(rule_score: int, ai_score: float | None, config: ProcessingConfig) -> int:
    """Final 0-100 score; the rule score alone when there is no AI verdict."""
    if ai_score is None:
        return rule_score
    blended = rule_score * config.rule_weight + ai_score * config.ai_scale * config.ai_weight
    return max(0, min(100, round(blended)))


class BatchTriagePipeline:
    """Micro-batching triage pipeline."""

    def __init__(
        self,
        store,
        ai_scorer=None,
        rules_engine: RulesEngine | None = None,
        event_sink: EventSink | None = None,
        config: ProcessingConfig | None = None,
        config_service: ProcessingConfigService | None = None,
        budget: DailyCostBudget | None = None,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.store = store
        self.ai_scorer = ai_scorer
        self.rules_engine = rules_engine
        self.event_sink = event_sink
        self.config = (config or ProcessingConfig()).validated()
        self.config_service = config_service
        self.budget = budget or DailyCostBudget(clock=clock)
        self._clock = clock
        self._sleep = sleep

        # Buffers and wait timers are kept per subject
        self._buffers: dict[str, list[EmailRecord]] = {}
        self._timers: dict[str, asyncio.Task] = {}
        self._lock = asyncio.Lock()
        self._state = BatchState.ACCUMULATING

        self._batches_processed = 0
        self._emails_processed = 0
        self._last_batch_at: datetime | None = None
        self._last_error: str | None = None

    @property
    def state(self) -> BatchState:
        return self._state

    @property
    def pending_count(self) -> int:
        return sum(len(buffer) for buffer in self._buffers.values())

    def buffered_count(self, subject_id: str) -> int:
        return len(self._buffers.get(subject_id, ()))

    async def _config_for(self, subject_id: str) -> ProcessingConfig:
        if self.config_service is None:
            return self.config
        return await self.config_service.get_config(subject_id)

    # ------------------------------------------------------------------
    # Accumulation
    # ------------------------------------------------------------------

    async def add_email(self, email: EmailRecord) -> BatchResult | None:
        """
        Buffer an email for its subject's next batch.

        Urgent and VIP emails skip the buffer when the subject's config says so.
        Batch size and wait time come from the subject's config.

        Returns:
            The BatchResult when this email triggered processing, else None
        """
        subject_id = email.user_id
        config = await self._config_for(subject_id)
        if config.process_urgent_immediately and is_urgent(email):
            logger.info("Urgent email processed immediately", email_id=email.id)
            return await self.process_immediate(email)
        if config.process_vip_immediately and await self._vip_boost(email) > 0:
            logger.info("VIP email processed immediately", email_id=email.id)
            return await self.process_immediate(email)

        batch = None
        async with self._lock:
            buffer = self._buffers.setdefault(subject_id, [])
            buffer.append(email)
            if len(buffer) >= config.max_batch_size:
                batch = self._take_buffer(subject_id)
            elif subject_id not in self._timers:
                self._timers[subject_id] = asyncio.create_task(
                    self._flush_after(subject_id, config.max_wait_time_ms / 1000)
                )

        if batch:
            return await self._process_batch(batch)
        return None

    def _take_buffer(self, subject_id: str) -> list[EmailRecord]:
        """Detach one subject's buffered emails and stop its wait timer. Caller holds the lock."""
        batch = self._buffers.pop(subject_id, [])
        timer = self._timers.pop(subject_id, None)
        if timer is not None and timer is not asyncio.current_task():
            timer.cancel()
        return batch

    async def _flush_after(self, subject_id: str, delay_seconds: float) -> None:
        await self._sleep(delay_seconds)
        try:
            await self.flush_subject(subject_id)
        except Exception as e:
            self._last_error = str(e)
            logger.error(
                "Timed batch flush failed", subject_id=subject_id, error=str(e), exc_info=True
            )

    async def flush_subject(self, subject_id: str) -> BatchResult:
        """Process whatever one subject has buffered now."""
        async with self._lock:
            batch = self._take_buffer(subject_id)
        if not batch:
            return BatchResult(state=BatchState.DONE)
        return await self._process_batch(batch)

    async def flush(self) -> BatchResult:
        """Process everything buffered now, across all subjects."""
        async with self._lock:
            batch = []
            for subject_id in list(self._buffers):
                batch.extend(self._take_buffer(subject_id))
        if not batch:
            return BatchResult(state=BatchState.DONE)
        return await self._process_batch(batch)

    async def shutdown(self) -> BatchResult:
        """Flush the buffer; used on application shutdown."""
        return await self.flush()

    # ------------------------------------------------------------------
    # Batch processing
    # ------------------------------------------------------------------

    async def _process_batch(
        self, emails: list[EmailRecord], ai_threshold: int | None = None
    ) -> BatchResult:
        started = time.perf_counter()
        result = BatchResult(state=BatchState.SCORING)
        self._state = BatchState.SCORING
        now = self._clock()

        # Phase 1: rule scoring
        configs: dict[str, ProcessingConfig] = {}
        rule_scores: list[tuple[EmailRecord, RuleScore]] = []
        for email in emails:
            try:
                if email.user_id not in configs:
                    configs[email.user_id] = await self._config_for(email.user_id)
                config = configs[email.user_id]
                vip_boost = await self._vip_boost(email)
                rule_scores.append(
                    (
                        email,
                        calculate_rule_score(
                            email,
                            vip_boost=vip_boost,
                            now=now,
                            tier_high=config.tier_high,
                            tier_medium=config.tier_medium,
                        ),
                    )
                )
            except Exception as e:
                logger.error("Rule scoring failed", email_id=email.id, error=str(e))
                result.errors.append(BatchError(email.id, "scoring", str(e)))

        # Phase 2: budget-bounded AI scoring
        ai_scores, ai_errors, charged = await self._score_with_ai(rule_scores, configs, ai_threshold)
        result.ai_calls = len(charged)
        result.cost_cents = sum(charged.values())

        # Phase 3: blend, tier, persist
        result.state = self._state = BatchState.PERSISTING
        scored: list[ScoredEmail] = []
        for email, rule in rule_scores:
            config = configs[email.user_id]
            ai = ai_scores.get(email.id)
            final = blend_scores(rule.final_score, ai.score if ai else None, config)
            verdict = ScoringResult(
                email_id=email.id,
                subject_id=email.user_id,
                rule_score=rule.final_score,
                ai_score=ai.score if ai else None,
                final_score=final,
                tier=tier_for(final, config.tier_high, config.tier_medium),
                cost_cents=charged.get(email.id, 0),
                error=ai_errors.get(email.id),
                factors=rule.factors,
                ai_reasoning=ai.reasoning if ai else None,
                processed_at=now,
            )

            try:
                await self.store.persist_scoring(email, verdict)
            except Exception as e:
                logger.error("Failed to persist email score", email_id=email.id, error=str(e))
                result.errors.append(BatchError(email.id, "persist", str(e)))
                continue

            result.results.append(verdict)
            scored.append(ScoredEmail(email=email, result=verdict))

        result.processed = len(result.results)

        # Phase 4: automation rules
        result.state = self._state = BatchState.RULE_APPLYING
        if self.rules_engine is not None:
            for item in scored:
                try:
                    await self.rules_engine.apply_rules(item.email.user_id, item)
                except Exception as e:
                    logger.error("Failed to apply rules", email_id=item.email.id, error=str(e))
                    result.errors.append(BatchError(item.email.id, "rules", str(e)))

        result.state = self._state = BatchState.DONE
        result.duration_ms = (time.perf_counter() - started) * 1000

        self._batches_processed += 1
        self._emails_processed += result.processed
        self._last_batch_at = self._clock()
        if result.errors:
            self._last_error = result.errors[-1].error

        logger.info(
            "Triage batch completed",
            batch_size=len(emails),
            processed=result.processed,
            ai_calls=result.ai_calls,
            cost_cents=result.cost_cents,
            errors=len(result.errors),
            duration_ms=round(result.duration_ms, 2),
        )
        await self._publish(
            batch_completed(
                sorted({e.user_id for e in emails}),
                result.processed,
                result.ai_calls,
                result.cost_cents,
                len(result.errors),
                result.duration_ms,
            )
        )
        return result

    async def _score_with_ai(
        self,
        rule_scores: list[tuple[EmailRecord, RuleScore]],
        configs: dict[str, ProcessingConfig],
        ai_threshold: int | None,
    ) -> tuple[dict[str, AIScore], dict[str, str], dict[str, int]]:
        """
        Pick AI candidates per subject, reserve budget, and call the AI scorer.

        Returns:
            (AI scores by email id, AI errors by email id, cents charged by email id)
        """
        if self.ai_scorer is None:
            return {}, {}, {}

        candidates: dict[str, list[tuple[EmailRecord, RuleScore]]] = defaultdict(list)
        for email, rule in rule_scores:
            config = configs[email.user_id]
            threshold = config.ai_threshold if ai_threshold is None else ai_threshold
            if rule.final_score < threshold:
                continue
            if config.skip_marketing_emails and is_marketing(email):
                continue
            candidates[email.user_id].append((email, rule))

        granted: list[tuple[EmailRecord, RuleScore]] = []
        charged: dict[str, int] = {}
        for subject_id, items in candidates.items():
            config = configs[subject_id]
            # Highest rule scores get the budget first
            items.sort(key=lambda item: item[1].final_score, reverse=True)
            allowed = self.budget.reserve(
                subject_id,
                len(items),
                config.estimated_cost_per_call,
                config.cost_budget_cents,
                max_cost_per_call=config.max_cost_per_email,
            )
            for email, rule in items[:allowed]:
                granted.append((email, rule))
                charged[email.id] = config.estimated_cost_per_call

        ai_scores: dict[str, AIScore] = {}
        ai_errors: dict[str, str] = {}
        semaphore = asyncio.Semaphore(MAX_CONCURRENT_AI_CALLS)

        async def score_one(email: EmailRecord, rule: RuleScore) -> None:
            async with semaphore:
                try:
                    ai_scores[email.id] = await self.ai_scorer.score_email(email, rule.final_score)
                except Exception as e:
                    logger.warning(
                        "AI scoring failed, using rule score", email_id=email.id, error=str(e)
                    )
                    ai_errors[email.id] = f"AI scoring failed: {e}"

        await asyncio.gather(*(score_one(email, rule) for email, rule in granted))
        return ai_scores, ai_errors, charged

    async def _vip_boost(self, email: EmailRecord) -> int:
        if not email.from_email:
            return 0
        try:
            return int(await self.store.get_vip_boost(email.user_id, email.from_email) or 0)
        except Exception as e:
            logger.warning("VIP lookup failed, no boost applied", email_id=email.id, error=str(e))
            return 0

    async def _publish(self, event: DomainEvent) -> None:
        if self.event_sink is None:
            return
        try:
            await self.event_sink.publish(event)
        except Exception as e:
            logger.warning("Event publish failed", topic=event.topic, error=str(e))

    # ------------------------------------------------------------------
    # Direct entry points
    # ------------------------------------------------------------------

    async def process_immediate(self, email: EmailRecord) -> BatchResult:
        """Process one email now with AI regardless of its rule score (budget still applies)."""
        return await self._process_batch([email], ai_threshold=IMMEDIATE_AI_THRESHOLD)

    async def reprocess_emails(
        self,
        subject_id: str,
        email_ids: list[str] | None = None,
        days: int = REPROCESS_DEFAULT_DAYS,
    ) -> BatchResult:
        """
        Re-score stored emails (given ids, or the last ``days`` days) in batch-size chunks.

        A fetch failure aborts only this call and is reported in the result.
        """
        try:
            if email_ids:
                emails = await self.store.get_emails(subject_id, email_ids)
            else:
                since = self._clock() - timedelta(days=days)
                emails = await self.store.list_recent_emails(subject_id, since)
        except Exception as e:
            logger.error("Failed to fetch emails for reprocessing", subject_id=subject_id, error=str(e))
            return BatchResult(errors=[BatchError("*", "fetch", str(e))], state=BatchState.DONE)

        combined = BatchResult(state=BatchState.DONE)
        size = (await self._config_for(subject_id)).max_batch_size
        for start in range(0, len(emails), size):
            chunk = await self._process_batch(
                emails[start : start + size], ai_threshold=REPROCESS_AI_THRESHOLD
            )
            combined.processed += chunk.processed
            combined.results.extend(chunk.results)
            combined.errors.extend(chunk.errors)
            combined.ai_calls += chunk.ai_calls
            combined.cost_cents += chunk.cost_cents
            combined.duration_ms += chunk.duration_ms

        logger.info(
            "Reprocessing completed",
            subject_id=subject_id,
            emails=len(emails),
            processed=combined.processed,
        )
        return combined

    async def processing_stats(self, subject_id: str, days: int = 7) -> dict[str, Any]:
        """Score totals, AI usage, tier distribution and cost over the last ``days`` days."""
        since = self._clock() - timedelta(days=days)
        scores = await self.store.list_scores(subject_id, since)

        tiers = {"high": 0, "medium": 0, "low": 0}
        for score in scores:
            tiers[score.tier.value] += 1

        config = await self._config_for(subject_id)
        return {
            "subject_id": subject_id,
            "days": days,
            "total_processed": len(scores),
            "ai_processed": sum(1 for s in scores if s.used_ai),
            "average_score": round(sum(s.final_score for s in scores) / len(scores), 2)
            if scores
            else 0.0,
            "tier_distribution": tiers,
            "total_cost_cents": sum(s.cost_cents for s in scores),
            "errors": sum(1 for s in scores if s.error),
            "budget": self.budget.usage(subject_id, config.cost_budget_cents),
        }

    def health(self) -> dict[str, Any]:
        return {
            "healthy": True,
            "service": "triage_pipeline",
            "state": self._state.value,
            "buffered_emails": self.pending_count,
            "flush_scheduled": bool(self._timers),
            "ai_enabled": self.ai_scorer is not None,
            "batches_processed": self._batches_processed,
            "emails_processed": self._emails_processed,
            "last_batch_at": self._last_batch_at.isoformat() if self._last_batch_at else None,
            "last_error": self._last_error,
        }
