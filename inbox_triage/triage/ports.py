"""
Collaborator interfaces consumed by the triage pipeline.

The pipeline, processors and rules engine depend only on these protocols;
concrete stores and the OpenAI adapter are wired in ``inbox_triage.runtime``.
"""

from datetime import datetime
from typing import Any, Protocol

from inbox_triage.queue.payloads import ThreadMessage
from inbox_triage.rules.models import AutomationRule, PendingAction
from inbox_triage.triage.domain import AIScore, EmailRecord, ScoringResult, ThreadSummary, Tier


class TriageStore(Protocol):
    """Mail fetch and triage persistence."""

    # Emails
    async def get_email(self, email_id: str) -> EmailRecord | None: ...

    async def get_emails(self, subject_id: str, email_ids: list[str]) -> list[EmailRecord]:
        """Emails owned by ``subject_id`` among ``email_ids`` (unknown ids are skipped)."""
        ...

    async def list_recent_emails(
        self, subject_id: str, since: datetime, limit: int = 500
    ) -> list[EmailRecord]: ...

    async def get_thread_owner(self, thread_id: str) -> str | None: ...

    async def get_vip_boost(self, subject_id: str, sender_email: str) -> int: ...

    async def update_email_fields(self, email_id: str, fields: dict[str, Any]) -> bool: ...

    async def add_email_label(self, email_id: str, label: str) -> list[str]: ...

    # Scores
    async def upsert_score(self, result: ScoringResult) -> None: ...

    async def upsert_feed_item(self, email: EmailRecord, result: ScoringResult) -> None: ...

    async def persist_scoring(self, email: EmailRecord, result: ScoringResult) -> None:
        """Score row and feed projection atomically: both are written or neither is."""
        ...

    async def update_score_tier(self, email_id: str, tier: Tier) -> bool: ...

    async def list_scores(self, subject_id: str, since: datetime) -> list[ScoringResult]: ...

    # Thread summaries
    async def save_thread_summary(
        self, subject_id: str, thread_id: str, summary: ThreadSummary, generated_by: str
    ) -> None: ...

    # Automation rules
    async def list_rules(self, subject_id: str) -> list[dict[str, Any]]:
        """Raw rule rows in insertion order; the engine validates them."""
        ...

    async def insert_rule(self, rule: AutomationRule) -> AutomationRule: ...

    async def update_rule(
        self, subject_id: str, rule_id: str, updates: dict[str, Any]
    ) -> AutomationRule | None: ...

    async def delete_rule(self, subject_id: str, rule_id: str) -> bool: ...

    async def increment_rule_execution(self, rule_id: str, executed_at: datetime) -> None: ...

    async def insert_pending_action(self, action: PendingAction) -> bool:
        """Append a pending action. Returns False when its dedupe key already exists."""
        ...

    # Per-subject processing overrides
    async def get_subject_config(self, subject_id: str) -> dict[str, Any] | None: ...

    async def save_subject_config(self, subject_id: str, overrides: dict[str, Any]) -> None: ...

    async def delete_subject_config(self, subject_id: str) -> None: ...


class AIScorer(Protocol):
    """AI scoring and summarisation. Implementations retry API-level failures themselves."""

    async def score_email(self, email: EmailRecord, rule_score: int) -> AIScore: ...

    async def summarize_thread(self, subject: str, messages: list[ThreadMessage]) -> ThreadSummary: ...
