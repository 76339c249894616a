"""
In-memory triage store.

Backs local development (no SUPABASE_DB_URL) and the unit tests. Holds
everything in plain dicts; every method copies on the way in and out so
callers cannot mutate stored state by accident.
"""

import copy
from dataclasses import replace
from datetime import datetime
from typing import Any

from inbox_triage.infrastructure.observability.logging import get_logger
from inbox_triage.rules.models import AutomationRule, PendingAction
from inbox_triage.triage.domain import EmailRecord, ScoringResult, ThreadSummary, Tier

logger = get_logger(__name__)

# Columns update_email_fields may touch; anything else is kept in `extra`
EMAIL_FIELDS = {"is_unread", "is_starred", "is_important", "labels", "subject", "snippet"}


def _restore(table: dict, key: str, previous) -> None:
    if previous is None:
        table.pop(key, None)
    else:
        table[key] = previous


class InMemoryTriageStore:
    """Dict-backed TriageStore implementation."""

    def __init__(self):
        self.emails: dict[str, EmailRecord] = {}
        self.email_extra: dict[str, dict[str, Any]] = {}
        self.vip_boosts: dict[tuple[str, str], int] = {}
        self.scores: dict[str, ScoringResult] = {}
        self.feed_items: dict[str, dict[str, Any]] = {}
        self.thread_summaries: dict[str, dict[str, Any]] = {}
        self.rules: dict[str, dict[str, Any]] = {}
        self.pending_actions: list[PendingAction] = []
        self.subject_configs: dict[str, dict[str, Any]] = {}
        self._pending_keys: set[tuple[str, str, str]] = set()

    # ------------------------------------------------------------------
    # Seeding helpers
    # ------------------------------------------------------------------

    def add_email(self, email: EmailRecord) -> EmailRecord:
        self.emails[email.id] = replace(email, labels=list(email.labels))
        return email

    def set_vip_boost(self, subject_id: str, sender_email: str, boost: int) -> None:
        self.vip_boosts[(subject_id, sender_email.lower())] = boost

    # ------------------------------------------------------------------
    # Emails
    # ------------------------------------------------------------------

    async def get_email(self, email_id: str) -> EmailRecord | None:
        email = self.emails.get(email_id)
        return replace(email, labels=list(email.labels)) if email else None

    async def get_emails(self, subject_id: str, email_ids: list[str]) -> list[EmailRecord]:
        found = []
        for email_id in email_ids:
            email = self.emails.get(email_id)
            if email is not None and email.user_id == subject_id:
                found.append(replace(email, labels=list(email.labels)))
        return found

    async def list_recent_emails(
        self, subject_id: str, since: datetime, limit: int = 500
    ) -> list[EmailRecord]:
        recent = [
            e
            for e in self.emails.values()
            if e.user_id == subject_id and (e.received_at is None or e.received_at >= since)
        ]
        recent.sort(key=lambda e: e.received_at or since, reverse=True)
        return [replace(e, labels=list(e.labels)) for e in recent[:limit]]

    async def get_thread_owner(self, thread_id: str) -> str | None:
        for email in self.emails.values():
            if email.thread_id == thread_id:
                return email.user_id
        return None

    async def get_vip_boost(self, subject_id: str, sender_email: str) -> int:
        return self.vip_boosts.get((subject_id, sender_email.lower()), 0)

    async def update_email_fields(self, email_id: str, fields: dict[str, Any]) -> bool:
        email = self.emails.get(email_id)
        if email is None:
            return False
        extra = self.email_extra.setdefault(email_id, {})
        for name, value in fields.items():
            if name in EMAIL_FIELDS:
                setattr(email, name, value)
            else:
                extra[name] = value
        return True

    async def add_email_label(self, email_id: str, label: str) -> list[str]:
        email = self.emails.get(email_id)
        if email is None:
            return [label]
        if label not in email.labels:
            email.labels.append(label)
        return list(email.labels)

    # ------------------------------------------------------------------
    # Scores and feed
    # ------------------------------------------------------------------

    async def upsert_score(self, result: ScoringResult) -> None:
        self.scores[result.email_id] = copy.deepcopy(result)

    async def upsert_feed_item(self, email: EmailRecord, result: ScoringResult) -> None:
        self.feed_items[email.id] = {
            "user_id": email.user_id,
            "email_id": email.id,
            "subject": email.subject,
            "from_email": email.from_email,
            "snippet": email.snippet,
            "final_score": result.final_score,
            "tier": result.tier.value,
            "processed_at": result.processed_at,
        }

    async def persist_scoring(self, email: EmailRecord, result: ScoringResult) -> None:
        """Write the score and feed item together; a failure leaves neither changed."""
        previous_score = self.scores.get(result.email_id)
        previous_item = self.feed_items.get(email.id)
        try:
            await self.upsert_score(result)
            await self.upsert_feed_item(email, result)
        except Exception:
            _restore(self.scores, result.email_id, previous_score)
            _restore(self.feed_items, email.id, previous_item)
            raise

    async def update_score_tier(self, email_id: str, tier: Tier) -> bool:
        result = self.scores.get(email_id)
        if result is None:
            return False
        result.tier = tier
        if email_id in self.feed_items:
            self.feed_items[email_id]["tier"] = tier.value
        return True

    async def list_scores(self, subject_id: str, since: datetime) -> list[ScoringResult]:
        return [
            copy.deepcopy(r)
            for r in self.scores.values()
            if r.subject_id == subject_id and r.processed_at >= since
        ]

    async def save_thread_summary(
        self, subject_id: str, thread_id: str, summary: ThreadSummary, generated_by: str
    ) -> None:
        self.thread_summaries[thread_id] = {
            "user_id": subject_id,
            "thread_id": thread_id,
            "summary": summary.summary,
            "key_points": list(summary.key_points),
            "generated_by": generated_by,
        }

    # ------------------------------------------------------------------
    # Automation rules
    # ------------------------------------------------------------------

    async def list_rules(self, subject_id: str) -> list[dict[str, Any]]:
        return [copy.deepcopy(row) for row in self.rules.values() if row.get("user_id") == subject_id]

    async def insert_rule(self, rule: AutomationRule) -> AutomationRule:
        self.rules[rule.id] = rule.model_dump()
        return rule.model_copy(deep=True)

    async def update_rule(
        self, subject_id: str, rule_id: str, updates: dict[str, Any]
    ) -> AutomationRule | None:
        row = self.rules.get(rule_id)
        if row is None or row.get("user_id") != subject_id:
            return None
        row.update(copy.deepcopy(updates))
        return AutomationRule.model_validate(row)

    async def delete_rule(self, subject_id: str, rule_id: str) -> bool:
        row = self.rules.get(rule_id)
        if row is None or row.get("user_id") != subject_id:
            return False
        del self.rules[rule_id]
        return True

    async def increment_rule_execution(self, rule_id: str, executed_at: datetime) -> None:
        row = self.rules.get(rule_id)
        if row is not None:
            row["execution_count"] = row.get("execution_count", 0) + 1
            row["last_executed"] = executed_at

    async def insert_pending_action(self, action: PendingAction) -> bool:
        if action.dedupe_key in self._pending_keys:
            logger.debug("Duplicate pending action ignored", key=action.dedupe_key)
            return False
        self._pending_keys.add(action.dedupe_key)
        self.pending_actions.append(action)
        return True

    # ------------------------------------------------------------------
    # Processing config overrides
    # ------------------------------------------------------------------

    async def get_subject_config(self, subject_id: str) -> dict[str, Any] | None:
        overrides = self.subject_configs.get(subject_id)
        return dict(overrides) if overrides is not None else None

    async def save_subject_config(self, subject_id: str, overrides: dict[str, Any]) -> None:
        self.subject_configs[subject_id] = dict(overrides)

    async def delete_subject_config(self, subject_id: str) -> None:
        self.subject_configs.pop(subject_id, None)
