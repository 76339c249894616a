"""
Postgres-backed triage store.

Implements the TriageStore interface on the shared psycopg pool via the
``db.helpers`` functions. Every helper raises DatabaseError on failure with
``recoverable`` set for connection-level problems, which the processors map
to retryable job failures.
"""

import json
from datetime import datetime
from typing import Any

from inbox_triage.db.helpers import (
    DatabaseError,
    execute_query,
    execute_transaction,
    fetch_all,
    fetch_one,
    fetch_val,
    with_db_retry,
)
from inbox_triage.infrastructure.observability.logging import get_logger
from inbox_triage.rules.models import AutomationRule, PendingAction
from inbox_triage.triage.domain import EmailRecord, ScoringResult, ThreadSummary, Tier

logger = get_logger(__name__)

EMAIL_COLUMNS = """
    id, user_id, subject, from_email, snippet, body, is_important, is_starred,
    is_unread, has_attachment, received_at, thread_id, labels
"""

RULE_COLUMNS = """
    id, user_id, name, description, enabled, trigger_type, trigger_value,
    trigger_operator, action_type, action_value, priority, execution_count,
    last_executed, created_at, updated_at
"""

# Columns update_email_fields and update_rule are allowed to write
UPDATABLE_EMAIL_COLUMNS = {"is_unread", "is_starred", "is_important", "priority", "is_archived", "archived_by_rule"}
UPDATABLE_RULE_COLUMNS = {
    "name",
    "description",
    "enabled",
    "trigger_type",
    "trigger_value",
    "trigger_operator",
    "action_type",
    "action_value",
    "priority",
    "updated_at",
}
JSON_RULE_COLUMNS = {"trigger_value", "action_value"}


UPSERT_SCORE_SQL = """
    INSERT INTO email_scores (
        email_id, user_id, rule_score, ai_score, final_score, tier,
        cost_cents, error, factors, ai_reasoning, processed_at
    )
    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s::jsonb, %s, %s)
    ON CONFLICT (email_id) DO UPDATE SET
        rule_score = EXCLUDED.rule_score,
        ai_score = EXCLUDED.ai_score,
        final_score = EXCLUDED.final_score,
        tier = EXCLUDED.tier,
        cost_cents = EXCLUDED.cost_cents,
        error = EXCLUDED.error,
        factors = EXCLUDED.factors,
        ai_reasoning = EXCLUDED.ai_reasoning,
        processed_at = EXCLUDED.processed_at
"""

UPSERT_FEED_ITEM_SQL = """
    INSERT INTO feed_items (
        user_id, email_id, subject, from_email, snippet, final_score, tier, processed_at
    )
    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
    ON CONFLICT (email_id) DO UPDATE SET
        final_score = EXCLUDED.final_score,
        tier = EXCLUDED.tier,
        processed_at = EXCLUDED.processed_at
"""


class TriageStoreError(DatabaseError):
    """More specific exception for triage store failures."""


def _row_to_email(row: dict | None) -> EmailRecord | None:
    if not row:
        return None

    return EmailRecord(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        subject=row.get("subject") or "",
        from_email=row.get("from_email") or "",
        snippet=row.get("snippet") or "",
        body=row.get("body") or "",
        is_important=bool(row.get("is_important")),
        is_starred=bool(row.get("is_starred")),
        is_unread=bool(row.get("is_unread")),
        has_attachment=bool(row.get("has_attachment")),
        received_at=row.get("received_at"),
        thread_id=row.get("thread_id"),
        labels=list(row.get("labels") or []),
    )


def _row_to_score(row: dict) -> ScoringResult:
    return ScoringResult(
        email_id=str(row["email_id"]),
        subject_id=str(row["user_id"]),
        rule_score=row["rule_score"],
        final_score=row["final_score"],
        tier=Tier(row["tier"]),
        ai_score=row.get("ai_score"),
        cost_cents=row.get("cost_cents") or 0,
        error=row.get("error"),
        factors=row.get("factors") or {},
        ai_reasoning=row.get("ai_reasoning"),
        processed_at=row["processed_at"],
    )


def _row_to_rule_dict(row: dict) -> dict[str, Any]:
    data = dict(row)
    data["id"] = str(data["id"])
    data["user_id"] = str(data["user_id"])
    return data


def _score_params(result: ScoringResult) -> tuple:
    return (
        result.email_id,
        result.subject_id,
        result.rule_score,
        result.ai_score,
        result.final_score,
        result.tier.value,
        result.cost_cents,
        result.error,
        json.dumps(result.factors),
        result.ai_reasoning,
        result.processed_at,
    )


def _feed_item_params(email: EmailRecord, result: ScoringResult) -> tuple:
    return (
        email.user_id,
        email.id,
        email.subject,
        email.from_email,
        email.snippet[:500],
        result.final_score,
        result.tier.value,
        result.processed_at,
    )


class PostgresTriageStore:
    """TriageStore over the emails, email_scores, feed_items and automation tables."""

    # ------------------------------------------------------------------
    # Emails
    # ------------------------------------------------------------------

    @with_db_retry()
    async def get_email(self, email_id: str) -> EmailRecord | None:
        query = f"SELECT {EMAIL_COLUMNS} FROM emails WHERE id = %s"
        return _row_to_email(await fetch_one(query, (email_id,)))

    async def get_emails(self, subject_id: str, email_ids: list[str]) -> list[EmailRecord]:
        if not email_ids:
            return []

        query = f"SELECT {EMAIL_COLUMNS} FROM emails WHERE user_id = %s AND id = ANY(%s)"
        rows = await fetch_all(query, (subject_id, list(email_ids)))
        by_id = {str(row["id"]): _row_to_email(row) for row in rows}
        return [by_id[email_id] for email_id in email_ids if email_id in by_id]

    async def list_recent_emails(
        self, subject_id: str, since: datetime, limit: int = 500
    ) -> list[EmailRecord]:
        query = f"""
            SELECT {EMAIL_COLUMNS}
            FROM emails
            WHERE user_id = %s AND received_at >= %s
            ORDER BY received_at DESC
            LIMIT %s
        """
        rows = await fetch_all(query, (subject_id, since, limit))
        return [_row_to_email(row) for row in rows]

    async def get_thread_owner(self, thread_id: str) -> str | None:
        owner = await fetch_val(
            "SELECT user_id FROM emails WHERE thread_id = %s LIMIT 1", (thread_id,)
        )
        return str(owner) if owner else None

    async def get_vip_boost(self, subject_id: str, sender_email: str) -> int:
        boost = await fetch_val(
            """
            SELECT score_boost FROM vip_senders
            WHERE user_id = %s AND lower(sender_email) = lower(%s)
            """,
            (subject_id, sender_email),
        )
        return int(boost or 0)

    async def update_email_fields(self, email_id: str, fields: dict[str, Any]) -> bool:
        columns = [name for name in fields if name in UPDATABLE_EMAIL_COLUMNS]
        if not columns:
            return False

        assignments = ", ".join(f"{name} = %s" for name in columns)
        params = tuple(fields[name] for name in columns) + (email_id,)
        affected = await execute_query(
            f"UPDATE emails SET {assignments}, updated_at = NOW() WHERE id = %s", params
        )
        return affected > 0

    async def add_email_label(self, email_id: str, label: str) -> list[str]:
        row = await fetch_one(
            """
            UPDATE emails
            SET labels = CASE
                    WHEN %s = ANY(COALESCE(labels, '{}')) THEN labels
                    ELSE array_append(COALESCE(labels, '{}'), %s)
                END,
                updated_at = NOW()
            WHERE id = %s
            RETURNING labels
            """,
            (label, label, email_id),
        )
        return list(row["labels"]) if row else [label]

    # ------------------------------------------------------------------
    # Scores and feed
    # ------------------------------------------------------------------

    async def upsert_score(self, result: ScoringResult) -> None:
        await execute_query(UPSERT_SCORE_SQL, _score_params(result))

    async def upsert_feed_item(self, email: EmailRecord, result: ScoringResult) -> None:
        await execute_query(UPSERT_FEED_ITEM_SQL, _feed_item_params(email, result))

    async def persist_scoring(self, email: EmailRecord, result: ScoringResult) -> None:
        """Score row and feed projection in one transaction."""
        await execute_transaction(
            [
                (UPSERT_SCORE_SQL, _score_params(result)),
                (UPSERT_FEED_ITEM_SQL, _feed_item_params(email, result)),
            ]
        )

    async def update_score_tier(self, email_id: str, tier: Tier) -> bool:
        scores_updated, _ = await execute_transaction(
            [
                ("UPDATE email_scores SET tier = %s WHERE email_id = %s", (tier.value, email_id)),
                ("UPDATE feed_items SET tier = %s WHERE email_id = %s", (tier.value, email_id)),
            ]
        )
        return scores_updated > 0

    async def list_scores(self, subject_id: str, since: datetime) -> list[ScoringResult]:
        rows = await fetch_all(
            """
            SELECT email_id, user_id, rule_score, ai_score, final_score, tier,
                   cost_cents, error, factors, ai_reasoning, processed_at
            FROM email_scores
            WHERE user_id = %s AND processed_at >= %s
            """,
            (subject_id, since),
        )
        return [_row_to_score(row) for row in rows]

    async def save_thread_summary(
        self, subject_id: str, thread_id: str, summary: ThreadSummary, generated_by: str
    ) -> None:
        await execute_query(
            """
            INSERT INTO email_threads (thread_id, user_id, summary, key_points, generated_by, summarized_at)
            VALUES (%s, %s, %s, %s::jsonb, %s, NOW())
            ON CONFLICT (thread_id) DO UPDATE SET
                summary = EXCLUDED.summary,
                key_points = EXCLUDED.key_points,
                generated_by = EXCLUDED.generated_by,
                summarized_at = EXCLUDED.summarized_at
            """,
            (thread_id, subject_id, summary.summary, json.dumps(summary.key_points), generated_by),
        )

    # ------------------------------------------------------------------
    # Automation rules
    # ------------------------------------------------------------------

    async def list_rules(self, subject_id: str) -> list[dict[str, Any]]:
        rows = await fetch_all(
            f"SELECT {RULE_COLUMNS} FROM automation_rules WHERE user_id = %s ORDER BY created_at, id",
            (subject_id,),
        )
        return [_row_to_rule_dict(row) for row in rows]

    async def insert_rule(self, rule: AutomationRule) -> AutomationRule:
        row = await fetch_one(
            f"""
            INSERT INTO automation_rules (
                id, user_id, name, description, enabled, trigger_type, trigger_value,
                trigger_operator, action_type, action_value, priority
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s::jsonb, %s, %s, %s::jsonb, %s)
            RETURNING {RULE_COLUMNS}
            """,
            (
                rule.id,
                rule.user_id,
                rule.name,
                rule.description,
                rule.enabled,
                rule.trigger_type.value,
                json.dumps(rule.trigger_value),
                rule.trigger_operator.value if rule.trigger_operator else None,
                rule.action_type.value,
                json.dumps(rule.action_value),
                rule.priority,
            ),
        )
        if not row:
            raise TriageStoreError("Failed to create automation rule", operation="insert_rule")

        logger.info("Automation rule stored", user_id=rule.user_id, rule_id=rule.id)
        return AutomationRule.model_validate(_row_to_rule_dict(row))

    async def update_rule(
        self, subject_id: str, rule_id: str, updates: dict[str, Any]
    ) -> AutomationRule | None:
        columns = [name for name in updates if name in UPDATABLE_RULE_COLUMNS]
        if not columns:
            return None

        assignments = []
        params = []
        for name in columns:
            value = updates[name]
            if name in JSON_RULE_COLUMNS:
                assignments.append(f"{name} = %s::jsonb")
                params.append(json.dumps(value))
            else:
                assignments.append(f"{name} = %s")
                params.append(getattr(value, "value", value))

        row = await fetch_one(
            f"""
            UPDATE automation_rules SET {", ".join(assignments)}
            WHERE id = %s AND user_id = %s
            RETURNING {RULE_COLUMNS}
            """,
            tuple(params) + (rule_id, subject_id),
        )
        return AutomationRule.model_validate(_row_to_rule_dict(row)) if row else None

    async def delete_rule(self, subject_id: str, rule_id: str) -> bool:
        affected = await execute_query(
            "DELETE FROM automation_rules WHERE id = %s AND user_id = %s", (rule_id, subject_id)
        )
        return affected > 0

    async def increment_rule_execution(self, rule_id: str, executed_at: datetime) -> None:
        await execute_query(
            """
            UPDATE automation_rules
            SET execution_count = execution_count + 1, last_executed = %s
            WHERE id = %s
            """,
            (executed_at, rule_id),
        )

    async def insert_pending_action(self, action: PendingAction) -> bool:
        affected = await execute_query(
            """
            INSERT INTO pending_actions (
                id, user_id, email_id, rule_id, action_type, action_data, status, created_at
            )
            VALUES (%s, %s, %s, %s, %s, %s::jsonb, 'pending', %s)
            ON CONFLICT (rule_id, email_id, action_type) DO NOTHING
            """,
            (
                action.id,
                action.user_id,
                action.email_id,
                action.rule_id,
                action.action_type,
                json.dumps(action.action_data),
                action.created_at,
            ),
        )
        return affected > 0

    # ------------------------------------------------------------------
    # Processing config overrides
    # ------------------------------------------------------------------

    async def get_subject_config(self, subject_id: str) -> dict[str, Any] | None:
        overrides = await fetch_val(
            "SELECT overrides FROM user_processing_config WHERE user_id = %s", (subject_id,)
        )
        return dict(overrides) if overrides else None

    async def save_subject_config(self, subject_id: str, overrides: dict[str, Any]) -> None:
        await execute_query(
            """
            INSERT INTO user_processing_config (user_id, overrides, updated_at)
            VALUES (%s, %s::jsonb, NOW())
            ON CONFLICT (user_id) DO UPDATE SET
                overrides = EXCLUDED.overrides,
                updated_at = EXCLUDED.updated_at
            """,
            (subject_id, json.dumps(overrides)),
        )

    async def delete_subject_config(self, subject_id: str) -> None:
        await execute_query("DELETE FROM user_processing_config WHERE user_id = %s", (subject_id,))
