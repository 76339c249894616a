"""Domain event schemas published by the triage pipeline and rules engine."""

from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

EventTopic = Literal[
    "rule.executed",
    "rules.applied",
    "batch.completed",
    "notification",
]


class DomainEvent(BaseModel):
    """
    Event payload handed to every EventSink.

    Scoped by subject so broadcasters can route events to the owning user only.
    """

    topic: EventTopic = Field(..., description="Event topic (e.g., 'rules.applied')")
    subject_id: str | None = Field(None, description="Owning user, when the event has one")
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="Event timestamp (UTC)",
    )
    payload: dict[str, Any] = Field(default_factory=dict, description="Event-specific data")

    def to_sse(self) -> str:
        """Format as an SSE message."""
        return f"event: {self.topic}\ndata: {self.model_dump_json()}\n\n"


# Convenience constructors


def rule_executed(
    subject_id: str, rule_id: str, rule_name: str, email_id: str, actions: list[str]
) -> DomainEvent:
    return DomainEvent(
        topic="rule.executed",
        subject_id=subject_id,
        payload={
            "rule_id": rule_id,
            "rule_name": rule_name,
            "email_id": email_id,
            "actions": actions,
        },
    )


def rules_applied(subject_id: str, email_id: str, applied_actions: list[str], rules_matched: int) -> DomainEvent:
    return DomainEvent(
        topic="rules.applied",
        subject_id=subject_id,
        payload={
            "email_id": email_id,
            "applied_actions": applied_actions,
            "rules_matched": rules_matched,
        },
    )


def batch_completed(
    subject_ids: list[str],
    processed: int,
    ai_calls: int,
    cost_cents: int,
    errors: int,
    duration_ms: float,
) -> DomainEvent:
    return DomainEvent(
        topic="batch.completed",
        payload={
            "subject_ids": subject_ids,
            "processed": processed,
            "ai_calls": ai_calls,
            "cost_cents": cost_cents,
            "errors": errors,
            "duration_ms": round(duration_ms, 2),
        },
    )


def notification(subject_id: str, email_id: str, message: str, rule_id: str | None = None) -> DomainEvent:
    return DomainEvent(
        topic="notification",
        subject_id=subject_id,
        payload={"email_id": email_id, "message": message, "rule_id": rule_id},
    )
