"""
Domain models for the triage pipeline.

Plain dataclasses shared by the scorer, pipeline, processors, rules engine and
stores. They carry no I/O so every layer can build and inspect them freely.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


class Tier(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class BatchState(str, Enum):
    """Lifecycle of one micro-batch."""

    ACCUMULATING = "accumulating"
    SCORING = "scoring"
    PERSISTING = "persisting"
    RULE_APPLYING = "rule_applying"
    DONE = "done"


@dataclass(slots=True)
class EmailRecord:
    """A fetched email as the triage pipeline sees it."""

    id: str
    user_id: str
    subject: str = ""
    from_email: str = ""
    snippet: str = ""
    body: str = ""
    is_important: bool = False
    is_starred: bool = False
    is_unread: bool = False
    has_attachment: bool = False
    received_at: datetime | None = None
    thread_id: str | None = None
    labels: list[str] = field(default_factory=list)

    @property
    def sender_domain(self) -> str:
        _, _, domain = self.from_email.rpartition("@")
        return domain.lower().strip(">")


@dataclass(slots=True)
class RuleScore:
    """Output of the deterministic rule scorer."""

    raw_score: int
    final_score: int
    tier: Tier
    factors: dict[str, int]


@dataclass(slots=True)
class AIScore:
    """AI collaborator verdict: 1-10 importance plus a short reason."""

    score: float
    reasoning: str = ""


@dataclass(slots=True)
class ThreadSummary:
    summary: str
    key_points: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ScoringResult:
    """Final triage verdict for one email. Upserted on reprocessing."""

    email_id: str
    subject_id: str
    rule_score: int
    final_score: int
    tier: Tier
    ai_score: float | None = None
    cost_cents: int = 0
    error: str | None = None
    factors: dict[str, int] = field(default_factory=dict)
    ai_reasoning: str | None = None
    processed_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def used_ai(self) -> bool:
        return self.ai_score is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "email_id": self.email_id,
            "subject_id": self.subject_id,
            "rule_score": self.rule_score,
            "ai_score": self.ai_score,
            "final_score": self.final_score,
            "tier": self.tier.value,
            "cost_cents": self.cost_cents,
            "error": self.error,
            "factors": dict(self.factors),
            "ai_reasoning": self.ai_reasoning,
            "processed_at": self.processed_at.isoformat(),
        }


@dataclass(slots=True)
class ScoredEmail:
    """An email paired with its verdict; the input to the rules engine."""

    email: EmailRecord
    result: ScoringResult


@dataclass(slots=True)
class BatchError:
    email_id: str
    stage: str  # "scoring", "persist", "rules", "fetch"
    error: str


@dataclass(slots=True)
class BatchResult:
    """Structured outcome of one batch; callers never get an exception for partial failure."""

    processed: int = 0
    results: list[ScoringResult] = field(default_factory=list)
    errors: list[BatchError] = field(default_factory=list)
    ai_calls: int = 0
    cost_cents: int = 0
    state: BatchState = BatchState.ACCUMULATING
    duration_ms: float = 0.0

    @property
    def success(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "results": [r.to_dict() for r in self.results],
            "errors": [
                {"email_id": e.email_id, "stage": e.stage, "error": e.error} for e in self.errors
            ],
            "ai_calls": self.ai_calls,
            "cost_cents": self.cost_cents,
            "state": self.state.value,
            "duration_ms": round(self.duration_ms, 2),
        }
