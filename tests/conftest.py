from datetime import UTC, datetime, timedelta

import pytest

from inbox_triage.auth.verify import auth_dependency
from inbox_triage.infrastructure.events import EventSink
from inbox_triage.repositories.memory_store import InMemoryTriageStore
from inbox_triage.triage.domain import AIScore, EmailRecord, ThreadSummary


@pytest.fixture
def auth_override():
    def _override():
        return {"sub": "user-123"}

    return _override


@pytest.fixture
def apply_auth_override(auth_override):
    def _apply(app):
        app.dependency_overrides[auth_dependency] = auth_override

    return _apply


class ManualClock:
    """Datetime clock that only moves when told to."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 3, 1, 9, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeAIScorer:
    def __init__(self, score: float = 8.0, fail: bool = False):
        self.score = score
        self.fail = fail
        self.scored: list[str] = []
        self.summarized: list[str] = []

    async def score_email(self, email, rule_score):
        self.scored.append(email.id)
        if self.fail:
            raise RuntimeError("AI provider unavailable")
        return AIScore(score=self.score, reasoning="fake verdict")

    async def summarize_thread(self, subject, messages):
        self.summarized.append(subject)
        if self.fail:
            raise RuntimeError("AI provider unavailable")
        return ThreadSummary(summary=f"Summary of {subject}", key_points=["point one"])


class RecordingEventSink(EventSink):
    def __init__(self):
        self.events = []

    async def publish(self, event) -> int:
        self.events.append(event)
        return 1

    def topics(self) -> list[str]:
        return [e.topic for e in self.events]


def make_email(email_id: str = "email-1", user_id: str = "user-123", **overrides) -> EmailRecord:
    fields = {
        "subject": "Quarterly planning",
        "from_email": "colleague@example.com",
        "snippet": "Can we sync on the plan?",
    }
    fields.update(overrides)
    return EmailRecord(id=email_id, user_id=user_id, **fields)


@pytest.fixture
def manual_clock():
    return ManualClock()


@pytest.fixture
def store():
    return InMemoryTriageStore()


@pytest.fixture
def fake_ai():
    return FakeAIScorer()


@pytest.fixture
def event_sink():
    return RecordingEventSink()


@pytest.fixture
def email_factory():
    return make_email


@pytest.fixture
def failing_ai():
    return FakeAIScorer(fail=True)


@pytest.fixture
def runtime(store):
    """Rule-only runtime installed as the process-wide instance; the pool is not started."""
    from inbox_triage.runtime import build_runtime, set_runtime

    triage_runtime = build_runtime(store, use_ai=False)
    set_runtime(triage_runtime)
    yield triage_runtime
    set_runtime(None)


@pytest.fixture
def authed_app(apply_auth_override):
    from inbox_triage.main import app

    apply_auth_override(app)
    yield app
    app.dependency_overrides.clear()
