import asyncio
from dataclasses import replace
from datetime import timedelta

import pytest

from inbox_triage.rules.engine import RulesEngine
from inbox_triage.triage.budget import DailyCostBudget
from inbox_triage.triage.domain import BatchState, Tier
from inbox_triage.triage.pipeline import BatchTriagePipeline, blend_scores
from inbox_triage.triage.processing_config import ProcessingConfig, ProcessingConfigService

# Budget for four calls at five cents each
TIGHT_BUDGET = ProcessingConfig(
    max_batch_size=10,
    ai_threshold=60,
    cost_budget_cents=20,
    estimated_cost_per_call=5,
    max_cost_per_email=10,
    process_urgent_immediately=False,
    process_vip_immediately=False,
)


class GatedSleep:
    """Stands in for asyncio.sleep; returns only once released."""

    def __init__(self):
        self.delays: list[float] = []
        self.release = asyncio.Event()

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await self.release.wait()


def _important_emails(email_factory, count: int, user_id: str = "user-123"):
    # important + starred + unread = 75 before recency
    return [
        email_factory(
            f"email-{i}", user_id, is_important=True, is_starred=True, is_unread=True
        )
        for i in range(count)
    ]


def _pipeline(store, ai, manual_clock, config=TIGHT_BUDGET, **kwargs):
    return BatchTriagePipeline(
        store,
        ai_scorer=ai,
        config=config,
        budget=DailyCostBudget(clock=manual_clock),
        clock=manual_clock,
        **kwargs,
    )


def test_blend_scores():
    config = ProcessingConfig()

    assert blend_scores(75, None, config) == 75
    assert blend_scores(75, 8, config) == 77
    assert blend_scores(100, 10, config) == 100


@pytest.mark.asyncio
async def test_budget_caps_ai_calls_and_rest_stay_rule_only(
    store, fake_ai, manual_clock, email_factory
):
    pipeline = _pipeline(store, fake_ai, manual_clock)
    emails = _important_emails(email_factory, 10)
    for email in emails:
        store.add_email(email)

    results = [await pipeline.add_email(email) for email in emails]

    batch = results[-1]
    assert all(r is None for r in results[:-1])
    assert batch.state == BatchState.DONE
    assert batch.processed == 10
    assert batch.ai_calls == 4
    assert batch.cost_cents == 20
    assert len(fake_ai.scored) == 4
    assert sum(1 for r in batch.results if r.used_ai) == 4
    rule_only = [r for r in batch.results if not r.used_ai]
    assert all(r.final_score == r.rule_score == 75 for r in rule_only)
    assert len(store.scores) == 10
    assert len(store.feed_items) == 10

    # Budget is spent for the day
    again = await pipeline._process_batch(emails[:2])
    assert again.ai_calls == 0


@pytest.mark.asyncio
async def test_emails_below_threshold_skip_ai(store, fake_ai, manual_clock, email_factory):
    pipeline = _pipeline(store, fake_ai, manual_clock)
    quiet = email_factory("quiet")
    store.add_email(quiet)

    await pipeline.add_email(quiet)
    batch = await pipeline.flush()

    assert batch.processed == 1
    assert batch.ai_calls == 0
    assert fake_ai.scored == []
    assert batch.results[0].tier == Tier.LOW


@pytest.mark.asyncio
async def test_ai_outage_degrades_to_rule_scores(store, failing_ai, manual_clock, email_factory):
    pipeline = _pipeline(store, failing_ai, manual_clock)
    emails = _important_emails(email_factory, 3)

    batch = await pipeline._process_batch(emails)

    assert batch.processed == 3
    assert batch.errors == []
    for result in batch.results:
        assert result.ai_score is None
        assert result.final_score == result.rule_score
        assert result.error.startswith("AI scoring failed")


@pytest.mark.asyncio
async def test_persistence_failure_is_isolated(store, fake_ai, manual_clock, email_factory):
    pipeline = _pipeline(store, fake_ai, manual_clock)
    emails = _important_emails(email_factory, 3)
    original = store.upsert_score

    async def flaky_upsert(result):
        if result.email_id == "email-1":
            raise RuntimeError("write failed")
        await original(result)

    store.upsert_score = flaky_upsert

    batch = await pipeline._process_batch(emails)

    assert batch.processed == 2
    assert [(e.email_id, e.stage) for e in batch.errors] == [("email-1", "persist")]
    assert set(store.scores) == {"email-0", "email-2"}


@pytest.mark.asyncio
async def test_urgent_email_is_processed_immediately(store, fake_ai, manual_clock, email_factory):
    config = ProcessingConfig(process_urgent_immediately=True)
    pipeline = _pipeline(store, fake_ai, manual_clock, config=config)

    batch = await pipeline.add_email(email_factory("urgent", subject="URGENT: server down"))

    assert batch is not None
    assert batch.processed == 1
    assert batch.ai_calls == 1
    assert pipeline.pending_count == 0


@pytest.mark.asyncio
async def test_skip_marketing_emails_excludes_them_from_ai(
    store, fake_ai, manual_clock, email_factory
):
    config = ProcessingConfig(ai_threshold=0, skip_marketing_emails=True)
    pipeline = _pipeline(store, fake_ai, manual_clock, config=config)
    promo = email_factory("promo", subject="Weekly newsletter", is_important=True)
    normal = email_factory("normal", is_important=True)

    batch = await pipeline._process_batch([promo, normal])

    assert fake_ai.scored == ["normal"]
    assert batch.ai_calls == 1


@pytest.mark.asyncio
async def test_rules_run_after_persist_and_events_published(
    store, fake_ai, manual_clock, email_factory, event_sink
):
    engine = RulesEngine(store, event_sink=event_sink)
    await engine.create_rule(
        "user-123",
        {
            "name": "Label high",
            "trigger_type": "score_threshold",
            "trigger_value": 50,
            "action_type": "add_label",
            "action_value": "important-ish",
        },
    )
    pipeline = _pipeline(store, fake_ai, manual_clock, rules_engine=engine, event_sink=event_sink)
    emails = _important_emails(email_factory, 2)
    for email in emails:
        store.add_email(email)

    await pipeline._process_batch(emails)

    assert store.emails["email-0"].labels == ["important-ish"]
    assert event_sink.topics().count("rules.applied") == 2
    assert event_sink.topics()[-1] == "batch.completed"


@pytest.mark.asyncio
async def test_reprocess_uses_recent_window(store, fake_ai, manual_clock, email_factory):
    pipeline = _pipeline(store, fake_ai, manual_clock)
    store.add_email(email_factory("recent", received_at=manual_clock.now - timedelta(days=1)))
    store.add_email(email_factory("old", received_at=manual_clock.now - timedelta(days=30)))
    store.add_email(email_factory("other-user", "user-999", received_at=manual_clock.now))

    batch = await pipeline.reprocess_emails("user-123")

    assert [r.email_id for r in batch.results] == ["recent"]


@pytest.mark.asyncio
async def test_reprocess_fetch_failure_is_reported(store, fake_ai, manual_clock):
    pipeline = _pipeline(store, fake_ai, manual_clock)

    async def broken(subject_id, email_ids):
        raise RuntimeError("db down")

    store.get_emails = broken

    batch = await pipeline.reprocess_emails("user-123", email_ids=["a", "b"])

    assert batch.processed == 0
    assert batch.errors[0].stage == "fetch"


@pytest.mark.asyncio
async def test_processing_stats(store, fake_ai, manual_clock, email_factory):
    pipeline = _pipeline(store, fake_ai, manual_clock)
    await pipeline._process_batch(_important_emails(email_factory, 5) + [email_factory("quiet")])

    stats = await pipeline.processing_stats("user-123")

    assert stats["total_processed"] == 6
    assert stats["ai_processed"] == 4
    assert stats["total_cost_cents"] == 20
    assert sum(stats["tier_distribution"].values()) == 6
    assert stats["budget"]["remaining_cents"] == 0


@pytest.mark.asyncio
async def test_feed_item_failure_leaves_no_score_row(store, fake_ai, manual_clock, email_factory):
    pipeline = _pipeline(store, fake_ai, manual_clock)
    emails = _important_emails(email_factory, 2)

    async def broken_feed(email, result):
        raise RuntimeError("feed write failed")

    store.upsert_feed_item = broken_feed

    batch = await pipeline._process_batch(emails)

    assert batch.processed == 0
    assert [e.stage for e in batch.errors] == ["persist", "persist"]
    assert store.scores == {}
    assert store.feed_items == {}


@pytest.mark.asyncio
async def test_wait_timer_flushes_partial_batch(store, fake_ai, manual_clock, email_factory):
    sleep = GatedSleep()
    config = replace(TIGHT_BUDGET, max_wait_time_ms=2000)
    pipeline = _pipeline(store, fake_ai, manual_clock, config=config, sleep=sleep)
    email = store.add_email(email_factory("waiting"))

    assert await pipeline.add_email(email) is None
    timer = pipeline._timers["user-123"]
    await asyncio.sleep(0)

    assert sleep.delays == [2.0]
    assert pipeline.health()["flush_scheduled"] is True
    assert store.scores == {}

    sleep.release.set()
    await timer

    assert pipeline.pending_count == 0
    assert "waiting" in store.scores
    assert pipeline.health()["flush_scheduled"] is False


@pytest.mark.asyncio
async def test_full_batch_cancels_wait_timer(store, fake_ai, manual_clock, email_factory):
    config = replace(TIGHT_BUDGET, max_batch_size=2)
    pipeline = _pipeline(store, fake_ai, manual_clock, config=config, sleep=GatedSleep())
    first, second = _important_emails(email_factory, 2)

    assert await pipeline.add_email(first) is None
    timer = pipeline._timers["user-123"]
    batch = await pipeline.add_email(second)

    assert batch.processed == 2
    with pytest.raises(asyncio.CancelledError):
        await timer
    assert pipeline.health()["flush_scheduled"] is False


@pytest.mark.asyncio
async def test_subject_batch_size_override(store, fake_ai, manual_clock, email_factory):
    config_service = ProcessingConfigService(store, TIGHT_BUDGET)
    await config_service.update_config("user-123", {"max_batch_size": 2})
    pipeline = _pipeline(
        store, fake_ai, manual_clock, config_service=config_service, sleep=GatedSleep()
    )
    first, second = _important_emails(email_factory, 2)
    other = email_factory("other", "user-999")

    assert await pipeline.add_email(first) is None
    assert await pipeline.add_email(other) is None
    batch = await pipeline.add_email(second)

    assert batch is not None
    assert [r.email_id for r in batch.results] == ["email-0", "email-1"]
    # user-999 keeps the default batch size of 10
    assert pipeline.pending_count == 1

    rest = await pipeline.flush()
    assert [r.email_id for r in rest.results] == ["other"]
    assert pipeline.health()["flush_scheduled"] is False
