import pytest

from inbox_triage.errors import RuleValidationError
from inbox_triage.rules.engine import RulesEngine, evaluate_trigger
from inbox_triage.rules.models import AutomationRule
from inbox_triage.triage.domain import ScoredEmail, ScoringResult, Tier
from inbox_triage.triage.processing_config import ProcessingConfigService


def _scored(email, final_score: int = 50, tier: Tier = Tier.MEDIUM) -> ScoredEmail:
    return ScoredEmail(
        email=email,
        result=ScoringResult(
            email_id=email.id,
            subject_id=email.user_id,
            rule_score=final_score,
            final_score=final_score,
            tier=tier,
        ),
    )


def _rule(**fields) -> AutomationRule:
    return AutomationRule(user_id="user-123", name="test rule", **fields)


class FakeTicker:
    def __init__(self):
        self.value = 0.0

    def __call__(self) -> float:
        return self.value


@pytest.fixture
def engine(store, event_sink):
    return RulesEngine(store, event_sink=event_sink)


@pytest.mark.asyncio
async def test_subject_contains_rule_labels_and_counts(engine, store, email_factory):
    email = store.add_email(email_factory("e1", subject="Invoice #4521 from Acme"))
    rule = await engine.create_rule(
        "user-123",
        {
            "name": "Invoices",
            "trigger_type": "subject_contains",
            "trigger_value": "invoice",
            "action_type": "add_label",
            "action_value": "finance",
        },
    )

    application = await engine.apply_rules("user-123", _scored(email))

    assert application.applied_actions == ["add_label"]
    assert application.errors == []
    assert store.emails["e1"].labels == ["finance"]
    assert store.rules[rule.id]["execution_count"] == 1
    assert store.rules[rule.id]["last_executed"] is not None


@pytest.mark.asyncio
async def test_non_matching_rule_does_nothing(engine, store, email_factory, event_sink):
    email = store.add_email(email_factory("e1", subject="Lunch?"))
    rule = await engine.create_rule(
        "user-123",
        {
            "name": "Invoices",
            "trigger_type": "subject_contains",
            "trigger_value": "invoice",
            "action_type": "archive",
        },
    )

    application = await engine.apply_rules("user-123", _scored(email))

    assert application.applied_actions == []
    assert store.rules[rule.id]["execution_count"] == 0
    assert event_sink.events == []


@pytest.mark.asyncio
async def test_forward_is_deduplicated_across_runs(engine, store, email_factory):
    email = store.add_email(email_factory("e1", from_email="boss@company.com"))
    await engine.create_rule(
        "user-123",
        {
            "name": "Forward boss",
            "trigger_type": "sender_email",
            "trigger_value": "BOSS@company.com",
            "action_type": "forward_to",
            "action_value": "assistant@company.com",
        },
    )

    first = await engine.apply_rules("user-123", _scored(email))
    second = await engine.apply_rules("user-123", _scored(email))

    assert first.results[0]["forward_queued"] is True
    assert second.results[0]["forward_queued"] is False
    assert len(store.pending_actions) == 1
    assert store.pending_actions[0].action_data == {"to": "assistant@company.com"}


@pytest.mark.asyncio
async def test_rules_run_in_ascending_priority(engine, store, email_factory):
    email = store.add_email(email_factory("e1", subject="urgent invoice"))
    for name, priority, label in (("late", 20, "second"), ("early", 1, "first"), ("tie", 20, "third")):
        await engine.create_rule(
            "user-123",
            {
                "name": name,
                "priority": priority,
                "trigger_type": "subject_contains",
                "trigger_value": "invoice",
                "action_type": "add_label",
                "action_value": label,
            },
        )

    await engine.apply_rules("user-123", _scored(email))

    assert store.emails["e1"].labels == ["first", "second", "third"]


@pytest.mark.asyncio
async def test_invalid_stored_rows_are_skipped(engine, store, email_factory):
    email = store.add_email(email_factory("e1", subject="invoice"))
    store.rules["broken"] = {
        "id": "broken",
        "user_id": "user-123",
        "name": "bad regex",
        "trigger_type": "subject_regex",
        "trigger_value": "([",
        "action_type": "archive",
    }
    await engine.create_rule(
        "user-123",
        {
            "name": "ok",
            "trigger_type": "subject_contains",
            "trigger_value": "invoice",
            "action_type": "mark_read",
        },
    )

    rules = await engine.load_rules("user-123")
    application = await engine.apply_rules("user-123", _scored(email))

    assert [r.name for r in rules] == ["ok"]
    assert application.applied_actions == ["mark_read"]


@pytest.mark.asyncio
async def test_failing_rule_does_not_stop_others(engine, store, email_factory):
    email = store.add_email(email_factory("e1", subject="invoice"))
    await engine.create_rule(
        "user-123",
        {
            "name": "tier",
            "priority": 1,
            "trigger_type": "subject_contains",
            "trigger_value": "invoice",
            "action_type": "set_tier",
            "action_value": "high",
        },
    )
    await engine.create_rule(
        "user-123",
        {
            "name": "label",
            "priority": 2,
            "trigger_type": "subject_contains",
            "trigger_value": "invoice",
            "action_type": "add_label",
            "action_value": "finance",
        },
    )

    async def broken(email_id, tier):
        raise RuntimeError("db down")

    store.update_score_tier = broken

    application = await engine.apply_rules("user-123", _scored(email))

    assert application.applied_actions == ["add_label"]
    assert len(application.errors) == 1


@pytest.mark.asyncio
async def test_cache_is_invalidated_on_mutation(store, email_factory):
    ticker = FakeTicker()
    engine = RulesEngine(store, cache_ttl_seconds=60, clock=ticker)
    assert await engine.load_rules("user-123") == []

    # Direct store writes are not seen until the TTL expires
    store.rules["manual"] = _rule(
        id="manual", trigger_type="is_unread", trigger_value=True, action_type="mark_read"
    ).model_dump()
    assert await engine.load_rules("user-123") == []
    ticker.value = 61
    assert len(await engine.load_rules("user-123")) == 1

    await engine.delete_rule("user-123", "manual")
    assert await engine.load_rules("user-123") == []


@pytest.mark.asyncio
async def test_subject_cache_ttl_overrides_default(store):
    ticker = FakeTicker()
    config_service = ProcessingConfigService(store)
    await config_service.update_config("user-123", {"cache_ttl_ms": 600000})
    engine = RulesEngine(store, cache_ttl_seconds=60, clock=ticker, config_service=config_service)
    assert await engine.load_rules("user-123") == []

    store.rules["manual"] = _rule(
        id="manual", trigger_type="is_unread", trigger_value=True, action_type="mark_read"
    ).model_dump()
    ticker.value = 120
    assert await engine.load_rules("user-123") == []
    ticker.value = 601
    assert len(await engine.load_rules("user-123")) == 1


@pytest.mark.asyncio
async def test_notify_publishes_event(engine, store, email_factory, event_sink):
    email = store.add_email(email_factory("e1"))
    await engine.create_rule(
        "user-123",
        {
            "name": "alert",
            "trigger_type": "score_threshold",
            "trigger_value": 90,
            "action_type": "notify",
            "action_value": "Look at this",
        },
    )

    await engine.apply_rules("user-123", _scored(email, final_score=95, tier=Tier.HIGH))

    assert event_sink.topics() == ["notification", "rule.executed", "rules.applied"]
    assert event_sink.events[0].payload["message"] == "Look at this"
    assert event_sink.events[0].subject_id == "user-123"


@pytest.mark.asyncio
async def test_create_rejects_malformed_rules(engine):
    with pytest.raises(RuleValidationError):
        await engine.create_rule(
            "user-123",
            {
                "name": "bad",
                "trigger_type": "score_threshold",
                "trigger_value": "high",
                "action_type": "archive",
            },
        )

    with pytest.raises(RuleValidationError):
        await engine.create_rule(
            "user-123",
            {
                "name": "bad forward",
                "trigger_type": "is_unread",
                "trigger_value": True,
                "action_type": "forward_to",
                "action_value": "not-an-address",
            },
        )


@pytest.mark.asyncio
async def test_update_rule_validates_merged_fields(engine):
    rule = await engine.create_rule(
        "user-123",
        {
            "name": "threshold",
            "trigger_type": "score_threshold",
            "trigger_value": 80,
            "action_type": "set_priority",
            "action_value": 1,
        },
    )

    updated = await engine.update_rule("user-123", rule.id, {"trigger_value": 70, "enabled": False})
    assert updated.trigger_value == 70
    assert updated.enabled is False

    with pytest.raises(RuleValidationError):
        await engine.update_rule("user-123", rule.id, {"action_value": "soon"})

    assert await engine.update_rule("user-999", rule.id, {"name": "stolen"}) is None


def test_evaluate_trigger_operators(email_factory):
    email = email_factory(from_email="alerts@Status.Example.com", has_attachment=True)
    scored = _scored(email, final_score=42, tier=Tier.MEDIUM)

    assert evaluate_trigger(
        _rule(trigger_type="sender_domain", trigger_value="status.example.com", action_type="archive"),
        scored,
    )
    assert evaluate_trigger(
        _rule(
            trigger_type="sender_email",
            trigger_value="^alerts@",
            trigger_operator="regex",
            action_type="archive",
        ),
        scored,
    )
    assert evaluate_trigger(
        _rule(trigger_type="has_attachment", trigger_value="true", action_type="archive"), scored
    )
    assert evaluate_trigger(
        _rule(
            trigger_type="score_threshold",
            trigger_value=50,
            trigger_operator="less_than",
            action_type="archive",
        ),
        scored,
    )
    assert not evaluate_trigger(
        _rule(trigger_type="tier", trigger_value="high", action_type="archive"), scored
    )


def test_templates_are_valid_rules(engine):
    for template in engine.templates():
        fields = {k: v for k, v in template.items() if k != "description"}
        AutomationRule(user_id="user-123", **fields)
