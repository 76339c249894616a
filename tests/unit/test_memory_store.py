import pytest

from inbox_triage.triage.domain import ScoringResult, Tier


def _result(final_score: int) -> ScoringResult:
    return ScoringResult(
        email_id="e1",
        subject_id="user-123",
        rule_score=final_score,
        final_score=final_score,
        tier=Tier.LOW,
    )


@pytest.mark.asyncio
async def test_persist_scoring_writes_both_rows(store, email_factory):
    await store.persist_scoring(email_factory("e1"), _result(40))

    assert store.scores["e1"].final_score == 40
    assert store.feed_items["e1"]["final_score"] == 40


@pytest.mark.asyncio
async def test_failed_feed_write_keeps_previous_rows(store, email_factory):
    email = email_factory("e1")
    await store.persist_scoring(email, _result(40))

    async def broken_feed(email, result):
        raise RuntimeError("feed write failed")

    store.upsert_feed_item = broken_feed

    with pytest.raises(RuntimeError):
        await store.persist_scoring(email, _result(90))

    assert store.scores["e1"].final_score == 40
    assert store.feed_items["e1"]["final_score"] == 40


@pytest.mark.asyncio
async def test_failed_first_write_leaves_nothing(store, email_factory):
    async def broken_feed(email, result):
        raise RuntimeError("feed write failed")

    store.upsert_feed_item = broken_feed

    with pytest.raises(RuntimeError):
        await store.persist_scoring(email_factory("e1"), _result(40))

    assert store.scores == {}
    assert store.feed_items == {}
