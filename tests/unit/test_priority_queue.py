import threading
from datetime import timedelta

import pytest

from inbox_triage.errors import JobValidationError
from inbox_triage.queue.models import QueueOptions
from inbox_triage.queue.priority_queue import JobQueue
from inbox_triage.queue.types import JobStatus, JobType


def _scoring(email_id: str, user_id: str = "user-123") -> dict:
    return {"user_id": user_id, "email_id": email_id}


@pytest.fixture
def queue(manual_clock):
    return JobQueue(QueueOptions(max_retries=2), clock=manual_clock)


def test_next_eligible_orders_by_priority_then_fifo(queue):
    low = queue.enqueue(JobType.EMAIL_SCORING, _scoring("e1"), priority=1)
    first_mid = queue.enqueue(JobType.EMAIL_SCORING, _scoring("e2"), priority=5)
    high = queue.enqueue(JobType.EMAIL_SCORING, _scoring("e3"), priority=9)
    second_mid = queue.enqueue(JobType.EMAIL_SCORING, _scoring("e4"), priority=5)

    order = []
    while (job := queue.next_eligible()) is not None:
        order.append(job.id)
        queue.claim(job.id)

    assert order == [high, first_mid, second_mid, low]


def test_delayed_job_is_not_eligible_until_due(queue, manual_clock):
    job_id = queue.enqueue(JobType.EMAIL_SCORING, _scoring("e1"), delay_ms=5000)

    assert queue.next_eligible() is None

    manual_clock.advance(seconds=5)
    assert queue.next_eligible().id == job_id


def test_enqueue_rejects_unknown_type_and_bad_payload(queue):
    with pytest.raises(JobValidationError):
        queue.enqueue("send_fax", _scoring("e1"))

    with pytest.raises(JobValidationError) as exc:
        queue.enqueue(JobType.EMAIL_SCORING, {"user_id": "user-123"})
    assert exc.value.recoverable is False

    assert queue.pending_count == 0


def test_enqueue_rejects_subject_payload_mismatch(queue):
    with pytest.raises(JobValidationError):
        queue.enqueue(JobType.EMAIL_SCORING, _scoring("e1"), subject_id="someone-else")


def test_subject_defaults_to_payload_owner(queue):
    job_id = queue.enqueue(JobType.EMAIL_SCORING, _scoring("e1", user_id="user-9"))

    assert queue.get(job_id).subject_id == "user-9"


def test_claim_is_exclusive_across_threads(queue):
    job_id = queue.enqueue(JobType.EMAIL_SCORING, _scoring("e1"))
    barrier = threading.Barrier(8)
    claimed = []

    def contender():
        barrier.wait()
        claimed.append(queue.claim(job_id))

    threads = [threading.Thread(target=contender) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    winners = [job for job in claimed if job is not None]
    assert len(winners) == 1
    assert winners[0].status == JobStatus.PROCESSING
    assert queue.processing_count == 1


def test_requeue_increments_retries_and_keeps_priority(queue, manual_clock):
    job_id = queue.enqueue(JobType.EMAIL_SCORING, _scoring("e1"), priority=7)
    queue.claim(job_id)

    job = queue.requeue(job_id, 2000, "boom")

    assert job.status == JobStatus.PENDING
    assert job.retries == 1
    assert job.priority == 7
    assert job.error == "boom"
    assert job.scheduled_at == manual_clock.now + timedelta(milliseconds=2000)


def test_requeue_without_retries_left_raises(queue):
    job_id = queue.enqueue(JobType.EMAIL_SCORING, _scoring("e1"), max_retries=0)
    queue.claim(job_id)

    with pytest.raises(ValueError):
        queue.requeue(job_id, 1000, "boom")


def test_remove_refuses_processing_jobs(queue):
    pending = queue.enqueue(JobType.EMAIL_SCORING, _scoring("e1"))
    running = queue.enqueue(JobType.EMAIL_SCORING, _scoring("e2"))
    queue.claim(running)

    assert queue.remove(pending) is True
    assert queue.get(pending) is None
    assert queue.remove(running) is False
    assert queue.get(running).status == JobStatus.PROCESSING
    assert queue.remove("missing") is False


def test_retry_readmits_dead_lettered_job(queue):
    job_id = queue.enqueue(JobType.EMAIL_SCORING, _scoring("e1"))
    queue.claim(job_id)
    queue.dead_letter(job_id, "gave up")
    assert [j.id for j in queue.dead_letters()] == [job_id]

    assert queue.retry(job_id) is True

    job = queue.get(job_id)
    assert job.status == JobStatus.PENDING
    assert job.retries == 0
    assert job.error is None
    assert queue.dead_letters() == []


def test_cleanup_keeps_dead_letters_and_recent_jobs(queue, manual_clock):
    done = queue.enqueue(JobType.EMAIL_SCORING, _scoring("e1"))
    failed = queue.enqueue(JobType.EMAIL_SCORING, _scoring("e2"))
    dead = queue.enqueue(JobType.EMAIL_SCORING, _scoring("e3"))
    for job_id in (done, failed, dead):
        queue.claim(job_id)
    queue.complete(done, {"ok": True}, 12.0)
    queue.fail(failed, "bad")
    queue.dead_letter(dead, "exhausted")

    manual_clock.advance(hours=25)
    recent = queue.enqueue(JobType.EMAIL_SCORING, _scoring("e4"))
    queue.claim(recent)
    queue.complete(recent, {"ok": True}, 5.0)

    purged = queue.cleanup(timedelta(hours=24))

    assert purged == 2
    assert queue.get(done) is None
    assert queue.get(failed) is None
    assert queue.get(dead) is not None
    assert queue.get(recent) is not None


def test_stats_counts_partitions_and_error_rate(queue):
    ids = [queue.enqueue(JobType.EMAIL_SCORING, _scoring(f"e{i}")) for i in range(5)]
    for job_id in ids[:4]:
        queue.claim(job_id)
    queue.complete(ids[0], {}, 10.0)
    queue.complete(ids[1], {}, 30.0)
    queue.fail(ids[2], "bad")

    stats = queue.stats(active_workers=1)

    assert stats.pending == 1
    assert stats.processing == 1
    assert stats.completed == 2
    assert stats.failed == 1
    assert stats.total_processed == 3
    assert stats.average_processing_time_ms == 20.0
    assert stats.error_rate == pytest.approx(100 / 3)
    assert stats.active_workers == 1
