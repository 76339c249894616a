import asyncio

import pytest

from inbox_triage.errors import QueueNotInitializedError
from inbox_triage.jobs import queue_worker_job, reprocess_job, worker
from inbox_triage.runtime import build_runtime, get_runtime


@pytest.mark.asyncio
async def test_run_worker_runs_job(monkeypatch):
    called = {"ok": False}

    async def dummy_job():
        called["ok"] = True

    monkeypatch.setitem(worker.JOB_REGISTRY, "dummy", dummy_job)

    await worker.run_worker("dummy")

    assert called["ok"] is True


@pytest.mark.asyncio
async def test_run_worker_unknown_job():
    with pytest.raises(ValueError):
        await worker.run_worker("missing")


def test_resolve_job_name_from_env(monkeypatch):
    monkeypatch.setattr(worker.sys, "argv", ["worker"])
    monkeypatch.setenv("WORKER_JOB", " Reprocess ")

    assert worker._resolve_job_name() == "reprocess"


@pytest.mark.asyncio
async def test_reprocess_job_without_users(monkeypatch):
    monkeypatch.delenv("REPROCESS_USER_IDS", raising=False)

    assert await reprocess_job.run_reprocess_job() == {}


@pytest.mark.asyncio
async def test_reprocess_job_scores_each_user(monkeypatch, store, email_factory):
    store.add_email(email_factory("e1", "user-a"))
    store.add_email(email_factory("e2", "user-b"))
    monkeypatch.setattr(reprocess_job.settings, "SUPABASE_DB_URL", None)
    monkeypatch.setattr(reprocess_job, "build_runtime", lambda: build_runtime(store, use_ai=False))
    monkeypatch.setenv("REPROCESS_USER_IDS", "user-a, user-b")

    summaries = await reprocess_job.run_reprocess_job()

    assert set(summaries) == {"user-a", "user-b"}
    assert summaries["user-a"]["processed"] == 1
    assert "results" not in summaries["user-a"]
    assert set(store.scores) == {"e1", "e2"}


@pytest.mark.asyncio
async def test_queue_worker_starts_and_stops(monkeypatch, store):
    monkeypatch.setattr(queue_worker_job.settings, "SUPABASE_DB_URL", None)
    monkeypatch.setattr(
        queue_worker_job, "build_runtime", lambda: build_runtime(store, use_ai=False)
    )
    stop = asyncio.Event()
    task = asyncio.create_task(queue_worker_job.start_triage_queue_worker(stop))

    for _ in range(50):
        await asyncio.sleep(0.01)
        try:
            running = get_runtime()
            break
        except QueueNotInitializedError:
            continue
    assert running.pool.is_running is True

    stop.set()
    await asyncio.wait_for(task, timeout=5)

    assert running.pool.is_running is False
    with pytest.raises(QueueNotInitializedError):
        get_runtime()
