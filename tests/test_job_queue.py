"""
test_job_queue.py — Tests for the persistent background job queue.

Covers:
    • Submit → run → delete on success
    • Retry with exponential backoff, failure after max attempts
    • Recovery of persisted jobs after a restart
    • stop() leaves unfinished jobs in the store
    • Finished-job pruning and store outages

Run with:
    pytest tests/test_job_queue.py -v
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List

import pytest

from backend.app.core.errors import StoreFailure
from backend.app.safety.jobs import BackgroundJobQueue, Job, JobStatus


async def no_sleep(_seconds: float) -> None:
    await asyncio.sleep(0)


async def sleep_forever(_seconds: float) -> None:
    await asyncio.Event().wait()


class Recorder:
    """Handler that fails its first ``failures`` calls."""

    def __init__(self, failures: int = 0):
        self.failures = failures
        self.payloads: List[Dict[str, Any]] = []

    async def __call__(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        self.payloads.append(payload)
        if len(self.payloads) <= self.failures:
            raise RuntimeError(f"boom #{len(self.payloads)}")
        return {"ok": True}


def _make_queue(store, clock, sleep=no_sleep, **kwargs) -> BackgroundJobQueue:
    return BackgroundJobQueue(store, clock=clock, sleep=sleep, **kwargs)


class TestSubmit:

    @pytest.mark.asyncio
    async def test_runs_and_deletes(self, store, clock):
        queue = _make_queue(store, clock)
        handler = Recorder()
        queue.register("demo", handler)

        task_id = await queue.submit("demo", {"n": 1})
        await queue.drain()

        assert handler.payloads == [{"n": 1}]
        job = queue.get_progress(task_id)
        assert job.status == JobStatus.COMPLETED
        assert job.result == {"ok": True}
        assert await store.list_jobs() == []

    @pytest.mark.asyncio
    async def test_persisted_before_running(self, store, clock):
        queue = _make_queue(store, clock, sleep=sleep_forever)
        queue.register("demo", Recorder())

        task_id = await queue.submit("demo", {"n": 1}, delay_seconds=30)

        stored = await store.list_jobs()
        assert [j["task_id"] for j in stored] == [task_id]
        assert stored[0]["status"] == "pending"
        await queue.stop()

    @pytest.mark.asyncio
    async def test_unknown_job_type(self, store, clock):
        queue = _make_queue(store, clock)
        with pytest.raises(ValueError):
            await queue.submit("nope", {})


class TestRetry:

    @pytest.mark.asyncio
    async def test_retries_with_backoff(self, store, clock):
        sleeps: List[float] = []

        async def record_sleep(seconds: float) -> None:
            sleeps.append(seconds)

        queue = _make_queue(store, clock, sleep=record_sleep, retry_backoff_seconds=2.0)
        handler = Recorder(failures=2)
        queue.register("demo", handler)

        task_id = await queue.submit("demo", {})
        await queue.drain()

        assert len(handler.payloads) == 3
        assert sleeps == [2.0, 4.0]
        job = queue.get_progress(task_id)
        assert job.status == JobStatus.COMPLETED
        assert job.attempts == 3

    @pytest.mark.asyncio
    async def test_fails_after_max_attempts(self, store, clock):
        queue = _make_queue(store, clock, max_attempts=3)
        handler = Recorder(failures=10)
        queue.register("demo", handler)

        task_id = await queue.submit("demo", {})
        await queue.drain()

        assert len(handler.payloads) == 3
        job = queue.get_progress(task_id)
        assert job.status == JobStatus.FAILED
        assert job.last_error == "boom #3"
        stored = await store.list_jobs()
        assert stored[0]["status"] == "failed"
        assert queue.list_jobs(JobStatus.FAILED) == [job]


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_stop_then_recover(self, store, clock):
        first = _make_queue(store, clock, sleep=sleep_forever)
        first.register("demo", Recorder())
        task_id = await first.submit("demo", {"alert_id": "SOS-1"}, delay_seconds=5)
        await first.stop()
        assert first.in_flight == 0

        second = _make_queue(store, clock)
        handler = Recorder()
        second.register("demo", handler)

        assert await second.recover() == 1
        await second.drain()

        assert handler.payloads == [{"alert_id": "SOS-1"}]
        assert second.get_progress(task_id).status == JobStatus.COMPLETED
        assert await store.list_jobs() == []

    @pytest.mark.asyncio
    async def test_recover_reruns_interrupted_job(self, store, clock):
        interrupted = Job(
            task_id="JOB-CRASHED", job_type="demo", payload={"n": 2},
            run_at=clock(), status=JobStatus.RUNNING, attempts=1,
        )
        await store.save_job(interrupted.task_id, interrupted.to_dict())
        done = Job(
            task_id="JOB-DONE", job_type="demo", payload={}, run_at=clock(),
            status=JobStatus.FAILED, attempts=5,
        )
        await store.save_job(done.task_id, done.to_dict())

        queue = _make_queue(store, clock)
        handler = Recorder()
        queue.register("demo", handler)

        assert await queue.recover() == 1
        await queue.drain()
        assert handler.payloads == [{"n": 2}]
        assert queue.get_progress("JOB-CRASHED").attempts == 2

    @pytest.mark.asyncio
    async def test_recovered_job_without_handler_fails(self, store, clock):
        orphan = Job(task_id="JOB-ORPHAN", job_type="retired", payload={}, run_at=clock())
        await store.save_job(orphan.task_id, orphan.to_dict())

        queue = _make_queue(store, clock)
        await queue.recover()
        await queue.drain()

        assert queue.get_progress("JOB-ORPHAN").status == JobStatus.FAILED
        assert (await store.list_jobs())[0]["status"] == "failed"

    @pytest.mark.asyncio
    async def test_cleanup_old_jobs(self, store, clock):
        queue = _make_queue(store, clock)
        queue.register("demo", Recorder())
        await queue.submit("demo", {})
        await queue.drain()

        assert queue.cleanup_old_jobs(max_age_hours=24) == 0
        clock.advance(25 * 3600)
        assert queue.cleanup_old_jobs(max_age_hours=24) == 1
        assert queue.list_jobs() == []

    @pytest.mark.asyncio
    async def test_finished_jobs_pruned_on_submit(self, store, clock):
        queue = _make_queue(store, clock, max_finished=3)
        queue.register("demo", Recorder())

        for _ in range(10):
            await queue.submit("demo", {})
            await queue.drain()

        assert len(queue.list_jobs(JobStatus.COMPLETED)) == 4

    @pytest.mark.asyncio
    async def test_expired_jobs_pruned_on_submit(self, store, clock):
        queue = _make_queue(store, clock, retention_hours=1)
        queue.register("demo", Recorder())
        old = await queue.submit("demo", {})
        await queue.drain()

        clock.advance(2 * 3600)
        new = await queue.submit("demo", {})
        await queue.drain()

        assert queue.get_progress(old) is None
        assert queue.get_progress(new).status == JobStatus.COMPLETED


class TestStoreOutage:

    @pytest.mark.asyncio
    async def test_runs_when_job_cannot_be_saved(self, store, clock, monkeypatch):
        async def broken_save_job(task_id, data):
            raise StoreFailure("save_job", "disk full")

        monkeypatch.setattr(store, "save_job", broken_save_job)
        queue = _make_queue(store, clock)
        handler = Recorder(failures=1)
        queue.register("demo", handler)

        task_id = await queue.submit("demo", {"alert_id": "SOS-1"})
        await queue.drain()

        assert handler.payloads == [{"alert_id": "SOS-1"}, {"alert_id": "SOS-1"}]
        assert queue.get_progress(task_id).status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_delete_failure_after_success(self, store, clock, monkeypatch):
        async def broken_delete_job(task_id):
            raise StoreFailure("delete_job", "timeout")

        monkeypatch.setattr(store, "delete_job", broken_delete_job)
        queue = _make_queue(store, clock)
        queue.register("demo", Recorder())

        task_id = await queue.submit("demo", {})
        await queue.drain()

        assert queue.get_progress(task_id).status == JobStatus.COMPLETED
