"""
Background job queue for deferred safety work.

═══════════════════════════════════════════════════════════════════════════
DELIVERY GUARANTEE
═══════════════════════════════════════════════════════════════════════════

At-least-once, across restarts:

    submit()  ──▶  persist job (pending)  ──▶  asyncio task
                                                  │ sleep until run_at
                                                  ▼
                                             run handler
                                        ┌─────────┴─────────┐
                                     success              error
                                        │                   │
                                  delete from store    attempts < max ?
                                                     ┌──────┴──────┐
                                                    yes            no
                                                     │              │
                                            backoff, retry     mark failed

    recover()  re-schedules every stored job still pending or running
               (a running job means the process died mid-run)

Handlers must therefore tolerate being run more than once for the same
payload.

═══════════════════════════════════════════════════════════════════════════
JOB TYPES
═══════════════════════════════════════════════════════════════════════════

    sos.enrich   — attach media placeholders, notify trusted contacts
                   (submitted by SOSService.trigger with a short delay)
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from backend.app.core.errors import StoreFailure
from backend.app.store.base import Store

logger = logging.getLogger(__name__)

JobHandler = Callable[[Dict[str, Any]], Awaitable[Optional[Dict[str, Any]]]]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


# ═══════════════════════════════════════════════════════════════════════════
# Job Model
# ═══════════════════════════════════════════════════════════════════════════

class JobStatus(str, Enum):
    """Status of a background job."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class Job:
    """A unit of deferred work and its progress."""
    task_id: str
    job_type: str
    payload: Dict[str, Any]
    run_at: datetime
    status: JobStatus = JobStatus.PENDING
    attempts: int = 0
    created_at: datetime = field(default_factory=_now)
    completed_at: Optional[datetime] = None
    last_error: Optional[str] = None
    result: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "job_type": self.job_type,
            "payload": self.payload,
            "status": self.status.value,
            "attempts": self.attempts,
            "run_at": _iso(self.run_at),
            "created_at": _iso(self.created_at),
            "completed_at": _iso(self.completed_at),
            "last_error": self.last_error,
            "result": self.result,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Job":
        return cls(
            task_id=data["task_id"],
            job_type=data["job_type"],
            payload=dict(data.get("payload", {})),
            run_at=_parse_dt(data["run_at"]),
            status=JobStatus(data.get("status", JobStatus.PENDING.value)),
            attempts=int(data.get("attempts", 0)),
            created_at=_parse_dt(data.get("created_at")) or _now(),
            completed_at=_parse_dt(data.get("completed_at")),
            last_error=data.get("last_error"),
            result=data.get("result"),
        )


# ═══════════════════════════════════════════════════════════════════════════
# Job Queue
# ═══════════════════════════════════════════════════════════════════════════

class BackgroundJobQueue:
    """
    Persists, schedules and retries background jobs.

    Usage:
        queue = BackgroundJobQueue(store)
        queue.register("sos.enrich", sos_service.handle_enrich_job)

        task_id = await queue.submit("sos.enrich", {"alert_id": alert.id}, delay_seconds=1)
        progress = queue.get_progress(task_id)

        await queue.recover()   # at startup
        await queue.drain()     # wait for in-flight jobs
        await queue.stop()      # cancel; unfinished jobs stay pending

    The store copy only serves recover(). When a write to it fails the job
    still runs from memory; it just cannot survive a restart.

    Finished jobs stay visible to get_progress() for ``retention_hours``,
    at most ``max_finished`` of them; older ones are pruned on submit.
    """

    def __init__(
        self,
        store: Store,
        *,
        max_attempts: int = 5,
        retry_backoff_seconds: float = 2.0,
        retention_hours: float = 24.0,
        max_finished: int = 500,
        clock: Callable[[], datetime] = _now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.max_attempts = max(1, max_attempts)
        self.retry_backoff_seconds = retry_backoff_seconds
        self.retention_hours = retention_hours
        self.max_finished = max(0, max_finished)
        self._clock = clock
        self._sleep = sleep
        self._handlers: Dict[str, JobHandler] = {}
        self._jobs: Dict[str, Job] = {}
        self._running_tasks: Dict[str, asyncio.Task] = {}

    def _generate_task_id(self) -> str:
        """Generate unique task ID."""
        return f"JOB-{uuid.uuid4().hex[:12].upper()}"

    def register(self, job_type: str, handler: JobHandler) -> None:
        self._handlers[job_type] = handler

    # ── Inspection ──

    def get_progress(self, task_id: str) -> Optional[Job]:
        """Get progress for a job seen by this process."""
        return self._jobs.get(task_id)

    def list_jobs(self, status: Optional[JobStatus] = None) -> List[Job]:
        """List jobs, optionally filtered by status, newest first."""
        jobs = list(self._jobs.values())
        if status:
            jobs = [j for j in jobs if j.status == status]
        return sorted(jobs, key=lambda j: j.created_at, reverse=True)

    @property
    def in_flight(self) -> int:
        return len(self._running_tasks)

    # ── Submission ──

    async def submit(
        self,
        job_type: str,
        payload: Dict[str, Any],
        *,
        delay_seconds: float = 0.0,
    ) -> str:
        """Persist a job and schedule it. Returns the task id."""
        if job_type not in self._handlers:
            raise ValueError(f"No handler registered for job type: {job_type}")

        now = self._clock()
        job = Job(
            task_id=self._generate_task_id(),
            job_type=job_type,
            payload=dict(payload),
            run_at=now + timedelta(seconds=max(0.0, delay_seconds)),
            created_at=now,
        )
        self.cleanup_old_jobs(self.retention_hours)
        await self._persist(job)
        self._schedule(job)

        logger.debug(
            "Job %s (%s) queued, runs in %.1fs",
            job.task_id, job_type, delay_seconds,
            extra={"task_id": job.task_id, "job_type": job_type},
        )
        return job.task_id

    def _schedule(self, job: Job) -> None:
        self._jobs[job.task_id] = job
        task = asyncio.create_task(self._run(job))
        self._running_tasks[job.task_id] = task
        task.add_done_callback(lambda _t, tid=job.task_id: self._running_tasks.pop(tid, None))

    async def _persist(self, job: Job) -> bool:
        try:
            await self.store.save_job(job.task_id, job.to_dict())
        except StoreFailure as e:
            logger.error(
                "Job %s (%s) not persisted, running from memory only: %s",
                job.task_id, job.job_type, e,
                extra={"task_id": job.task_id, "job_type": job.job_type},
            )
            return False
        return True

    async def _forget(self, job: Job) -> None:
        try:
            await self.store.delete_job(job.task_id)
        except StoreFailure as e:
            # recover() may run it again; handlers tolerate that
            logger.error(
                "Job %s (%s) finished but could not be removed from the store: %s",
                job.task_id, job.job_type, e,
                extra={"task_id": job.task_id, "job_type": job.job_type},
            )

    # ── Execution ──

    async def _run(self, job: Job) -> None:
        handler = self._handlers.get(job.job_type)
        if handler is None:
            job.status = JobStatus.FAILED
            job.last_error = f"No handler registered for job type: {job.job_type}"
            job.completed_at = self._clock()
            await self._persist(job)
            logger.error("Job %s: %s", job.task_id, job.last_error)
            return

        while True:
            delay = (job.run_at - self._clock()).total_seconds()
            if delay > 0:
                await self._sleep(delay)

            job.status = JobStatus.RUNNING
            job.attempts += 1
            await self._persist(job)

            try:
                job.result = await handler(job.payload)
            except Exception as e:
                job.last_error = str(e) or type(e).__name__
                if job.attempts >= self.max_attempts:
                    job.status = JobStatus.FAILED
                    job.completed_at = self._clock()
                    await self._persist(job)
                    logger.exception(
                        "Job %s (%s) failed after %d attempts",
                        job.task_id, job.job_type, job.attempts,
                        extra={"task_id": job.task_id, "job_type": job.job_type},
                    )
                    return

                backoff = self.retry_backoff_seconds * (2 ** (job.attempts - 1))
                job.status = JobStatus.PENDING
                job.run_at = self._clock() + timedelta(seconds=backoff)
                await self._persist(job)
                logger.warning(
                    "Job %s (%s) attempt %d/%d failed: %s; retrying in %.1fs",
                    job.task_id, job.job_type, job.attempts, self.max_attempts,
                    job.last_error, backoff,
                )
                continue

            job.status = JobStatus.COMPLETED
            job.completed_at = self._clock()
            await self._forget(job)
            logger.debug("Job %s (%s) completed", job.task_id, job.job_type)
            return

    # ── Lifecycle ──

    async def recover(self) -> int:
        """Re-schedule stored jobs left pending or running. Returns the count."""
        recovered = 0
        for data in await self.store.list_jobs():
            job = Job.from_dict(data)
            if job.status not in (JobStatus.PENDING, JobStatus.RUNNING):
                continue
            if job.task_id in self._running_tasks:
                continue
            job.status = JobStatus.PENDING
            self._schedule(job)
            recovered += 1

        if recovered:
            logger.info("Recovered %d background job(s)", recovered)
        return recovered

    async def drain(self) -> None:
        """Wait until no job is in flight (including retries and follow-ups)."""
        while self._running_tasks:
            await asyncio.gather(*list(self._running_tasks.values()), return_exceptions=True)

    async def stop(self) -> None:
        """Cancel in-flight jobs; they remain in the store for recover()."""
        tasks = list(self._running_tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._running_tasks.clear()
        logger.info("Background job queue stopped (%d cancelled)", len(tasks))

    def cleanup_old_jobs(self, max_age_hours: float = 24) -> int:
        """
        Forget finished jobs older than ``max_age_hours``, then all but the
        newest ``max_finished``. Returns count removed.
        """
        cutoff = self._clock() - timedelta(hours=max_age_hours)
        finished = sorted(
            (job for job in self._jobs.values()
             if job.status in (JobStatus.COMPLETED, JobStatus.FAILED) and job.completed_at),
            key=lambda j: j.completed_at,
            reverse=True,
        )
        to_remove = [
            job.task_id for rank, job in enumerate(finished)
            if job.completed_at < cutoff or rank >= self.max_finished
        ]
        for task_id in to_remove:
            del self._jobs[task_id]
        return len(to_remove)
