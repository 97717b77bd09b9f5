"""In-process job storage for local development and tests.

Same semantics as ``PostgresJobStore``; jobs live in a dict guarded by an
``asyncio.Lock`` and vanish with the process. Only usable when the API and
the worker pools share one event loop (``TC_EMBEDDED_WORKERS=true``).
"""

from __future__ import annotations

import asyncio
import copy
import itertools
import uuid
from collections.abc import Callable, Mapping
from datetime import UTC, datetime, timedelta
from typing import Any

from taxcredit_service.queue.store import JobStore
from taxcredit_service.queue.types import (
    ACTIVE,
    COMPLETED,
    DELAYED,
    FAILED,
    JOB_STATES,
    STALLED_ERROR,
    WAITING,
    Job,
    JobOptions,
)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class MemoryJobStore(JobStore):
    def __init__(self, *, now: Callable[[], datetime] = _utcnow) -> None:
        self._now = now
        self._jobs: dict[str, Job] = {}
        self._seq: dict[str, int] = {}
        self._counter = itertools.count()
        self._lock = asyncio.Lock()

    def _snapshot(self, job: Job) -> Job:
        return copy.deepcopy(job)

    def _owned(self, job_id: str, worker_id: str) -> Job | None:
        job = self._jobs.get(job_id)
        if job is None or job.state != ACTIVE or job.locked_by != worker_id:
            return None
        return job

    async def add(self, queue: str, data: Mapping[str, Any], opts: JobOptions) -> Job:
        now = self._now()
        job = Job(
            id=str(uuid.uuid4()),
            queue=queue,
            data=copy.deepcopy(dict(data)),
            priority=opts.priority,
            state=WAITING,
            max_attempts=opts.attempts,
            backoff_seconds=opts.backoff_seconds,
            timeout_seconds=opts.timeout_seconds,
            remove_on_complete=opts.remove_on_complete,
            available_at=now,
            created_at=now,
        )
        async with self._lock:
            self._jobs[job.id] = job
            self._seq[job.id] = next(self._counter)
        return self._snapshot(job)

    async def get(self, job_id: str) -> Job | None:
        job = self._jobs.get(job_id)
        return self._snapshot(job) if job else None

    async def claim(self, queue: str, *, worker_id: str, lock_seconds: float) -> Job | None:
        async with self._lock:
            now = self._now()
            runnable = [
                j
                for j in self._jobs.values()
                if j.queue == queue and j.state in (WAITING, DELAYED) and j.available_at <= now
            ]
            if not runnable:
                return None
            job = min(runnable, key=lambda j: (j.priority, j.available_at, self._seq[j.id]))
            job.state = ACTIVE
            job.attempts_made += 1
            job.locked_by = worker_id
            job.lock_expires_at = now + timedelta(seconds=lock_seconds)
            job.started_at = now
            return self._snapshot(job)

    async def extend_lock(self, job_id: str, *, worker_id: str, lock_seconds: float) -> bool:
        async with self._lock:
            job = self._owned(job_id, worker_id)
            if job is None:
                return False
            job.lock_expires_at = self._now() + timedelta(seconds=lock_seconds)
            return True

    async def complete(self, job_id: str, *, worker_id: str, result: Any) -> bool:
        async with self._lock:
            job = self._owned(job_id, worker_id)
            if job is None:
                return False
            if job.remove_on_complete:
                del self._jobs[job_id]
                self._seq.pop(job_id, None)
                return True
            job.state = COMPLETED
            job.result = copy.deepcopy(result)
            job.finished_at = self._now()
            job.locked_by = None
            job.lock_expires_at = None
            return True

    async def retry_later(
        self, job_id: str, *, worker_id: str, error: str, delay_seconds: float
    ) -> bool:
        async with self._lock:
            job = self._owned(job_id, worker_id)
            if job is None:
                return False
            job.state = DELAYED
            job.available_at = self._now() + timedelta(seconds=delay_seconds)
            job.last_error = error
            job.locked_by = None
            job.lock_expires_at = None
            return True

    async def fail(self, job_id: str, *, worker_id: str, error: str) -> bool:
        async with self._lock:
            job = self._owned(job_id, worker_id)
            if job is None:
                return False
            job.state = FAILED
            job.last_error = error
            job.finished_at = self._now()
            job.locked_by = None
            job.lock_expires_at = None
            return True

    async def recover_stalled(
        self, queue: str, *, max_stalled_count: int
    ) -> tuple[list[Job], list[Job]]:
        requeued: list[Job] = []
        failed: list[Job] = []
        async with self._lock:
            now = self._now()
            for job in self._jobs.values():
                if job.queue != queue or job.state != ACTIVE:
                    continue
                if job.lock_expires_at is None or job.lock_expires_at >= now:
                    continue
                if job.stalled_count < max_stalled_count:
                    job.state = WAITING
                    job.attempts_made = max(job.attempts_made - 1, 0)
                    job.available_at = now
                    requeued.append(job)
                else:
                    job.state = FAILED
                    job.last_error = STALLED_ERROR
                    job.finished_at = now
                    failed.append(job)
                job.stalled_count += 1
                job.locked_by = None
                job.lock_expires_at = None
            return (
                [self._snapshot(j) for j in requeued],
                [self._snapshot(j) for j in failed],
            )

    async def clean(self, queue: str, *, state: str, older_than_seconds: float) -> int:
        if state not in (COMPLETED, FAILED):
            raise ValueError(f"Only finished jobs can be cleaned, got state={state!r}")
        async with self._lock:
            cutoff = self._now() - timedelta(seconds=older_than_seconds)
            stale = [
                j.id
                for j in self._jobs.values()
                if j.queue == queue
                and j.state == state
                and j.finished_at is not None
                and j.finished_at < cutoff
            ]
            for job_id in stale:
                del self._jobs[job_id]
                self._seq.pop(job_id, None)
            return len(stale)

    async def counts(self, queue: str) -> dict[str, int]:
        out = {s: 0 for s in JOB_STATES}
        for job in self._jobs.values():
            if job.queue == queue:
                out[job.state] += 1
        return out

    async def remove_pending(self, queue: str, *, key: str, value: str) -> list[Job]:
        async with self._lock:
            removed = [
                j
                for j in self._jobs.values()
                if j.queue == queue
                and j.state in (WAITING, DELAYED)
                and str(j.data.get(key)) == value
            ]
            for job in removed:
                del self._jobs[job.id]
                self._seq.pop(job.id, None)
            return removed
