"""Named work queue over a ``JobStore``.

A ``JobQueue`` is constructed explicitly by the composition root with its
store and default job options (retry budget, backoff, timeout, priority).
``add`` returns a ``JobHandle``: the per-job result channel. Broadcast
notifications go through ``QueueEvents`` instead.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from typing import Any

from taxcredit_service.queue.events import QueueEvents
from taxcredit_service.queue.store import JobStore
from taxcredit_service.queue.types import (
    COMPLETED,
    FAILED,
    JOB_STATES,
    Job,
    JobFailedError,
    JobOptions,
)

logger = logging.getLogger(__name__)

_SECONDS_PER_DAY = 24 * 60 * 60

CANCELLED_ERROR = "job cancelled"


class JobQueue:
    def __init__(
        self,
        name: str,
        store: JobStore,
        *,
        default_options: JobOptions,
        events: QueueEvents | None = None,
    ) -> None:
        self.name = name
        self.store = store
        self.default_options = default_options
        self.events = events or QueueEvents()
        self._wakeup = asyncio.Event()
        self._waiters: dict[str, set[asyncio.Future[Any]]] = {}

    async def add(self, data: Mapping[str, Any], **overrides: Any) -> JobHandle:
        """Enqueue one job; ``overrides`` replace fields of the default options."""
        opts = self.default_options.merged(**overrides)
        job = await self.store.add(self.name, data, opts)
        self._wakeup.set()
        logger.debug("Enqueued job queue=%s job=%s priority=%d", self.name, job.id, opts.priority)
        return JobHandle(self, job.id)

    async def get_job(self, job_id: str) -> Job | None:
        return await self.store.get(job_id)

    async def stats(self) -> dict[str, int]:
        counts = await self.store.counts(self.name)
        out = {state: counts.get(state, 0) for state in JOB_STATES}
        out["total"] = sum(out.values())
        return out

    async def clean_old_jobs(self, *, completed_days: int, failed_days: int) -> dict[str, int]:
        """Drop finished job records past their retention window."""
        removed_completed = await self.store.clean(
            self.name, state=COMPLETED, older_than_seconds=completed_days * _SECONDS_PER_DAY
        )
        removed_failed = await self.store.clean(
            self.name, state=FAILED, older_than_seconds=failed_days * _SECONDS_PER_DAY
        )
        if removed_completed or removed_failed:
            logger.info(
                "Cleaned queue=%s completed=%d failed=%d",
                self.name,
                removed_completed,
                removed_failed,
            )
        return {"completed": removed_completed, "failed": removed_failed}

    async def cancel_pending(self, *, key: str, value: str) -> list[Job]:
        """Remove jobs not yet started whose payload ``key`` equals ``value``."""
        removed = await self.store.remove_pending(self.name, key=key, value=value)
        for job in removed:
            self.settle(job.id, error=CANCELLED_ERROR)
        if removed:
            logger.info("Cancelled %d pending job(s) queue=%s %s=%s", len(removed), self.name, key, value)
        return removed

    async def wait_for_work(self, timeout: float) -> None:
        """Sleep until a job is added locally or ``timeout`` elapses."""
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout)
        except TimeoutError:
            return
        self._wakeup.clear()

    def notify(self) -> None:
        self._wakeup.set()

    def settle(self, job_id: str, *, result: Any = None, error: str | None = None) -> None:
        """Resolve in-process waiters of ``job_id``."""
        for fut in self._waiters.pop(job_id, set()):
            if fut.done():
                continue
            if error is not None:
                fut.set_exception(JobFailedError(job_id, error))
            else:
                fut.set_result(result)

    def _register_waiter(self, job_id: str) -> asyncio.Future[Any]:
        fut: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._waiters.setdefault(job_id, set()).add(fut)
        return fut

    def _discard_waiter(self, job_id: str, fut: asyncio.Future[Any]) -> None:
        waiters = self._waiters.get(job_id)
        if waiters is None:
            return
        waiters.discard(fut)
        if not waiters:
            del self._waiters[job_id]


class JobHandle:
    """Result channel for one enqueued job."""

    def __init__(self, queue: JobQueue, job_id: str) -> None:
        self._queue = queue
        self.id = job_id

    async def wait(self, timeout: float | None = None, *, poll_seconds: float = 1.0) -> Any:
        """Block until the job is terminal; return its result.

        Raises ``JobFailedError`` when the job failed terminally or was
        cancelled. Resolves immediately when the job runs in this process;
        otherwise the store is polled every ``poll_seconds``. A job removed
        on completion resolves to ``None``.
        """
        return await asyncio.wait_for(self._wait(poll_seconds), timeout)

    async def _wait(self, poll_seconds: float) -> Any:
        # Register before reading the store so a settle in between is not lost.
        fut = self._queue._register_waiter(self.id)
        try:
            while True:
                job = await self._queue.store.get(self.id)
                if job is None:
                    if fut.done():
                        return fut.result()
                    return None
                if job.state == COMPLETED:
                    return job.result
                if job.state == FAILED:
                    raise JobFailedError(job.id, job.last_error or "unknown error")
                done, _ = await asyncio.wait({fut}, timeout=poll_seconds)
                if done:
                    return fut.result()
        finally:
            self._queue._discard_waiter(self.id, fut)
            if fut.done() and not fut.cancelled():
                fut.exception()

    async def state(self) -> str | None:
        job = await self._queue.store.get(self.id)
        return job.state if job else None
