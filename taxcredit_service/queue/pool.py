"""Bounded pool of concurrent workers draining one ``JobQueue``.

Each slot claims a job, runs the handler under the job's timeout while a
heartbeat renews the job's lease, then records the outcome:

- success: job ``completed``, ``completed`` event, waiters resolved
- failure with attempts left: job ``delayed`` for the exponential backoff
- failure on the last attempt: job ``failed``, ``handler.on_failed`` called
  once, ``failed`` event, waiters rejected

A separate loop recovers jobs whose lease expired (worker crashed or hung):
requeued up to ``max_stalled_count`` times, then failed.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import socket
import uuid
from abc import ABC, abstractmethod
from typing import Any

from taxcredit_service.logging_config import job_context
from taxcredit_service.queue.events import (
    EVENT_COMPLETED,
    EVENT_FAILED,
    EVENT_STALLED,
    QueueEvent,
)
from taxcredit_service.queue.queue import JobQueue
from taxcredit_service.queue.types import STALLED_ERROR, Job, JobTimeoutError

logger = logging.getLogger(__name__)


class JobHandler(ABC):
    @abstractmethod
    async def process(self, job: Job) -> Any:
        """Run one attempt of ``job``; raise to fail the attempt."""

    async def on_failed(self, job: Job, error: str) -> None:
        """Called exactly once when ``job`` fails terminally."""
        return None


def _default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


def _describe(exc: BaseException) -> str:
    return f"{type(exc).__name__}: {exc}"


class WorkerPool:
    def __init__(
        self,
        queue: JobQueue,
        handler: JobHandler,
        *,
        concurrency: int,
        poll_seconds: float = 1.0,
        lock_seconds: float = 30.0,
        stall_check_seconds: float = 30.0,
        max_stalled_count: int = 1,
        worker_id: str | None = None,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.queue = queue
        self.handler = handler
        self.concurrency = concurrency
        self.worker_id = worker_id or _default_worker_id()
        self._poll_seconds = poll_seconds
        self._lock_seconds = lock_seconds
        self._stall_check_seconds = stall_check_seconds
        self._max_stalled_count = max_stalled_count
        self._stopping = asyncio.Event()
        self._tasks: list[asyncio.Task[None]] = []

    # -- Lifecycle ----------------------------------------------------------

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    async def start(self) -> None:
        if self.running:
            return
        self._stopping.clear()
        for slot in range(self.concurrency):
            self._tasks.append(
                asyncio.create_task(self._slot_loop(slot), name=f"{self.queue.name}-slot-{slot}")
            )
        self._tasks.append(
            asyncio.create_task(self._stall_loop(), name=f"{self.queue.name}-stall-check")
        )
        logger.info(
            "Worker pool started queue=%s concurrency=%d worker=%s",
            self.queue.name,
            self.concurrency,
            self.worker_id,
        )

    async def stop(self, grace_seconds: float = 30.0) -> None:
        """Stop claiming; let in-flight jobs finish within ``grace_seconds``."""
        if not self._tasks:
            return
        self._stopping.set()
        self.queue.notify()
        _, pending = await asyncio.wait(self._tasks, timeout=grace_seconds)
        for task in pending:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        if pending:
            logger.warning(
                "Worker pool queue=%s cancelled %d task(s) after %.0fs grace",
                self.queue.name,
                len(pending),
                grace_seconds,
            )
        self._tasks.clear()
        logger.info("Worker pool stopped queue=%s", self.queue.name)

    async def _slot_loop(self, slot: int) -> None:
        while not self._stopping.is_set():
            try:
                worked = await self.run_once()
            except Exception:
                logger.exception("Worker slot %d on queue=%s crashed; continuing", slot, self.queue.name)
                worked = False
            if not worked and not self._stopping.is_set():
                await self.queue.wait_for_work(self._poll_seconds)

    async def _stall_loop(self) -> None:
        while not self._stopping.is_set():
            try:
                await self.check_stalled()
            except Exception:
                logger.exception("Stall check failed on queue=%s", self.queue.name)
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._stopping.wait(), self._stall_check_seconds)

    # -- Job execution ------------------------------------------------------

    async def run_once(self) -> bool:
        """Claim and run a single job. Returns False when none was runnable."""
        job = await self.queue.store.claim(
            self.queue.name, worker_id=self.worker_id, lock_seconds=self._lock_seconds
        )
        if job is None:
            return False
        await self._run_job(job)
        return True

    async def _run_job(self, job: Job) -> None:
        with job_context(self.queue.name, job.id):
            heartbeat = asyncio.create_task(self._heartbeat(job))
            try:
                result = await self._invoke(job)
            except Exception as exc:
                await self._handle_failure(job, exc)
                return
            finally:
                heartbeat.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await heartbeat
            await self._handle_success(job, result)

    async def _invoke(self, job: Job) -> Any:
        if not job.timeout_seconds:
            return await self.handler.process(job)
        try:
            return await asyncio.wait_for(self.handler.process(job), job.timeout_seconds)
        except TimeoutError as exc:
            if isinstance(exc, JobTimeoutError):
                raise
            raise JobTimeoutError(
                f"job {job.id} timed out after {job.timeout_seconds:g}s"
            ) from None

    async def _heartbeat(self, job: Job) -> None:
        interval = max(self._lock_seconds / 3, 0.05)
        while True:
            await asyncio.sleep(interval)
            try:
                owned = await self.queue.store.extend_lock(
                    job.id, worker_id=self.worker_id, lock_seconds=self._lock_seconds
                )
            except Exception:
                logger.exception("Lock renewal failed job=%s", job.id)
                continue
            if not owned:
                logger.warning("Lost lock on job=%s queue=%s", job.id, self.queue.name)
                return

    async def _handle_success(self, job: Job, result: Any) -> None:
        ok = await self.queue.store.complete(job.id, worker_id=self.worker_id, result=result)
        if not ok:
            logger.warning(
                "Job %s finished after its lock was lost; result not recorded", job.id
            )
            return
        job.state = "completed"
        job.result = result
        await self.queue.events.emit(
            QueueEvent(kind=EVENT_COMPLETED, queue=self.queue.name, job=job, result=result)
        )
        self.queue.settle(job.id, result=result)

    async def _handle_failure(self, job: Job, exc: Exception) -> None:
        error = _describe(exc)
        if job.has_attempts_left:
            delay = job.retry_delay()
            ok = await self.queue.store.retry_later(
                job.id, worker_id=self.worker_id, error=error, delay_seconds=delay
            )
            if ok:
                logger.warning(
                    "Job attempt failed (attempt %d/%d) queue=%s job=%s, retrying in %.1fs :: %s",
                    job.attempts_made,
                    job.max_attempts,
                    self.queue.name,
                    job.id,
                    delay,
                    error,
                )
            return

        ok = await self.queue.store.fail(job.id, worker_id=self.worker_id, error=error)
        if not ok:
            logger.warning("Job %s failed after its lock was lost :: %s", job.id, error)
            return
        await self._finalize_failure(job, error)

    async def _finalize_failure(self, job: Job, error: str) -> None:
        job.state = "failed"
        job.last_error = error
        try:
            await self.handler.on_failed(job, error)
        except Exception:
            logger.exception("on_failed hook raised job=%s queue=%s", job.id, self.queue.name)
        await self.queue.events.emit(
            QueueEvent(kind=EVENT_FAILED, queue=self.queue.name, job=job, error=error)
        )
        self.queue.settle(job.id, error=error)

    # -- Stall recovery -----------------------------------------------------

    async def check_stalled(self) -> tuple[int, int]:
        """Recover expired leases. Returns ``(requeued, failed)`` counts."""
        requeued, failed = await self.queue.store.recover_stalled(
            self.queue.name, max_stalled_count=self._max_stalled_count
        )
        for job in requeued:
            await self.queue.events.emit(
                QueueEvent(kind=EVENT_STALLED, queue=self.queue.name, job=job)
            )
        for job in failed:
            await self.queue.events.emit(
                QueueEvent(kind=EVENT_STALLED, queue=self.queue.name, job=job)
            )
            await self._finalize_failure(job, STALLED_ERROR)
        if requeued:
            self.queue.notify()
        return len(requeued), len(failed)
