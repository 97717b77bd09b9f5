"""Durable job storage for the work queues.

``JobStore`` is the persistence contract the queue and worker pool rely on.
``PostgresJobStore`` keeps jobs in the ``queue_jobs`` table and hands them
out with ``FOR UPDATE SKIP LOCKED`` so any number of worker processes can
claim concurrently without double-processing. Ownership of an active job is
a lease (``locked_by`` + ``lock_expires_at``); a worker that stops renewing
its lease is detected as stalled by ``recover_stalled``.
"""

from __future__ import annotations

import json
import logging
import uuid
from abc import ABC, abstractmethod
from collections.abc import Mapping
from typing import Any

import asyncpg

from taxcredit_service.queue.types import (
    COMPLETED,
    FAILED,
    JOB_STATES,
    STALLED_ERROR,
    WAITING,
    Job,
    JobOptions,
)

logger = logging.getLogger(__name__)


class JobStore(ABC):
    @abstractmethod
    async def add(self, queue: str, data: Mapping[str, Any], opts: JobOptions) -> Job: ...

    @abstractmethod
    async def get(self, job_id: str) -> Job | None: ...

    @abstractmethod
    async def claim(self, queue: str, *, worker_id: str, lock_seconds: float) -> Job | None:
        """Atomically move the next runnable job to ``active`` and lease it."""

    @abstractmethod
    async def extend_lock(self, job_id: str, *, worker_id: str, lock_seconds: float) -> bool: ...

    @abstractmethod
    async def complete(self, job_id: str, *, worker_id: str, result: Any) -> bool: ...

    @abstractmethod
    async def retry_later(
        self, job_id: str, *, worker_id: str, error: str, delay_seconds: float
    ) -> bool: ...

    @abstractmethod
    async def fail(self, job_id: str, *, worker_id: str, error: str) -> bool: ...

    @abstractmethod
    async def recover_stalled(
        self, queue: str, *, max_stalled_count: int
    ) -> tuple[list[Job], list[Job]]:
        """Handle active jobs whose lease expired.

        Returns ``(requeued, failed)``: jobs stalled fewer than
        ``max_stalled_count`` times go back to ``waiting``; the rest fail.
        """

    @abstractmethod
    async def clean(self, queue: str, *, state: str, older_than_seconds: float) -> int:
        """Delete finished jobs in ``state`` whose finish time is older than the cutoff."""

    @abstractmethod
    async def counts(self, queue: str) -> dict[str, int]: ...

    @abstractmethod
    async def remove_pending(self, queue: str, *, key: str, value: str) -> list[Job]:
        """Delete waiting/delayed jobs whose payload ``key`` equals ``value``; returns them."""


def _row_to_job(row: Mapping[str, Any]) -> Job:
    data = row["data"]
    if isinstance(data, str):
        data = json.loads(data)
    result = row["result"]
    if isinstance(result, str):
        result = json.loads(result)
    return Job(
        id=str(row["id"]),
        queue=row["queue"],
        data=dict(data or {}),
        priority=row["priority"],
        state=row["state"],
        max_attempts=row["max_attempts"],
        backoff_seconds=row["backoff_seconds"],
        timeout_seconds=row["timeout_seconds"],
        remove_on_complete=row["remove_on_complete"],
        available_at=row["available_at"],
        created_at=row["created_at"],
        attempts_made=row["attempts_made"],
        stalled_count=row["stalled_count"],
        started_at=row["started_at"],
        finished_at=row["finished_at"],
        last_error=row["last_error"],
        result=result,
        locked_by=row["locked_by"],
        lock_expires_at=row["lock_expires_at"],
    )


def _affected(tag: str) -> int:
    """Row count from an asyncpg status tag such as ``UPDATE 1``."""
    try:
        return int(tag.rsplit(" ", 1)[-1])
    except (ValueError, IndexError):
        return 0


class PostgresJobStore(JobStore):
    """Job storage backed by the ``queue_jobs`` table."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def add(self, queue: str, data: Mapping[str, Any], opts: JobOptions) -> Job:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO queue_jobs
                    (id, queue, data, priority, state, max_attempts,
                     backoff_seconds, timeout_seconds, remove_on_complete,
                     available_at)
                VALUES ($1, $2, $3::jsonb, $4, 'waiting', $5, $6, $7, $8, NOW())
                RETURNING *
                """,
                uuid.uuid4(),
                queue,
                dict(data),
                opts.priority,
                opts.attempts,
                opts.backoff_seconds,
                opts.timeout_seconds,
                opts.remove_on_complete,
            )
        return _row_to_job(row)  # type: ignore[arg-type]

    async def get(self, job_id: str) -> Job | None:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM queue_jobs WHERE id = $1", uuid.UUID(job_id)
            )
        return _row_to_job(row) if row else None

    async def claim(self, queue: str, *, worker_id: str, lock_seconds: float) -> Job | None:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE queue_jobs
                SET state = 'active',
                    attempts_made = attempts_made + 1,
                    locked_by = $2,
                    lock_expires_at = NOW() + make_interval(secs => $3),
                    started_at = NOW()
                WHERE id = (
                    SELECT id FROM queue_jobs
                    WHERE queue = $1
                      AND state IN ('waiting', 'delayed')
                      AND available_at <= NOW()
                    ORDER BY priority, available_at, created_at
                    FOR UPDATE SKIP LOCKED
                    LIMIT 1
                )
                RETURNING *
                """,
                queue,
                worker_id,
                float(lock_seconds),
            )
        return _row_to_job(row) if row else None

    async def extend_lock(self, job_id: str, *, worker_id: str, lock_seconds: float) -> bool:
        async with self._pool.acquire() as conn:
            tag = await conn.execute(
                """
                UPDATE queue_jobs
                SET lock_expires_at = NOW() + make_interval(secs => $3)
                WHERE id = $1 AND locked_by = $2 AND state = 'active'
                """,
                uuid.UUID(job_id),
                worker_id,
                float(lock_seconds),
            )
        return _affected(tag) == 1

    async def complete(self, job_id: str, *, worker_id: str, result: Any) -> bool:
        async with self._pool.acquire() as conn:
            remove = await conn.fetchval(
                "SELECT remove_on_complete FROM queue_jobs WHERE id = $1", uuid.UUID(job_id)
            )
            if remove:
                tag = await conn.execute(
                    """
                    DELETE FROM queue_jobs
                    WHERE id = $1 AND locked_by = $2 AND state = 'active'
                    """,
                    uuid.UUID(job_id),
                    worker_id,
                )
            else:
                tag = await conn.execute(
                    """
                    UPDATE queue_jobs
                    SET state = 'completed',
                        result = $3::jsonb,
                        finished_at = NOW(),
                        locked_by = NULL,
                        lock_expires_at = NULL
                    WHERE id = $1 AND locked_by = $2 AND state = 'active'
                    """,
                    uuid.UUID(job_id),
                    worker_id,
                    result,
                )
        return _affected(tag) == 1

    async def retry_later(
        self, job_id: str, *, worker_id: str, error: str, delay_seconds: float
    ) -> bool:
        async with self._pool.acquire() as conn:
            tag = await conn.execute(
                """
                UPDATE queue_jobs
                SET state = 'delayed',
                    available_at = NOW() + make_interval(secs => $4),
                    last_error = $3,
                    locked_by = NULL,
                    lock_expires_at = NULL
                WHERE id = $1 AND locked_by = $2 AND state = 'active'
                """,
                uuid.UUID(job_id),
                worker_id,
                error[:4000],
                float(delay_seconds),
            )
        return _affected(tag) == 1

    async def fail(self, job_id: str, *, worker_id: str, error: str) -> bool:
        async with self._pool.acquire() as conn:
            tag = await conn.execute(
                """
                UPDATE queue_jobs
                SET state = 'failed',
                    last_error = $3,
                    finished_at = NOW(),
                    locked_by = NULL,
                    lock_expires_at = NULL
                WHERE id = $1 AND locked_by = $2 AND state = 'active'
                """,
                uuid.UUID(job_id),
                worker_id,
                error[:4000],
            )
        return _affected(tag) == 1

    async def recover_stalled(
        self, queue: str, *, max_stalled_count: int
    ) -> tuple[list[Job], list[Job]]:
        # SET expressions all read the pre-update row, so stalled_count below
        # is the value before this stall is counted.
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                """
                UPDATE queue_jobs
                SET state = CASE WHEN stalled_count < $2 THEN 'waiting' ELSE 'failed' END,
                    attempts_made = CASE
                        WHEN stalled_count < $2 THEN GREATEST(attempts_made - 1, 0)
                        ELSE attempts_made
                    END,
                    last_error = CASE WHEN stalled_count < $2 THEN last_error ELSE $3 END,
                    finished_at = CASE WHEN stalled_count < $2 THEN NULL ELSE NOW() END,
                    stalled_count = stalled_count + 1,
                    available_at = NOW(),
                    locked_by = NULL,
                    lock_expires_at = NULL
                WHERE id IN (
                    SELECT id FROM queue_jobs
                    WHERE queue = $1
                      AND state = 'active'
                      AND lock_expires_at < NOW()
                    FOR UPDATE SKIP LOCKED
                )
                RETURNING *
                """,
                queue,
                max_stalled_count,
                STALLED_ERROR,
            )
        jobs = [_row_to_job(r) for r in rows]
        requeued = [j for j in jobs if j.state == WAITING]
        failed = [j for j in jobs if j.state == FAILED]
        return requeued, failed

    async def clean(self, queue: str, *, state: str, older_than_seconds: float) -> int:
        if state not in (COMPLETED, FAILED):
            raise ValueError(f"Only finished jobs can be cleaned, got state={state!r}")
        async with self._pool.acquire() as conn:
            tag = await conn.execute(
                """
                DELETE FROM queue_jobs
                WHERE queue = $1
                  AND state = $2
                  AND finished_at < NOW() - make_interval(secs => $3)
                """,
                queue,
                state,
                float(older_than_seconds),
            )
        return _affected(tag)

    async def counts(self, queue: str) -> dict[str, int]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT state, COUNT(*) AS n
                FROM queue_jobs
                WHERE queue = $1
                GROUP BY state
                """,
                queue,
            )
        out = {s: 0 for s in JOB_STATES}
        for r in rows:
            out[r["state"]] = int(r["n"])
        return out

    async def remove_pending(self, queue: str, *, key: str, value: str) -> list[Job]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                """
                DELETE FROM queue_jobs
                WHERE queue = $1
                  AND state IN ('waiting', 'delayed')
                  AND data ->> $2 = $3
                RETURNING *
                """,
                queue,
                key,
                value,
            )
        return [_row_to_job(r) for r in rows]

