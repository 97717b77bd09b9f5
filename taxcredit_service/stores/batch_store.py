"""CRUD and counter updates for batch_jobs.

All methods expect a connection with the RLS owner already set (via
db.rls_connection). Counter updates are single UPDATE statements so sibling
documents finishing concurrently never lose an increment.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any

import asyncpg

logger = logging.getLogger(__name__)

_BATCH_COLUMNS = """
    id, user_id, name, total_documents, processed_docs, failed_docs, status,
    total_estimated_value, total_opportunities, started_at, completed_at,
    created_at, updated_at
"""


def _row_to_batch(row: asyncpg.Record) -> dict[str, Any]:
    out = dict(row)
    out["id"] = str(out["id"])
    if "total_estimated_value" in out and out["total_estimated_value"] is not None:
        out["total_estimated_value"] = float(out["total_estimated_value"])
    return out


class BatchStore:
    """Stateless data-access object for batch_jobs."""

    async def create_batch(
        self,
        conn: asyncpg.Connection,
        *,
        user_id: str,
        name: str,
        total_documents: int,
    ) -> dict[str, Any]:
        row = await conn.fetchrow(
            f"""
            INSERT INTO batch_jobs (id, user_id, name, total_documents, status)
            VALUES ($1, $2, $3, $4, 'pending')
            RETURNING {_BATCH_COLUMNS}
            """,
            uuid.uuid4(),
            user_id,
            name,
            total_documents,
        )
        return _row_to_batch(row)  # type: ignore[arg-type]

    async def get_batch(
        self, conn: asyncpg.Connection, batch_id: str, *, include_report: bool = False
    ) -> dict[str, Any] | None:
        columns = _BATCH_COLUMNS + (", consolidated_report" if include_report else "")
        row = await conn.fetchrow(
            f"SELECT {columns} FROM batch_jobs WHERE id = $1",
            uuid.UUID(batch_id),
        )
        return _row_to_batch(row) if row else None

    async def list_batches(
        self,
        conn: asyncpg.Connection,
        *,
        status: str | None = None,
        limit: int = 10,
        offset: int = 0,
    ) -> tuple[list[dict[str, Any]], int]:
        """Newest first. Returns ``(page, total_matching)``."""
        rows = await conn.fetch(
            f"""
            SELECT {_BATCH_COLUMNS}
            FROM batch_jobs
            WHERE ($1::text IS NULL OR status = $1)
            ORDER BY created_at DESC, id
            LIMIT $2 OFFSET $3
            """,
            status,
            limit,
            offset,
        )
        total = await conn.fetchval(
            "SELECT COUNT(*) FROM batch_jobs WHERE ($1::text IS NULL OR status = $1)",
            status,
        )
        return [_row_to_batch(r) for r in rows], int(total or 0)

    async def delete_batch(self, conn: asyncpg.Connection, batch_id: str) -> bool:
        result = await conn.execute(
            "DELETE FROM batch_jobs WHERE id = $1",
            uuid.UUID(batch_id),
        )
        return result == "DELETE 1"

    async def mark_started(self, conn: asyncpg.Connection, batch_id: str) -> None:
        """First worker to pick up a document moves the batch to ``processing``."""
        await conn.execute(
            """
            UPDATE batch_jobs
            SET status = CASE WHEN status = 'pending' THEN 'processing' ELSE status END,
                started_at = COALESCE(started_at, NOW()),
                updated_at = NOW()
            WHERE id = $1
            """,
            uuid.UUID(batch_id),
        )

    async def increment_processed(
        self,
        conn: asyncpg.Connection,
        batch_id: str,
        *,
        estimated_value: float,
        opportunities: int,
    ) -> dict[str, Any] | None:
        """Count one successful document; returns the updated counters.

        ``None`` when the batch no longer exists or every document was
        already counted.
        """
        row = await conn.fetchrow(
            """
            UPDATE batch_jobs
            SET processed_docs = processed_docs + 1,
                total_estimated_value = total_estimated_value + $2,
                total_opportunities = total_opportunities + $3,
                status = CASE
                    WHEN processed_docs + 1 + failed_docs >= total_documents THEN 'completed'
                    ELSE 'processing'
                END,
                completed_at = CASE
                    WHEN processed_docs + 1 + failed_docs >= total_documents THEN NOW()
                    ELSE completed_at
                END,
                started_at = COALESCE(started_at, NOW()),
                updated_at = NOW()
            WHERE id = $1 AND processed_docs + failed_docs < total_documents
            RETURNING id, processed_docs, failed_docs, total_documents, status
            """,
            uuid.UUID(batch_id),
            estimated_value,
            opportunities,
        )
        return _row_to_batch(row) if row else None

    async def increment_failed(
        self, conn: asyncpg.Connection, batch_id: str
    ) -> dict[str, Any] | None:
        """Count one failed document; same return contract as ``increment_processed``."""
        row = await conn.fetchrow(
            """
            UPDATE batch_jobs
            SET failed_docs = failed_docs + 1,
                status = CASE
                    WHEN processed_docs + failed_docs + 1 >= total_documents THEN 'completed'
                    ELSE 'processing'
                END,
                completed_at = CASE
                    WHEN processed_docs + failed_docs + 1 >= total_documents THEN NOW()
                    ELSE completed_at
                END,
                started_at = COALESCE(started_at, NOW()),
                updated_at = NOW()
            WHERE id = $1 AND processed_docs + failed_docs < total_documents
            RETURNING id, processed_docs, failed_docs, total_documents, status
            """,
            uuid.UUID(batch_id),
        )
        return _row_to_batch(row) if row else None

    async def save_report(
        self,
        conn: asyncpg.Connection,
        batch_id: str,
        *,
        report: dict[str, Any],
        total_estimated_value: float,
        total_opportunities: int,
    ) -> bool:
        result = await conn.execute(
            """
            UPDATE batch_jobs
            SET consolidated_report = $2::jsonb,
                total_estimated_value = $3,
                total_opportunities = $4,
                completed_at = COALESCE(completed_at, NOW()),
                updated_at = NOW()
            WHERE id = $1
            """,
            uuid.UUID(batch_id),
            report,
            total_estimated_value,
            total_opportunities,
        )
        return result == "UPDATE 1"

    async def mark_failed(self, conn: asyncpg.Connection, batch_id: str) -> None:
        await conn.execute(
            """
            UPDATE batch_jobs
            SET status = 'failed', updated_at = NOW()
            WHERE id = $1
            """,
            uuid.UUID(batch_id),
        )
