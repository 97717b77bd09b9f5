"""CRUD for documents and analyses.

All methods expect a connection with the RLS owner already set (via
db.rls_connection). Status transitions into a terminal state are guarded in
SQL, so a document is counted as completed or failed at most once.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any

import asyncpg

from taxcredit_service.periods import PeriodInfo
from taxcredit_service.processing.types import AnalysisResult, CompanyInfo

logger = logging.getLogger(__name__)

_DOCUMENT_COLUMNS = """
    id, batch_job_id, user_id, file_name, file_size, mime_type, document_type,
    company_name, cnpj, regime, status, extracted_period, extracted_year,
    extracted_month, extracted_quarter, processing_error, processed_at, created_at
"""


def _row_to_document(row: asyncpg.Record) -> dict[str, Any]:
    out = dict(row)
    out["id"] = str(out["id"])
    if out.get("batch_job_id") is not None:
        out["batch_job_id"] = str(out["batch_job_id"])
    if out.get("analysis_id") is not None:
        out["analysis_id"] = str(out["analysis_id"])
    if out.get("total_estimated_value") is not None:
        out["total_estimated_value"] = float(out["total_estimated_value"])
    return out


class DocumentStore:
    """Stateless data-access object for documents and analyses."""

    async def create_document(
        self,
        conn: asyncpg.Connection,
        *,
        user_id: str,
        batch_job_id: str | None,
        file_name: str,
        file_size: int,
        mime_type: str,
        document_type: str,
        company_info: CompanyInfo | None = None,
    ) -> dict[str, Any]:
        company = company_info or CompanyInfo()
        row = await conn.fetchrow(
            f"""
            INSERT INTO documents
                (id, batch_job_id, user_id, file_name, file_size, mime_type,
                 document_type, company_name, cnpj, regime, status)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, 'pending')
            RETURNING {_DOCUMENT_COLUMNS}
            """,
            uuid.uuid4(),
            uuid.UUID(batch_job_id) if batch_job_id else None,
            user_id,
            file_name,
            file_size,
            mime_type,
            document_type,
            company.name,
            company.cnpj,
            company.regime,
        )
        return _row_to_document(row)  # type: ignore[arg-type]

    async def get_document(
        self, conn: asyncpg.Connection, document_id: str
    ) -> dict[str, Any] | None:
        row = await conn.fetchrow(
            f"SELECT {_DOCUMENT_COLUMNS} FROM documents WHERE id = $1",
            uuid.UUID(document_id),
        )
        return _row_to_document(row) if row else None

    async def mark_processing(self, conn: asyncpg.Connection, document_id: str) -> bool:
        """False when the document is gone or already terminal."""
        result = await conn.execute(
            """
            UPDATE documents
            SET status = 'processing'
            WHERE id = $1 AND status NOT IN ('completed', 'failed')
            """,
            uuid.UUID(document_id),
        )
        return result == "UPDATE 1"

    async def set_period(
        self, conn: asyncpg.Connection, document_id: str, info: PeriodInfo
    ) -> None:
        await conn.execute(
            """
            UPDATE documents
            SET extracted_period = $2,
                extracted_year = $3,
                extracted_month = $4,
                extracted_quarter = $5
            WHERE id = $1
            """,
            uuid.UUID(document_id),
            info.period,
            info.year,
            info.month,
            info.quarter,
        )

    async def create_analysis(
        self,
        conn: asyncpg.Connection,
        *,
        document_id: str,
        result: AnalysisResult,
    ) -> str:
        analysis_id = await conn.fetchval(
            """
            INSERT INTO analyses
                (id, document_id, opportunities, total_estimated_value,
                 recommendations, alerts, executive_summary, model_used,
                 processing_time_ms)
            VALUES ($1, $2, $3::jsonb, $4, $5::jsonb, $6::jsonb, $7, $8, $9)
            RETURNING id
            """,
            uuid.uuid4(),
            uuid.UUID(document_id),
            [o.to_dict() for o in result.opportunities],
            result.total_estimated_value,
            list(result.recommendations),
            list(result.alerts),
            result.executive_summary,
            result.model_used,
            result.processing_time_ms,
        )
        return str(analysis_id)

    async def complete_document(
        self, conn: asyncpg.Connection, document_id: str
    ) -> dict[str, Any] | None:
        """Move to ``completed``; ``None`` if it was already terminal."""
        row = await conn.fetchrow(
            f"""
            UPDATE documents
            SET status = 'completed', processed_at = NOW(), processing_error = NULL
            WHERE id = $1 AND status NOT IN ('completed', 'failed')
            RETURNING {_DOCUMENT_COLUMNS}
            """,
            uuid.UUID(document_id),
        )
        return _row_to_document(row) if row else None

    async def fail_document(
        self, conn: asyncpg.Connection, document_id: str, *, error: str
    ) -> dict[str, Any] | None:
        """Move to ``failed``; ``None`` if it was already terminal."""
        row = await conn.fetchrow(
            f"""
            UPDATE documents
            SET status = 'failed', processed_at = NOW(), processing_error = $2
            WHERE id = $1 AND status NOT IN ('completed', 'failed')
            RETURNING {_DOCUMENT_COLUMNS}
            """,
            uuid.UUID(document_id),
            error[:2000],
        )
        return _row_to_document(row) if row else None

    async def list_for_batch(
        self, conn: asyncpg.Connection, batch_id: str
    ) -> list[dict[str, Any]]:
        """Documents of a batch in upload order, with their analysis (if any)."""
        rows = await conn.fetch(
            """
            SELECT d.id, d.batch_job_id, d.file_name, d.file_size, d.mime_type,
                   d.document_type, d.status, d.extracted_period, d.processed_at,
                   d.processing_error, d.created_at,
                   a.id AS analysis_id, a.opportunities, a.total_estimated_value,
                   a.recommendations, a.alerts, a.processing_time_ms
            FROM documents d
            LEFT JOIN analyses a ON a.document_id = d.id
            WHERE d.batch_job_id = $1
            ORDER BY d.created_at, d.id
            """,
            uuid.UUID(batch_id),
        )
        return [_row_to_document(r) for r in rows]
