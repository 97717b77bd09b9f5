"""Batch job manager: upload validation, batch creation, status and CRUD.

Creating a batch validates every file first (nothing is written for a
rejected upload), saves the files under the upload directory, writes the
batch and document rows in one transaction, then enqueues one document job
per document. Progress is derived from the persisted counters.
"""

from __future__ import annotations

import asyncio
import logging
import os
import uuid
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from taxcredit_service.config import (
    ALLOWED_MIME_TYPES,
    COMPANY_REGIMES,
    DOCUMENT_TYPES,
)
from taxcredit_service.consolidation import (
    BatchConsolidator,
    BatchNotFoundError,
    BatchNotReadyError,
)
from taxcredit_service.db import rls_connection
from taxcredit_service.models import (
    BatchListResponse,
    BatchStatusResponse,
    BatchSummary,
    BatchUploadResponse,
    ConsolidatedReport,
    DeleteResponse,
    DocumentStatus,
    UploadedDocument,
)
from taxcredit_service.processing.types import CompanyInfo, DocumentJobData
from taxcredit_service.processing.worker import remove_upload
from taxcredit_service.queue.queue import JobQueue
from taxcredit_service.stores.batch_store import BatchStore
from taxcredit_service.stores.document_store import DocumentStore

logger = logging.getLogger(__name__)

BATCH_STATUSES: tuple[str, ...] = ("pending", "processing", "completed", "failed")


class InvalidRequestError(ValueError):
    """Request parameters rejected by the batch manager (HTTP 400)."""


class UploadValidationError(InvalidRequestError):
    """Upload rejected before anything was persisted."""


@dataclass(frozen=True)
class UploadedFile:
    file_name: str
    mime_type: str
    content: bytes

    @property
    def size(self) -> int:
        return len(self.content)


def progress_percent(*, processed: int, failed: int, total: int) -> int:
    if total <= 0:
        return 0
    return round(100 * (processed + failed) / total)


def _safe_name(file_name: str) -> str:
    base = os.path.basename(file_name.replace("\\", "/"))
    return "".join(c if c.isalnum() or c in "._-" else "_" for c in base)[:120] or "upload"


class BatchJobManager:
    def __init__(
        self,
        *,
        document_queue: JobQueue,
        upload_dir: str,
        max_file_size_mb: int,
        max_batch_files: int,
        job_priority: int,
        job_timeout_seconds: float,
        consolidator: BatchConsolidator | None = None,
        batch_store: BatchStore | None = None,
        document_store: DocumentStore | None = None,
    ) -> None:
        self._queue = document_queue
        self._upload_dir = upload_dir
        self._max_file_bytes = max_file_size_mb * 1024 * 1024
        self._max_batch_files = max_batch_files
        self._job_priority = job_priority
        self._job_timeout_seconds = job_timeout_seconds
        self._batches = batch_store or BatchStore()
        self._documents = document_store or DocumentStore()
        self._consolidator = consolidator or BatchConsolidator(
            batch_store=self._batches, document_store=self._documents
        )

    # -- Upload -------------------------------------------------------------

    def validate_upload(
        self,
        files: Sequence[UploadedFile],
        *,
        document_type: str,
        company_info: CompanyInfo | None,
    ) -> None:
        if not files:
            raise UploadValidationError("No files uploaded")
        if len(files) > self._max_batch_files:
            raise UploadValidationError(
                f"Too many files: {len(files)} (max {self._max_batch_files} per batch)"
            )
        if document_type not in DOCUMENT_TYPES:
            raise UploadValidationError(
                f"Invalid documentType {document_type!r}; expected one of {', '.join(DOCUMENT_TYPES)}"
            )
        if company_info and company_info.regime and company_info.regime not in COMPANY_REGIMES:
            raise UploadValidationError(
                f"Invalid regime {company_info.regime!r}; expected one of {', '.join(COMPANY_REGIMES)}"
            )
        for f in files:
            if f.mime_type not in ALLOWED_MIME_TYPES:
                raise UploadValidationError(f"File type not allowed: {f.file_name} ({f.mime_type})")
            if f.size == 0:
                raise UploadValidationError(f"Empty file: {f.file_name}")
            if f.size > self._max_file_bytes:
                raise UploadValidationError(
                    f"File too large: {f.file_name} ({f.size} bytes, max {self._max_file_bytes})"
                )

    def _write_file(self, f: UploadedFile) -> str:
        os.makedirs(self._upload_dir, exist_ok=True)
        path = os.path.join(self._upload_dir, f"{uuid.uuid4().hex}-{_safe_name(f.file_name)}")
        with open(path, "wb") as fh:
            fh.write(f.content)
        return path

    async def create_batch(
        self,
        *,
        user_id: str,
        files: Sequence[UploadedFile],
        document_type: str,
        company_info: CompanyInfo | None = None,
        name: str | None = None,
    ) -> BatchUploadResponse:
        self.validate_upload(files, document_type=document_type, company_info=company_info)
        if company_info is not None and company_info.is_empty():
            company_info = None

        batch_name = name or f"Lote {datetime.now(UTC):%d/%m/%Y}"
        paths: list[str] = []
        try:
            for f in files:
                paths.append(await asyncio.to_thread(self._write_file, f))

            async with rls_connection(user_id) as conn:
                batch = await self._batches.create_batch(
                    conn, user_id=user_id, name=batch_name, total_documents=len(files)
                )
                documents = [
                    await self._documents.create_document(
                        conn,
                        user_id=user_id,
                        batch_job_id=batch["id"],
                        file_name=f.file_name,
                        file_size=f.size,
                        mime_type=f.mime_type,
                        document_type=document_type,
                        company_info=company_info,
                    )
                    for f in files
                ]
        except Exception:
            for p in paths:
                remove_upload(p)
            raise

        logger.info("Batch created batch=%s user=%s documents=%d", batch["id"], user_id, len(files))

        enqueued = 0
        try:
            for f, doc, path in zip(files, documents, paths, strict=True):
                job = DocumentJobData(
                    document_id=doc["id"],
                    user_id=user_id,
                    batch_job_id=batch["id"],
                    file_path=path,
                    file_name=f.file_name,
                    mime_type=f.mime_type,
                    document_type=document_type,
                    company_info=company_info,
                )
                await self._queue.add(
                    job.to_payload(),
                    priority=self._job_priority,
                    timeout_seconds=self._job_timeout_seconds,
                )
                enqueued += 1
        except Exception:
            logger.exception(
                "Enqueueing failed for batch=%s after %d/%d job(s); marking batch failed",
                batch["id"],
                enqueued,
                len(documents),
            )
            await self._queue.cancel_pending(key="batchJobId", value=batch["id"])
            for p in paths:
                remove_upload(p)
            async with rls_connection(user_id) as conn:
                await self._batches.mark_failed(conn, batch["id"])
            raise

        logger.info("%d document job(s) queued for batch=%s", enqueued, batch["id"])
        return BatchUploadResponse(
            batch_job_id=batch["id"],
            batch_name=batch["name"],
            total_documents=len(documents),
            documents=[
                UploadedDocument(id=d["id"], file_name=d["file_name"], status=d["status"])
                for d in documents
            ],
        )

    # -- Status / listing ---------------------------------------------------

    async def get_status(self, *, user_id: str, batch_id: str) -> BatchStatusResponse:
        async with rls_connection(user_id) as conn:
            batch = await self._batches.get_batch(conn, batch_id)
            if batch is None:
                raise BatchNotFoundError(batch_id)
            documents = await self._documents.list_for_batch(conn, batch_id)

        return BatchStatusResponse(
            id=batch["id"],
            name=batch["name"],
            status=batch["status"],
            progress=progress_percent(
                processed=batch["processed_docs"],
                failed=batch["failed_docs"],
                total=batch["total_documents"],
            ),
            total_documents=batch["total_documents"],
            processed_docs=batch["processed_docs"],
            failed_docs=batch["failed_docs"],
            total_estimated_value=batch["total_estimated_value"] or 0.0,
            total_opportunities=batch["total_opportunities"] or 0,
            started_at=batch["started_at"],
            completed_at=batch["completed_at"],
            created_at=batch["created_at"],
            documents=[
                DocumentStatus(
                    id=d["id"],
                    file_name=d["file_name"],
                    status=d["status"],
                    processed_at=d["processed_at"],
                    extracted_period=d["extracted_period"],
                    total_estimated_value=d.get("total_estimated_value"),
                    error=d.get("processing_error"),
                )
                for d in documents
            ],
        )

    async def list_batches(
        self,
        *,
        user_id: str,
        status: str | None = None,
        limit: int = 10,
        offset: int = 0,
    ) -> BatchListResponse:
        if status is not None and status not in BATCH_STATUSES:
            raise InvalidRequestError(
                f"Invalid status {status!r}; expected one of {', '.join(BATCH_STATUSES)}"
            )
        async with rls_connection(user_id) as conn:
            rows, total = await self._batches.list_batches(
                conn, status=status, limit=limit, offset=offset
            )
        return BatchListResponse(
            batches=[
                BatchSummary(
                    id=r["id"],
                    name=r["name"],
                    status=r["status"],
                    total_documents=r["total_documents"],
                    processed_docs=r["processed_docs"],
                    failed_docs=r["failed_docs"],
                    total_estimated_value=r["total_estimated_value"] or 0.0,
                    total_opportunities=r["total_opportunities"] or 0,
                    created_at=r["created_at"],
                    completed_at=r["completed_at"],
                )
                for r in rows
            ],
            total=total,
            limit=limit,
            offset=offset,
        )

    async def delete_batch(self, *, user_id: str, batch_id: str) -> DeleteResponse:
        """Delete the batch row and drop its not-yet-started document jobs.

        Documents already being processed finish normally; their counter
        updates find no batch row and are skipped.
        """
        async with rls_connection(user_id) as conn:
            deleted = await self._batches.delete_batch(conn, batch_id)
        if not deleted:
            raise BatchNotFoundError(batch_id)

        cancelled = await self._queue.cancel_pending(key="batchJobId", value=batch_id)
        for job in cancelled:
            file_path = job.data.get("filePath")
            if file_path:
                remove_upload(file_path)
        logger.info("Batch deleted batch=%s cancelled_jobs=%d", batch_id, len(cancelled))
        return DeleteResponse(deleted=True, batch_job_id=batch_id, cancelled_jobs=len(cancelled))

    # -- Report -------------------------------------------------------------

    async def get_report(self, *, user_id: str, batch_id: str) -> dict[str, Any]:
        """Stored report of a completed batch, consolidating on demand."""
        async with rls_connection(user_id) as conn:
            batch = await self._batches.get_batch(conn, batch_id, include_report=True)
        if batch is None:
            raise BatchNotFoundError(batch_id)
        if batch["status"] != "completed":
            raise BatchNotReadyError(batch_id, batch["status"])
        if batch.get("consolidated_report"):
            return batch["consolidated_report"]

        report: ConsolidatedReport = await self._consolidator.consolidate(
            user_id=user_id, batch_id=batch_id
        )
        return report.model_dump(mode="json", by_alias=True)
