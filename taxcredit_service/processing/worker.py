"""Per-document pipeline run by the document worker pool.

One job is one document:

1. read the uploaded file
2. extract text (pypdf / openpyxl / Document AI, chosen by mime type)
3. extract the fiscal period and store it on the document
4. run the analysis engine
5. in one transaction: insert the analysis, mark the document completed,
   increment the batch's ``processed_docs``
6. delete the uploaded file

Any step raising fails the attempt; the pool retries with backoff. Only the
terminal failure (``on_failed``) marks the document failed and increments
``failed_docs``. Whoever brings ``processed + failed`` to the total enqueues
the batch's consolidation job.
"""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import Any

from taxcredit_service.db import rls_connection
from taxcredit_service.periods import extract_period
from taxcredit_service.processing.analysis import AnalysisEngine
from taxcredit_service.processing.extraction import TextExtractionService
from taxcredit_service.processing.types import ConsolidationJobData, DocumentJobData
from taxcredit_service.queue.pool import JobHandler
from taxcredit_service.queue.queue import JobQueue
from taxcredit_service.queue.types import Job
from taxcredit_service.stores.batch_store import BatchStore
from taxcredit_service.stores.document_store import DocumentStore

logger = logging.getLogger(__name__)


def remove_upload(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        return
    except OSError as e:
        logger.warning("Could not delete uploaded file %s: %s", path, e)


class DocumentWorker(JobHandler):
    def __init__(
        self,
        *,
        extraction: TextExtractionService,
        engine: AnalysisEngine,
        consolidation_queue: JobQueue,
        batch_store: BatchStore | None = None,
        document_store: DocumentStore | None = None,
    ) -> None:
        self._extraction = extraction
        self._engine = engine
        self._consolidation_queue = consolidation_queue
        self._batches = batch_store or BatchStore()
        self._documents = document_store or DocumentStore()

    async def process(self, job: Job) -> dict[str, Any]:
        data = DocumentJobData.from_payload(job.data)
        logger.info(
            "Processing document=%s batch=%s file=%s (attempt %d/%d)",
            data.document_id,
            data.batch_job_id,
            data.file_name,
            job.attempts_made,
            job.max_attempts,
        )

        async with rls_connection(data.user_id) as conn:
            active = await self._documents.mark_processing(conn, data.document_id)
            if active and data.batch_job_id:
                await self._batches.mark_started(conn, data.batch_job_id)
        if not active:
            # Already terminal (re-run after a lost lock) or deleted
            logger.info("Document %s is no longer pending; skipping", data.document_id)
            remove_upload(data.file_path)
            return {"documentId": data.document_id, "skipped": True}

        raw = await asyncio.to_thread(Path(data.file_path).read_bytes)
        extracted = await self._extraction.extract_text(data=raw, mime_type=data.mime_type)

        period = extract_period(extracted.text, data.file_name)
        async with rls_connection(data.user_id) as conn:
            await self._documents.set_period(conn, data.document_id, period)

        result = await self._engine.analyze(
            text=extracted.text,
            document_type=data.document_type,
            company_info=data.company_info,
        )

        counters: dict[str, Any] | None = None
        analysis_id: str | None = None
        async with rls_connection(data.user_id) as conn:
            doc = await self._documents.complete_document(conn, data.document_id)
            if doc is not None:
                analysis_id = await self._documents.create_analysis(
                    conn, document_id=data.document_id, result=result
                )
                if data.batch_job_id:
                    counters = await self._batches.increment_processed(
                        conn,
                        data.batch_job_id,
                        estimated_value=result.total_estimated_value,
                        opportunities=len(result.opportunities),
                    )

        if doc is None:
            logger.warning("Document %s reached a terminal state concurrently; result dropped", data.document_id)
        else:
            logger.info(
                "Document completed document=%s period=%s opportunities=%d value=%.2f ocr=%s",
                data.document_id,
                period.period,
                len(result.opportunities),
                result.total_estimated_value,
                extracted.used_ocr,
            )

        await self._maybe_consolidate(data, counters)
        remove_upload(data.file_path)

        return {
            "documentId": data.document_id,
            "analysisId": analysis_id,
            "period": period.period,
            "opportunities": len(result.opportunities),
            "totalEstimatedValue": result.total_estimated_value,
        }

    async def on_failed(self, job: Job, error: str) -> None:
        data = DocumentJobData.from_payload(job.data)
        counters: dict[str, Any] | None = None
        try:
            async with rls_connection(data.user_id) as conn:
                doc = await self._documents.fail_document(conn, data.document_id, error=error)
                if doc is not None and data.batch_job_id:
                    counters = await self._batches.increment_failed(conn, data.batch_job_id)
            logger.error(
                "Document failed document=%s batch=%s after %d attempt(s) :: %s",
                data.document_id,
                data.batch_job_id,
                job.attempts_made,
                error,
            )
            await self._maybe_consolidate(data, counters)
        finally:
            remove_upload(data.file_path)

    async def _maybe_consolidate(
        self, data: DocumentJobData, counters: dict[str, Any] | None
    ) -> None:
        if not counters or counters.get("status") != "completed" or not data.batch_job_id:
            return
        logger.info(
            "Batch %s finished (processed=%d failed=%d total=%d); enqueueing consolidation",
            data.batch_job_id,
            counters["processed_docs"],
            counters["failed_docs"],
            counters["total_documents"],
        )
        await self._consolidation_queue.add(
            ConsolidationJobData(batch_job_id=data.batch_job_id, user_id=data.user_id).to_payload()
        )
