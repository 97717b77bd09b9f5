"""Composition root: queues, stores, managers and worker pools.

Both processes (API and ``taxcredit-worker``) build one ``Services`` from
``QueueSettings``. Nothing here is a module-level singleton; the API keeps
its instance on ``app.state``.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field

from taxcredit_service.batches import BatchJobManager
from taxcredit_service.config import (
    TC_MAX_BATCH_FILES,
    TC_MAX_FILE_SIZE_MB,
    TC_UPLOAD_DIR,
    QueueSettings,
)
from taxcredit_service.consolidation import BatchConsolidator, ConsolidationWorker
from taxcredit_service.db import get_pool
from taxcredit_service.processing.analysis import AnalysisEngine, GeminiAnalysisEngine
from taxcredit_service.processing.extraction import (
    TextExtractionService,
    build_extraction_service,
)
from taxcredit_service.processing.worker import DocumentWorker
from taxcredit_service.queue.events import QueueEvents, log_event
from taxcredit_service.queue.memory import MemoryJobStore
from taxcredit_service.queue.pool import WorkerPool
from taxcredit_service.queue.queue import JobQueue
from taxcredit_service.queue.store import JobStore, PostgresJobStore
from taxcredit_service.queue.types import JobOptions

logger = logging.getLogger(__name__)

DOCUMENT_QUEUE = "document-processing"
CONSOLIDATION_QUEUE = "batch-consolidation"


@dataclass
class Services:
    settings: QueueSettings
    events: QueueEvents
    document_queue: JobQueue
    consolidation_queue: JobQueue
    consolidator: BatchConsolidator
    batch_manager: BatchJobManager
    pools: list[WorkerPool] = field(default_factory=list)
    _retention_task: asyncio.Task[None] | None = None

    def build_pools(
        self,
        *,
        extraction: TextExtractionService | None = None,
        engine: AnalysisEngine | None = None,
        document_concurrency: int | None = None,
        consolidation_concurrency: int | None = None,
    ) -> list[WorkerPool]:
        s = self.settings
        document_worker = DocumentWorker(
            extraction=extraction or build_extraction_service(),
            engine=engine or GeminiAnalysisEngine(),
            consolidation_queue=self.consolidation_queue,
        )
        self.pools = [
            WorkerPool(
                self.document_queue,
                document_worker,
                concurrency=document_concurrency or s.document_concurrency,
                poll_seconds=s.poll_seconds,
                lock_seconds=s.lock_seconds,
                stall_check_seconds=s.stall_check_seconds,
                max_stalled_count=s.max_stalled_count,
            ),
            WorkerPool(
                self.consolidation_queue,
                ConsolidationWorker(self.consolidator),
                concurrency=consolidation_concurrency or s.consolidation_concurrency,
                poll_seconds=s.poll_seconds,
                lock_seconds=s.lock_seconds,
                stall_check_seconds=s.stall_check_seconds,
                max_stalled_count=s.max_stalled_count,
            ),
        ]
        return self.pools

    async def start_workers(
        self,
        *,
        clean: bool = True,
        document_concurrency: int | None = None,
        consolidation_concurrency: int | None = None,
    ) -> None:
        if not self.pools:
            self.build_pools(
                document_concurrency=document_concurrency,
                consolidation_concurrency=consolidation_concurrency,
            )
        for pool in self.pools:
            await pool.start()
        if clean and self._retention_task is None:
            self._retention_task = asyncio.create_task(self._retention_loop(), name="queue-retention")

    async def stop_workers(self, grace_seconds: float = 30.0) -> None:
        if self._retention_task is not None:
            self._retention_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._retention_task
            self._retention_task = None
        for pool in self.pools:
            await pool.stop(grace_seconds)

    async def clean_old_jobs(self) -> dict[str, dict[str, int]]:
        s = self.settings
        return {
            q.name: await q.clean_old_jobs(
                completed_days=s.completed_retention_days,
                failed_days=s.failed_retention_days,
            )
            for q in (self.document_queue, self.consolidation_queue)
        }

    async def _retention_loop(self) -> None:
        while True:
            try:
                await self.clean_old_jobs()
            except Exception:
                logger.exception("Queue retention sweep failed")
            await asyncio.sleep(self.settings.clean_interval_seconds)


async def build_services(
    settings: QueueSettings | None = None,
    *,
    store: JobStore | None = None,
) -> Services:
    settings = settings or QueueSettings.from_env()
    settings.validate()

    if store is None:
        if settings.backend == "memory":
            store = MemoryJobStore()
        else:
            store = PostgresJobStore(
                await get_pool(
                    worker_slots=settings.document_concurrency + settings.consolidation_concurrency
                )
            )

    events = QueueEvents()
    events.subscribe(log_event)

    document_queue = JobQueue(
        DOCUMENT_QUEUE,
        store,
        default_options=JobOptions(
            attempts=settings.job_attempts,
            backoff_seconds=settings.job_backoff_seconds,
            timeout_seconds=settings.job_timeout_seconds,
            priority=settings.job_priority,
        ),
        events=events,
    )
    # Consolidation jobs retry immediately and are dropped once done
    consolidation_queue = JobQueue(
        CONSOLIDATION_QUEUE,
        store,
        default_options=JobOptions(
            attempts=settings.consolidation_attempts,
            remove_on_complete=True,
        ),
        events=events,
    )

    consolidator = BatchConsolidator()
    batch_manager = BatchJobManager(
        document_queue=document_queue,
        upload_dir=TC_UPLOAD_DIR,
        max_file_size_mb=TC_MAX_FILE_SIZE_MB,
        max_batch_files=TC_MAX_BATCH_FILES,
        job_priority=settings.job_priority,
        job_timeout_seconds=settings.job_timeout_seconds,
        consolidator=consolidator,
    )
    logger.info(
        "Services built backend=%s attempts=%d backoff=%.1fs timeout=%.0fs",
        settings.backend,
        settings.job_attempts,
        settings.job_backoff_seconds,
        settings.job_timeout_seconds,
    )
    return Services(
        settings=settings,
        events=events,
        document_queue=document_queue,
        consolidation_queue=consolidation_queue,
        consolidator=consolidator,
        batch_manager=batch_manager,
    )
