"""Unit tests for BatchJobManager: validation, creation, listing, deletion."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import pytest

from taxcredit_service.batches import (
    BatchJobManager,
    InvalidRequestError,
    UploadedFile,
    UploadValidationError,
    progress_percent,
)
from taxcredit_service.consolidation import BatchConsolidator, BatchNotFoundError, BatchNotReadyError
from taxcredit_service.processing.types import CompanyInfo
from taxcredit_service.queue.memory import MemoryJobStore
from taxcredit_service.queue.queue import JobQueue
from taxcredit_service.queue.types import Job, JobOptions

PDF = "application/pdf"


def _file(name: str = "dre.pdf", mime: str = PDF, size: int = 10) -> UploadedFile:
    return UploadedFile(file_name=name, mime_type=mime, content=b"x" * size)


class FlakyEnqueueStore(MemoryJobStore):
    """Accepts ``accept`` jobs, then fails every add."""

    def __init__(self, accept: int) -> None:
        super().__init__()
        self.accept = accept

    async def add(self, queue: str, data: Any, opts: JobOptions) -> Job:
        if self.accept <= 0:
            raise ConnectionError("queue store unavailable")
        self.accept -= 1
        return await super().add(queue, data, opts)


@pytest.fixture
def upload_dir(tmp_path: Path) -> Path:
    return tmp_path / "uploads"


@pytest.fixture
def make_manager(fake_db, upload_dir: Path):
    def _make(store: MemoryJobStore | None = None) -> BatchJobManager:
        queue = JobQueue(
            "document-processing",
            store or MemoryJobStore(),
            default_options=JobOptions(attempts=3, backoff_seconds=2.0),
        )
        return BatchJobManager(
            document_queue=queue,
            upload_dir=str(upload_dir),
            max_file_size_mb=1,
            max_batch_files=3,
            job_priority=10,
            job_timeout_seconds=600,
            consolidator=BatchConsolidator(batch_store=fake_db.batches, document_store=fake_db.documents),
            batch_store=fake_db.batches,
            document_store=fake_db.documents,
        )

    return _make


class TestProgress:
    def test_counts_failed_documents_as_done(self):
        assert progress_percent(processed=1, failed=1, total=4) == 50

    def test_rounds(self):
        assert progress_percent(processed=1, failed=0, total=3) == 33
        assert progress_percent(processed=2, failed=0, total=3) == 67

    def test_empty_batch(self):
        assert progress_percent(processed=0, failed=0, total=0) == 0


class TestValidateUpload:
    @pytest.mark.parametrize(
        "files, document_type, company, message",
        [
            ([], "dre", None, "No files"),
            ([_file()] * 4, "dre", None, "Too many files"),
            ([_file()], "fluxo_de_caixa", None, "Invalid documentType"),
            ([_file()], "dre", CompanyInfo(regime="mei"), "Invalid regime"),
            ([_file("a.xls", "application/vnd.ms-excel")], "dre", None, "File type not allowed"),
            ([_file(size=0)], "dre", None, "Empty file"),
            ([_file(size=1024 * 1024 + 1)], "dre", None, "File too large"),
        ],
    )
    async def test_rejects(self, make_manager, files, document_type, company, message, upload_dir):
        manager = make_manager()
        with pytest.raises(UploadValidationError, match=message):
            await manager.create_batch(
                user_id="u", files=files, document_type=document_type, company_info=company
            )
        # Nothing is written for a rejected upload
        assert not upload_dir.exists() or os.listdir(upload_dir) == []

    def test_accepts_every_supported_type(self, make_manager):
        files = [
            _file("a.pdf", "application/pdf"),
            _file("b.xlsx", "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"),
            _file("c.txt", "text/plain"),
        ]
        make_manager().validate_upload(files, document_type="balancete", company_info=None)
        make_manager().validate_upload(
            [_file("d.png", "image/png")],
            document_type="balanço",
            company_info=CompanyInfo(regime="lucro_presumido"),
        )


class TestCreateBatch:
    async def test_creates_batch_documents_and_jobs(self, make_manager, fake_db, test_user_id, upload_dir):
        store = MemoryJobStore()
        manager = make_manager(store)
        resp = await manager.create_batch(
            user_id=test_user_id,
            files=[_file("jan.pdf"), _file("fev.pdf")],
            document_type="dre",
            company_info=CompanyInfo(name="ACME Ltda", cnpj="00.000.000/0001-00", regime="lucro_real"),
            name="Lote trimestral",
        )

        assert resp.batch_name == "Lote trimestral"
        assert resp.total_documents == 2
        assert [d.file_name for d in resp.documents] == ["jan.pdf", "fev.pdf"]
        assert all(d.status == "pending" for d in resp.documents)

        batch = fake_db.db.batches[resp.batch_job_id]
        assert batch["status"] == "pending"
        assert batch["total_documents"] == 2
        assert len(os.listdir(upload_dir)) == 2

        jobs = [j for j in store._jobs.values()]
        assert len(jobs) == 2
        job = jobs[0]
        assert job.priority == 10
        assert job.timeout_seconds == 600
        assert job.max_attempts == 3
        assert job.data["batchJobId"] == resp.batch_job_id
        assert job.data["userId"] == test_user_id
        assert job.data["documentType"] == "dre"
        assert job.data["companyInfo"] == {
            "name": "ACME Ltda",
            "cnpj": "00.000.000/0001-00",
            "regime": "lucro_real",
        }
        assert os.path.exists(job.data["filePath"])

    async def test_default_name(self, make_manager, test_user_id):
        resp = await make_manager().create_batch(
            user_id=test_user_id, files=[_file()], document_type="dre"
        )
        assert re.fullmatch(r"Lote \d{2}/\d{2}/\d{4}", resp.batch_name)

    async def test_empty_company_info_not_sent(self, make_manager, test_user_id):
        store = MemoryJobStore()
        await make_manager(store).create_batch(
            user_id=test_user_id, files=[_file()], document_type="dre", company_info=CompanyInfo()
        )
        (job,) = store._jobs.values()
        assert "companyInfo" not in job.data

    async def test_enqueue_failure_marks_batch_failed(self, make_manager, fake_db, test_user_id, upload_dir):
        store = FlakyEnqueueStore(accept=1)
        manager = make_manager(store)

        with pytest.raises(ConnectionError):
            await manager.create_batch(
                user_id=test_user_id, files=[_file("a.pdf"), _file("b.pdf")], document_type="dre"
            )

        (batch,) = fake_db.db.batches.values()
        assert batch["status"] == "failed"
        # The job that did get queued is withdrawn and no upload is left behind
        assert (await manager._queue.stats())["total"] == 0
        assert os.listdir(upload_dir) == []


class TestStatusAndListing:
    async def test_status_of_other_users_batch_is_not_found(self, make_manager, test_user_id, other_user_id):
        manager = make_manager()
        resp = await manager.create_batch(user_id=test_user_id, files=[_file()], document_type="dre")
        with pytest.raises(BatchNotFoundError):
            await manager.get_status(user_id=other_user_id, batch_id=resp.batch_job_id)

    async def test_status_fresh_batch(self, make_manager, test_user_id):
        manager = make_manager()
        resp = await manager.create_batch(user_id=test_user_id, files=[_file(), _file()], document_type="dre")
        status = await manager.get_status(user_id=test_user_id, batch_id=resp.batch_job_id)
        assert status.status == "pending"
        assert status.progress == 0
        assert len(status.documents) == 2

    async def test_list_newest_first_with_filter(self, make_manager, fake_db, test_user_id, other_user_id):
        manager = make_manager()
        first = await manager.create_batch(user_id=test_user_id, files=[_file()], document_type="dre", name="um")
        await manager.create_batch(user_id=test_user_id, files=[_file()], document_type="dre", name="dois")
        await manager.create_batch(user_id=other_user_id, files=[_file()], document_type="dre", name="outro")
        fake_db.db.batches[first.batch_job_id]["status"] = "completed"

        listing = await manager.list_batches(user_id=test_user_id)
        assert [b.name for b in listing.batches] == ["dois", "um"]
        assert listing.total == 2

        completed = await manager.list_batches(user_id=test_user_id, status="completed")
        assert [b.name for b in completed.batches] == ["um"]

        page = await manager.list_batches(user_id=test_user_id, limit=1, offset=1)
        assert [b.name for b in page.batches] == ["um"]
        assert page.total == 2

    async def test_list_rejects_unknown_status(self, make_manager, test_user_id):
        with pytest.raises(InvalidRequestError) as exc_info:
            await make_manager().list_batches(user_id=test_user_id, status="done")
        assert not isinstance(exc_info.value, UploadValidationError)


class TestDeleteBatch:
    async def test_delete_cancels_pending_jobs_and_files(self, make_manager, fake_db, test_user_id, upload_dir):
        store = MemoryJobStore()
        manager = make_manager(store)
        resp = await manager.create_batch(
            user_id=test_user_id, files=[_file("a.pdf"), _file("b.pdf")], document_type="dre"
        )
        # One document already picked up by a worker
        await store.claim("document-processing", worker_id="w", lock_seconds=30)

        out = await manager.delete_batch(user_id=test_user_id, batch_id=resp.batch_job_id)

        assert out.deleted is True
        assert out.cancelled_jobs == 1
        assert resp.batch_job_id not in fake_db.db.batches
        # Documents survive with the batch link cleared
        assert all(d["batch_job_id"] is None for d in fake_db.db.documents.values())
        stats = await manager._queue.stats()
        assert stats["active"] == 1
        assert stats["waiting"] == 0
        assert len(os.listdir(upload_dir)) == 1

    async def test_delete_unknown_batch(self, make_manager, test_user_id):
        with pytest.raises(BatchNotFoundError):
            await make_manager().delete_batch(
                user_id=test_user_id, batch_id="00000000-0000-0000-0000-000000000000"
            )

    async def test_delete_other_users_batch(self, make_manager, test_user_id, other_user_id):
        manager = make_manager()
        resp = await manager.create_batch(user_id=test_user_id, files=[_file()], document_type="dre")
        with pytest.raises(BatchNotFoundError):
            await manager.delete_batch(user_id=other_user_id, batch_id=resp.batch_job_id)


class TestGetReport:
    async def test_not_ready_while_processing(self, make_manager, test_user_id):
        manager = make_manager()
        resp = await manager.create_batch(user_id=test_user_id, files=[_file()], document_type="dre")
        with pytest.raises(BatchNotReadyError) as exc_info:
            await manager.get_report(user_id=test_user_id, batch_id=resp.batch_job_id)
        assert exc_info.value.status == "pending"

    async def test_consolidates_on_demand_when_missing(self, make_manager, fake_db, test_user_id):
        manager = make_manager()
        resp = await manager.create_batch(user_id=test_user_id, files=[_file()], document_type="dre")
        batch = fake_db.db.batches[resp.batch_job_id]
        batch.update(status="completed", failed_docs=1)
        doc = next(iter(fake_db.db.documents.values()))
        doc["status"] = "failed"

        report = await manager.get_report(user_id=test_user_id, batch_id=resp.batch_job_id)

        assert report["batchJobId"] == resp.batch_job_id
        assert report["summary"]["failedDocuments"] == 1
        assert report["summary"]["successfulDocuments"] == 0
        assert batch["consolidated_report"] == report
