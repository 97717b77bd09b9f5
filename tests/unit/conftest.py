"""Unit test conftest: no database required.

``fake_db`` replaces ``rls_connection`` in every module that opens one with
an in-memory stand-in, and provides dict-backed ``BatchStore`` /
``DocumentStore`` doubles that mirror the SQL semantics (owner scoping,
guarded terminal transitions, counter guard, ``ON DELETE SET NULL``).
"""

from __future__ import annotations

import io
import itertools
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import patch

import pytest

from taxcredit_service.periods import PeriodInfo
from taxcredit_service.processing.types import AnalysisResult, CompanyInfo, Opportunity

# ---------------------------------------------------------------------------
# File fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def sample_pdf_bytes() -> bytes:
    """1-page PDF with enough text to skip OCR."""
    fpdf = pytest.importorskip("fpdf")
    pdf = fpdf.FPDF()
    pdf.add_page()
    pdf.set_font("Helvetica", size=12)
    pdf.cell(text="Demonstracao do Resultado do Exercicio 2024")
    pdf.ln()
    pdf.cell(text="Receita bruta de vendas 1.500.000,00")
    pdf.ln()
    pdf.cell(text="PIS e COFINS sobre receita 138.750,00")
    return bytes(pdf.output())


@pytest.fixture
def empty_pdf_bytes() -> bytes:
    """1-page PDF with no text content (what a scan looks like to pypdf)."""
    fpdf = pytest.importorskip("fpdf")
    pdf = fpdf.FPDF()
    pdf.add_page()
    return bytes(pdf.output())


@pytest.fixture
def sample_xlsx_bytes() -> bytes:
    """Two-sheet workbook: a trial balance and an empty sheet."""
    from openpyxl import Workbook

    wb = Workbook()
    ws = wb.active
    ws.title = "Balancete"
    ws.append(["Conta", "Descrição", "Saldo"])
    ws.append(["1.1.01", "Caixa", 1500.0])
    ws.append(["3.1.01", "Receita de vendas", 250000.5])
    wb.create_sheet("Vazia")
    buf = io.BytesIO()
    wb.save(buf)
    return buf.getvalue()


# ---------------------------------------------------------------------------
# Analysis helpers
# ---------------------------------------------------------------------------


def make_opportunity(
    tipo: str = "Crédito de PIS/COFINS",
    value: float = 1000.0,
    probability: float = 80.0,
) -> Opportunity:
    return Opportunity(
        tipo=tipo,
        tributo="PIS",
        descricao="Insumos não aproveitados",
        valor_estimado=value,
        fundamentacao_legal="Lei 10.637/2002",
        prazo_recuperacao="5 anos",
        complexidade="media",
        probabilidade_recuperacao=probability,
        risco="baixo",
    )


def make_analysis(*opportunities: Opportunity, recommendations: list[str] | None = None) -> AnalysisResult:
    return AnalysisResult(
        opportunities=list(opportunities),
        executive_summary="Resumo",
        recommendations=recommendations or [],
        alerts=[],
        processing_time_ms=5,
        model_used="fake-model",
    )


@pytest.fixture
def opportunity_factory():
    return make_opportunity


@pytest.fixture
def analysis_factory():
    return make_analysis


# ---------------------------------------------------------------------------
# In-memory database doubles
# ---------------------------------------------------------------------------

_BASE_TIME = datetime(2024, 1, 1, tzinfo=UTC)

_TERMINAL = ("completed", "failed")


@dataclass
class FakeConn:
    user_id: str


@dataclass
class FakeDatabase:
    batches: dict[str, dict[str, Any]] = field(default_factory=dict)
    documents: dict[str, dict[str, Any]] = field(default_factory=dict)
    analyses: dict[str, dict[str, Any]] = field(default_factory=dict)  # by document_id
    _clock: itertools.count = field(default_factory=itertools.count)

    def now(self) -> datetime:
        # Strictly increasing, so insertion order survives sorting
        return _BASE_TIME + timedelta(milliseconds=next(self._clock))


class FakeBatchStore:
    def __init__(self, db: FakeDatabase) -> None:
        self.db = db

    def _visible(self, conn: FakeConn, batch_id: str) -> dict[str, Any] | None:
        row = self.db.batches.get(batch_id)
        if row is None or row["user_id"] != conn.user_id:
            return None
        return row

    async def create_batch(self, conn, *, user_id, name, total_documents):
        now = self.db.now()
        row = {
            "id": str(uuid.uuid4()),
            "user_id": user_id,
            "name": name,
            "total_documents": total_documents,
            "processed_docs": 0,
            "failed_docs": 0,
            "status": "pending",
            "total_estimated_value": 0.0,
            "total_opportunities": 0,
            "started_at": None,
            "completed_at": None,
            "created_at": now,
            "updated_at": now,
            "consolidated_report": None,
        }
        self.db.batches[row["id"]] = row
        out = dict(row)
        del out["consolidated_report"]
        return out

    async def get_batch(self, conn, batch_id, *, include_report=False):
        row = self._visible(conn, batch_id)
        if row is None:
            return None
        out = dict(row)
        if not include_report:
            del out["consolidated_report"]
        return out

    async def list_batches(self, conn, *, status=None, limit=10, offset=0):
        rows = [
            dict(r)
            for r in self.db.batches.values()
            if r["user_id"] == conn.user_id and (status is None or r["status"] == status)
        ]
        rows.sort(key=lambda r: r["created_at"], reverse=True)
        return rows[offset : offset + limit], len(rows)

    async def delete_batch(self, conn, batch_id):
        if self._visible(conn, batch_id) is None:
            return False
        del self.db.batches[batch_id]
        for doc in self.db.documents.values():
            if doc["batch_job_id"] == batch_id:
                doc["batch_job_id"] = None
        return True

    async def mark_started(self, conn, batch_id):
        row = self._visible(conn, batch_id)
        if row is None:
            return
        if row["status"] == "pending":
            row["status"] = "processing"
        row["started_at"] = row["started_at"] or self.db.now()

    def _count(self, row: dict[str, Any]) -> dict[str, Any]:
        if row["processed_docs"] + row["failed_docs"] >= row["total_documents"]:
            row["status"] = "completed"
            row["completed_at"] = self.db.now()
        else:
            row["status"] = "processing"
        row["started_at"] = row["started_at"] or self.db.now()
        return {
            k: row[k] for k in ("id", "processed_docs", "failed_docs", "total_documents", "status")
        }

    async def increment_processed(self, conn, batch_id, *, estimated_value, opportunities):
        row = self._visible(conn, batch_id)
        if row is None or row["processed_docs"] + row["failed_docs"] >= row["total_documents"]:
            return None
        row["processed_docs"] += 1
        row["total_estimated_value"] += estimated_value
        row["total_opportunities"] += opportunities
        return self._count(row)

    async def increment_failed(self, conn, batch_id):
        row = self._visible(conn, batch_id)
        if row is None or row["processed_docs"] + row["failed_docs"] >= row["total_documents"]:
            return None
        row["failed_docs"] += 1
        return self._count(row)

    async def save_report(self, conn, batch_id, *, report, total_estimated_value, total_opportunities):
        row = self._visible(conn, batch_id)
        if row is None:
            return False
        row["consolidated_report"] = report
        row["total_estimated_value"] = total_estimated_value
        row["total_opportunities"] = total_opportunities
        row["completed_at"] = row["completed_at"] or self.db.now()
        return True

    async def mark_failed(self, conn, batch_id):
        row = self._visible(conn, batch_id)
        if row is not None:
            row["status"] = "failed"


class FakeDocumentStore:
    def __init__(self, db: FakeDatabase) -> None:
        self.db = db

    def _visible(self, conn: FakeConn, document_id: str) -> dict[str, Any] | None:
        row = self.db.documents.get(document_id)
        if row is None or row["user_id"] != conn.user_id:
            return None
        return row

    async def create_document(
        self,
        conn,
        *,
        user_id,
        batch_job_id,
        file_name,
        file_size,
        mime_type,
        document_type,
        company_info: CompanyInfo | None = None,
    ):
        company = company_info or CompanyInfo()
        row = {
            "id": str(uuid.uuid4()),
            "batch_job_id": batch_job_id,
            "user_id": user_id,
            "file_name": file_name,
            "file_size": file_size,
            "mime_type": mime_type,
            "document_type": document_type,
            "company_name": company.name,
            "cnpj": company.cnpj,
            "regime": company.regime,
            "status": "pending",
            "extracted_period": None,
            "extracted_year": None,
            "extracted_month": None,
            "extracted_quarter": None,
            "processing_error": None,
            "processed_at": None,
            "created_at": self.db.now(),
        }
        self.db.documents[row["id"]] = row
        return dict(row)

    async def get_document(self, conn, document_id):
        row = self._visible(conn, document_id)
        return dict(row) if row else None

    async def mark_processing(self, conn, document_id):
        row = self._visible(conn, document_id)
        if row is None or row["status"] in _TERMINAL:
            return False
        row["status"] = "processing"
        return True

    async def set_period(self, conn, document_id, info: PeriodInfo):
        row = self._visible(conn, document_id)
        if row is None:
            return
        row["extracted_period"] = info.period
        row["extracted_year"] = info.year
        row["extracted_month"] = info.month
        row["extracted_quarter"] = info.quarter

    async def create_analysis(self, conn, *, document_id, result: AnalysisResult):
        if document_id in self.db.analyses:
            raise AssertionError(f"duplicate analysis for document {document_id}")
        analysis_id = str(uuid.uuid4())
        self.db.analyses[document_id] = {
            "analysis_id": analysis_id,
            "opportunities": [o.to_dict() for o in result.opportunities],
            "total_estimated_value": result.total_estimated_value,
            "recommendations": list(result.recommendations),
            "alerts": list(result.alerts),
            "processing_time_ms": result.processing_time_ms,
        }
        return analysis_id

    async def complete_document(self, conn, document_id):
        row = self._visible(conn, document_id)
        if row is None or row["status"] in _TERMINAL:
            return None
        row.update(status="completed", processed_at=self.db.now(), processing_error=None)
        return dict(row)

    async def fail_document(self, conn, document_id, *, error):
        row = self._visible(conn, document_id)
        if row is None or row["status"] in _TERMINAL:
            return None
        row.update(status="failed", processed_at=self.db.now(), processing_error=error[:2000])
        return dict(row)

    async def list_for_batch(self, conn, batch_id):
        empty = {
            "analysis_id": None,
            "opportunities": None,
            "total_estimated_value": None,
            "recommendations": None,
            "alerts": None,
            "processing_time_ms": None,
        }
        rows = [
            {**d, **self.db.analyses.get(d["id"], empty)}
            for d in self.db.documents.values()
            if d["batch_job_id"] == batch_id and d["user_id"] == conn.user_id
        ]
        rows.sort(key=lambda r: (r["created_at"], r["id"]))
        return rows


@asynccontextmanager
async def _fake_rls_connection(user_id: str):
    """Fake rls_connection that yields a connection tagged with the owner."""
    if not user_id:
        raise ValueError("user_id is required for owner-scoped queries")
    yield FakeConn(user_id)


@dataclass
class FakeStores:
    db: FakeDatabase
    batches: FakeBatchStore
    documents: FakeDocumentStore

    def conn(self, user_id: str) -> FakeConn:
        return FakeConn(user_id)


@pytest.fixture
def fake_db():
    """Dict-backed stores with rls_connection patched everywhere it is opened."""
    db = FakeDatabase()
    with (
        patch("taxcredit_service.batches.rls_connection", _fake_rls_connection),
        patch("taxcredit_service.consolidation.rls_connection", _fake_rls_connection),
        patch("taxcredit_service.processing.worker.rls_connection", _fake_rls_connection),
    ):
        yield FakeStores(db=db, batches=FakeBatchStore(db), documents=FakeDocumentStore(db))
