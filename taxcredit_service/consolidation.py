"""Batch consolidation: aggregate every document analysis into one report.

``build_report`` is a pure function of the batch row and its documents
(with analyses joined), so re-running it over unchanged inputs yields the
same report; only ``generatedAt`` differs. ``BatchConsolidator`` loads the
inputs under the owner's RLS context and persists the result.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from taxcredit_service.db import rls_connection
from taxcredit_service.models import (
    ConsolidatedReport,
    OpportunityRanking,
    PeriodGroup,
    ReportSummary,
    TimelinePoint,
    TypeGroup,
)
from taxcredit_service.periods import period_sort_key
from taxcredit_service.processing.types import ConsolidationJobData
from taxcredit_service.queue.pool import JobHandler
from taxcredit_service.queue.types import Job
from taxcredit_service.stores.batch_store import BatchStore
from taxcredit_service.stores.document_store import DocumentStore

logger = logging.getLogger(__name__)

TOP_OPPORTUNITIES = 10
_CENT = Decimal("0.01")


class BatchNotFoundError(LookupError):
    def __init__(self, batch_id: str) -> None:
        super().__init__(f"Batch {batch_id} not found")
        self.batch_id = batch_id


class BatchNotReadyError(RuntimeError):
    def __init__(self, batch_id: str, status: str) -> None:
        super().__init__(f"Batch {batch_id} is not completed (status={status})")
        self.batch_id = batch_id
        self.status = status


def _number(value: Any) -> float:
    if isinstance(value, bool) or value is None:
        return 0.0
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _money(value: Any) -> Decimal:
    """Amount as exact cents; sums of these agree regardless of grouping."""
    if isinstance(value, bool) or value is None:
        return Decimal(0)
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        return Decimal(0)
    if not amount.is_finite():
        return Decimal(0)
    return amount.quantize(_CENT, rounding=ROUND_HALF_UP)


def build_report(
    batch: dict[str, Any],
    documents: Sequence[dict[str, Any]],
    *,
    generated_at: datetime | None = None,
) -> ConsolidatedReport:
    """Aggregate a batch's documents into a ``ConsolidatedReport``.

    ``documents`` rows carry the document fields plus the joined analysis
    columns (``analysis_id``, ``opportunities``, ``total_estimated_value``,
    ``recommendations``, ``alerts``, ``processing_time_ms``). Only documents
    with status ``completed`` and an analysis count as successful.
    """
    successful = [d for d in documents if d.get("status") == "completed" and d.get("analysis_id")]
    failed_count = sum(1 for d in documents if d.get("status") == "failed")

    # Money is summed as exact cents and converted to float once per field;
    # summary, byType and byPeriod totals agree to the cent.
    values = {id(doc): _money(doc.get("total_estimated_value")) for doc in successful}

    # 1. Summary
    total_value = sum(values.values(), Decimal(0))
    total_opportunities = 0
    total_time_ms = 0
    for doc in successful:
        total_opportunities += len(doc.get("opportunities") or [])
        total_time_ms += int(doc.get("processing_time_ms") or 0)

    # 2. By period (documents without a period are left out)
    period_groups: dict[str, PeriodGroup] = {}
    period_values: dict[str, Decimal] = {}
    for doc in successful:
        period = doc.get("extracted_period")
        if not period:
            continue
        group = period_groups.setdefault(
            period, PeriodGroup(period=period, documents=0, estimated_value=0.0, opportunities=0)
        )
        group.documents += 1
        group.opportunities += len(doc.get("opportunities") or [])
        period_values[period] = period_values.get(period, Decimal(0)) + values[id(doc)]
    for period, group in period_groups.items():
        group.estimated_value = float(period_values[period])
    by_period = sorted(period_groups.values(), key=lambda g: period_sort_key(g.period))

    # 3. By document type, first-seen order
    type_groups: dict[str, TypeGroup] = {}
    type_values: dict[str, Decimal] = {}
    for doc in successful:
        doc_type = doc.get("document_type") or ""
        group = type_groups.setdefault(
            doc_type, TypeGroup(document_type=doc_type, documents=0, estimated_value=0.0)
        )
        group.documents += 1
        type_values[doc_type] = type_values.get(doc_type, Decimal(0)) + values[id(doc)]
    for doc_type, group in type_groups.items():
        group.estimated_value = float(type_values[doc_type])

    # 4. Opportunities, flattened and ranked by category
    all_opportunities: list[dict[str, Any]] = []
    rankings: dict[str, dict[str, Any]] = {}
    for doc in successful:
        for opp in doc.get("opportunities") or []:
            all_opportunities.append(
                {
                    **opp,
                    "documentId": doc["id"],
                    "fileName": doc.get("file_name"),
                    "period": doc.get("extracted_period"),
                }
            )
            tipo = str(opp.get("tipo") or "")
            acc = rankings.setdefault(tipo, {"count": 0, "value": Decimal(0), "probability": 0.0})
            acc["count"] += 1
            acc["value"] += _money(opp.get("valorEstimado"))
            acc["probability"] += _number(opp.get("probabilidadeRecuperacao"))

    top = [
        OpportunityRanking(
            tipo=tipo,
            count=acc["count"],
            total_value=float(acc["value"]),
            avg_probability=acc["probability"] / acc["count"] if acc["count"] else 0.0,
        )
        for tipo, acc in rankings.items()
    ]
    # Stable sort: equal totals keep first-seen order
    top.sort(key=lambda r: r.total_value, reverse=True)

    # 5. Recommendations / alerts, exact-string dedup in first-seen order
    recommendations: dict[str, None] = {}
    alerts: dict[str, None] = {}
    for doc in successful:
        for rec in doc.get("recommendations") or []:
            recommendations.setdefault(rec, None)
        for alert in doc.get("alerts") or []:
            alerts.setdefault(alert, None)

    # 6. Timeline
    timeline = [TimelinePoint(period=g.period, value=g.estimated_value) for g in by_period]

    return ConsolidatedReport(
        batch_job_id=str(batch["id"]),
        summary=ReportSummary(
            total_documents=int(batch.get("total_documents") or len(documents)),
            successful_documents=len(successful),
            failed_documents=failed_count,
            total_estimated_value=float(total_value),
            total_opportunities=total_opportunities,
            processing_time_ms=total_time_ms,
        ),
        by_period=by_period,
        by_type=list(type_groups.values()),
        top_opportunities=top[:TOP_OPPORTUNITIES],
        all_opportunities=all_opportunities,
        recommendations=list(recommendations),
        alerts=list(alerts),
        timeline=timeline,
        generated_at=generated_at or datetime.now(UTC),
    )


class BatchConsolidator:
    def __init__(
        self,
        *,
        batch_store: BatchStore | None = None,
        document_store: DocumentStore | None = None,
    ) -> None:
        self._batches = batch_store or BatchStore()
        self._documents = document_store or DocumentStore()

    async def consolidate(self, *, user_id: str, batch_id: str) -> ConsolidatedReport:
        """Recompute and persist the report of a completed batch.

        Raises BatchNotFoundError / BatchNotReadyError. A failure leaves the
        previously stored report untouched.
        """
        async with rls_connection(user_id) as conn:
            # Read and write in one transaction: a consistent snapshot
            batch = await self._batches.get_batch(conn, batch_id)
            if batch is None:
                raise BatchNotFoundError(batch_id)
            if batch["status"] != "completed":
                raise BatchNotReadyError(batch_id, batch["status"])

            documents = await self._documents.list_for_batch(conn, batch_id)
            report = build_report(batch, documents)

            await self._batches.save_report(
                conn,
                batch_id,
                report=report.model_dump(mode="json", by_alias=True),
                total_estimated_value=report.summary.total_estimated_value,
                total_opportunities=report.summary.total_opportunities,
            )

        logger.info(
            "Batch consolidated batch=%s value=%.2f opportunities=%d ok=%d failed=%d",
            batch_id,
            report.summary.total_estimated_value,
            report.summary.total_opportunities,
            report.summary.successful_documents,
            report.summary.failed_documents,
        )
        return report


class ConsolidationWorker(JobHandler):
    """Queue handler for ``{batchJobId, userId}`` consolidation jobs."""

    def __init__(self, consolidator: BatchConsolidator) -> None:
        self._consolidator = consolidator

    async def process(self, job: Job) -> dict[str, Any]:
        data = ConsolidationJobData.from_payload(job.data)
        report = await self._consolidator.consolidate(
            user_id=data.user_id, batch_id=data.batch_job_id
        )
        return {
            "batchJobId": data.batch_job_id,
            "totalEstimatedValue": report.summary.total_estimated_value,
            "totalOpportunities": report.summary.total_opportunities,
        }

    async def on_failed(self, job: Job, error: str) -> None:
        logger.error(
            "Consolidation failed batch=%s; previous report (if any) kept :: %s",
            job.data.get("batchJobId"),
            error,
        )
