"""Pydantic schemas for the batch API and the consolidated report.

Attributes are snake_case; JSON uses camelCase (``batchJobId``,
``totalDocuments``) through the alias generator.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# -- Upload -------------------------------------------------------------------


class UploadedDocument(CamelModel):
    id: str
    file_name: str
    status: str


class BatchUploadResponse(CamelModel):
    batch_job_id: str
    batch_name: str
    total_documents: int
    documents: list[UploadedDocument]


# -- Status -------------------------------------------------------------------


class DocumentStatus(CamelModel):
    id: str
    file_name: str
    status: str
    processed_at: datetime | None = None
    extracted_period: str | None = None
    total_estimated_value: float | None = None
    error: str | None = None


class BatchStatusResponse(CamelModel):
    id: str
    name: str
    status: str
    progress: int
    total_documents: int
    processed_docs: int
    failed_docs: int
    total_estimated_value: float
    total_opportunities: int
    started_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime | None = None
    documents: list[DocumentStatus]


# -- Listing ------------------------------------------------------------------


class BatchSummary(CamelModel):
    id: str
    name: str
    status: str
    total_documents: int
    processed_docs: int
    failed_docs: int
    total_estimated_value: float
    total_opportunities: int
    created_at: datetime | None = None
    completed_at: datetime | None = None


class BatchListResponse(CamelModel):
    batches: list[BatchSummary]
    total: int
    limit: int
    offset: int


class DeleteResponse(CamelModel):
    deleted: bool
    batch_job_id: str
    cancelled_jobs: int = 0


# -- Consolidated report ------------------------------------------------------


class ReportSummary(CamelModel):
    total_documents: int
    successful_documents: int
    failed_documents: int
    total_estimated_value: float
    total_opportunities: int
    processing_time_ms: int


class PeriodGroup(CamelModel):
    period: str
    documents: int
    estimated_value: float
    opportunities: int


class TypeGroup(CamelModel):
    document_type: str
    documents: int
    estimated_value: float


class OpportunityRanking(CamelModel):
    tipo: str
    count: int
    total_value: float
    avg_probability: float


class TimelinePoint(CamelModel):
    period: str
    value: float


class ConsolidatedReport(CamelModel):
    batch_job_id: str
    summary: ReportSummary
    by_period: list[PeriodGroup]
    by_type: list[TypeGroup]
    top_opportunities: list[OpportunityRanking]
    all_opportunities: list[dict[str, Any]] = Field(default_factory=list)
    recommendations: list[str]
    alerts: list[str]
    timeline: list[TimelinePoint]
    generated_at: datetime | None = None


# -- Queue --------------------------------------------------------------------


class QueueCounts(BaseModel):
    waiting: int
    active: int
    completed: int
    failed: int
    delayed: int
    total: int


# -- Health -------------------------------------------------------------------


class HealthResponse(BaseModel):
    status: str
    error: str | None = None
