"""FastAPI entry point for the tax-credit batch service.

Endpoints:
- POST   /batch/upload       — Upload a batch of documents and queue them
- GET    /batch/{id}/status  — Progress, counters and per-document status
- GET    /batch/{id}/report  — Consolidated report (completed batches only)
- GET    /batch              — Paginated batch list, optional status filter
- DELETE /batch/{id}         — Delete a batch, cancel its pending jobs
- GET    /queue/stats        — Job counts per state for a queue
- GET    /liveness           — Health check
- GET    /readiness          — DB connectivity check
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Annotated, Any, cast

from fastapi import Depends, FastAPI, File, Form, HTTPException, Query, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from taxcredit_service.auth import Identity, get_identity, is_public_path, require_auth_on_cloud_run
from taxcredit_service.batches import InvalidRequestError, UploadedFile
from taxcredit_service.config import (
    TC_CORS_ALLOW_CREDENTIALS,
    TC_CORS_ALLOW_HEADERS,
    TC_CORS_ALLOW_METHODS,
    TC_CORS_ALLOW_ORIGINS,
    TC_EMBEDDED_WORKERS,
    TC_MAX_BATCH_FILES,
    TC_MAX_FILE_SIZE_MB,
)
from taxcredit_service.consolidation import BatchNotFoundError, BatchNotReadyError
from taxcredit_service.db import check_db_connection, close_pool
from taxcredit_service.logging_config import generate_request_id, setup_logging
from taxcredit_service.models import (
    BatchListResponse,
    BatchStatusResponse,
    BatchUploadResponse,
    DeleteResponse,
    HealthResponse,
    QueueCounts,
)
from taxcredit_service.processing.types import CompanyInfo
from taxcredit_service.services import Services, build_services

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: build services, optionally run workers in-process."""
    setup_logging()
    require_auth_on_cloud_run()
    services = await build_services()
    app.state.services = services
    if TC_EMBEDDED_WORKERS:
        await services.start_workers()
    elif services.settings.backend == "memory":
        logger.warning("TC_QUEUE_BACKEND=memory without TC_EMBEDDED_WORKERS: jobs will never run")
    logger.info("Tax-credit batch service started")
    yield
    await services.stop_workers()
    await close_pool()
    logger.info("Tax-credit batch service stopped")


app = FastAPI(
    title="Tax Credit Batch API",
    version="0.1.0",
    lifespan=lifespan,
)

# -- Rate limiting ------------------------------------------------------------

limiter = Limiter(key_func=get_remote_address, default_limits=["60/minute"])
app.state.limiter = limiter


@app.exception_handler(RateLimitExceeded)
async def _rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    return JSONResponse(status_code=429, content={"detail": "Rate limit exceeded"})


# -- Domain errors ------------------------------------------------------------


@app.exception_handler(InvalidRequestError)
async def _invalid_request_handler(request: Request, exc: InvalidRequestError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(BatchNotFoundError)
async def _not_found_handler(request: Request, exc: BatchNotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": "Batch not found"})


@app.exception_handler(BatchNotReadyError)
async def _not_ready_handler(request: Request, exc: BatchNotReadyError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={"detail": "Batch processing not completed yet", "status": exc.status},
    )


if TC_CORS_ALLOW_CREDENTIALS and "*" in TC_CORS_ALLOW_ORIGINS:
    raise RuntimeError("Invalid CORS config: wildcard origin cannot be combined with credentials=true")

app.add_middleware(
    CORSMiddleware,
    allow_origins=TC_CORS_ALLOW_ORIGINS,
    allow_credentials=TC_CORS_ALLOW_CREDENTIALS,
    allow_methods=TC_CORS_ALLOW_METHODS,
    allow_headers=TC_CORS_ALLOW_HEADERS,
)


# -- Body size limit ----------------------------------------------------------

_MAX_FILE_BYTES = TC_MAX_FILE_SIZE_MB * 1024 * 1024
# A full batch of maximum-size files plus multipart overhead
_MAX_BODY_BYTES = _MAX_FILE_BYTES * TC_MAX_BATCH_FILES + 1024 * 1024


@app.middleware("http")
async def body_size_middleware(request: Request, call_next):  # type: ignore[no-untyped-def]
    """Reject requests with bodies exceeding the size limit."""
    content_length = request.headers.get("content-length")
    if content_length is not None and int(content_length) > _MAX_BODY_BYTES:
        return JSONResponse(status_code=413, content={"detail": "Request body too large"})
    return await call_next(request)


# -- Auth middleware ----------------------------------------------------------


@app.middleware("http")
async def auth_middleware(request: Request, call_next):  # type: ignore[no-untyped-def]
    """Enforce authentication on all non-public paths."""
    if request.method == "OPTIONS" or is_public_path(request.url.path):
        return await call_next(request)

    try:
        identity = await get_identity(request)
        request.state.identity = identity
    except HTTPException as exc:
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})
    except Exception as e:
        logger.warning("Auth middleware error: %s", e)
        return JSONResponse(status_code=401, content={"detail": "Authentication failed"})

    return await call_next(request)


# -- Request ID middleware ----------------------------------------------------


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):  # type: ignore[no-untyped-def]
    """Attach a unique request ID for trace correlation."""
    request_id = request.headers.get("x-request-id") or generate_request_id()
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["x-request-id"] = request_id
    return response


def _get_identity(request: Request) -> Identity:
    """Dependency: extract identity from request state (set by middleware)."""
    identity = getattr(request.state, "identity", None)
    if identity is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return cast(Identity, identity)


def _get_services(request: Request) -> Services:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Service not ready")
    return cast(Services, services)


# -- Health -------------------------------------------------------------------


@app.get("/liveness", response_model=HealthResponse)
async def liveness() -> HealthResponse:
    return HealthResponse(status="ok")


@app.get("/readiness", response_model=HealthResponse)
async def readiness() -> HealthResponse:
    db_ok = await check_db_connection()
    if not db_ok:
        raise HTTPException(status_code=503, detail="Database unavailable")
    return HealthResponse(status="ok")


# -- Batches ------------------------------------------------------------------


async def _read_upload(f: UploadFile) -> UploadedFile:
    # Read one byte past the limit so oversize files are detectable without
    # buffering arbitrarily large bodies.
    content = await f.read(_MAX_FILE_BYTES + 1)
    return UploadedFile(
        file_name=f.filename or "upload",
        mime_type=f.content_type or "application/octet-stream",
        content=content,
    )


@app.post("/batch/upload", response_model=BatchUploadResponse)
@limiter.limit("10/minute")
async def upload_batch(
    request: Request,
    identity: Annotated[Identity, Depends(_get_identity)],
    services: Annotated[Services, Depends(_get_services)],
    documents: Annotated[list[UploadFile], File()],
    document_type: Annotated[str, Form(alias="documentType")],
    batch_name: Annotated[str | None, Form(alias="batchName")] = None,
    company_name: Annotated[str | None, Form(alias="companyName")] = None,
    cnpj: Annotated[str | None, Form()] = None,
    regime: Annotated[str | None, Form()] = None,
) -> BatchUploadResponse:
    """Validate files, persist the batch and queue one job per document."""
    files = [await _read_upload(f) for f in documents]
    company = CompanyInfo(name=company_name or None, cnpj=cnpj or None, regime=regime or None)

    return await services.batch_manager.create_batch(
        user_id=identity.user_id,
        files=files,
        document_type=document_type,
        company_info=company,
        name=batch_name or None,
    )


@app.get("/batch/{batch_id}/status", response_model=BatchStatusResponse)
async def batch_status(
    batch_id: uuid.UUID,
    identity: Annotated[Identity, Depends(_get_identity)],
    services: Annotated[Services, Depends(_get_services)],
) -> BatchStatusResponse:
    return await services.batch_manager.get_status(user_id=identity.user_id, batch_id=str(batch_id))


@app.get("/batch/{batch_id}/report")
async def batch_report(
    batch_id: uuid.UUID,
    identity: Annotated[Identity, Depends(_get_identity)],
    services: Annotated[Services, Depends(_get_services)],
) -> dict[str, Any]:
    """Consolidated report; 400 while the batch is still processing."""
    return await services.batch_manager.get_report(user_id=identity.user_id, batch_id=str(batch_id))


@app.get("/batch", response_model=BatchListResponse)
async def list_batches(
    identity: Annotated[Identity, Depends(_get_identity)],
    services: Annotated[Services, Depends(_get_services)],
    status: str | None = None,
    limit: int = 10,
    offset: int = 0,
) -> BatchListResponse:
    limit = min(max(limit, 1), 100)
    offset = max(offset, 0)
    return await services.batch_manager.list_batches(
        user_id=identity.user_id, status=status, limit=limit, offset=offset
    )


@app.delete("/batch/{batch_id}", response_model=DeleteResponse)
async def delete_batch(
    batch_id: uuid.UUID,
    identity: Annotated[Identity, Depends(_get_identity)],
    services: Annotated[Services, Depends(_get_services)],
) -> DeleteResponse:
    return await services.batch_manager.delete_batch(user_id=identity.user_id, batch_id=str(batch_id))


# -- Queue --------------------------------------------------------------------


@app.get("/queue/stats", response_model=QueueCounts)
async def queue_stats(
    services: Annotated[Services, Depends(_get_services)],
    queue: Annotated[str, Query(pattern="^(documents|consolidation)$")] = "documents",
) -> QueueCounts:
    target = services.document_queue if queue == "documents" else services.consolidation_queue
    return QueueCounts(**await target.stats())
