"""Environment-variable-driven configuration for the tax-credit batch service.

All config comes from env vars. Queue tuning is also exposed as a frozen
``QueueSettings`` dataclass so the composition root can inject it.
"""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_csv(name: str, default: str) -> list[str]:
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return float(raw)


# -- Documents ----------------------------------------------------------------
DOCUMENT_TYPES: tuple[str, ...] = ("dre", "balanço", "balancete")
COMPANY_REGIMES: tuple[str, ...] = ("lucro_real", "lucro_presumido", "simples")
ALLOWED_MIME_TYPES: tuple[str, ...] = (
    "application/pdf",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "text/plain",
    "image/png",
    "image/jpeg",
)

# -- Upload -------------------------------------------------------------------
TC_UPLOAD_DIR: str = os.getenv("TC_UPLOAD_DIR", os.path.join(tempfile.gettempdir(), "uploads"))
TC_MAX_FILE_SIZE_MB: int = _env_int("TC_MAX_FILE_SIZE_MB", 10)
TC_MAX_BATCH_FILES: int = _env_int("TC_MAX_BATCH_FILES", 200)

# -- Extraction ---------------------------------------------------------------
TC_OCR_ENABLED: bool = _env_bool("TC_OCR_ENABLED", False)
TC_DOC_AI_PROJECT: str | None = os.getenv("TC_DOC_AI_PROJECT")
TC_DOC_AI_LOCATION: str | None = os.getenv("TC_DOC_AI_LOCATION")
TC_DOC_AI_PROCESSOR_ID: str | None = os.getenv("TC_DOC_AI_PROCESSOR_ID")
TC_MIN_CHARS_PER_PAGE: int = _env_int("TC_MIN_CHARS_PER_PAGE", 50)
TC_MIN_TOTAL_CHARS: int = _env_int("TC_MIN_TOTAL_CHARS", 200)
TC_MAX_ANALYSIS_CHARS: int = _env_int("TC_MAX_ANALYSIS_CHARS", 100_000)

# -- Analysis -----------------------------------------------------------------
TC_ANALYSIS_MODEL: str = os.getenv("TC_ANALYSIS_MODEL", "gemini-2.5-pro")
VERTEX_PROJECT: str = os.getenv("GOOGLE_CLOUD_PROJECT", "taxcredit")
VERTEX_LOCATION: str = os.getenv("GOOGLE_CLOUD_LOCATION", "us-central1")

# -- Auth ---------------------------------------------------------------------
TC_SHARED_TOKEN: str | None = os.getenv("TC_SHARED_TOKEN")
TC_OIDC_AUDIENCE: str | None = os.getenv("TC_OIDC_AUDIENCE")
TC_ALLOWED_ISSUERS: set[str] = set(
    _env_csv("TC_ALLOWED_ISSUERS", "https://accounts.google.com,accounts.google.com")
)

# -- CORS ---------------------------------------------------------------------
TC_CORS_ALLOW_ORIGINS: list[str] = _env_csv(
    "TC_CORS_ALLOW_ORIGINS",
    "http://localhost:3000,http://localhost:5173",
)
TC_CORS_ALLOW_METHODS: list[str] = _env_csv(
    "TC_CORS_ALLOW_METHODS",
    "GET,POST,DELETE,OPTIONS",
)
TC_CORS_ALLOW_HEADERS: list[str] = _env_csv(
    "TC_CORS_ALLOW_HEADERS",
    "Authorization,Content-Type",
)
TC_CORS_ALLOW_CREDENTIALS: bool = _env_bool("TC_CORS_ALLOW_CREDENTIALS", False)

# -- Server -------------------------------------------------------------------
IS_CLOUD_RUN: bool = bool(os.getenv("K_SERVICE"))
TC_EMBEDDED_WORKERS: bool = _env_bool("TC_EMBEDDED_WORKERS", False)


@dataclass(frozen=True)
class QueueSettings:
    backend: str  # postgres|memory

    # Worker pools
    document_concurrency: int
    consolidation_concurrency: int
    poll_seconds: float

    # Document jobs
    job_timeout_seconds: float
    job_attempts: int
    job_backoff_seconds: float
    job_priority: int

    # Consolidation jobs
    consolidation_attempts: int

    # Stall detection
    lock_seconds: float
    stall_check_seconds: float
    max_stalled_count: int

    # Retention
    completed_retention_days: int
    failed_retention_days: int
    clean_interval_seconds: float

    @classmethod
    def from_env(cls) -> QueueSettings:
        return cls(
            backend=os.getenv("TC_QUEUE_BACKEND", "postgres").strip().lower(),
            document_concurrency=_env_int("TC_DOCUMENT_CONCURRENCY", 5),
            consolidation_concurrency=_env_int("TC_CONSOLIDATION_CONCURRENCY", 1),
            poll_seconds=_env_float("TC_QUEUE_POLL_SECONDS", 1.0),
            job_timeout_seconds=_env_float("TC_JOB_TIMEOUT_SECONDS", 600.0),
            job_attempts=_env_int("TC_JOB_ATTEMPTS", 3),
            job_backoff_seconds=_env_float("TC_JOB_BACKOFF_SECONDS", 2.0),
            job_priority=_env_int("TC_JOB_PRIORITY", 10),
            consolidation_attempts=_env_int("TC_CONSOLIDATION_ATTEMPTS", 2),
            lock_seconds=_env_float("TC_LOCK_SECONDS", 30.0),
            stall_check_seconds=_env_float("TC_STALL_CHECK_SECONDS", 30.0),
            max_stalled_count=_env_int("TC_MAX_STALLED_COUNT", 1),
            completed_retention_days=_env_int("TC_COMPLETED_RETENTION_DAYS", 7),
            failed_retention_days=_env_int("TC_FAILED_RETENTION_DAYS", 30),
            clean_interval_seconds=_env_float("TC_CLEAN_INTERVAL_SECONDS", 3600.0),
        )

    def validate(self) -> None:
        if self.backend not in ("postgres", "memory"):
            raise ValueError(f"TC_QUEUE_BACKEND must be 'postgres' or 'memory', got {self.backend!r}")
        if self.document_concurrency < 1:
            raise ValueError("TC_DOCUMENT_CONCURRENCY must be >= 1")
        if self.consolidation_concurrency < 1:
            raise ValueError("TC_CONSOLIDATION_CONCURRENCY must be >= 1")
        if self.job_attempts < 1:
            raise ValueError("TC_JOB_ATTEMPTS must be >= 1")
        if self.consolidation_attempts < 1:
            raise ValueError("TC_CONSOLIDATION_ATTEMPTS must be >= 1")
        if self.job_timeout_seconds <= 0:
            raise ValueError("TC_JOB_TIMEOUT_SECONDS must be > 0")
        if self.job_backoff_seconds < 0:
            raise ValueError("TC_JOB_BACKOFF_SECONDS must be >= 0")
        if self.max_stalled_count < 0:
            raise ValueError("TC_MAX_STALLED_COUNT must be >= 0")
        if self.lock_seconds <= 0:
            raise ValueError("TC_LOCK_SECONDS must be > 0")
