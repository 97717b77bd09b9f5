"""Logging setup shared by the API and the ``taxcredit-worker`` process.

On Cloud Run (``K_SERVICE`` set) records are emitted as JSON through
python-json-logger with a Cloud Logging ``severity`` field; locally they
are plain text. Lines logged while a worker runs a job carry the queue
name and job id, so one document's attempts can be followed across
retries and processes.
"""

from __future__ import annotations

import contextlib
import logging
import os
import uuid
from collections.abc import Iterator
from contextvars import ContextVar

from pythonjsonlogger.json import JsonFormatter

_job_context: ContextVar[tuple[str, str] | None] = ContextVar("taxcredit_job", default=None)

# Chatty third-party loggers that drown out job lifecycle lines
_QUIET_LOGGERS = ("httpx", "google_genai", "pypdf")


@contextlib.contextmanager
def job_context(queue: str, job_id: str) -> Iterator[None]:
    """Tag every record logged inside the block with ``queue``/``job_id``."""
    token = _job_context.set((queue, job_id))
    try:
        yield
    finally:
        _job_context.reset(token)


class JobContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        ctx = _job_context.get()
        record.queue, record.job_id = ctx if ctx else ("", "")
        return True


class CloudLoggingFormatter(JsonFormatter):
    """JSON records with ``severity`` in place of ``levelname``."""

    def add_fields(
        self,
        log_record: dict[str, object],
        record: logging.LogRecord,
        message_dict: dict[str, object],
    ) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record["severity"] = log_record.pop("levelname", record.levelname)
        for key in ("queue", "job_id"):
            if not log_record.get(key):
                log_record.pop(key, None)


def _local_formatter() -> logging.Formatter:
    return logging.Formatter(
        "%(asctime)s %(levelname)-8s %(name)s %(job_id)s %(message)s",
        datefmt="%H:%M:%S",
    )


def setup_logging(*, level: str = "INFO") -> None:
    handler = logging.StreamHandler()
    handler.addFilter(JobContextFilter())
    if os.getenv("K_SERVICE"):
        handler.setFormatter(CloudLoggingFormatter(
            "%(levelname)s %(message)s %(name)s %(queue)s %(job_id)s",
            rename_fields={"name": "logger"},
        ))
    else:
        handler.setFormatter(_local_formatter())

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def generate_request_id() -> str:
    """Short random id echoed back in ``x-request-id``."""
    return uuid.uuid4().hex[:16]
