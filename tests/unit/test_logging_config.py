"""Unit tests for logging setup and job-context correlation."""

from __future__ import annotations

import json
import logging

import pytest

from taxcredit_service.logging_config import (
    CloudLoggingFormatter,
    JobContextFilter,
    generate_request_id,
    job_context,
    setup_logging,
)


@pytest.fixture()
def restore_root():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)


def _record(msg: str = "hello", level: int = logging.INFO) -> logging.LogRecord:
    record = logging.makeLogRecord({
        "msg": msg,
        "levelno": level,
        "levelname": logging.getLevelName(level),
        "name": "taxcredit.test",
    })
    JobContextFilter().filter(record)
    return record


class TestJobContext:
    def test_outside_job_fields_are_blank(self):
        record = _record()
        assert record.queue == ""
        assert record.job_id == ""

    def test_inside_job_fields_are_set(self):
        with job_context("document-processing", "job-1"):
            record = _record()
        assert record.queue == "document-processing"
        assert record.job_id == "job-1"

    def test_context_resets_after_block(self):
        with job_context("document-processing", "job-1"):
            pass
        assert _record().job_id == ""


class TestCloudLoggingFormatter:
    def _format(self, record: logging.LogRecord) -> dict:
        formatter = CloudLoggingFormatter(
            "%(levelname)s %(message)s %(name)s %(queue)s %(job_id)s",
            rename_fields={"name": "logger"},
        )
        return json.loads(formatter.format(record))

    def test_severity_replaces_levelname(self):
        out = self._format(_record(level=logging.WARNING))
        assert out["severity"] == "WARNING"
        assert "levelname" not in out
        assert out["logger"] == "taxcredit.test"

    def test_job_fields_included_inside_job(self):
        with job_context("batch-consolidation", "job-9"):
            out = self._format(_record())
        assert out["queue"] == "batch-consolidation"
        assert out["job_id"] == "job-9"

    def test_empty_job_fields_dropped(self):
        out = self._format(_record())
        assert "queue" not in out
        assert "job_id" not in out


class TestSetupLogging:
    def test_json_on_cloud_run(self, restore_root, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("K_SERVICE", "taxcredit-api")
        setup_logging(level="debug")
        assert len(restore_root.handlers) == 1
        assert isinstance(restore_root.handlers[0].formatter, CloudLoggingFormatter)
        assert restore_root.level == logging.DEBUG

    def test_plain_text_locally(self, restore_root, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.delenv("K_SERVICE", raising=False)
        setup_logging()
        formatter = restore_root.handlers[0].formatter
        assert not isinstance(formatter, CloudLoggingFormatter)
        assert restore_root.level == logging.INFO

    def test_unknown_level_falls_back_to_info(self, restore_root, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.delenv("K_SERVICE", raising=False)
        setup_logging(level="chatty")
        assert restore_root.level == logging.INFO

    def test_quiets_third_party_loggers(self, restore_root):
        setup_logging()
        assert logging.getLogger("httpx").level == logging.WARNING


def test_request_id_is_short_hex():
    rid = generate_request_id()
    assert len(rid) == 16
    int(rid, 16)
    assert rid != generate_request_id()
