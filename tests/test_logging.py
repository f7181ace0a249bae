"""Tests for structured logging setup."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest
import structlog

from calsync.core.logging import (
    _NOISE_LOGGERS,
    add_job_context,
    add_otel_context,
    configure_logging,
    get_job_context,
    job_context,
)

pytestmark = pytest.mark.unit


@pytest.fixture(autouse=True)
def _reset_logging():
    yield
    root = logging.getLogger()
    for handler in root.handlers:
        handler.close()
    root.handlers.clear()
    root.setLevel(logging.WARNING)
    for name in _NOISE_LOGGERS:
        logging.getLogger(name).handlers.clear()


class TestJobContext:
    def test_scoped_to_block(self) -> None:
        assert get_job_context() is None
        with job_context("sync_booking"):
            assert get_job_context() == "sync_booking"
            assert add_job_context(None, "info", {"event": "x"})["job"] == "sync_booking"
        assert get_job_context() is None

    def test_unset_context_is_none(self) -> None:
        assert add_job_context(None, "info", {"event": "x"})["job"] is None


class TestAddOtelContext:
    def test_zeroed_ids_when_no_span(self) -> None:
        result = add_otel_context(None, "info", {"event": "test"})
        assert result["trace_id"] == "0" * 32
        assert result["span_id"] == "0" * 16

    def test_real_ids_when_span_active(self) -> None:
        from opentelemetry.sdk.trace import TracerProvider

        provider = TracerProvider()
        with provider.get_tracer("test").start_as_current_span("test-span"):
            result = add_otel_context(None, "info", {"event": "test"})
            assert result["trace_id"] != "0" * 32
            assert len(result["span_id"]) == 16
        provider.shutdown()


class TestConfigureLogging:
    @pytest.mark.parametrize(
        ("fmt", "renderer"),
        [("text", structlog.dev.ConsoleRenderer), ("json", structlog.processors.JSONRenderer)],
    )
    def test_console_renderer(self, fmt: str, renderer: type) -> None:
        configure_logging(fmt=fmt)
        formatter = logging.getLogger().handlers[0].formatter
        assert isinstance(formatter, structlog.stdlib.ProcessorFormatter)
        assert isinstance(formatter.processors[-1], renderer)

    def test_noise_loggers_suppressed(self) -> None:
        configure_logging(level="DEBUG")
        assert logging.getLogger().level == logging.DEBUG
        for name in ("httpx", "httpcore", "asyncpg"):
            assert logging.getLogger(name).level >= logging.WARNING

    def test_reconfiguring_does_not_duplicate_handlers(self) -> None:
        configure_logging()
        configure_logging()
        assert len(logging.getLogger().handlers) == 1


class TestLogFiles:
    def test_layout(self, tmp_path: Path) -> None:
        configure_logging(log_root=tmp_path / "logs", process_name="worker")

        file_handlers = [
            h for h in logging.getLogger().handlers if isinstance(h, logging.FileHandler)
        ]
        assert len(file_handlers) == 1
        assert file_handlers[0].baseFilename.endswith("calsync/worker.log")
        http_handlers = [
            h for h in logging.getLogger("httpx").handlers if isinstance(h, logging.FileHandler)
        ]
        assert http_handlers[0].baseFilename.endswith("http/worker.log")

    def test_file_output_is_json_with_job(self, tmp_path: Path) -> None:
        configure_logging(fmt="text", log_root=tmp_path, process_name="jsontest")

        with job_context("import_availability"):
            logging.getLogger("calsync.test").warning("imported %d events", 3)
        for handler in logging.getLogger().handlers:
            handler.flush()

        data = json.loads((tmp_path / "calsync" / "jsontest.log").read_text().strip())
        assert data["event"] == "imported 3 events"
        assert data["job"] == "import_availability"
        assert data["level"] == "warning"
