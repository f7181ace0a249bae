"""Structured logging for calendar sync workers.

Uses structlog's ProcessorFormatter to transparently upgrade all existing
``logging.getLogger(__name__)`` call sites. Zero changes needed at call sites.

Two output formats:
- ``text``: Colored, human-readable console output (dev default)
- ``json``: Machine-parseable JSON lines (production / log aggregation)

The running job name and OTel trace context are injected automatically via
processors that read from a ContextVar and the current OTel span.  Business
ids are never carried in the ContextVar; they travel as explicit arguments.

Log directory layout (when ``log_root`` is set)::

    logs/
      calsync/
        worker.log      # Application logs (JSON)
      http/
        worker.log      # httpx / httpcore transport logs (JSON)
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from pathlib import Path

import structlog
from opentelemetry import trace

# ---------------------------------------------------------------------------
# Job context (asyncio-safe via ContextVar)
# ---------------------------------------------------------------------------

_job_context: ContextVar[str | None] = ContextVar("calsync_job", default=None)


def get_job_context() -> str | None:
    """Get the job name running in the current async context."""
    return _job_context.get()


@contextmanager
def job_context(name: str) -> Iterator[None]:
    """Tag every log record emitted inside the block with ``job=<name>``."""
    token = _job_context.set(name)
    try:
        yield
    finally:
        _job_context.reset(token)


# ---------------------------------------------------------------------------
# Structlog processors
# ---------------------------------------------------------------------------


def add_job_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Inject ``job`` key from the ContextVar into the event dict."""
    event_dict["job"] = _job_context.get()
    return event_dict


def add_otel_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Inject ``trace_id`` and ``span_id`` from the current OTel span."""
    span = trace.get_current_span()
    ctx = span.get_span_context()
    if ctx and ctx.trace_id:
        event_dict["trace_id"] = format(ctx.trace_id, "032x")
        event_dict["span_id"] = format(ctx.span_id, "016x")
    else:
        event_dict["trace_id"] = "0" * 32
        event_dict["span_id"] = "0" * 16
    return event_dict


# ---------------------------------------------------------------------------
# Noise suppression
# ---------------------------------------------------------------------------

_NOISE_LOGGERS = (
    "httpx",
    "httpcore",
    "asyncpg",
)

_DIR_APP = "calsync"
_DIR_HTTP = "http"


def _build_processors(
    time_fmt: str,
) -> list[structlog.types.Processor]:
    """Build the pre-chain processor list with the given timestamp format."""
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt=time_fmt),
        add_job_context,
        add_otel_context,
        structlog.stdlib.ExtraAdder(),
    ]


def _make_file_handler(path: Path, processors: list) -> logging.FileHandler:
    """Create a JSON file handler at *path*."""
    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.JSONRenderer(),
        ],
        foreign_pre_chain=processors,
    )
    handler = logging.FileHandler(path)
    handler.setFormatter(formatter)
    handler.setLevel(logging.DEBUG)
    return handler


# ---------------------------------------------------------------------------
# configure_logging()
# ---------------------------------------------------------------------------


def configure_logging(
    level: str = "INFO",
    fmt: str = "text",
    log_root: Path | str | None = None,
    process_name: str = "worker",
) -> None:
    """Configure structured logging for the process.

    Parameters
    ----------
    level:
        Root log level (e.g. "DEBUG", "INFO", "WARNING").
    fmt:
        Output format, ``"text"`` for colored console or ``"json"`` for JSON lines.
    log_root:
        Root directory for structured log files.  When set, creates
        ``{log_root}/calsync/{process_name}.log`` for application logs and
        ``{log_root}/http/{process_name}.log`` for transport logs.
    process_name:
        File stem used for the log files.
    """
    if fmt == "json":
        console_processors = _build_processors(time_fmt="iso")
        renderer = structlog.processors.JSONRenderer()
    else:
        console_processors = _build_processors(time_fmt="%H:%M:%S")
        renderer = structlog.dev.ConsoleRenderer()

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
        foreign_pre_chain=console_processors,
    )

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)

    root = logging.getLogger()
    # Remove existing handlers to avoid duplicate output on reconfiguration
    root.handlers.clear()
    root.addHandler(console_handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for name in _NOISE_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    if log_root is not None:
        log_root = Path(log_root)
        file_processors = _build_processors(time_fmt="iso")
        for subdir in (_DIR_APP, _DIR_HTTP):
            (log_root / subdir).mkdir(parents=True, exist_ok=True)

        root.addHandler(
            _make_file_handler(log_root / _DIR_APP / f"{process_name}.log", file_processors)
        )
        http_handler = _make_file_handler(
            log_root / _DIR_HTTP / f"{process_name}.log", file_processors
        )
        for name in _NOISE_LOGGERS:
            logging.getLogger(name).addHandler(http_handler)

    structlog.configure(
        processors=[
            *console_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
