"""Structured logging for calsync workers.

Uses structlog's ProcessorFormatter so that plain
``logging.getLogger(__name__)`` call sites emit structured records.

Two output formats:
- ``text``: Colored, human-readable console output (dev default)
- ``json``: Machine-parseable JSON lines (production / log aggregation)

The worker name and OTel trace context are injected by processors. Per-item
fields (``outbox_id``, ``workspace_id``, ``operation``) are bound by the sync
worker through ``structlog.contextvars`` and merged into every record logged
while that item is being processed.

Log directory layout (when ``log_root`` is set)::

    logs/
      calsync/          # Per-worker application logs (JSON)
        calsync.log
      transport/        # httpx / asyncpg chatter (JSON)
        calsync.log
"""

from __future__ import annotations

import logging
import sys
from contextvars import ContextVar
from pathlib import Path

import structlog
from opentelemetry import trace

_worker_context: ContextVar[str | None] = ContextVar("worker_name", default=None)


def set_worker_context(name: str) -> None:
    """Set the worker name for the current async context."""
    _worker_context.set(name)


def get_worker_context() -> str | None:
    return _worker_context.get()


# ---------------------------------------------------------------------------
# Structlog processors
# ---------------------------------------------------------------------------


def add_worker_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Inject ``worker`` key from the ContextVar into the event dict."""
    event_dict["worker"] = _worker_context.get()
    return event_dict


def add_otel_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Inject ``trace_id`` and ``span_id`` from the current OTel span."""
    ctx = trace.get_current_span().get_span_context()
    if ctx and ctx.trace_id:
        event_dict["trace_id"] = format(ctx.trace_id, "032x")
        event_dict["span_id"] = format(ctx.span_id, "016x")
    else:
        event_dict["trace_id"] = "0" * 32
        event_dict["span_id"] = "0" * 16
    return event_dict


# Chatty client libraries: WARNING on the console, full detail in transport/.
_NOISE_LOGGERS = ("httpx", "httpcore", "asyncpg")

_APP_SUBDIR = "calsync"
_TRANSPORT_SUBDIR = "transport"


def _pre_chain(time_fmt: str) -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt=time_fmt),
        add_worker_context,
        add_otel_context,
        structlog.stdlib.ExtraAdder(),
    ]


def _formatter(
    renderer: structlog.types.Processor, pre_chain: list[structlog.types.Processor]
) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        foreign_pre_chain=pre_chain,
    )


def _json_file_handler(log_root: Path, subdir: str, log_name: str) -> logging.FileHandler:
    directory = log_root / subdir
    directory.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(directory / f"{log_name}.log")
    handler.setFormatter(_formatter(structlog.processors.JSONRenderer(), _pre_chain("iso")))
    handler.setLevel(logging.DEBUG)
    return handler


def configure_logging(
    level: str = "INFO",
    fmt: str = "text",
    log_root: Path | None = None,
    worker_name: str | None = None,
) -> None:
    """Install structured logging on the root logger. Safe to call more than once.

    Parameters
    ----------
    level:
        Root log level name, case-insensitive.
    fmt:
        ``"text"`` for the colored console renderer, ``"json"`` for JSON lines.
    log_root:
        When set, also write JSON to ``{log_root}/calsync/{worker_name}.log``
        and copy client-library records to ``{log_root}/transport/{worker_name}.log``.
    worker_name:
        Stored in the worker ContextVar and used as the log file name.
    """
    if worker_name:
        set_worker_context(worker_name)

    if fmt == "json":
        pre_chain = _pre_chain("iso")
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        pre_chain = _pre_chain("%H:%M:%S")
        renderer = structlog.dev.ConsoleRenderer()

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(_formatter(renderer, pre_chain))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(console)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    for name in _NOISE_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    if log_root is not None:
        log_root = Path(log_root)
        log_name = worker_name or "calsync"
        root.addHandler(_json_file_handler(log_root, _APP_SUBDIR, log_name))
        transport = _json_file_handler(log_root, _TRANSPORT_SUBDIR, log_name)
        for name in _NOISE_LOGGERS:
            logging.getLogger(name).addHandler(transport)

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
