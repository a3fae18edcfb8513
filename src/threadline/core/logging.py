"""Structured logging for threadline adapters.

Uses structlog's ProcessorFormatter so the adapter's plain
``logging.getLogger(__name__)`` call sites, and the ``extra={...}`` fields
they pass, come out as structured records.

Every record carries the ``adapter`` name. Inbound event handling wraps its
work in :func:`event_context`, so everything logged while an event is being
processed also carries ``conversation_id`` and ``event_type``. ``trace_id``
and ``span_id`` are added only while an OpenTelemetry span is recording
context (the adapter opens one per inbound event and per catch-up pass).

When ``log_dir`` is given, two JSON-lines files are written::

    {log_dir}/{adapter}.log            adapter records
    {log_dir}/{adapter}.transport.log  Slack SDK, HTTP client and health-server records

Transport records then stay out of the adapter file and reach the console
only at WARNING and above.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

import structlog
from opentelemetry import trace

_TRANSPORT_LOGGERS = (
    "slack_bolt",
    "slack_sdk",
    "aiohttp",
    "httpx",
    "httpcore",
    "uvicorn",
)


@contextmanager
def event_context(**fields: Any) -> Iterator[None]:
    """Bind *fields* to every record logged inside the block; ``None`` values are skipped."""
    bound = {key: value for key, value in fields.items() if value is not None}
    with structlog.contextvars.bound_contextvars(**bound):
        yield


def _add_adapter(adapter_name: str) -> structlog.types.Processor:
    # Stamped statically; the health server thread does not share the main context.
    def processor(
        logger: logging.Logger,  # noqa: ARG001
        method_name: str,  # noqa: ARG001
        event_dict: dict,
    ) -> dict:
        event_dict.setdefault("adapter", adapter_name)
        return event_dict

    return processor


def add_trace_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Inject ``trace_id`` and ``span_id`` when a valid span is current."""
    ctx = trace.get_current_span().get_span_context()
    if ctx.is_valid:
        event_dict["trace_id"] = format(ctx.trace_id, "032x")
        event_dict["span_id"] = format(ctx.span_id, "016x")
    return event_dict


def _build_processors(time_fmt: str, adapter_name: str) -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt=time_fmt),
        _add_adapter(adapter_name),
        add_trace_context,
        structlog.stdlib.ExtraAdder(),
    ]


def _formatter(
    renderer: structlog.types.Processor, pre_chain: list[structlog.types.Processor]
) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
        foreign_pre_chain=pre_chain,
    )


def _file_handler(path: Path, pre_chain: list[structlog.types.Processor]) -> logging.Handler:
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setFormatter(_formatter(structlog.processors.JSONRenderer(), pre_chain))
    handler.setLevel(logging.DEBUG)
    return handler


def _replace_handlers(target: logging.Logger, handlers: list[logging.Handler]) -> None:
    for handler in target.handlers:
        handler.close()
    target.handlers[:] = handlers


def configure_logging(
    level: str = "INFO",
    fmt: str = "text",
    log_dir: Path | None = None,
    adapter_name: str = "slack",
) -> None:
    """Configure structured logging for the process.

    Safe to call more than once; each call replaces the handlers installed by
    the previous one.

    Parameters
    ----------
    level:
        Root log level (e.g. "DEBUG", "INFO", "WARNING").
    fmt:
        Console format: ``"text"`` for colored output, ``"json"`` for JSON lines.
    log_dir:
        Directory for the adapter and transport log files. Console only when unset.
    adapter_name:
        Stamped on every record and used to name the log files.
    """
    if fmt == "json":
        console_chain = _build_processors("iso", adapter_name)
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        console_chain = _build_processors("%H:%M:%S", adapter_name)
        renderer = structlog.dev.ConsoleRenderer()
    console_formatter = _formatter(renderer, console_chain)

    def console_handler(min_level: int = logging.NOTSET) -> logging.Handler:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(console_formatter)
        handler.setLevel(min_level)
        return handler

    root = logging.getLogger()
    root_handlers = [console_handler()]

    if log_dir is None:
        for name in _TRANSPORT_LOGGERS:
            transport = logging.getLogger(name)
            _replace_handlers(transport, [])
            transport.propagate = True
            transport.setLevel(logging.WARNING)
    else:
        log_dir = Path(log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        file_chain = _build_processors("iso", adapter_name)
        root_handlers.append(_file_handler(log_dir / f"{adapter_name}.log", file_chain))

        transport_file = _file_handler(log_dir / f"{adapter_name}.transport.log", file_chain)
        for name in _TRANSPORT_LOGGERS:
            transport = logging.getLogger(name)
            _replace_handlers(transport, [transport_file, console_handler(logging.WARNING)])
            transport.propagate = False
            transport.setLevel(logging.INFO)

    # Earlier root handlers may belong to a host or test runner; detach them unclosed.
    root.handlers[:] = root_handlers
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    # For direct structlog.get_logger() usage
    structlog.configure(
        processors=[
            *console_chain,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
