"""Logging helpers that stamp trace context onto records."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, cast

from opentelemetry import trace

if TYPE_CHECKING:

    class _TraceRecord(logging.LogRecord):
        trace_id: str | None
        span_id: str | None


TRACE_LOG_FORMAT = (
    "%(asctime)s %(levelname)s [trace_id=%(trace_id)s span_id=%(span_id)s] %(name)s: %(message)s"
)


class TraceContextFilter(logging.Filter):
    """Attach the current trace and span ids to log records."""

    @staticmethod
    def filter(record: logging.LogRecord) -> bool:
        """Inject trace/span ids, or ``None`` outside a recording span.

        Returns
        -------
        bool
            Always True; records are never dropped.
        """
        context = trace.get_current_span().get_span_context()
        trace_record = cast("_TraceRecord", record)
        if context is None or not context.is_valid:
            trace_record.trace_id = None
            trace_record.span_id = None
            return True
        trace_record.trace_id = f"{context.trace_id:032x}"
        trace_record.span_id = f"{context.span_id:016x}"
        return True


class TraceContextFormatter(logging.Formatter):
    """Formatter tolerant of records that bypassed the filter."""

    def format(self, record: logging.LogRecord) -> str:
        """Format a record, defaulting missing trace fields to ``None``.

        Returns
        -------
        str
            Formatted log line.
        """
        if not hasattr(record, "trace_id"):
            record.trace_id = None
        if not hasattr(record, "span_id"):
            record.span_id = None
        return super().format(record)


def install_trace_context_filter(logger: logging.Logger | None = None) -> None:
    """Install the trace context filter on a logger's handlers."""
    target = logger or logging.getLogger()
    if not target.handlers:
        target.addFilter(TraceContextFilter())
        return
    for handler in target.handlers:
        if any(isinstance(existing, TraceContextFilter) for existing in handler.filters):
            continue
        handler.addFilter(TraceContextFilter())


def configure_logging(level: int | str = logging.WARNING, *, logger: logging.Logger | None = None) -> None:
    """Attach a trace-aware stderr handler to ``logger`` (the root by default)."""
    target = logger or logging.getLogger()
    target.setLevel(level)
    if not target.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(TraceContextFormatter(TRACE_LOG_FORMAT))
        target.addHandler(handler)
    install_trace_context_filter(target)


__all__ = [
    "TRACE_LOG_FORMAT",
    "TraceContextFilter",
    "TraceContextFormatter",
    "configure_logging",
    "install_trace_context_filter",
]
