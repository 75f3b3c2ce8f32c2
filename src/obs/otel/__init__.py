"""OpenTelemetry helpers for select observability."""

from __future__ import annotations

from obs.otel.logging import (
    TRACE_LOG_FORMAT,
    TraceContextFilter,
    TraceContextFormatter,
    configure_logging,
    install_trace_context_filter,
)
from obs.otel.metrics import record_error, record_session, reset_metrics_registry
from obs.otel.scopes import SCOPE_DECODE, SCOPE_QUERY, SCOPE_SESSION
from obs.otel.tracing import get_tracer, record_exception, set_span_attributes, stage_span

__all__ = [
    "SCOPE_DECODE",
    "SCOPE_QUERY",
    "SCOPE_SESSION",
    "TRACE_LOG_FORMAT",
    "TraceContextFilter",
    "TraceContextFormatter",
    "configure_logging",
    "get_tracer",
    "install_trace_context_filter",
    "record_error",
    "record_exception",
    "record_session",
    "reset_metrics_registry",
    "set_span_attributes",
    "stage_span",
]
