"""Metric instruments for select sessions.

Instruments are created against the global meter provider, so they are
no-ops until the host process installs an OpenTelemetry SDK.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from importlib.metadata import PackageNotFoundError, version

from opentelemetry import metrics

from obs.otel.attributes import normalize_attributes
from obs.otel.scopes import SCOPE_OBS

_SESSION_DURATION = "s3select.session.duration"
_BYTES_SCANNED = "s3select.bytes.scanned"
_BYTES_PROCESSED = "s3select.bytes.processed"
_BYTES_RETURNED = "s3select.bytes.returned"
_ROWS_EMITTED = "s3select.rows.emitted"
_ROWS_SKIPPED = "s3select.rows.skipped"
_ERROR_COUNT = "s3select.error.count"


@dataclass(frozen=True)
class MetricsRegistry:
    """Select metric instruments."""

    session_duration: metrics.Histogram
    bytes_scanned: metrics.Counter
    bytes_processed: metrics.Counter
    bytes_returned: metrics.Counter
    rows_emitted: metrics.Counter
    rows_skipped: metrics.Counter
    error_count: metrics.Counter


_REGISTRY_CACHE: dict[str, MetricsRegistry | None] = {"value": None}


def instrumentation_version() -> str:
    """Return the installed package version for instrumentation scopes."""
    try:
        return version("s3select")
    except PackageNotFoundError:
        return "unknown"


def _meter() -> metrics.Meter:
    return metrics.get_meter(SCOPE_OBS, instrumentation_version())


def reset_metrics_registry() -> None:
    """Reset cached metric instruments so they can be re-created."""
    _REGISTRY_CACHE["value"] = None


def _registry() -> MetricsRegistry:
    cached = _REGISTRY_CACHE["value"]
    if cached is not None:
        return cached
    meter = _meter()
    registry = MetricsRegistry(
        session_duration=meter.create_histogram(
            _SESSION_DURATION,
            unit="s",
            description="Select session duration (seconds).",
        ),
        bytes_scanned=meter.create_counter(
            _BYTES_SCANNED,
            unit="By",
            description="Object bytes read from storage.",
        ),
        bytes_processed=meter.create_counter(
            _BYTES_PROCESSED,
            unit="By",
            description="Decompressed bytes handed to decoders.",
        ),
        bytes_returned=meter.create_counter(
            _BYTES_RETURNED,
            unit="By",
            description="Records payload bytes sent to clients.",
        ),
        rows_emitted=meter.create_counter(
            _ROWS_EMITTED,
            unit="1",
            description="Result rows produced.",
        ),
        rows_skipped=meter.create_counter(
            _ROWS_SKIPPED,
            unit="1",
            description="Malformed input rows skipped.",
        ),
        error_count=meter.create_counter(
            _ERROR_COUNT,
            unit="1",
            description="Select session failures.",
        ),
    )
    _REGISTRY_CACHE["value"] = registry
    return registry


def record_session(
    duration_s: float,
    *,
    status: str,
    bytes_scanned: int,
    bytes_processed: int,
    bytes_returned: int,
    rows_emitted: int,
    rows_skipped: int,
    attributes: Mapping[str, object] | None = None,
) -> None:
    """Record the final counters of one session."""
    registry = _registry()
    payload: dict[str, object] = {"status": status}
    if attributes:
        payload.update(attributes)
    attrs = normalize_attributes(payload)
    registry.session_duration.record(duration_s, attrs)
    registry.bytes_scanned.add(bytes_scanned, attrs)
    registry.bytes_processed.add(bytes_processed, attrs)
    registry.bytes_returned.add(bytes_returned, attrs)
    registry.rows_emitted.add(rows_emitted, attrs)
    registry.rows_skipped.add(rows_skipped, attrs)


def record_error(error_code: str, *, stage: str) -> None:
    """Increment the error counter."""
    registry = _registry()
    registry.error_count.add(1, normalize_attributes({"error_code": error_code, "stage": stage}))


__all__ = [
    "MetricsRegistry",
    "instrumentation_version",
    "record_error",
    "record_session",
    "reset_metrics_registry",
]
