"""Normalize OpenTelemetry attributes for select telemetry."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from enum import Enum

from opentelemetry.util.types import AttributeValue

from utils.env_utils import env_int

_MAX_ATTRIBUTES = env_int("OTEL_ATTRIBUTE_COUNT_LIMIT", default=None, minimum=0)
_MAX_ATTRIBUTE_LENGTH = env_int("OTEL_ATTRIBUTE_VALUE_LENGTH_LIMIT", default=None, minimum=0)


def _truncate(value: str) -> str:
    if _MAX_ATTRIBUTE_LENGTH is None or len(value) <= _MAX_ATTRIBUTE_LENGTH:
        return value
    return value[:_MAX_ATTRIBUTE_LENGTH]


def _normalize_value(value: object) -> AttributeValue:
    if isinstance(value, Enum):
        value = value.value
    if isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, str):
        return _truncate(value)
    if isinstance(value, Sequence) and not isinstance(value, (bytes, bytearray)):
        items = [item for item in value if item is not None]
        if items and all(isinstance(item, str) for item in items):
            return [_truncate(item) for item in items]
        if items and all(isinstance(item, (bool, int, float)) for item in items):
            return list(items)
    return _truncate(str(value))


def normalize_attributes(attrs: Mapping[str, object] | None) -> dict[str, AttributeValue]:
    """Normalize attributes for spans and metrics.

    Returns
    -------
    dict[str, AttributeValue]
        Attribute mapping with OpenTelemetry-safe values; ``None`` values are
        dropped.
    """
    if not attrs:
        return {}
    normalized = {str(key): _normalize_value(value) for key, value in attrs.items() if value is not None}
    if _MAX_ATTRIBUTES is None or len(normalized) <= _MAX_ATTRIBUTES:
        return normalized
    return {key: normalized[key] for key in sorted(normalized)[:_MAX_ATTRIBUTES]}


__all__ = ["normalize_attributes"]
