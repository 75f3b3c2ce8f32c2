"""Render result rows as CSV or JSON payload bytes."""

from __future__ import annotations

import math
from collections.abc import AsyncGenerator
from contextlib import aclosing
from decimal import Decimal
from typing import Protocol

import msgspec

from s3select.decode.rows import MISSING, Row, Value
from s3select.errors import OutputSerializationError
from s3select.request import CSVOutput, JSONOutput, OutputSerialization, QuoteFields


def canonical_number(value: int | float | Decimal) -> str:
    """Return a locale-independent rendering of a number.

    Floats use the shortest representation that round-trips.
    """
    if isinstance(value, float):
        return repr(value)
    if isinstance(value, Decimal):
        return format(value, "f")
    return str(value)


class RowSerializer(Protocol):
    """Stateless per-row renderer."""

    def serialize(self, row: Row) -> bytes:
        """Render one row including its record delimiter."""
        ...


class CsvRowSerializer:
    """Render rows as delimiter-separated records.

    Parameters
    ----------
    options
        CSV output dialect.
    """

    def __init__(self, options: CSVOutput) -> None:
        self.options = options
        self._always = options.quote_fields == QuoteFields.ALWAYS
        self._quote = options.quote_character
        self._escape = options.quote_escape_character or options.quote_character
        self._special = tuple(
            token
            for token in (options.field_delimiter, options.record_delimiter, self._quote, "\n", "\r")
            if token
        )

    def _text(self, value: Value) -> str | None:
        if value is None or value is MISSING:
            return None
        if isinstance(value, bool):
            return "true" if value else "false"
        if isinstance(value, (int, float, Decimal)):
            return canonical_number(value)
        if isinstance(value, str):
            return value
        msg = f"Nested value of type {type(value).__name__} cannot be written as CSV."
        raise OutputSerializationError(msg)

    def _field(self, value: Value) -> str:
        text = self._text(value)
        if text is None:
            return ""
        if not self._quote:
            return text
        if not self._always and not any(token in text for token in self._special):
            return text
        if self._escape != self._quote:
            text = text.replace(self._escape, self._escape + self._escape)
        text = text.replace(self._quote, self._escape + self._quote)
        return f"{self._quote}{text}{self._quote}"

    def serialize(self, row: Row) -> bytes:
        """Render one row as a CSV record.

        Returns
        -------
        bytes
            UTF-8 record terminated by the record delimiter.

        Raises
        ------
        OutputSerializationError
            Raised when a value is a list or an object.
        """
        line = self.options.field_delimiter.join(self._field(value) for value in row.values)
        return (line + self.options.record_delimiter).encode()


def _check_finite(value: Value) -> None:
    if isinstance(value, float) and not math.isfinite(value):
        msg = f"Non-finite number {value!r} cannot be written as JSON."
        raise OutputSerializationError(msg)
    if isinstance(value, list):
        for item in value:
            _check_finite(item)
    elif isinstance(value, dict):
        for item in value.values():
            _check_finite(item)


class JsonRowSerializer:
    """Render rows as JSON objects, keeping field order and duplicates."""

    def __init__(self, options: JSONOutput) -> None:
        self.options = options
        self._delimiter = options.record_delimiter.encode()
        self._encoder = msgspec.json.Encoder(decimal_format="number")

    def _encode(self, value: Value) -> bytes:
        _check_finite(value)
        try:
            return self._encoder.encode(_strip_missing(value))
        except (TypeError, msgspec.EncodeError) as exc:
            msg = f"Value {value!r} cannot be written as JSON."
            raise OutputSerializationError(msg) from exc

    def serialize(self, row: Row) -> bytes:
        """Render one row as a JSON object.

        Returns
        -------
        bytes
            Object followed by the record delimiter; MISSING fields omitted.
        """
        members = [
            self._encoder.encode(name) + b":" + self._encode(value)
            for name, value in row.items()
            if value is not MISSING
        ]
        return b"{" + b",".join(members) + b"}" + self._delimiter


def _strip_missing(value: Value) -> Value:
    if isinstance(value, dict):
        return {key: _strip_missing(item) for key, item in value.items() if item is not MISSING}
    if isinstance(value, list):
        return [None if item is MISSING else _strip_missing(item) for item in value]
    return value


def serializer_for(output: OutputSerialization) -> RowSerializer:
    """Return the serializer for an output serialization descriptor."""
    if output.csv is not None:
        return CsvRowSerializer(output.csv)
    return JsonRowSerializer(output.json or JSONOutput())


class RecordBatcher:
    """Group serialized rows into Records payloads of bounded size."""

    def __init__(self, max_bytes: int) -> None:
        self.max_bytes = max_bytes
        self._parts: list[bytes] = []
        self._size = 0

    @property
    def pending_bytes(self) -> int:
        """Return the size of the unflushed payload."""
        return self._size

    def add(self, record: bytes) -> bytes | None:
        """Buffer one record, returning a full payload once the limit is hit."""
        self._parts.append(record)
        self._size += len(record)
        if self._size >= self.max_bytes:
            return self.flush()
        return None

    def flush(self) -> bytes | None:
        """Return and clear the buffered payload, if any."""
        if not self._parts:
            return None
        payload = b"".join(self._parts)
        self._parts.clear()
        self._size = 0
        return payload


async def serialize_rows(
    rows: AsyncGenerator[Row, None],
    serializer: RowSerializer,
    *,
    batch_bytes: int,
) -> AsyncGenerator[bytes, None]:
    """Yield batched Records payloads for a row stream.

    Yields
    ------
    bytes
        Non-empty payload chunks in row order.
    """
    batcher = RecordBatcher(batch_bytes)
    async with aclosing(rows) as source:
        async for row in source:
            payload = batcher.add(serializer.serialize(row))
            if payload is not None:
                yield payload
    tail = batcher.flush()
    if tail is not None:
        yield tail


__all__ = [
    "CsvRowSerializer",
    "JsonRowSerializer",
    "RecordBatcher",
    "RowSerializer",
    "canonical_number",
    "serialize_rows",
    "serializer_for",
]
