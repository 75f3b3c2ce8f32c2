"""Scalar bridging between decoded rows, Arrow batches and SQL literals.

Decoded rows carry Python values: CSV fields are strings, documents carry
JSON scalars and containers, Parquet carries typed scalars. The engine sees
one Arrow column per referenced field, typed from the values in the batch.
Null and MISSING both become Arrow nulls.
"""

from __future__ import annotations

import math
import re
from collections.abc import Sequence
from decimal import Decimal
from enum import StrEnum
from typing import Final

import msgspec
import pyarrow as pa
from sqlglot import exp

from s3select.decode.rows import MISSING, Row, Value
from s3select.query.dialect import PathStep

type Number = int | float | Decimal

_NUMBER_RE: Final = re.compile(r"^[+-]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?$")
_INT_RE: Final = re.compile(r"^-?\d{1,18}$")


class Kind(StrEnum):
    """SQL-level kind of an expression, as far as coercion cares."""

    NUMBER = "number"
    TEXT = "text"
    BOOL = "bool"
    NULL = "null"
    OTHER = "other"


class ColumnType(msgspec.Struct, frozen=True):
    """Engine type of one generated batch column.

    Attributes
    ----------
    kind
        Kind of the Arrow column.
    numeric
        For text columns, the SQL type every value parses as: ``BIGINT``
        when all are integer literals, ``DOUBLE`` when all are numbers.
        None when some value is not numeric.
    """

    kind: Kind
    numeric: str | None = None


def is_null(value: Value) -> bool:
    """Return whether a value is SQL null or MISSING."""
    return value is None or value is MISSING


def is_number(value: Value) -> bool:
    """Return whether a value is numeric (booleans excluded)."""
    return isinstance(value, (int, float, Decimal)) and not isinstance(value, bool)


def parse_number(text: str) -> Number | None:
    """Parse a decimal number literal, returning None when it is not one."""
    stripped = text.strip()
    if not _NUMBER_RE.match(stripped):
        return None
    if _INT_RE.match(stripped):
        return int(stripped)
    return float(stripped)


def numeric_reading(texts: Sequence[str]) -> str | None:
    """Return the SQL type all ``texts`` cast to, or None if one is not a number."""
    if all(_INT_RE.match(text) for text in texts):
        return "BIGINT"
    if all(_NUMBER_RE.match(text) for text in texts):
        return "DOUBLE"
    return None


def render_text(value: Value) -> str:
    """Render a scalar as text, the way CAST(... AS STRING) does."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        return repr(value)
    if isinstance(value, Decimal):
        return format(value, "f")
    if value is None or value is MISSING:
        return ""
    if isinstance(value, (list, dict)):
        return msgspec.json.encode(value).decode()
    return str(value)


def lookup_path(row: Row, steps: Sequence[PathStep]) -> Value:
    """Resolve a key path against a document row.

    Unquoted keys match exactly first and case-insensitively second; quoted
    keys match exactly. Absent keys and out-of-range indexes yield MISSING.
    """
    current: Value = _lookup_key(row.names, row.values, steps[0])
    for step in steps[1:]:
        if current is MISSING:
            return MISSING
        if step.is_index:
            if not isinstance(current, list) or not 0 <= step.key < len(current):  # type: ignore[operator]
                return MISSING
            current = current[step.key]  # type: ignore[index]
        elif isinstance(current, dict):
            current = _lookup_key(tuple(current), tuple(current.values()), step)
        else:
            return MISSING
    return current


def _lookup_key(names: tuple[str, ...], values: tuple[Value, ...], step: PathStep) -> Value:
    if step.is_index:
        return MISSING
    key = str(step.key)
    if key in names:
        return values[names.index(key)]
    if not step.quoted:
        folded = key.casefold()
        for name, value in zip(names, values, strict=True):
            if name.casefold() == folded:
                return value
    return MISSING


def _text_column(values: list[Value]) -> tuple[pa.Array, ColumnType]:
    texts = [None if value is None else render_text(value) for value in values]
    present = [text for text in texts if text is not None]
    return pa.array(texts, type=pa.string()), ColumnType(Kind.TEXT, numeric_reading(present))


def arrow_column(values: Sequence[Value]) -> tuple[pa.Array, ColumnType]:
    """Build one Arrow column from the values of a field across a batch.

    Homogeneous booleans, integers, numbers and strings keep their type.
    Anything else, nested containers included, is rendered as text.

    Returns
    -------
    tuple[pa.Array, ColumnType]
        Column and its engine type.
    """
    cleaned: list[Value] = [None if value is MISSING else value for value in values]
    present = [value for value in cleaned if value is not None]
    if not present:
        return pa.nulls(len(cleaned), type=pa.string()), ColumnType(Kind.TEXT, "BIGINT")
    try:
        if all(isinstance(value, bool) for value in present):
            return pa.array(cleaned, type=pa.bool_()), ColumnType(Kind.BOOL)
        if all(isinstance(value, str) for value in present):
            return pa.array(cleaned, type=pa.string()), ColumnType(
                Kind.TEXT, numeric_reading(present)  # type: ignore[arg-type]
            )
        if all(is_number(value) for value in present):
            return _number_column(cleaned, present), ColumnType(Kind.NUMBER)
    except (pa.ArrowInvalid, pa.ArrowTypeError, OverflowError):
        pass
    return _text_column(cleaned)


def _number_column(cleaned: list[Value], present: list[Value]) -> pa.Array:
    if any(isinstance(value, float) for value in present):
        return pa.array([None if value is None else float(value) for value in cleaned], type=pa.float64())  # type: ignore[arg-type]
    if any(isinstance(value, Decimal) for value in present):
        return pa.array([None if value is None else Decimal(value) for value in cleaned])  # type: ignore[arg-type]
    return pa.array(cleaned, type=pa.int64())


def literal_expression(value: Value) -> exp.Expression:
    """Return a SQL literal for a merged aggregate value."""
    if value is None or value is MISSING:
        return exp.null()
    if isinstance(value, bool):
        return exp.true() if value else exp.false()
    if isinstance(value, float):
        if not math.isfinite(value):
            return exp.cast(exp.Literal.string(repr(value)), "DOUBLE")
        return exp.Literal.number(repr(value))
    if isinstance(value, (int, Decimal)):
        return exp.Literal.number(render_text(value))
    return exp.Literal.string(render_text(value))


__all__ = [
    "ColumnType",
    "Kind",
    "Number",
    "arrow_column",
    "is_null",
    "is_number",
    "literal_expression",
    "lookup_path",
    "numeric_reading",
    "parse_number",
    "render_text",
]
