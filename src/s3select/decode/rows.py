"""Row representation shared by decoders, the query layer and serializers."""

from __future__ import annotations

from collections.abc import Callable, Iterator, Mapping, Sequence
from dataclasses import dataclass
from decimal import Decimal
from typing import Final

from s3select.errors import InputDecodeError


class _Missing:
    """Marker for a JSON path that does not exist in a row."""

    _instance: _Missing | None = None

    def __new__(cls) -> _Missing:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Final = _Missing()

type Scalar = str | int | float | Decimal | bool | None
type Value = Scalar | list[Value] | dict[str, Value] | _Missing
type MalformedHandler = Callable[[InputDecodeError], None]


@dataclass(frozen=True, slots=True)
class Row:
    """One decoded record: field names in order and one value per field."""

    names: tuple[str, ...]
    values: tuple[Value, ...]

    def __post_init__(self) -> None:
        if len(self.names) != len(self.values):
            msg = f"Row has {len(self.names)} names but {len(self.values)} values."
            raise ValueError(msg)

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Value]) -> Row:
        """Build a row from an ordered mapping."""
        return cls(names=tuple(mapping), values=tuple(mapping.values()))

    @classmethod
    def from_values(cls, values: Sequence[Value]) -> Row:
        """Build a row with positional ``_1.._n`` names."""
        return cls(names=positional_names(len(values)), values=tuple(values))

    def __len__(self) -> int:
        return len(self.values)

    def items(self) -> Iterator[tuple[str, Value]]:
        """Iterate ``(name, value)`` pairs in field order."""
        return zip(self.names, self.values, strict=True)

    def get(self, name: str, default: Value = MISSING) -> Value:
        """Return the first value named ``name``."""
        try:
            return self.values[self.names.index(name)]
        except ValueError:
            return default

    def at(self, position: int) -> Value:
        """Return the value at a one-based position, or MISSING."""
        if 1 <= position <= len(self.values):
            return self.values[position - 1]
        return MISSING

    def as_dict(self) -> dict[str, Value]:
        """Return the row as a dict; later duplicate names win."""
        return dict(self.items())


@dataclass(frozen=True, slots=True)
class TableSchema:
    """Single-table schema the query is compiled against.

    ``columns`` is ``None`` for schema-less document input, where every column
    reference is a path into the row. ``header`` holds names taken from a CSV
    header record; without it only positional references resolve.
    """

    columns: tuple[str, ...] | None = None
    header: tuple[str, ...] | None = None
    name: str = "s3object"

    @property
    def is_document(self) -> bool:
        """Return whether rows are addressed by path rather than column."""
        return self.columns is None


def positional_names(count: int) -> tuple[str, ...]:
    """Return synthesized column names ``_1.._count``."""
    return tuple(f"_{index}" for index in range(1, count + 1))


__all__ = [
    "MISSING",
    "MalformedHandler",
    "Row",
    "Scalar",
    "TableSchema",
    "Value",
    "positional_names",
]
