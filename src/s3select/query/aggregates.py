"""Partial aggregates computed per batch and merged across batches.

Each batch runs COUNT/SUM/MIN/MAX in DataFusion; AVG runs as SUM plus COUNT
so the final average divides the merged totals.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from decimal import Decimal
from enum import StrEnum

from sqlglot import exp

from s3select.decode.rows import Value
from s3select.query.values import render_text


class AggregateKind(StrEnum):
    """Supported aggregate functions."""

    COUNT = "count"
    SUM = "sum"
    AVG = "avg"
    MIN = "min"
    MAX = "max"


_KINDS: dict[type[exp.Expression], AggregateKind] = {
    exp.Count: AggregateKind.COUNT,
    exp.Sum: AggregateKind.SUM,
    exp.Avg: AggregateKind.AVG,
    exp.Min: AggregateKind.MIN,
    exp.Max: AggregateKind.MAX,
}


@dataclass(frozen=True, slots=True)
class AggregateCall:
    """One aggregate call of the select list.

    Attributes
    ----------
    kind
        Aggregate function.
    argument
        Argument over generated batch columns; None for ``COUNT(*)``.
    alias
        Result column of the per-batch query, and the placeholder that
        stands for the merged value in the select list.
    """

    kind: AggregateKind
    argument: exp.Expression | None
    alias: str

    @classmethod
    def from_node(
        cls,
        node: exp.Expression,
        *,
        alias: str,
        bind: Callable[[exp.Expression], exp.Expression],
    ) -> AggregateCall:
        """Build a call from a sqlglot aggregate node.

        Returns
        -------
        AggregateCall
            Call whose argument has been passed through ``bind``.
        """
        target = node.this
        argument = None if target is None or isinstance(target, exp.Star) else bind(target)
        return cls(kind=_KINDS[type(node)], argument=argument, alias=alias)

    @property
    def count_alias(self) -> str:
        """Return the per-batch column holding the AVG row count."""
        return f"{self.alias}_n"

    def partial_selects(self) -> list[exp.Expression]:
        """Return the per-batch select items for this call."""
        argument = self.argument.copy() if self.argument is not None else None
        counted = argument.copy() if argument is not None else exp.Star()
        match self.kind:
            case AggregateKind.COUNT:
                return [exp.alias_(exp.Count(this=counted), self.alias)]
            case AggregateKind.SUM:
                return [exp.alias_(exp.Sum(this=argument), self.alias)]
            case AggregateKind.AVG:
                return [
                    exp.alias_(exp.Sum(this=argument), self.alias),
                    exp.alias_(exp.Count(this=counted), self.count_alias),
                ]
            case AggregateKind.MIN:
                return [exp.alias_(exp.Min(this=argument), self.alias)]
            case AggregateKind.MAX:
                return [exp.alias_(exp.Max(this=argument), self.alias)]


def _add(total: Value, value: Value) -> Value:
    if value is None:
        return total
    if total is None:
        return value
    if isinstance(total, Decimal) and isinstance(value, float):
        return float(total) + value
    if isinstance(value, Decimal) and isinstance(total, float):
        return total + float(value)
    return total + value  # type: ignore[operator]


def _extreme(current: Value, value: Value, *, lowest: bool) -> Value:
    if value is None:
        return current
    if current is None:
        return value
    try:
        better = value < current if lowest else value > current  # type: ignore[operator]
    except TypeError:
        left, right = render_text(value), render_text(current)
        better = left < right if lowest else left > right
    return value if better else current


@dataclass(slots=True)
class AggregateState:
    """Running merge of one call's partial results."""

    call: AggregateCall
    value: Value = None
    count: int = 0

    def fold(self, partial: Mapping[str, Value]) -> None:
        """Merge one batch's partial result."""
        value = partial[self.call.alias]
        match self.call.kind:
            case AggregateKind.COUNT:
                self.count += int(value or 0)  # type: ignore[arg-type]
            case AggregateKind.SUM:
                self.value = _add(self.value, value)
            case AggregateKind.AVG:
                self.value = _add(self.value, value)
                self.count += int(partial[self.call.count_alias] or 0)  # type: ignore[arg-type]
            case AggregateKind.MIN:
                self.value = _extreme(self.value, value, lowest=True)
            case AggregateKind.MAX:
                self.value = _extreme(self.value, value, lowest=False)

    def result(self) -> Value:
        """Return the final aggregate value.

        An AVG of integers is a ``Decimal`` so an exact average stays integral
        on output.
        """
        match self.call.kind:
            case AggregateKind.COUNT:
                return self.count
            case AggregateKind.AVG:
                if self.count == 0 or self.value is None:
                    return None
                if isinstance(self.value, int):
                    return Decimal(self.value) / Decimal(self.count)
                if isinstance(self.value, Decimal):
                    return self.value / Decimal(self.count)
                return self.value / self.count  # type: ignore[operator]
            case _:
                return self.value


__all__ = ["AggregateCall", "AggregateKind", "AggregateState"]
