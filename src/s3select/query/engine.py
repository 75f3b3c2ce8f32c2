"""Execution engine boundary."""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable
from dataclasses import dataclass
from typing import Protocol

from sqlglot import exp

from s3select.decode.rows import Row, TableSchema
from s3select.errors import QueryEvaluationError

type RowErrorHandler = Callable[[QueryEvaluationError], None]


@dataclass(frozen=True, slots=True)
class BoundQuery:
    """Engine input form of a statement.

    References are canonical: ``_N`` for fixed schemas, prefix-free key paths
    for documents. LIMIT is not part of the bound form.
    """

    projections: tuple[exp.Expression, ...]
    names: tuple[str, ...]
    where: exp.Expression | None = None
    aggregate: bool = False
    star: bool = False


class ExecutionEngine[PlanT](Protocol):
    """Capability interface for the relational evaluator."""

    def compile(self, statement: BoundQuery, schema: TableSchema) -> PlanT:
        """Compile a bound statement against a single-table schema."""
        ...

    def evaluate(
        self,
        plan: PlanT,
        rows: AsyncGenerator[Row, None],
        *,
        on_error: RowErrorHandler,
        limit_hint: int | None = None,
    ) -> AsyncGenerator[Row, None]:
        """Return the lazy output rows for an input row stream.

        ``limit_hint`` is the caller's LIMIT; engines may use it to size
        their input batches but never enforce it.
        """
        ...


__all__ = ["BoundQuery", "ExecutionEngine", "RowErrorHandler"]
