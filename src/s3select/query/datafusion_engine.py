"""Execution engine running bound statements through DataFusion.

Decoded rows are buffered into batches. Each batch becomes an Arrow record
batch with one generated column per distinct reference plus a row index,
and the bound projection and filter run as SQL against it in a DataFusion
``SessionContext``. Bare references and ``*`` are copied from the input rows
by index, so nested values and MISSING survive unchanged.
"""

from __future__ import annotations

import logging
import re
import uuid
from collections.abc import AsyncGenerator, Callable, Iterator, Sequence
from contextlib import aclosing
from dataclasses import dataclass
from typing import Final

import pyarrow as pa
from datafusion import SessionConfig, SessionContext
from sqlglot import exp

from s3select.decode.rows import Row, TableSchema, Value
from s3select.errors import QueryCompileError, QueryEvaluationError
from s3select.query.aggregates import AggregateCall, AggregateState
from s3select.query.dialect import is_aggregate, is_reference, reference_steps
from s3select.query.engine import BoundQuery, RowErrorHandler
from s3select.query.rewrite import TypeCoercer, rewrite_like_escapes, to_sql
from s3select.query.values import ColumnType, arrow_column, literal_expression, lookup_path

logger = logging.getLogger(__name__)

DEFAULT_BATCH_ROWS: Final = 1024
ROW_COLUMN: Final = "s3_row"

_POSITIONAL_RE: Final = re.compile(r"^_(\d+)$")
_ERROR_CODES: Final = (
    ("divide by zero", "DivisionByZero"),
    ("overflow", "IntegerOverflow"),
    ("cast", "CastFailed"),
)

type Extractor = Callable[[Row], Value]


def evaluation_error(exc: Exception) -> QueryEvaluationError:
    """Translate a DataFusion failure into the select error taxonomy.

    Returns
    -------
    QueryEvaluationError
        Error with a code derived from the engine message.
    """
    text = str(exc)
    lowered = text.lower()
    for marker, code in _ERROR_CODES:
        if marker in lowered:
            return QueryEvaluationError(f"Query evaluation failed: {text}", code=code)
    return QueryEvaluationError(f"Query evaluation failed: {text}")


def _extractor(node: exp.Expression, schema: TableSchema) -> Extractor:
    steps = reference_steps(node)
    if schema.is_document:
        return lambda row: lookup_path(row, steps)
    match = _POSITIONAL_RE.match(str(steps[0].key)) if len(steps) == 1 else None
    if match is None:
        msg = f"Unresolved column reference {node.sql()}."
        raise QueryCompileError(msg, code="InvalidColumnIndex")
    position = int(match.group(1))
    return lambda row: row.at(position)


@dataclass(frozen=True, slots=True)
class Slot:
    """Generated batch column holding one reference's values."""

    column: str
    extract: Extractor


@dataclass(frozen=True, slots=True)
class OutputColumn:
    """Select-list entry: copied from the input row or computed by SQL."""

    extract: Extractor | None = None
    expression: exp.Expression | None = None


@dataclass(frozen=True, slots=True)
class DataFusionPlan:
    """Compiled form of a bound statement.

    Attributes
    ----------
    names
        Output column names.
    slots
        Generated batch columns, in column order.
    outputs
        Select-list entries for row queries.
    where
        Filter over generated columns, if any.
    aggregates
        Aggregate calls for aggregate queries.
    finals
        Select-list expressions with each aggregate call replaced by its
        placeholder column.
    star
        Whether output rows are the input rows.
    """

    names: tuple[str, ...]
    slots: tuple[Slot, ...]
    outputs: tuple[OutputColumn, ...] = ()
    where: exp.Expression | None = None
    aggregates: tuple[AggregateCall, ...] = ()
    finals: tuple[exp.Expression, ...] = ()
    aggregate: bool = False
    star: bool = False

    @property
    def needs_engine(self) -> bool:
        """Return whether rows must go through DataFusion at all."""
        if self.aggregate or self.where is not None:
            return True
        return any(output.expression is not None for output in self.outputs)

    def copy_row(self, row: Row) -> Row:
        """Project a row whose outputs are all copied references."""
        if self.star:
            return row
        return Row(names=self.names, values=tuple(output.extract(row) for output in self.outputs))  # type: ignore[misc]


class _SlotBinder:
    """Replace references with generated columns, one per distinct reference."""

    def __init__(self, schema: TableSchema) -> None:
        self.schema = schema
        self.slots: dict[str, Slot] = {}

    def __call__(self, node: exp.Expression) -> exp.Expression:
        def replace(child: exp.Expression) -> exp.Expression:
            if not is_reference(child):
                return child
            key = child.sql()
            slot = self.slots.get(key)
            if slot is None:
                slot = Slot(column=f"col{len(self.slots)}", extract=_extractor(child, self.schema))
                self.slots[key] = slot
            return exp.column(slot.column)

        return rewrite_like_escapes(node.transform(replace))


class _BatchRunner:
    """DataFusion session and per-type SQL cache for one evaluation."""

    def __init__(self, plan: DataFusionPlan) -> None:
        self.plan = plan
        self.ctx = SessionContext(SessionConfig().with_target_partitions(1))
        self.table = f"s3object_{uuid.uuid4().hex}"
        self._sql: dict[tuple[ColumnType, ...], str] = {}

    def _batch(self, rows: Sequence[Row]) -> tuple[pa.RecordBatch, tuple[ColumnType, ...]]:
        arrays: list[pa.Array] = [pa.array(range(len(rows)), type=pa.int64())]
        names = [ROW_COLUMN]
        types: list[ColumnType] = []
        for slot in self.plan.slots:
            array, column_type = arrow_column([slot.extract(row) for row in rows])
            arrays.append(array)
            names.append(slot.column)
            types.append(column_type)
        return pa.RecordBatch.from_arrays(arrays, names=names), tuple(types)

    def _coercer(self, types: tuple[ColumnType, ...]) -> TypeCoercer:
        return TypeCoercer({slot.column: column_type for slot, column_type in zip(self.plan.slots, types, strict=True)})

    def _select_sql(self, types: tuple[ColumnType, ...]) -> str:
        coercer = self._coercer(types)
        items: list[exp.Expression] = [exp.column(ROW_COLUMN)]
        for index, output in enumerate(self.plan.outputs):
            if output.expression is not None:
                items.append(exp.alias_(coercer.coerce(output.expression), f"out{index}"))
        query = exp.select(*items).from_(self.table)
        if self.plan.where is not None:
            query = query.where(coercer.predicate(self.plan.where))
        return to_sql(query.order_by(ROW_COLUMN))

    def _aggregate_sql(self, types: tuple[ColumnType, ...]) -> str:
        coercer = self._coercer(types)
        items = [coercer.coerce(item) for call in self.plan.aggregates for item in call.partial_selects()]
        query = exp.select(*items).from_(self.table)
        if self.plan.where is not None:
            query = query.where(coercer.predicate(self.plan.where))
        return to_sql(query)

    def _run(self, rows: Sequence[Row], build: Callable[[tuple[ColumnType, ...]], str]) -> dict[str, list[Value]]:
        batch, types = self._batch(rows)
        sql = self._sql.get(types)
        if sql is None:
            sql = build(types)
            self._sql[types] = sql
            logger.debug("Batch SQL for %s: %s", types, sql)
        self.ctx.register_record_batches(self.table, [[batch]])
        try:
            results = self.ctx.sql(sql).collect()
        except Exception as exc:
            raise evaluation_error(exc) from exc
        finally:
            self.ctx.deregister_table(self.table)
        columns: dict[str, list[Value]] = {}
        for result in results:
            for name, values in result.to_pydict().items():
                columns.setdefault(name, []).extend(values)
        return columns

    def select(self, rows: Sequence[Row]) -> list[Row]:
        """Filter and project one batch of rows."""
        plan = self.plan
        columns = self._run(rows, self._select_sql)
        selected: list[Row] = []
        for position, index in enumerate(columns.get(ROW_COLUMN, [])):
            row = rows[index]  # type: ignore[index]
            if plan.star:
                selected.append(row)
                continue
            values = tuple(
                output.extract(row) if output.extract is not None else columns[f"out{column}"][position]
                for column, output in enumerate(plan.outputs)
            )
            selected.append(Row(names=plan.names, values=values))
        return selected

    def fold(self, rows: Sequence[Row], states: Sequence[AggregateState]) -> None:
        """Merge one batch into the running aggregates."""
        columns = self._run(rows, self._aggregate_sql)
        partial = {name: values[0] if values else None for name, values in columns.items()}
        for state in states:
            state.fold(partial)

    def finish(self, states: Sequence[AggregateState]) -> Row:
        """Evaluate the select list over the merged aggregate values.

        Raises
        ------
        QueryEvaluationError
            Raised when an expression over the aggregates fails.
        """
        merged = {state.call.alias: state.result() for state in states}

        def substitute(child: exp.Expression) -> exp.Expression:
            if isinstance(child, exp.Column) and child.name in merged:
                return literal_expression(merged[child.name])
            return child

        values: list[Value] = []
        for final in self.plan.finals:
            if isinstance(final, exp.Column) and final.name in merged:
                values.append(merged[final.name])
                continue
            expression = TypeCoercer({}).coerce(final.transform(substitute))
            try:
                results = self.ctx.sql(to_sql(exp.select(exp.alias_(expression, "out0")))).collect()
            except Exception as exc:
                raise evaluation_error(exc) from exc
            values.append(results[0].to_pydict()["out0"][0])
        return Row(names=self.plan.names, values=tuple(values))


class DataFusionEngine:
    """Evaluate bound statements with DataFusion over Arrow batches of rows.

    Parameters
    ----------
    batch_rows
        Input rows buffered per Arrow batch.
    """

    def __init__(self, *, batch_rows: int = DEFAULT_BATCH_ROWS) -> None:
        self.batch_rows = max(1, batch_rows)

    def compile(self, statement: BoundQuery, schema: TableSchema) -> DataFusionPlan:
        """Bind references to generated columns and split out aggregates.

        Returns
        -------
        DataFusionPlan
            Plan reusable across evaluations.

        Raises
        ------
        QueryCompileError
            Raised for unresolved references or invalid LIKE escapes.
        """
        binder = _SlotBinder(schema)
        where = binder(statement.where) if statement.where is not None else None
        if statement.aggregate:
            calls: list[AggregateCall] = []

            def split(child: exp.Expression) -> exp.Expression:
                if not is_aggregate(child):
                    return child
                call = AggregateCall.from_node(child, alias=f"agg{len(calls)}", bind=binder)
                calls.append(call)
                return exp.column(call.alias)

            finals = tuple(projection.transform(split) for projection in statement.projections)
            plan = DataFusionPlan(
                names=statement.names,
                slots=tuple(binder.slots.values()),
                where=where,
                aggregates=tuple(calls),
                finals=finals,
                aggregate=True,
            )
        else:
            outputs = tuple(
                OutputColumn(extract=_extractor(projection, schema))
                if is_reference(projection)
                else OutputColumn(expression=binder(projection))
                for projection in statement.projections
            )
            plan = DataFusionPlan(
                names=statement.names,
                slots=tuple(binder.slots.values()),
                outputs=outputs,
                where=where,
                star=statement.star,
            )
        logger.debug(
            "Compiled query: %d projections, %d generated columns, filter=%s, aggregate=%s",
            len(statement.projections),
            len(plan.slots),
            where is not None,
            statement.aggregate,
        )
        return plan

    def _select(
        self,
        runner: _BatchRunner,
        rows: list[Row],
        on_error: RowErrorHandler,
    ) -> Iterator[Row]:
        try:
            selected = runner.select(rows)
        except QueryEvaluationError as exc:
            if len(rows) == 1:
                on_error(exc)
                return
            logger.debug("Batch of %d rows failed (%s); evaluating row by row", len(rows), exc.code)
            for row in rows:
                yield from self._select(runner, [row], on_error)
            return
        yield from selected

    def _fold(
        self,
        runner: _BatchRunner,
        rows: list[Row],
        states: list[AggregateState],
        on_error: RowErrorHandler,
    ) -> None:
        try:
            runner.fold(rows, states)
        except QueryEvaluationError as exc:
            if len(rows) == 1:
                on_error(exc)
                return
            logger.debug("Batch of %d rows failed (%s); aggregating row by row", len(rows), exc.code)
            for row in rows:
                self._fold(runner, [row], states, on_error)

    async def evaluate(
        self,
        plan: DataFusionPlan,
        rows: AsyncGenerator[Row, None],
        *,
        on_error: RowErrorHandler,
        limit_hint: int | None = None,
    ) -> AsyncGenerator[Row, None]:
        """Yield output rows for the input rows.

        Closing the returned generator closes ``rows``. A failing batch is
        retried row by row so ``on_error`` sees each failing row once.

        Yields
        ------
        Row
            Projected rows, or one aggregate row once input is exhausted.
        """
        batch_rows = self.batch_rows
        if limit_hint is not None and not plan.aggregate:
            batch_rows = max(1, min(batch_rows, limit_hint))
        async with aclosing(rows) as source:
            if not plan.needs_engine:
                async for row in source:
                    yield plan.copy_row(row)
                return
            runner = _BatchRunner(plan)
            states = [AggregateState(call) for call in plan.aggregates]
            pending: list[Row] = []
            async for row in source:
                pending.append(row)
                if len(pending) < batch_rows:
                    continue
                if plan.aggregate:
                    self._fold(runner, pending, states, on_error)
                else:
                    for output in self._select(runner, pending, on_error):
                        yield output
                pending = []
            if pending:
                if plan.aggregate:
                    self._fold(runner, pending, states, on_error)
                else:
                    for output in self._select(runner, pending, on_error):
                        yield output
            if plan.aggregate:
                yield runner.finish(states)


__all__ = ["DEFAULT_BATCH_ROWS", "DataFusionEngine", "DataFusionPlan", "evaluation_error"]
