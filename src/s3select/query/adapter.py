"""Bridge decoded rows, the execution engine and serializer-ready output."""

from __future__ import annotations

import logging
import re
from collections.abc import AsyncGenerator
from contextlib import aclosing
from decimal import Decimal
from typing import Final

from sqlglot import exp

from s3select.decode.rows import Row, TableSchema, Value
from s3select.errors import InternalError, QueryCompileError
from s3select.query.dialect import (
    TABLE_NAME,
    PathStep,
    SelectStatement,
    build_reference,
    is_reference,
    parse_select,
    reference_steps,
)
from s3select.query.datafusion_engine import DataFusionEngine
from s3select.query.engine import BoundQuery, ExecutionEngine, RowErrorHandler
from s3select.stats import SelectStats

logger = logging.getLogger(__name__)

_POSITIONAL_RE: Final = re.compile(r"^_(\d+)$")


def to_output_value(value: Value) -> Value:
    """Translate an engine value into a serializer-ready scalar.

    Returns
    -------
    Value
        ``Decimal`` becomes ``int`` when integral and ``float`` otherwise;
        nested containers are translated recursively.
    """
    if isinstance(value, Decimal):
        if value.is_finite() and value == value.to_integral_value():
            return int(value)
        return float(value)
    if isinstance(value, list):
        return [to_output_value(item) for item in value]
    if isinstance(value, dict):
        return {key: to_output_value(item) for key, item in value.items()}
    return value


class QueryResult:
    """Lazy output rows of one query run, with the session counters.

    Iterating enforces LIMIT: once ``limit`` rows have been produced the
    engine iterator is closed, which closes the decoder behind it.
    """

    def __init__(
        self,
        rows: AsyncGenerator[Row, None],
        *,
        upstream: AsyncGenerator[Row, None],
        limit: int | None,
        stats: SelectStats,
    ) -> None:
        self._rows = rows
        self._upstream = upstream
        self.limit = limit
        self.stats = stats
        self._iterator = self._generate()

    def __aiter__(self) -> AsyncGenerator[Row, None]:
        return self._iterator

    async def aclose(self) -> None:
        """Stop the result stream and release upstream stages."""
        await self._iterator.aclose()
        await self._rows.aclose()
        await self._upstream.aclose()

    async def _generate(self) -> AsyncGenerator[Row, None]:
        if self.limit == 0:
            await self._upstream.aclose()
            return
        emitted = 0
        async with aclosing(self._rows) as rows:
            async for row in rows:
                output = Row(names=row.names, values=tuple(to_output_value(value) for value in row.values))
                emitted += 1
                self.stats.add_rows_emitted(1)
                yield output
                if self.limit is not None and emitted >= self.limit:
                    logger.debug("LIMIT %d reached; closing the row stream", self.limit)
                    return

    @property
    def bytes_scanned(self) -> int:
        """Return object bytes read from the source so far."""
        return self.stats.bytes_scanned

    @property
    def bytes_processed(self) -> int:
        """Return decompressed bytes handed to the decoder so far."""
        return self.stats.bytes_processed

    @property
    def rows_scanned(self) -> int:
        """Return decoded input rows so far."""
        return self.stats.rows_scanned

    @property
    def rows_emitted(self) -> int:
        """Return output rows produced so far."""
        return self.stats.rows_emitted

    @property
    def rows_skipped(self) -> int:
        """Return malformed rows skipped so far."""
        return self.stats.rows_skipped


class QueryExecutorAdapter:
    """Compile an S3 Select expression and drive an execution engine.

    Parameters
    ----------
    statement
        Parsed statement.
    engine
        Execution engine; defaults to ``DataFusionEngine``.
    """

    def __init__(self, statement: SelectStatement, *, engine: ExecutionEngine | None = None) -> None:
        self.statement = statement
        self.engine: ExecutionEngine = engine if engine is not None else DataFusionEngine()
        self._plan: object | None = None

    @classmethod
    def from_sql(cls, sql: str, *, engine: ExecutionEngine | None = None) -> QueryExecutorAdapter:
        """Parse SQL text and return an adapter for it.

        Returns
        -------
        QueryExecutorAdapter
            Adapter bound to the parsed statement.
        """
        return cls(parse_select(sql), engine=engine)

    @property
    def limit(self) -> int | None:
        """Return the statement's LIMIT, if any."""
        return self.statement.limit

    def _strip_prefix(self, steps: list[PathStep]) -> list[PathStep]:
        if len(steps) < 2 or steps[0].is_index:
            return steps
        prefixes = {TABLE_NAME}
        if self.statement.table_alias:
            prefixes.add(self.statement.table_alias.casefold())
        if str(steps[0].key).casefold() in prefixes:
            return steps[1:]
        return steps

    def _position(self, step: PathStep, schema: TableSchema) -> int:
        key = str(step.key)
        columns = schema.columns or ()
        match = _POSITIONAL_RE.match(key)
        if match is not None and not step.quoted:
            position = int(match.group(1))
            if position < 1 or (columns and position > len(columns)):
                msg = f"Column index {position} is out of range for {len(columns)} columns."
                raise QueryCompileError(msg, code="InvalidColumnIndex")
            return position
        if schema.header is None:
            msg = f"Column {key!r} referenced by name but the input has no header."
            raise QueryCompileError(msg, code="MissingHeaders")
        if key in schema.header:
            return schema.header.index(key) + 1
        if not step.quoted:
            folded = key.casefold()
            for index, name in enumerate(schema.header, start=1):
                if name.casefold() == folded:
                    return index
        msg = f"Column {key!r} is not in the header."
        raise QueryCompileError(msg, code="InvalidColumnIndex")

    def _resolve(self, node: exp.Expression, schema: TableSchema) -> exp.Expression:
        steps = self._strip_prefix(reference_steps(node))
        if schema.is_document:
            return build_reference(steps)
        if len(steps) != 1 or steps[0].is_index:
            msg = f"Key paths are not valid for columnar input: {node.sql()}"
            raise QueryCompileError(msg, code="InvalidKeyPath")
        return exp.column(f"_{self._position(steps[0], schema)}")

    def _normalize(self, node: exp.Expression, schema: TableSchema) -> exp.Expression:
        def replace(child: exp.Expression) -> exp.Expression:
            if is_reference(child):
                return self._resolve(child, schema)
            return child

        return node.transform(replace)

    def output_names(self) -> tuple[str, ...]:
        """Return output column names in projection order.

        Returns
        -------
        tuple[str, ...]
            Alias, else the last key of a reference, else ``_N``.
        """
        names: list[str] = []
        for index, projection in enumerate(self.statement.projections, start=1):
            if isinstance(projection, exp.Alias):
                names.append(projection.alias)
                continue
            if is_reference(projection):
                last = self._strip_prefix(reference_steps(projection))[-1]
                if not last.is_index:
                    names.append(str(last.key))
                    continue
            names.append(f"_{index}")
        return tuple(names)

    def bind(self, schema: TableSchema) -> BoundQuery:
        """Translate the statement into the engine's input form.

        Returns
        -------
        BoundQuery
            Statement with canonical references and no LIMIT.

        Raises
        ------
        QueryCompileError
            Raised for unknown columns or invalid key paths.
        """
        statement = self.statement
        projections: tuple[exp.Expression, ...] = ()
        if not statement.star:
            projections = tuple(self._normalize(item.unalias(), schema) for item in statement.projections)
        where = self._normalize(statement.where, schema) if statement.where is not None else None
        return BoundQuery(
            projections=projections,
            names=() if statement.star else self.output_names(),
            where=where,
            aggregate=statement.aggregate,
            star=statement.star,
        )

    def compile(self, schema: TableSchema) -> object:
        """Bind and compile the statement against a schema.

        Returns
        -------
        object
            Engine plan.
        """
        self._plan = self.engine.compile(self.bind(schema), schema)
        return self._plan

    def execute(
        self,
        rows: AsyncGenerator[Row, None],
        *,
        stats: SelectStats,
        on_error: RowErrorHandler,
    ) -> QueryResult:
        """Run the compiled plan over decoded rows.

        Returns
        -------
        QueryResult
            Lazy output rows.

        Raises
        ------
        InternalError
            Raised when ``compile`` has not been called.
        """
        if self._plan is None:
            msg = "Query must be compiled before execution."
            raise InternalError(msg)
        output = self.engine.evaluate(self._plan, rows, on_error=on_error, limit_hint=self.statement.limit)
        return QueryResult(output, upstream=rows, limit=self.statement.limit, stats=stats)


__all__ = ["QueryExecutorAdapter", "QueryResult", "to_output_value"]
