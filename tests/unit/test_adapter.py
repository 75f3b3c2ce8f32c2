"""Unit tests for column resolution, output naming and LIMIT handling."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator
from decimal import Decimal

import pytest

from s3select.decode.rows import Row, TableSchema
from s3select.errors import InternalError, QueryCompileError, QueryEvaluationError
from s3select.query.adapter import QueryExecutorAdapter, to_output_value
from s3select.stats import SelectStats

HEADER_SCHEMA = TableSchema(columns=("name", "age"), header=("name", "age"))
POSITIONAL_SCHEMA = TableSchema(columns=("_1", "_2"))


def _raise(exc: QueryEvaluationError) -> None:
    raise exc


class _TrackedRows:
    """Row source that records how many rows were pulled and whether it closed."""

    def __init__(self, count: int) -> None:
        self.count = count
        self.pulled = 0
        self.closed = False

    async def rows(self) -> AsyncGenerator[Row, None]:
        try:
            for index in range(self.count):
                self.pulled += 1
                yield Row(names=("name", "age"), values=(f"n{index}", str(index)))
        finally:
            self.closed = True


def _run_limited(sql: str, source: _TrackedRows, stats: SelectStats) -> list[Row]:
    async def run() -> list[Row]:
        adapter = QueryExecutorAdapter.from_sql(sql)
        adapter.compile(HEADER_SCHEMA)
        result = adapter.execute(source.rows(), stats=stats, on_error=_raise)
        try:
            return [row async for row in result]
        finally:
            await result.aclose()

    return asyncio.run(run())


def test_header_names_resolve_case_insensitively() -> None:
    """Unquoted names match the header ignoring case and keep the written name."""
    adapter = QueryExecutorAdapter.from_sql("SELECT NAME, s.Age FROM S3Object s")
    adapter.compile(HEADER_SCHEMA)
    assert adapter.output_names() == ("NAME", "Age")


def test_quoted_names_are_case_sensitive() -> None:
    """A quoted name must match the header exactly."""
    adapter = QueryExecutorAdapter.from_sql('SELECT "NAME" FROM S3Object')
    with pytest.raises(QueryCompileError) as excinfo:
        adapter.compile(HEADER_SCHEMA)
    assert excinfo.value.code == "InvalidColumnIndex"


def test_names_need_a_header() -> None:
    """Name references without a header fail with MissingHeaders."""
    adapter = QueryExecutorAdapter.from_sql("SELECT name FROM S3Object")
    with pytest.raises(QueryCompileError) as excinfo:
        adapter.compile(POSITIONAL_SCHEMA)
    assert excinfo.value.code == "MissingHeaders"


def test_positional_references() -> None:
    """``_N`` resolves by position and is range-checked against known columns."""
    QueryExecutorAdapter.from_sql("SELECT _2 FROM S3Object").compile(POSITIONAL_SCHEMA)
    adapter = QueryExecutorAdapter.from_sql("SELECT _5 FROM S3Object")
    with pytest.raises(QueryCompileError) as excinfo:
        adapter.compile(POSITIONAL_SCHEMA)
    assert excinfo.value.code == "InvalidColumnIndex"


def test_key_paths_rejected_for_columnar_input() -> None:
    """Nested paths only apply to document input."""
    adapter = QueryExecutorAdapter.from_sql("SELECT s.name.first FROM S3Object s")
    with pytest.raises(QueryCompileError) as excinfo:
        adapter.compile(HEADER_SCHEMA)
    assert excinfo.value.code == "InvalidKeyPath"


def test_output_names() -> None:
    """Aliases win, then the last key of a reference, then ``_N``."""
    adapter = QueryExecutorAdapter.from_sql("SELECT s.name AS who, s3object.age, 1 + 1 FROM S3Object s")
    assert adapter.output_names() == ("who", "age", "_3")


def test_execute_requires_compile() -> None:
    """Executing an uncompiled adapter is an internal error."""
    adapter = QueryExecutorAdapter.from_sql("SELECT * FROM S3Object")
    with pytest.raises(InternalError, match="compiled"):
        adapter.execute(_TrackedRows(1).rows(), stats=SelectStats(), on_error=_raise)


def test_limit_stops_pulling_rows() -> None:
    """LIMIT closes the upstream once enough rows are produced."""
    source = _TrackedRows(100)
    stats = SelectStats()
    rows = _run_limited("SELECT name FROM S3Object LIMIT 2", source, stats)
    assert [row.values for row in rows] == [("n0",), ("n1",)]
    assert source.pulled == 2
    assert source.closed
    assert stats.rows_emitted == 2


def test_limit_zero_reads_nothing() -> None:
    """LIMIT 0 yields no rows and never pulls input."""
    source = _TrackedRows(5)
    assert _run_limited("SELECT * FROM S3Object LIMIT 0", source, SelectStats()) == []
    assert source.pulled == 0


def test_filter_with_limit_counts_matches() -> None:
    """LIMIT counts output rows, not scanned rows.

    Filtered input is pulled in batches no larger than the LIMIT, so the
    third match arrives with the third batch of three rows.
    """
    source = _TrackedRows(10)
    rows = _run_limited("SELECT age FROM S3Object WHERE CAST(age AS INT) >= 5 LIMIT 3", source, SelectStats())
    assert [row.values for row in rows] == [("5",), ("6",), ("7",)]
    assert source.pulled == 9


def test_to_output_value() -> None:
    """Decimals become int when integral and float otherwise, recursively."""
    assert to_output_value(Decimal("3.00")) == 3
    assert isinstance(to_output_value(Decimal("3.00")), int)
    assert to_output_value(Decimal("2.50")) == 2.5
    assert to_output_value([Decimal(1), {"k": Decimal("0.5")}]) == [1, {"k": 0.5}]
    assert to_output_value("text") == "text"
