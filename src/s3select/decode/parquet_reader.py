"""Columnar (Parquet) input decoding backed by pyarrow."""

from __future__ import annotations

import asyncio
import datetime as dt
from collections.abc import AsyncGenerator

import pyarrow as pa
import pyarrow.parquet as pq

from s3select.decode.rows import Row, TableSchema, Value
from s3select.errors import InputDecodeError

_BATCH_ROWS = 1024


def _to_value(value: object) -> Value:
    if isinstance(value, dict):
        return {str(key): _to_value(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_to_value(item) for item in value]
    if isinstance(value, (dt.datetime, dt.date, dt.time)):
        return value.isoformat()
    if isinstance(value, dt.timedelta):
        return value.total_seconds()
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value  # type: ignore[return-value]


class ParquetRowDecoder:
    """Buffer a Parquet object and yield its rows batch by batch.

    Parquet footers sit at the end of the object, so the whole object is read
    before the first row can be produced; ``max_bytes`` bounds that buffer.
    """

    def __init__(self, chunks: AsyncGenerator[bytes, None], *, max_bytes: int) -> None:
        self._chunks = chunks
        self._max_bytes = max_bytes
        self._file: pq.ParquetFile | None = None

    async def _open(self) -> pq.ParquetFile:
        if self._file is not None:
            return self._file
        parts: list[bytes] = []
        total = 0
        async for chunk in self._chunks:
            total += len(chunk)
            if total > self._max_bytes:
                msg = f"Columnar object exceeds the {self._max_bytes} byte buffering limit."
                raise InputDecodeError(msg, code="OverMaxRecordSize")
            parts.append(chunk)
        try:
            self._file = pq.ParquetFile(pa.BufferReader(b"".join(parts)))
        except (pa.ArrowException, OSError) as exc:
            msg = f"Object is not a valid Parquet file: {exc}"
            raise InputDecodeError(msg, code="ParquetParsingError") from exc
        return self._file

    async def schema(self) -> TableSchema:
        """Return the Parquet column names as the table schema."""
        parquet_file = await self._open()
        names = tuple(parquet_file.schema_arrow.names)
        return TableSchema(columns=names, header=names)

    async def rows(self) -> AsyncGenerator[Row, None]:
        """Yield rows in file order.

        Yields
        ------
        Row
            One row per Parquet record.

        Raises
        ------
        InputDecodeError
            Raised when a row group cannot be decoded.
        """
        parquet_file = await self._open()
        names = tuple(parquet_file.schema_arrow.names)
        batches = parquet_file.iter_batches(batch_size=_BATCH_ROWS)
        while True:
            try:
                batch = next(batches)
            except StopIteration:
                return
            except (pa.ArrowException, OSError) as exc:
                msg = f"Failed to decode Parquet row group: {exc}"
                raise InputDecodeError(msg, code="ParquetParsingError") from exc
            columns = [column.to_pylist() for column in batch.columns]
            for index in range(batch.num_rows):
                yield Row(names=names, values=tuple(_to_value(column[index]) for column in columns))
            await asyncio.sleep(0)

    async def aclose(self) -> None:
        """Drop the buffered file and release the byte stream."""
        self._file = None
        await self._chunks.aclose()


__all__ = ["ParquetRowDecoder"]
