"""Format decoders turning object bytes into rows."""

from __future__ import annotations

from collections.abc import AsyncGenerator
from typing import TYPE_CHECKING, Protocol

from s3select.decode.compression import iter_text
from s3select.decode.csv_reader import CsvRowDecoder
from s3select.decode.json_reader import JsonRowDecoder
from s3select.decode.parquet_reader import ParquetRowDecoder
from s3select.decode.rows import MISSING, MalformedHandler, Row, TableSchema, Value

if TYPE_CHECKING:
    from s3select.config import SelectRuntimeConfig
    from s3select.request import SelectRequest


class RowDecoder(Protocol):
    """Lazy, restartable-from-zero-only row producer for one object."""

    async def schema(self) -> TableSchema:
        """Resolve the table schema, reading a header record if needed."""
        ...

    def rows(self) -> AsyncGenerator[Row, None]:
        """Return the lazy row sequence."""
        ...

    async def aclose(self) -> None:
        """Release upstream resources."""
        ...


def open_row_decoder(
    request: SelectRequest,
    chunks: AsyncGenerator[bytes, None],
    *,
    config: SelectRuntimeConfig,
    on_malformed: MalformedHandler,
) -> RowDecoder:
    """Return the decoder matching the request's input serialization.

    Parameters
    ----------
    request
        Validated select request.
    chunks
        Decompressed object bytes.
    config
        Runtime limits.
    on_malformed
        Callback deciding whether a malformed record aborts the session.

    Returns
    -------
    RowDecoder
        Decoder for the configured input format.
    """
    serialization = request.input_serialization
    if serialization.csv is not None:
        return CsvRowDecoder(
            iter_text(chunks),
            serialization.csv,
            on_malformed=on_malformed,
            max_record_chars=config.max_record_bytes,
        )
    if serialization.json is not None:
        return JsonRowDecoder(
            iter_text(chunks),
            serialization.json,
            on_malformed=on_malformed,
            max_record_chars=config.max_record_bytes,
        )
    return ParquetRowDecoder(chunks, max_bytes=config.max_columnar_bytes)


__all__ = [
    "MISSING",
    "CsvRowDecoder",
    "JsonRowDecoder",
    "ParquetRowDecoder",
    "Row",
    "RowDecoder",
    "TableSchema",
    "Value",
    "open_row_decoder",
]
