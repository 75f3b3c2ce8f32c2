"""Unit tests for incremental CSV decoding."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator

import pytest

from s3select.decode.csv_reader import CsvRecord, CsvRecordError, CsvRecordParser, CsvRowDecoder
from s3select.decode.rows import Row, TableSchema
from s3select.errors import InputDecodeError
from s3select.request import CSVInput, FileHeaderInfo


def _parse(text: str, *, chunk: int | None = None, **options: object) -> list[CsvRecord | CsvRecordError]:
    parser = CsvRecordParser(**options)  # type: ignore[arg-type]
    size = chunk or max(len(text), 1)
    items: list[CsvRecord | CsvRecordError] = []
    for start in range(0, len(text), size):
        items.extend(parser.feed(text[start : start + size]))
    items.extend(parser.feed("", final=True))
    return items


def _fields(items: list[CsvRecord | CsvRecordError]) -> list[tuple[str, ...]]:
    return [item.fields for item in items if isinstance(item, CsvRecord)]


async def _texts(text: str, size: int = 5) -> AsyncGenerator[str, None]:
    for start in range(0, len(text), size):
        yield text[start : start + size]


async def _decode(
    text: str,
    options: CSVInput,
    *,
    errors: list[InputDecodeError] | None = None,
) -> tuple[TableSchema, list[Row]]:
    def on_malformed(error: InputDecodeError) -> None:
        if errors is None:
            raise error
        errors.append(error)

    decoder = CsvRowDecoder(_texts(text), options, on_malformed=on_malformed, max_record_chars=1024)
    try:
        schema = await decoder.schema()
        rows = [row async for row in decoder.rows()]
    finally:
        await decoder.aclose()
    return schema, rows


@pytest.mark.parametrize("chunk", [1, 2, 3, 7, None])
def test_parser_is_chunk_size_independent(chunk: int | None) -> None:
    """Produce the same records however the text is split."""
    text = 'a,b,c\n1,"x, y",3\n4,"say ""hi""",6\n'
    assert _fields(_parse(text, chunk=chunk)) == [
        ("a", "b", "c"),
        ("1", "x, y", "3"),
        ("4", 'say "hi"', "6"),
    ]


def test_parser_multi_character_delimiters() -> None:
    """Split on multi-character field and record delimiters across chunks."""
    text = "a||b##c||d##"
    items = _parse(text, chunk=1, field_delimiter="||", record_delimiter="##")
    assert _fields(items) == [("a", "b"), ("c", "d")]


def test_parser_tolerates_crlf() -> None:
    """Strip a trailing carriage return when the record delimiter is LF."""
    assert _fields(_parse('a,b\r\n"c",d\r\n')) == [("a", "b"), ("c", "d")]


def test_parser_skips_blank_and_comment_records() -> None:
    """Drop empty records and comment lines."""
    text = "#comment\na,b\n\n#another\nc,d"
    assert _fields(_parse(text, comments="#")) == [("a", "b"), ("c", "d")]


def test_parser_escape_character() -> None:
    """A distinct escape character makes the next character literal."""
    text = "'it\\'s',x\n"
    items = _parse(text, quote_character="'", quote_escape_character="\\")
    assert _fields(items) == [("it's", "x")]


def test_parser_quoted_record_delimiter_is_malformed_by_default() -> None:
    """A record delimiter inside quotes breaks the record unless allowed."""
    items = _parse('a,"b\nc"\nd,e\n')
    errors = [item for item in items if isinstance(item, CsvRecordError)]
    assert errors
    assert ("d", "e") in _fields(items)


def test_parser_allows_quoted_record_delimiter() -> None:
    """Keep the delimiter literal when AllowQuotedRecordDelimiter is set."""
    items = _parse('a,"b\nc"\nd,e\n', allow_quoted_record_delimiter=True)
    assert _fields(items) == [("a", "b\nc"), ("d", "e")]


def test_parser_reports_unterminated_quote() -> None:
    """An unterminated quote at end of input is a malformed record."""
    items = _parse('a,b\n"open')
    assert _fields(items) == [("a", "b")]
    assert isinstance(items[-1], CsvRecordError)
    assert "Unterminated" in items[-1].message


def test_parser_enforces_record_size() -> None:
    """Abort with OverMaxRecordSize for oversized records."""
    with pytest.raises(InputDecodeError) as excinfo:
        _parse("x" * 50 + "\n", max_record_chars=10)
    assert excinfo.value.code == "OverMaxRecordSize"


def test_decoder_header_use() -> None:
    """Take column names from the first record."""
    options = CSVInput(file_header_info=FileHeaderInfo.USE)
    schema, rows = asyncio.run(_decode("name,age\nann,30\nbob,41\n", options))
    assert schema.columns == ("name", "age")
    assert schema.header == ("name", "age")
    assert [row.values for row in rows] == [("ann", "30"), ("bob", "41")]
    assert rows[0].names == ("name", "age")


def test_decoder_header_ignore() -> None:
    """Drop the first record and synthesize positional names."""
    options = CSVInput(file_header_info=FileHeaderInfo.IGNORE)
    schema, rows = asyncio.run(_decode("name,age\nann,30\n", options))
    assert schema.columns == ("_1", "_2")
    assert schema.header is None
    assert [row.values for row in rows] == [("ann", "30")]


def test_decoder_header_none() -> None:
    """Keep the first record as data."""
    options = CSVInput(file_header_info=FileHeaderInfo.NONE)
    schema, rows = asyncio.run(_decode("ann,30\nbob,41\n", options))
    assert schema.columns == ("_1", "_2")
    assert len(rows) == 2


def test_decoder_column_count_mismatch_aborts() -> None:
    """A short record is malformed and aborts under the default policy."""
    options = CSVInput(file_header_info=FileHeaderInfo.USE)
    with pytest.raises(InputDecodeError) as excinfo:
        asyncio.run(_decode("a,b\n1,2\n3\n", options))
    assert excinfo.value.code == "CSVParsingError"


def test_decoder_reports_malformed_rows_to_handler() -> None:
    """Report malformed rows and keep decoding when the handler returns."""
    options = CSVInput(file_header_info=FileHeaderInfo.USE)
    errors: list[InputDecodeError] = []
    _, rows = asyncio.run(_decode("a,b\n1,2\n3\n4,5\n", options, errors=errors))
    assert [row.values for row in rows] == [("1", "2"), ("4", "5")]
    assert len(errors) == 1
