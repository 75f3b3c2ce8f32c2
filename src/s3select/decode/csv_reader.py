"""Incremental CSV decoding.

:class:`CsvRecordParser` is an RFC 4180 style state machine fed with text
chunks of arbitrary size; it yields records lazily so a consumer that stops
pulling leaves the rest of the chunk unparsed. :class:`CsvRowDecoder` turns
records into :class:`~s3select.decode.rows.Row` values according to the
request's header handling.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator, Iterator
from dataclasses import dataclass
from enum import Enum, auto

from s3select.decode.rows import MalformedHandler, Row, TableSchema, positional_names
from s3select.errors import InputDecodeError
from s3select.request import CSVInput, FileHeaderInfo

logger = logging.getLogger(__name__)

class _State(Enum):
    FIELD_START = auto()
    UNQUOTED = auto()
    QUOTED = auto()
    QUOTED_ESCAPE = auto()
    QUOTE_SEEN = auto()
    COMMENT = auto()
    BAD_RECORD = auto()


@dataclass(frozen=True, slots=True)
class CsvRecord:
    """Fields of one physical CSV record."""

    fields: tuple[str, ...]
    number: int


@dataclass(frozen=True, slots=True)
class CsvRecordError:
    """A record that could not be parsed; parsing resumes at the next record."""

    message: str
    number: int


class CsvRecordParser:
    """Split text into CSV records honoring quotes, escapes and comments."""

    def __init__(
        self,
        *,
        field_delimiter: str = ",",
        record_delimiter: str = "\n",
        quote_character: str = '"',
        quote_escape_character: str = '"',
        comments: str = "",
        allow_quoted_record_delimiter: bool = False,
        max_record_chars: int = 1024 * 1024,
    ) -> None:
        self.field_delimiter = field_delimiter
        self.record_delimiter = record_delimiter
        self.quote = quote_character
        self.escape = quote_escape_character
        self.comments = comments
        self.allow_quoted_record_delimiter = allow_quoted_record_delimiter
        self.max_record_chars = max_record_chars
        self._state = _State.FIELD_START
        self._tail = ""
        self._fields: list[str] = []
        self._field: list[str] = []
        self._field_quoted = False
        self._record_chars = 0
        self._record_number = 0
        self._error: str | None = None

    @classmethod
    def for_options(cls, options: CSVInput, *, max_record_chars: int) -> CsvRecordParser:
        """Build a parser from request CSV options."""
        return cls(
            field_delimiter=options.field_delimiter,
            record_delimiter=options.record_delimiter,
            quote_character=options.quote_character,
            quote_escape_character=options.quote_escape_character,
            comments=options.comments,
            allow_quoted_record_delimiter=options.allow_quoted_record_delimiter,
            max_record_chars=max_record_chars,
        )

    @staticmethod
    def _match(buffer: str, index: int, token: str, *, final: bool) -> bool | None:
        if buffer.startswith(token, index):
            return True
        remaining = len(buffer) - index
        if not final and remaining < len(token) and token.startswith(buffer[index:]):
            return None
        return False

    def _end_field(self) -> None:
        self._fields.append("".join(self._field))
        self._field = []

    def _end_record(self) -> CsvRecord | None:
        self._end_field()
        fields = self._fields
        last_quoted = self._field_quoted
        self._reset_record()
        if self.record_delimiter == "\n" and not last_quoted and fields[-1].endswith("\r"):
            fields[-1] = fields[-1][:-1]
        if len(fields) == 1 and not fields[0] and not last_quoted:
            return None
        return CsvRecord(fields=tuple(fields), number=self._record_number)

    def _reset_record(self) -> None:
        self._fields = []
        self._field = []
        self._field_quoted = False
        self._record_chars = 0
        self._record_number += 1
        self._state = _State.FIELD_START

    def _bad_record(self, message: str) -> None:
        self._error = message
        self._state = _State.BAD_RECORD

    def _take_error(self) -> CsvRecordError:
        message = self._error or "Malformed CSV record."
        self._error = None
        number = self._record_number + 1
        self._reset_record()
        return CsvRecordError(message=message, number=number)

    def _count(self, width: int) -> None:
        self._record_chars += width
        if self._record_chars > self.max_record_chars:
            msg = (
                f"CSV record {self._record_number + 1} exceeds the maximum record size of "
                f"{self.max_record_chars} characters."
            )
            raise InputDecodeError(msg, code="OverMaxRecordSize")

    def feed(self, text: str, *, final: bool = False) -> Iterator[CsvRecord | CsvRecordError]:
        """Parse a text chunk, yielding complete records.

        Parameters
        ----------
        text
            Next chunk of decoded text.
        final
            Whether this is the last chunk of the object.

        Yields
        ------
        CsvRecord | CsvRecordError
            Parsed records, or errors for records that were skipped over.
        """
        buffer = self._tail + text
        self._tail = ""
        index = 0
        size = len(buffer)
        while index < size:
            state = self._state
            if state in {_State.COMMENT, _State.BAD_RECORD}:
                matched = self._match(buffer, index, self.record_delimiter, final=final)
                if matched is None:
                    self._tail = buffer[index:]
                    return
                if matched:
                    index += len(self.record_delimiter)
                    if state == _State.BAD_RECORD:
                        yield self._take_error()
                    else:
                        self._reset_record()
                    continue
                self._count(1)
                index += 1
                continue
            if state in {_State.QUOTED, _State.QUOTED_ESCAPE}:
                index = self._step_quoted(buffer, index, final=final)
                if index < 0:
                    self._tail = buffer[-index - 1 :]
                    return
                if self._error is not None and self._state == _State.FIELD_START:
                    yield self._take_error()
                continue
            if (
                state == _State.FIELD_START
                and self.comments
                and not self._fields
                and not self._field
            ):
                matched = self._match(buffer, index, self.comments, final=final)
                if matched is None:
                    self._tail = buffer[index:]
                    return
                if matched:
                    self._state = _State.COMMENT
                    index += len(self.comments)
                    continue
            matched = self._match(buffer, index, self.record_delimiter, final=final)
            if matched is None:
                self._tail = buffer[index:]
                return
            if matched:
                index += len(self.record_delimiter)
                record = self._end_record()
                if record is not None:
                    yield record
                continue
            matched = self._match(buffer, index, self.field_delimiter, final=final)
            if matched is None:
                self._tail = buffer[index:]
                return
            if matched:
                index += len(self.field_delimiter)
                self._count(len(self.field_delimiter))
                self._end_field()
                self._field_quoted = False
                self._state = _State.FIELD_START
                continue
            char = buffer[index]
            index += 1
            self._count(1)
            if state == _State.FIELD_START:
                if char == self.quote:
                    self._field_quoted = True
                    self._state = _State.QUOTED
                else:
                    self._field.append(char)
                    self._state = _State.UNQUOTED
            elif state == _State.UNQUOTED:
                self._field.append(char)
            elif char == "\r" and self.record_delimiter == "\n":
                continue
            else:
                self._bad_record(f"Unexpected character {char!r} after a closing quote.")
        if final:
            yield from self._finish()

    def _step_quoted(self, buffer: str, index: int, *, final: bool) -> int:
        """Consume one unit inside a quoted field.

        Returns the next index, or ``-(index + 1)`` when more input is needed.
        """
        char = buffer[index]
        if self._state == _State.QUOTED_ESCAPE:
            self._field.append(char)
            self._count(1)
            self._state = _State.QUOTED
            return index + 1
        if char == self.quote and self.escape == self.quote:
            if index + 1 >= len(buffer) and not final:
                return -(index + 1)
            self._count(1)
            if index + 1 < len(buffer) and buffer[index + 1] == self.quote:
                self._field.append(self.quote)
                self._count(1)
                return index + 2
            self._state = _State.QUOTE_SEEN
            return index + 1
        if char == self.escape:
            self._count(1)
            self._state = _State.QUOTED_ESCAPE
            return index + 1
        if char == self.quote:
            self._count(1)
            self._state = _State.QUOTE_SEEN
            return index + 1
        if not self.allow_quoted_record_delimiter:
            matched = self._match(buffer, index, self.record_delimiter, final=final)
            if matched is None:
                return -(index + 1)
            if matched:
                self._error = "Record delimiter inside a quoted field."
                self._state = _State.FIELD_START
                return index + len(self.record_delimiter)
        self._field.append(char)
        self._count(1)
        return index + 1

    def _finish(self) -> Iterator[CsvRecord | CsvRecordError]:
        state = self._state
        if state == _State.BAD_RECORD:
            yield self._take_error()
        elif state in {_State.QUOTED, _State.QUOTED_ESCAPE}:
            self._error = "Unterminated quoted field at end of input."
            yield self._take_error()
        elif state == _State.COMMENT:
            self._reset_record()
        elif self._fields or self._field or state != _State.FIELD_START or self._field_quoted:
            record = self._end_record()
            if record is not None:
                yield record


class CsvRowDecoder:
    """Decode CSV text into rows with a fixed, request-wide field set."""

    def __init__(
        self,
        texts: AsyncGenerator[str, None],
        options: CSVInput,
        *,
        on_malformed: MalformedHandler,
        max_record_chars: int,
    ) -> None:
        self._texts = texts
        self._options = options
        self._on_malformed = on_malformed
        self._parser = CsvRecordParser.for_options(options, max_record_chars=max_record_chars)
        self._records = self._iter_records()
        self._names: tuple[str, ...] | None = None
        self._first: CsvRecord | None = None
        self._exhausted = False

    async def _iter_records(self) -> AsyncGenerator[CsvRecord, None]:
        async for text in self._texts:
            for item in self._parser.feed(text):
                if isinstance(item, CsvRecordError):
                    self._report(item)
                    continue
                yield item
        for item in self._parser.feed("", final=True):
            if isinstance(item, CsvRecordError):
                self._report(item)
                continue
            yield item

    def _report(self, error: CsvRecordError) -> None:
        msg = f"Malformed CSV record {error.number}: {error.message}"
        self._on_malformed(InputDecodeError(msg, code="CSVParsingError"))

    async def _next_record(self) -> CsvRecord | None:
        if self._exhausted:
            return None
        try:
            return await anext(self._records)
        except StopAsyncIteration:
            self._exhausted = True
            return None

    async def schema(self) -> TableSchema:
        """Resolve column names, consuming the header record when present.

        Returns
        -------
        TableSchema
            Schema with header or positional column names.
        """
        if self._names is not None:
            return TableSchema(columns=self._names, header=self._header_names())
        header_info = self._options.file_header_info
        first = await self._next_record()
        if header_info == FileHeaderInfo.USE:
            self._names = first.fields if first is not None else ()
        elif header_info == FileHeaderInfo.IGNORE:
            self._first = await self._next_record()
            width = len(first.fields) if first is not None else 0
            self._names = positional_names(width)
        else:
            self._first = first
            self._names = positional_names(len(first.fields) if first is not None else 0)
        logger.debug("Resolved CSV columns: %s", self._names)
        return TableSchema(columns=self._names, header=self._header_names())

    def _header_names(self) -> tuple[str, ...] | None:
        if self._options.file_header_info == FileHeaderInfo.USE:
            return self._names
        return None

    async def rows(self) -> AsyncGenerator[Row, None]:
        """Yield data rows in object order.

        Yields
        ------
        Row
            One row per well-formed data record.
        """
        names = (await self.schema()).columns or ()
        pending, self._first = self._first, None
        while True:
            record = pending if pending is not None else await self._next_record()
            pending = None
            if record is None:
                return
            if names and len(record.fields) != len(names):
                msg = (
                    f"CSV record {record.number} has {len(record.fields)} fields, "
                    f"expected {len(names)}."
                )
                self._on_malformed(InputDecodeError(msg, code="CSVParsingError"))
                continue
            yield Row(names=names, values=record.fields)

    async def aclose(self) -> None:
        """Stop decoding and release the upstream text iterator."""
        await self._records.aclose()
        await self._texts.aclose()


__all__ = [
    "CsvRecord",
    "CsvRecordError",
    "CsvRecordParser",
    "CsvRowDecoder",
]
