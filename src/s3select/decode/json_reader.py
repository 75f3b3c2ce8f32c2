"""Incremental JSON decoding for ``DOCUMENT`` and ``LINES`` input."""

from __future__ import annotations

import json
import re
from collections.abc import AsyncGenerator, AsyncIterator, Iterator

import msgspec

from s3select.decode.rows import MalformedHandler, Row, TableSchema, Value
from s3select.errors import InputDecodeError
from s3select.request import JSONInput, JSONType

_WHITESPACE = re.compile(r"[ \t\n\r]*")
_PARTIAL_TAIL = re.compile(r"\s*\\?[-+.\w]*")
_LINE_DECODER = msgspec.json.Decoder()


def row_from_value(value: Value) -> Row:
    """Return the row for one top-level JSON value.

    Objects contribute their top-level keys as fields; any other value becomes
    the single positional field ``_1``.
    """
    if isinstance(value, dict):
        return Row.from_mapping(value)
    return Row(names=("_1",), values=(value,))


def _may_continue(buffer: str, exc: json.JSONDecodeError) -> bool:
    """Return whether a decode error can still be cured by more input.

    Only an open string or a partial token at the very end of the buffer is
    incomplete; any error followed by more text is final.
    """
    if exc.msg.startswith("Unterminated string"):
        return True
    return _PARTIAL_TAIL.fullmatch(buffer, exc.pos) is not None


class JsonDocumentParser:
    """Split concatenated or whitespace separated JSON values across chunks."""

    def __init__(self, *, max_record_chars: int = 1024 * 1024) -> None:
        self.max_record_chars = max_record_chars
        self._decoder = json.JSONDecoder()
        self._buffer = ""
        self._pos = 0
        self.count = 0

    def feed(self, text: str, *, final: bool = False) -> Iterator[Value]:
        """Yield every complete value available after appending ``text``.

        Raises
        ------
        InputDecodeError
            Raised for malformed input or values over the size limit.
        """
        buffer = self._buffer[self._pos :] + text
        self._buffer, self._pos = buffer, 0
        pos = 0
        while True:
            pos = _WHITESPACE.match(buffer, pos).end()
            if pos >= len(buffer):
                break
            try:
                value, end = self._decoder.raw_decode(buffer, pos)
            except json.JSONDecodeError as exc:
                if final or not _may_continue(buffer, exc):
                    msg = f"Malformed JSON document {self.count + 1}: {exc.msg} at offset {exc.pos}."
                    raise InputDecodeError(msg, code="JSONParsingError") from exc
                self._check_size(len(buffer) - pos)
                break
            if end == len(buffer) and not final and not isinstance(value, (dict, list, str)):
                # A trailing number or literal may continue in the next chunk.
                break
            pos = end
            self._pos = pos
            self.count += 1
            yield value
        self._pos = pos

    def _check_size(self, pending: int) -> None:
        if pending > self.max_record_chars:
            msg = (
                f"JSON document {self.count + 1} exceeds the maximum record size of "
                f"{self.max_record_chars} characters."
            )
            raise InputDecodeError(msg, code="OverMaxRecordSize")


class JsonLinesParser:
    """Split text into newline delimited JSON values."""

    def __init__(self, *, max_record_chars: int = 1024 * 1024) -> None:
        self.max_record_chars = max_record_chars
        self._partial = ""
        self.line = 0

    def feed(
        self, text: str, *, final: bool = False
    ) -> Iterator[Value | InputDecodeError]:
        """Yield decoded values, or errors for lines that fail to decode.

        Raises
        ------
        InputDecodeError
            Raised when one line exceeds the size limit.
        """
        lines = (self._partial + text).split("\n")
        self._partial = "" if final else lines.pop()
        if len(self._partial) > self.max_record_chars:
            msg = f"JSON line exceeds the maximum record size of {self.max_record_chars} characters."
            raise InputDecodeError(msg, code="OverMaxRecordSize")
        for line in lines:
            self.line += 1
            stripped = line.strip()
            if not stripped:
                continue
            if len(stripped) > self.max_record_chars:
                msg = f"JSON line {self.line} exceeds the maximum record size."
                raise InputDecodeError(msg, code="OverMaxRecordSize")
            try:
                yield _LINE_DECODER.decode(stripped)
            except msgspec.DecodeError as exc:
                msg = f"Malformed JSON line {self.line}: {exc}"
                yield InputDecodeError(msg, code="JSONParsingError")


class JsonRowDecoder:
    """Decode JSON text into schema-on-read rows."""

    def __init__(
        self,
        texts: AsyncGenerator[str, None],
        options: JSONInput,
        *,
        on_malformed: MalformedHandler,
        max_record_chars: int,
    ) -> None:
        self._texts = texts
        self._options = options
        self._on_malformed = on_malformed
        self._max_record_chars = max_record_chars

    async def schema(self) -> TableSchema:
        """Return the schema-less document schema."""
        return TableSchema(columns=None)

    async def rows(self) -> AsyncGenerator[Row, None]:
        """Yield one row per top-level JSON value.

        Yields
        ------
        Row
            Decoded rows in object order.
        """
        if self._options.type == JSONType.LINES:
            async for row in self._line_rows():
                yield row
            return
        parser = JsonDocumentParser(max_record_chars=self._max_record_chars)
        async for text in self._texts:
            for value in parser.feed(text):
                yield row_from_value(value)
        for value in parser.feed("", final=True):
            yield row_from_value(value)

    async def _line_rows(self) -> AsyncIterator[Row]:
        parser = JsonLinesParser(max_record_chars=self._max_record_chars)
        async for text in self._texts:
            for item in parser.feed(text):
                if isinstance(item, InputDecodeError):
                    self._on_malformed(item)
                    continue
                yield row_from_value(item)
        for item in parser.feed("", final=True):
            if isinstance(item, InputDecodeError):
                self._on_malformed(item)
                continue
            yield row_from_value(item)

    async def aclose(self) -> None:
        """Release the upstream text iterator."""
        await self._texts.aclose()


__all__ = ["JsonDocumentParser", "JsonLinesParser", "JsonRowDecoder", "row_from_value"]
