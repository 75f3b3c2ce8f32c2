"""AWS event-stream framing for Select responses.

Wire layout of one message, all integers big-endian::

    total length (4) | headers length (4) | prelude CRC32 (4)
    headers | payload | message CRC32 (4)

The prelude CRC covers the first eight bytes; the message CRC covers every
byte before it.
"""

from __future__ import annotations

import datetime as dt
import struct
import uuid
import zlib
from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from enum import IntEnum, StrEnum
from typing import ClassVar, Final
from xml.etree import ElementTree

from s3select.errors import ErrorKind, SelectError
from s3select.stats import SelectStats

PRELUDE_LENGTH: Final = 12
CRC_LENGTH: Final = 4
MIN_MESSAGE_LENGTH: Final = PRELUDE_LENGTH + CRC_LENGTH
MAX_HEADER_NAME_LENGTH: Final = 255
MAX_HEADER_VALUE_LENGTH: Final = 0xFFFF
MAX_MESSAGE_LENGTH: Final = 16 * 1024 * 1024

_PRELUDE = struct.Struct(">II")
_CRC = struct.Struct(">I")
_EPOCH = dt.datetime(1970, 1, 1, tzinfo=dt.UTC)

OCTET_STREAM: Final = "application/octet-stream"
TEXT_XML: Final = "text/xml"


class FrameDecodeError(SelectError):
    """Encoded bytes are not a valid event-stream message."""

    kind = ErrorKind.TRANSPORT
    code = "InvalidEventStreamMessage"


class HeaderType(IntEnum):
    """Header value type tags."""

    BOOL_TRUE = 0
    BOOL_FALSE = 1
    BYTE = 2
    SHORT = 3
    INTEGER = 4
    LONG = 5
    BYTES = 6
    STRING = 7
    TIMESTAMP = 8
    UUID = 9


class EventType(StrEnum):
    """Select event names."""

    RECORDS = "Records"
    PROGRESS = "Progress"
    STATS = "Stats"
    CONT = "Cont"
    END = "End"


type HeaderValue = bool | int | bytes | str | dt.datetime | uuid.UUID

_FIXED_INTS: Final = {
    HeaderType.BYTE: struct.Struct(">b"),
    HeaderType.SHORT: struct.Struct(">h"),
    HeaderType.INTEGER: struct.Struct(">i"),
    HeaderType.LONG: struct.Struct(">q"),
    HeaderType.TIMESTAMP: struct.Struct(">q"),
}
_LENGTH16 = struct.Struct(">H")


@dataclass(frozen=True, slots=True)
class Header:
    """One typed header entry."""

    name: str
    type: HeaderType
    value: HeaderValue

    @classmethod
    def string(cls, name: str, value: str) -> Header:
        """Return a string-typed header."""
        return cls(name, HeaderType.STRING, value)


def _encode_header_value(header: Header) -> bytes:
    kind = header.type
    value = header.value
    if kind in (HeaderType.BOOL_TRUE, HeaderType.BOOL_FALSE):
        return b""
    if kind == HeaderType.TIMESTAMP:
        if not isinstance(value, dt.datetime):
            msg = f"Header {header.name!r} expects a datetime value."
            raise TypeError(msg)
        aware = value if value.tzinfo is not None else value.replace(tzinfo=dt.UTC)
        millis = (aware - _EPOCH) // dt.timedelta(milliseconds=1)
        return _FIXED_INTS[kind].pack(millis)
    if kind in _FIXED_INTS:
        return _FIXED_INTS[kind].pack(value)
    if kind == HeaderType.UUID:
        if not isinstance(value, uuid.UUID):
            msg = f"Header {header.name!r} expects a UUID value."
            raise TypeError(msg)
        return value.bytes
    raw = value.encode() if isinstance(value, str) else bytes(value)  # type: ignore[arg-type]
    if len(raw) > MAX_HEADER_VALUE_LENGTH:
        msg = f"Header {header.name!r} value exceeds {MAX_HEADER_VALUE_LENGTH} bytes."
        raise ValueError(msg)
    return _LENGTH16.pack(len(raw)) + raw


def encode_headers(headers: list[Header]) -> bytes:
    """Encode a header block.

    Returns
    -------
    bytes
        Concatenated ``name-length | name | type | value`` entries.

    Raises
    ------
    ValueError
        Raised when a name or value exceeds its length field.
    """
    parts: list[bytes] = []
    for header in headers:
        name = header.name.encode()
        if not name or len(name) > MAX_HEADER_NAME_LENGTH:
            msg = f"Header name {header.name!r} must be 1-{MAX_HEADER_NAME_LENGTH} bytes."
            raise ValueError(msg)
        parts.append(bytes((len(name),)) + name + bytes((int(header.type),)) + _encode_header_value(header))
    return b"".join(parts)


def encode_message(headers: list[Header], payload: bytes = b"") -> bytes:
    """Encode one event-stream message with both CRCs.

    Returns
    -------
    bytes
        Complete wire message.
    """
    header_block = encode_headers(headers)
    total = PRELUDE_LENGTH + len(header_block) + len(payload) + CRC_LENGTH
    prelude = _PRELUDE.pack(total, len(header_block))
    prelude += _CRC.pack(zlib.crc32(prelude))
    body = prelude + header_block + payload
    return body + _CRC.pack(zlib.crc32(body))


def _xml_counters(root: str, stats: SelectStats) -> bytes:
    element = ElementTree.Element(root)
    for tag, value in (
        ("BytesScanned", stats.bytes_scanned),
        ("BytesProcessed", stats.bytes_processed),
        ("BytesReturned", stats.bytes_returned),
    ):
        ElementTree.SubElement(element, tag).text = str(value)
    return b'<?xml version="1.0" encoding="UTF-8"?>' + ElementTree.tostring(element)


def _event_headers(event: EventType, content_type: str | None = None) -> list[Header]:
    headers = [Header.string(":event-type", event), Header.string(":message-type", "event")]
    if content_type is not None:
        headers.insert(1, Header.string(":content-type", content_type))
    return headers


@dataclass(frozen=True, slots=True)
class RecordsFrame:
    """Serialized result rows."""

    payload: bytes
    terminal: ClassVar[bool] = False

    def encode(self) -> bytes:
        """Return the wire message."""
        return encode_message(_event_headers(EventType.RECORDS, OCTET_STREAM), self.payload)


@dataclass(frozen=True, slots=True)
class ProgressFrame:
    """Periodic byte counters."""

    stats: SelectStats
    terminal: ClassVar[bool] = False

    def encode(self) -> bytes:
        """Return the wire message."""
        return encode_message(_event_headers(EventType.PROGRESS, TEXT_XML), _xml_counters("Progress", self.stats))


@dataclass(frozen=True, slots=True)
class StatsFrame:
    """Final byte counters, sent once immediately before End."""

    stats: SelectStats
    terminal: ClassVar[bool] = False

    def encode(self) -> bytes:
        """Return the wire message."""
        return encode_message(_event_headers(EventType.STATS, TEXT_XML), _xml_counters("Stats", self.stats))


@dataclass(frozen=True, slots=True)
class ContinuationFrame:
    """Keep-alive sent while a long scan produces no records."""

    terminal: ClassVar[bool] = False

    def encode(self) -> bytes:
        """Return the wire message."""
        return encode_message(_event_headers(EventType.CONT))


@dataclass(frozen=True, slots=True)
class EndFrame:
    """Successful end of the response stream."""

    terminal: ClassVar[bool] = True

    def encode(self) -> bytes:
        """Return the wire message."""
        return encode_message(_event_headers(EventType.END))


@dataclass(frozen=True, slots=True)
class ErrorFrame:
    """Failure after the response was committed; carries no payload."""

    code: str
    message: str
    terminal: ClassVar[bool] = True

    @classmethod
    def from_exception(cls, exc: SelectError) -> ErrorFrame:
        """Build an error frame from a select error."""
        return cls(code=exc.code, message=exc.message)

    def encode(self) -> bytes:
        """Return the wire message."""
        return encode_message(
            [
                Header.string(":error-code", self.code),
                Header.string(":error-message", self.message),
                Header.string(":message-type", "error"),
            ]
        )


type Frame = RecordsFrame | ProgressFrame | StatsFrame | ContinuationFrame | EndFrame | ErrorFrame


def encode_frame(frame: Frame) -> bytes:
    """Return the wire encoding of a frame."""
    return frame.encode()


@dataclass(frozen=True, slots=True)
class EventMessage:
    """Decoded wire message."""

    headers: Mapping[str, HeaderValue]
    payload: bytes

    @property
    def message_type(self) -> str | None:
        """Return the ``:message-type`` header."""
        value = self.headers.get(":message-type")
        return value if isinstance(value, str) else None

    @property
    def event_type(self) -> str | None:
        """Return the ``:event-type`` header."""
        value = self.headers.get(":event-type")
        return value if isinstance(value, str) else None


def _decode_headers(block: bytes) -> dict[str, HeaderValue]:
    headers: dict[str, HeaderValue] = {}
    offset = 0
    try:
        while offset < len(block):
            name_length = block[offset]
            offset += 1
            name = block[offset : offset + name_length].decode()
            offset += name_length
            kind = HeaderType(block[offset])
            offset += 1
            value: HeaderValue
            if kind == HeaderType.BOOL_TRUE:
                value = True
            elif kind == HeaderType.BOOL_FALSE:
                value = False
            elif kind in _FIXED_INTS:
                codec = _FIXED_INTS[kind]
                (number,) = codec.unpack_from(block, offset)
                offset += codec.size
                value = _EPOCH + dt.timedelta(milliseconds=number) if kind == HeaderType.TIMESTAMP else number
            elif kind == HeaderType.UUID:
                raw = block[offset : offset + 16]
                if len(raw) != 16:
                    msg = "Truncated UUID header value."
                    raise FrameDecodeError(msg)
                value = uuid.UUID(bytes=raw)
                offset += 16
            else:
                (length,) = _LENGTH16.unpack_from(block, offset)
                offset += _LENGTH16.size
                raw = block[offset : offset + length]
                if len(raw) != length:
                    msg = "Truncated header value."
                    raise FrameDecodeError(msg)
                offset += length
                value = raw.decode() if kind == HeaderType.STRING else raw
            headers[name] = value
    except (IndexError, struct.error, UnicodeDecodeError, ValueError) as exc:
        msg = f"Malformed header block: {exc}"
        raise FrameDecodeError(msg) from exc
    return headers


def decode_message(data: bytes) -> EventMessage:
    """Decode exactly one message, verifying both CRCs.

    Returns
    -------
    EventMessage
        Headers and payload.

    Raises
    ------
    FrameDecodeError
        Raised on length or CRC mismatches.
    """
    if len(data) < MIN_MESSAGE_LENGTH:
        msg = f"Message of {len(data)} bytes is shorter than the minimum {MIN_MESSAGE_LENGTH}."
        raise FrameDecodeError(msg)
    total, header_length = _PRELUDE.unpack_from(data, 0)
    if total != len(data):
        msg = f"Prelude declares {total} bytes but {len(data)} were given."
        raise FrameDecodeError(msg)
    (prelude_crc,) = _CRC.unpack_from(data, 8)
    if zlib.crc32(data[:8]) != prelude_crc:
        msg = "Prelude CRC mismatch."
        raise FrameDecodeError(msg)
    (message_crc,) = _CRC.unpack_from(data, total - CRC_LENGTH)
    if zlib.crc32(data[: total - CRC_LENGTH]) != message_crc:
        msg = "Message CRC mismatch."
        raise FrameDecodeError(msg)
    headers_end = PRELUDE_LENGTH + header_length
    if headers_end > total - CRC_LENGTH:
        msg = "Header block overruns the message."
        raise FrameDecodeError(msg)
    headers = _decode_headers(data[PRELUDE_LENGTH:headers_end])
    return EventMessage(headers=headers, payload=data[headers_end : total - CRC_LENGTH])


class MessageDecoder:
    """Incrementally split a byte stream into event-stream messages."""

    def __init__(self) -> None:
        self._buffer = bytearray()

    def feed(self, data: bytes) -> Iterator[EventMessage]:
        """Buffer bytes and yield every complete message.

        Yields
        ------
        EventMessage
            Messages in stream order.

        Raises
        ------
        FrameDecodeError
            Raised when a message is invalid or its length is implausible.
        """
        self._buffer.extend(data)
        while len(self._buffer) >= PRELUDE_LENGTH:
            total, _ = _PRELUDE.unpack_from(self._buffer, 0)
            if total < MIN_MESSAGE_LENGTH or total > MAX_MESSAGE_LENGTH:
                msg = f"Implausible message length {total}."
                raise FrameDecodeError(msg)
            if len(self._buffer) < total:
                return
            message = bytes(self._buffer[:total])
            del self._buffer[:total]
            yield decode_message(message)

    @property
    def pending(self) -> int:
        """Return the number of buffered bytes not yet decoded."""
        return len(self._buffer)


def _counters(payload: bytes) -> SelectStats:
    try:
        root = ElementTree.fromstring(payload)
    except ElementTree.ParseError as exc:
        msg = f"Invalid counters payload: {exc}"
        raise FrameDecodeError(msg) from exc

    def number(tag: str) -> int:
        text = root.findtext(tag)
        return int(text) if text else 0

    return SelectStats(
        bytes_scanned=number("BytesScanned"),
        bytes_processed=number("BytesProcessed"),
        bytes_returned=number("BytesReturned"),
    )


def frame_from_message(message: EventMessage) -> Frame:
    """Map a decoded message back onto a frame.

    Raises
    ------
    FrameDecodeError
        Raised for unknown message or event types.
    """
    if message.message_type == "error":
        code = message.headers.get(":error-code", "")
        text = message.headers.get(":error-message", "")
        return ErrorFrame(code=str(code), message=str(text))
    match message.event_type:
        case EventType.RECORDS:
            return RecordsFrame(message.payload)
        case EventType.PROGRESS:
            return ProgressFrame(_counters(message.payload))
        case EventType.STATS:
            return StatsFrame(_counters(message.payload))
        case EventType.CONT:
            return ContinuationFrame()
        case EventType.END:
            return EndFrame()
    msg = f"Unknown event type {message.event_type!r}."
    raise FrameDecodeError(msg)


__all__ = [
    "ContinuationFrame",
    "EndFrame",
    "ErrorFrame",
    "EventMessage",
    "EventType",
    "Frame",
    "FrameDecodeError",
    "Header",
    "HeaderType",
    "MessageDecoder",
    "ProgressFrame",
    "RecordsFrame",
    "StatsFrame",
    "decode_message",
    "encode_frame",
    "encode_headers",
    "encode_message",
    "frame_from_message",
]
