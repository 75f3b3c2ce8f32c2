"""Streaming decompression and text decoding of object bytes."""

from __future__ import annotations

import asyncio
import bz2
import codecs
import zlib
from collections.abc import AsyncGenerator, AsyncIterator
from typing import TYPE_CHECKING, Protocol

from s3select.errors import InputDecodeError
from s3select.request import CompressionType

if TYPE_CHECKING:
    from s3select.source import ByteSource
    from s3select.stats import SelectStats


class _Decompressor(Protocol):
    @property
    def eof(self) -> bool: ...

    @property
    def unused_data(self) -> bytes: ...

    def decompress(self, data: bytes) -> bytes: ...


def _new_decompressor(compression: CompressionType) -> _Decompressor:
    if compression == CompressionType.GZIP:
        return zlib.decompressobj(wbits=16 + zlib.MAX_WBITS)
    return bz2.BZ2Decompressor()


class StreamDecompressor:
    """Incremental decompressor accepting concatenated members/streams."""

    def __init__(self, compression: CompressionType) -> None:
        self.compression = compression
        self._current = _new_decompressor(compression)
        self._member_open = False

    def feed(self, data: bytes) -> bytes:
        """Decompress one chunk of compressed input.

        Raises
        ------
        InputDecodeError
            Raised when the input is not valid for the declared compression.
        """
        out: list[bytes] = []
        pending = data
        try:
            while pending:
                self._member_open = True
                out.append(self._current.decompress(pending))
                if not self._current.eof:
                    break
                self._member_open = False
                pending = self._current.unused_data
                self._current = _new_decompressor(self.compression)
        except (OSError, ValueError, EOFError, zlib.error) as exc:
            msg = f"Object is not valid {self.compression} data: {exc}"
            raise InputDecodeError(msg, code="InvalidCompressionFormat") from exc
        return b"".join(out)

    def finish(self) -> None:
        """Check that the compressed stream ended on a member boundary.

        Raises
        ------
        InputDecodeError
            Raised when the compressed stream is truncated.
        """
        if self._member_open:
            msg = f"{self.compression} stream ended before its trailer."
            raise InputDecodeError(msg, code="TruncatedInput")


async def iter_object_bytes(
    source: ByteSource,
    *,
    compression: CompressionType,
    chunk_size: int,
    stats: SelectStats,
) -> AsyncGenerator[bytes, None]:
    """Yield decompressed object bytes, reading the source on demand.

    Yields
    ------
    bytes
        Decompressed chunks; never empty.
    """
    decompressor = None if compression == CompressionType.NONE else StreamDecompressor(compression)
    while True:
        chunk = await source.read(chunk_size)
        if not chunk:
            break
        if decompressor is not None:
            chunk = decompressor.feed(chunk)
            await asyncio.sleep(0)
            if not chunk:
                continue
        stats.add_processed(len(chunk))
        yield chunk
    if decompressor is not None:
        decompressor.finish()


async def iter_text(chunks: AsyncIterator[bytes]) -> AsyncGenerator[str, None]:
    """Decode UTF-8 byte chunks into text chunks, dropping a leading BOM.

    Yields
    ------
    str
        Decoded text chunks.

    Raises
    ------
    InputDecodeError
        Raised when the bytes are not valid UTF-8.
    """
    decoder = codecs.getincrementaldecoder("utf-8-sig")(errors="strict")
    try:
        async for chunk in chunks:
            text = decoder.decode(chunk)
            if text:
                yield text
        tail = decoder.decode(b"", final=True)
    except UnicodeDecodeError as exc:
        msg = f"Object is not valid UTF-8: {exc}"
        raise InputDecodeError(msg, code="InvalidTextEncoding") from exc
    if tail:
        yield tail


__all__ = ["StreamDecompressor", "iter_object_bytes", "iter_text"]
