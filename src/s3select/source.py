"""Object byte sources consumed by the select pipeline.

The durable storage engine is external; it is reached through the
:class:`ByteSource` protocol. In-memory and local-file sources are provided
for tests and the command line, and :class:`ScanRangeSource` restricts any
source to the records that start inside a byte range.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import TYPE_CHECKING, BinaryIO, Protocol, runtime_checkable

if TYPE_CHECKING:
    from s3select.stats import SelectStats


@runtime_checkable
class ByteSource(Protocol):
    """Sequential, seekable reader over one stored object."""

    @property
    def size(self) -> int | None:
        """Return the object size in bytes, when known."""
        ...

    async def seek(self, offset: int) -> None:
        """Position the reader at an absolute byte offset."""
        ...

    async def read(self, size: int) -> bytes:
        """Return up to ``size`` bytes; an empty result means end of object."""
        ...

    async def aclose(self) -> None:
        """Release the reader. Must be idempotent."""
        ...


class BytesSource:
    """Byte source over an in-memory object body."""

    def __init__(self, data: bytes) -> None:
        self._data = memoryview(data)
        self._offset = 0
        self.closed = False
        self.reads = 0

    @property
    def size(self) -> int:
        """Return the object size in bytes."""
        return len(self._data)

    async def seek(self, offset: int) -> None:
        """Move the read position."""
        self._offset = min(max(offset, 0), len(self._data))

    async def read(self, size: int) -> bytes:
        """Return the next slice of the body.

        Raises
        ------
        ValueError
            Raised when reading after :meth:`aclose`.
        """
        if self.closed:
            msg = "Read from a closed byte source."
            raise ValueError(msg)
        await asyncio.sleep(0)
        chunk = bytes(self._data[self._offset : self._offset + size])
        self._offset += len(chunk)
        self.reads += 1
        return chunk

    async def aclose(self) -> None:
        """Mark the source closed."""
        self.closed = True


class FileByteSource:
    """Byte source over a local file; blocking reads run in a worker thread."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._handle: BinaryIO | None = None

    @property
    def size(self) -> int:
        """Return the file size in bytes."""
        return self.path.stat().st_size

    def _ensure_open(self) -> BinaryIO:
        if self._handle is None:
            self._handle = self.path.open("rb")
        return self._handle

    async def seek(self, offset: int) -> None:
        """Move the read position."""
        handle = self._ensure_open()
        await asyncio.to_thread(handle.seek, offset)

    async def read(self, size: int) -> bytes:
        """Return the next chunk of the file."""
        handle = self._ensure_open()
        return await asyncio.to_thread(handle.read, size)

    async def aclose(self) -> None:
        """Close the underlying file handle."""
        if self._handle is not None:
            handle, self._handle = self._handle, None
            await asyncio.to_thread(handle.close)


class CountingSource:
    """Forward reads while accounting scanned bytes on the session stats."""

    def __init__(self, source: ByteSource, stats: SelectStats) -> None:
        self._source = source
        self._stats = stats

    @property
    def size(self) -> int | None:
        """Return the wrapped object size."""
        return self._source.size

    async def seek(self, offset: int) -> None:
        """Seek the wrapped source."""
        await self._source.seek(offset)

    async def read(self, size: int) -> bytes:
        """Read from the wrapped source and count the bytes."""
        chunk = await self._source.read(size)
        self._stats.add_scanned(len(chunk))
        return chunk

    async def aclose(self) -> None:
        """Close the wrapped source."""
        await self._source.aclose()


class ScanRangeSource:
    """Restrict a source to the records starting inside ``[start, end]``.

    A record belongs to the range when its first byte lies inside it; the
    record that straddles ``end`` is read to completion. Record boundaries are
    located on the encoded ``delimiter`` bytes, so quoted delimiters are not
    recognized here.
    """

    def __init__(
        self,
        source: ByteSource,
        *,
        delimiter: bytes,
        start: int | None = None,
        end: int | None = None,
    ) -> None:
        self._source = source
        self._delimiter = delimiter
        self._start = start or 0
        self._end = end
        self._offset = 0
        self._carry = b""
        self._pending = b""
        self._first_record = 0
        self._positioned = False
        self._done = False

    @property
    def size(self) -> int | None:
        """Return the wrapped object size."""
        return self._source.size

    async def seek(self, offset: int) -> None:
        """Restart the range scan; only offset zero is meaningful.

        Raises
        ------
        ValueError
            Raised for non-zero offsets.
        """
        if offset != 0:
            msg = "Scan ranges can only be restarted from their beginning."
            raise ValueError(msg)
        self._positioned = False
        self._done = False
        self._carry = b""
        self._pending = b""

    async def _position(self, size: int) -> None:
        self._positioned = True
        if self._start == 0:
            await self._source.seek(0)
            self._offset = 0
            return
        width = len(self._delimiter)
        seek_to = max(self._start - width, 0)
        await self._source.seek(seek_to)
        self._offset = seek_to
        window = b""
        while True:
            chunk = await self._source.read(size)
            if not chunk:
                self._done = True
                return
            window_start = self._offset - len(window)
            window += chunk
            self._offset += len(chunk)
            index = window.find(self._delimiter)
            if index >= 0:
                cut = index + width
                self._pending = window[cut:]
                self._first_record = window_start + cut
                return
            window = window[-(width - 1) :] if width > 1 else b""

    def _emit(self, chunk: bytes, chunk_start: int) -> bytes:
        if self._end is None or chunk_start + len(chunk) - 1 < self._end:
            self._remember(chunk)
            return chunk
        width = len(self._delimiter)
        window = self._carry + chunk
        window_start = chunk_start - len(self._carry)
        low = max(self._end - width + 1 - window_start, 0)
        index = window.find(self._delimiter, low)
        if index < 0:
            self._remember(chunk)
            return chunk
        self._done = True
        cut = index + width - len(self._carry)
        return chunk[:cut]

    def _remember(self, chunk: bytes) -> None:
        width = len(self._delimiter)
        if width > 1:
            self._carry = (self._carry + chunk)[-(width - 1) :]

    async def read(self, size: int) -> bytes:
        """Return the next slice of in-range bytes."""
        if not self._positioned:
            await self._position(size)
            if self._end is not None and self._first_record > self._end:
                self._done = True
            if self._pending and not self._done:
                pending, self._pending = self._pending, b""
                return self._emit(pending, self._first_record)
        if self._done:
            return b""
        chunk = await self._source.read(size)
        if not chunk:
            self._done = True
            return b""
        chunk_start = self._offset
        self._offset += len(chunk)
        return self._emit(chunk, chunk_start)

    async def aclose(self) -> None:
        """Close the wrapped source."""
        await self._source.aclose()


__all__ = [
    "ByteSource",
    "BytesSource",
    "CountingSource",
    "FileByteSource",
    "ScanRangeSource",
]
