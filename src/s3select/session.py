"""Select session orchestration: pull scheduling, framing and termination.

A session pulls downstream-first. The sink send is the only place frames
leave the pipeline; Records frames are produced only when the previous send
returned, so sink backpressure reaches the decoder through the chain of
async generators (serializer, query result, engine, decoder, byte source).

Failures raised before the first frame is sent surface as exceptions from
``prepare()``/``run()``. After that commit point, failures are reported in
band through exactly one Error frame.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import AsyncGenerator, Callable
from contextlib import AsyncExitStack, aclosing
from dataclasses import dataclass
from enum import StrEnum
from typing import Protocol

from opentelemetry.trace import Span

from obs.otel.metrics import record_error, record_session
from obs.otel.scopes import SCOPE_DECODE, SCOPE_QUERY, SCOPE_SESSION
from obs.otel.tracing import set_span_attributes, stage_span
from s3select.config import SelectRuntimeConfig
from s3select.decode import RowDecoder, open_row_decoder
from s3select.decode.compression import iter_object_bytes
from s3select.decode.rows import Row
from s3select.errors import (
    InternalError,
    SelectError,
    SessionTimeoutError,
    TransportError,
)
from s3select.eventstream import (
    ContinuationFrame,
    EndFrame,
    ErrorFrame,
    Frame,
    ProgressFrame,
    RecordsFrame,
    StatsFrame,
)
from s3select.query.adapter import QueryExecutorAdapter
from s3select.query.datafusion_engine import DataFusionEngine
from s3select.query.engine import ExecutionEngine
from s3select.request import JSONType, MalformedPolicy, SelectRequest, validate_request
from s3select.serialize import serialize_rows, serializer_for
from s3select.source import ByteSource, CountingSource, ScanRangeSource
from s3select.stats import SelectStats

logger = logging.getLogger(__name__)


class SessionStage(StrEnum):
    """Pipeline stage of a session."""

    CREATED = "created"
    DECODING = "decoding"
    QUERYING = "querying"
    SERIALIZING = "serializing"
    FRAMING = "framing"
    END = "end"
    ERROR = "error"
    CANCELLED = "cancelled"


class FrameSink(Protocol):
    """Transport end of a session; ``send`` may suspend to apply backpressure."""

    async def send(self, frame: Frame) -> None:
        """Deliver one frame."""
        ...


class QueueSink:
    """Sink backed by a bounded queue; a full queue suspends the session."""

    def __init__(self, maxsize: int = 1) -> None:
        self.queue: asyncio.Queue[Frame] = asyncio.Queue(maxsize)
        self._closed = asyncio.Event()

    @property
    def closed(self) -> bool:
        """Return whether the consumer closed the sink."""
        return self._closed.is_set()

    async def send(self, frame: Frame) -> None:
        """Queue one frame, waiting while the queue is full.

        Raises
        ------
        TransportError
            Raised when the consumer closed the sink, including while this
            send was waiting for queue space.
        """
        if self.closed:
            msg = "Frame sink is closed."
            raise TransportError(msg)
        put = asyncio.ensure_future(self.queue.put(frame))
        closed = asyncio.ensure_future(self._closed.wait())
        try:
            await asyncio.wait((put, closed), return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in (put, closed):
                if not waiter.done():
                    waiter.cancel()
        if put.done() and not put.cancelled():
            return
        msg = "Frame sink was closed while a frame was waiting for queue space."
        raise TransportError(msg)

    def close(self) -> None:
        """Mark the consumer side as gone and wake a blocked sender."""
        self._closed.set()

    async def frames(self) -> AsyncGenerator[Frame, None]:
        """Yield queued frames up to and including the terminal frame.

        Yields
        ------
        Frame
            Frames in send order.
        """
        while True:
            frame = await self.queue.get()
            yield frame
            if frame.terminal:
                return


class StreamWriterSink:
    """Sink writing encoded frames to an ``asyncio.StreamWriter``."""

    def __init__(self, writer: asyncio.StreamWriter) -> None:
        self.writer = writer

    async def send(self, frame: Frame) -> None:
        """Write one frame and wait for the transport to drain.

        Raises
        ------
        TransportError
            Raised when the connection is closed or the write fails.
        """
        if self.writer.is_closing():
            msg = "Connection is closing."
            raise TransportError(msg)
        try:
            self.writer.write(frame.encode())
            await self.writer.drain()
        except (ConnectionError, OSError) as exc:
            msg = f"Failed to write event-stream frame: {exc}"
            raise TransportError(msg) from exc


@dataclass(frozen=True)
class SessionOutcome:
    """Result of ``SelectSession.run``."""

    stage: SessionStage
    stats: SelectStats
    error: SelectError | None = None
    frames_sent: int = 0

    @property
    def succeeded(self) -> bool:
        """Return whether the session ended with an End frame."""
        return self.stage == SessionStage.END


class SelectSession:
    """Own the lifecycle of one Select Object Content response.

    Parameters
    ----------
    request
        Select request; validated by ``prepare``.
    source
        Object byte source. The session closes it on every exit path.
    engine
        Execution engine; defaults to ``DataFusionEngine`` sized by
        ``config.engine_batch_rows``.
    config
        Runtime configuration; defaults to ``SelectRuntimeConfig.from_env()``.
    clock
        Monotonic clock used for Progress and keep-alive cadence.
    """

    def __init__(
        self,
        request: SelectRequest,
        source: ByteSource,
        *,
        engine: ExecutionEngine | None = None,
        config: SelectRuntimeConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.request = request
        self.source = source
        self.engine = engine
        self.config = config if config is not None else SelectRuntimeConfig.from_env()
        self.session_id = uuid.uuid4().hex
        self.stats = SelectStats()
        self.stage = SessionStage.CREATED
        self.last_frame: type[Frame] | None = None
        self.frames_sent = 0
        self._clock = clock
        self._exit_stack = AsyncExitStack()
        self._adapter: QueryExecutorAdapter | None = None
        self._decoder: RowDecoder | None = None
        self._prepared = False
        self._committed = False
        self._terminal_sent = False
        self._cancel_requested = False
        self._task: asyncio.Task[object] | None = None
        self._last_sent = clock()
        self._last_progress = self._last_sent
        self._progress_mark = 0

    @property
    def cancelled(self) -> bool:
        """Return whether ``cancel`` was called."""
        return self._cancel_requested

    @property
    def committed(self) -> bool:
        """Return whether any frame has been sent."""
        return self._committed

    def cancel(self) -> None:
        """Stop the session at its next suspension point; no frame follows."""
        if self._cancel_requested:
            return
        self._cancel_requested = True
        logger.info("Select session %s cancellation requested", self.session_id)
        task = self._task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    def _on_malformed(self, error: SelectError) -> None:
        if self.request.malformed_policy != MalformedPolicy.SKIP:
            raise error
        self.stats.add_rows_skipped(1)
        if self.config.log_skipped_rows:
            logger.warning("Select session %s skipped row: %s", self.session_id, error.message)

    def _open_source(self) -> ByteSource:
        source: ByteSource = CountingSource(self.source, self.stats)
        scan_range = self.request.scan_range
        if scan_range is None:
            return source
        serialization = self.request.input_serialization
        if serialization.csv is not None:
            delimiter = serialization.csv.record_delimiter.encode()
        elif serialization.json is not None and serialization.json.type == JSONType.LINES:
            delimiter = b"\n"
        else:
            msg = "ScanRange requires CSV or JSON LINES input."
            raise InternalError(msg)
        return ScanRangeSource(source, delimiter=delimiter, start=scan_range.start, end=scan_range.end)

    async def prepare(self) -> None:
        """Open the source, resolve the table schema and compile the query.

        Raises
        ------
        SelectError
            Pre-stream failure: invalid request, invalid SQL, unknown column,
            or an undecodable header. Resources are released before raising.
        """
        if self._prepared:
            return
        self._exit_stack.push_async_callback(self.source.aclose)
        try:
            validate_request(self.request)
            engine = self.engine
            if engine is None:
                engine = DataFusionEngine(batch_rows=self.config.engine_batch_rows)
            adapter = QueryExecutorAdapter.from_sql(self.request.expression, engine=engine)
            chunks = iter_object_bytes(
                self._open_source(),
                compression=self.request.input_serialization.compression_type,
                chunk_size=self.config.read_chunk_bytes,
                stats=self.stats,
            )
            self._exit_stack.push_async_callback(chunks.aclose)
            decoder = open_row_decoder(
                self.request,
                chunks,
                config=self.config,
                on_malformed=self._on_malformed,
            )
            self._exit_stack.push_async_callback(decoder.aclose)
            self.stage = SessionStage.DECODING
            with stage_span("s3select.schema", stage="decode", scope_name=SCOPE_DECODE):
                schema = await decoder.schema()
            with stage_span("s3select.compile", stage="compile", scope_name=SCOPE_QUERY):
                adapter.compile(schema)
        except SelectError:
            self.stage = SessionStage.ERROR
            await self._release()
            raise
        except Exception as exc:
            self.stage = SessionStage.ERROR
            await self._release()
            msg = f"Failed to prepare select session: {exc}"
            raise InternalError(msg) from exc
        self._adapter = adapter
        self._decoder = decoder
        self._prepared = True

    async def aclose(self) -> None:
        """Release session resources without running it."""
        await self._release()

    async def _release(self) -> None:
        await self._exit_stack.aclose()

    def _check_cancelled(self) -> None:
        if self._cancel_requested:
            raise asyncio.CancelledError

    async def _send(self, sink: FrameSink, frame: Frame) -> None:
        self._check_cancelled()
        if self._terminal_sent:
            msg = f"{type(frame).__name__} after the terminal frame."
            raise InternalError(msg)
        previous = self.stage
        self.stage = SessionStage.FRAMING
        try:
            await sink.send(frame)
        except TransportError:
            raise
        except (ConnectionError, OSError) as exc:
            msg = f"Frame sink failed: {exc}"
            raise TransportError(msg) from exc
        self.stage = previous
        self._committed = True
        self._terminal_sent = frame.terminal
        self.last_frame = type(frame)
        self.frames_sent += 1
        self._last_sent = self._clock()

    async def _tick(self, sink: FrameSink) -> None:
        now = self._clock()
        if self.request.request_progress.enabled and self._progress_due(now):
            self._last_progress = now
            self._progress_mark = self.stats.bytes_scanned
            await self._send(sink, ProgressFrame(self.stats.snapshot()))
            return
        if now - self._last_sent >= self.config.keepalive_interval:
            await self._send(sink, ContinuationFrame())

    def _progress_due(self, now: float) -> bool:
        if now - self._last_progress >= self.config.progress_interval:
            return True
        step = self.config.progress_bytes
        return step is not None and self.stats.bytes_scanned - self._progress_mark >= step

    async def _scan(self, rows: AsyncGenerator[Row, None], sink: FrameSink) -> AsyncGenerator[Row, None]:
        async with aclosing(rows) as source:
            async for row in source:
                self._check_cancelled()
                self.stats.add_rows_scanned(1)
                await self._tick(sink)
                yield row

    async def _serializing(self, rows: AsyncGenerator[Row, None]) -> AsyncGenerator[Row, None]:
        async with aclosing(rows) as results:
            async for row in results:
                self.stage = SessionStage.SERIALIZING
                yield row
                self.stage = SessionStage.QUERYING

    async def _stream(self, sink: FrameSink) -> None:
        adapter = self._adapter
        decoder = self._decoder
        if adapter is None or decoder is None:
            msg = "Select session is not prepared."
            raise InternalError(msg)
        self.stage = SessionStage.QUERYING
        result = adapter.execute(
            self._scan(decoder.rows(), sink),
            stats=self.stats,
            on_error=self._on_malformed,
        )
        self._exit_stack.push_async_callback(result.aclose)
        payloads = serialize_rows(
            self._serializing(aiter(result)),
            serializer_for(self.request.output_serialization),
            batch_bytes=self.config.records_batch_bytes,
        )
        self._exit_stack.push_async_callback(payloads.aclose)
        async for payload in payloads:
            await self._send(sink, RecordsFrame(payload))
            self.stats.add_returned(len(payload))
            await self._tick(sink)
        await self._send(sink, StatsFrame(self.stats.snapshot()))
        await self._send(sink, EndFrame())

    async def _fail(self, sink: FrameSink, error: SelectError) -> None:
        self.stage = SessionStage.ERROR
        if isinstance(error, (TransportError, SessionTimeoutError)):
            logger.warning("Select session %s aborted: %s", self.session_id, error.message)
            return
        logger.warning(
            "Select session %s failed after commit: %s (%s)",
            self.session_id,
            error.code,
            error.message,
        )
        try:
            await self._send(sink, ErrorFrame.from_exception(error))
        except (SelectError, asyncio.CancelledError) as exc:
            logger.warning("Select session %s could not deliver its error frame: %s", self.session_id, exc)

    async def run(self, sink: FrameSink) -> SessionOutcome:
        """Stream the query result to ``sink``.

        Returns
        -------
        SessionOutcome
            Terminal stage, final counters and the in-band error, if any.

        Raises
        ------
        SelectError
            Raised for failures before the first frame was sent.
        asyncio.CancelledError
            Re-raised when the running task is cancelled from outside.
        """
        self._task = asyncio.current_task()
        started = time.monotonic()
        error: SelectError | None = None
        logger.info(
            "Select session %s started: input=%s output=%s",
            self.session_id,
            self.request.input_format,
            self.request.output_format,
        )
        with stage_span(
            "s3select.session",
            stage="session",
            scope_name=SCOPE_SESSION,
            attributes={
                "s3select.session_id": self.session_id,
                "s3select.input_format": self.request.input_format,
                "s3select.output_format": self.request.output_format,
            },
        ) as span:
            try:
                async with asyncio.timeout(self.config.session_timeout):
                    await self.prepare()
                    await self._stream(sink)
            except asyncio.CancelledError:
                self.stage = SessionStage.CANCELLED
                await self._release()
                if not self._cancel_requested:
                    raise
                if self._task is not None and self._task.cancelling():
                    self._task.uncancel()
                logger.info("Select session %s cancelled", self.session_id)
            except TimeoutError as exc:
                msg = f"Select session exceeded {self.config.session_timeout}s."
                error = SessionTimeoutError(msg)
                await self._release()
                if not self._committed:
                    self.stage = SessionStage.ERROR
                    raise error from exc
                await self._fail(sink, error)
                self.stage = SessionStage.CANCELLED
            except SelectError as exc:
                error = exc
                await self._release()
                if not self._committed:
                    self.stage = SessionStage.ERROR
                    raise
                await self._fail(sink, exc)
            except Exception as exc:
                error = InternalError(f"Unexpected failure: {exc}")
                await self._release()
                if not self._committed:
                    self.stage = SessionStage.ERROR
                    raise error from exc
                await self._fail(sink, error)
            else:
                self.stage = SessionStage.END
            finally:
                await self._release()
                self._finish(span, started, error)
        return SessionOutcome(
            stage=self.stage,
            stats=self.stats.snapshot(),
            error=error,
            frames_sent=self.frames_sent,
        )

    def _finish(self, span: Span, started: float, error: SelectError | None) -> None:
        stats = self.stats
        if error is not None:
            record_error(error.code, stage=str(error.kind))
        record_session(
            time.monotonic() - started,
            status=str(self.stage),
            bytes_scanned=stats.bytes_scanned,
            bytes_processed=stats.bytes_processed,
            bytes_returned=stats.bytes_returned,
            rows_emitted=stats.rows_emitted,
            rows_skipped=stats.rows_skipped,
        )
        set_span_attributes(
            span,
            {
                "s3select.stage": str(self.stage),
                "s3select.bytes_scanned": stats.bytes_scanned,
                "s3select.bytes_returned": stats.bytes_returned,
                "s3select.rows_emitted": stats.rows_emitted,
                "s3select.rows_skipped": stats.rows_skipped,
                "s3select.error_code": error.code if error is not None else None,
            },
        )
        if stats.rows_skipped:
            logger.info("Select session %s skipped %d malformed rows", self.session_id, stats.rows_skipped)
        logger.info(
            "Select session %s finished: stage=%s scanned=%d returned=%d rows=%d",
            self.session_id,
            self.stage,
            stats.bytes_scanned,
            stats.bytes_returned,
            stats.rows_emitted,
        )


async def run_select(
    request: SelectRequest,
    source: ByteSource,
    sink: FrameSink,
    *,
    engine: ExecutionEngine | None = None,
    config: SelectRuntimeConfig | None = None,
) -> SessionOutcome:
    """Run one select session to completion.

    Returns
    -------
    SessionOutcome
        Outcome of the session.
    """
    session = SelectSession(request, source, engine=engine, config=config)
    return await session.run(sink)


__all__ = [
    "FrameSink",
    "QueueSink",
    "SelectSession",
    "SessionOutcome",
    "SessionStage",
    "StreamWriterSink",
    "run_select",
]
