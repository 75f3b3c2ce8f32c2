"""Unit tests for select session orchestration and frame sequencing."""

from __future__ import annotations

import asyncio
import gzip
import json
import random

import msgspec
import pyarrow as pa
import pyarrow.parquet as pq
import pytest

from s3select.config import SelectRuntimeConfig
from s3select.decode.rows import Row
from s3select.errors import (
    InputDecodeError,
    QueryCompileError,
    SelectError,
    SessionTimeoutError,
    TransportError,
)
from s3select.eventstream import EndFrame, ErrorFrame, Frame, ProgressFrame, RecordsFrame, StatsFrame
from s3select.request import OutputSerialization, build_select_request
from s3select.serialize import RowSerializer, serializer_for
from s3select.session import (
    QueueSink,
    SelectSession,
    SessionOutcome,
    SessionStage,
    StreamWriterSink,
    run_select,
)
from s3select.source import BytesSource
from tests.test_helpers.select_runtime import (
    TEST_CONFIG,
    RecordingSink,
    csv_request,
    frame_kinds,
    json_request,
    records_text,
    run_session,
)

PEOPLE_CSV = b"name,age\nann,30\nbob,41\ncy,35\n"


class _StepClock:
    """Clock advancing one second per reading."""

    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        self.now += 1.0
        return self.now


class _SlowSource(BytesSource):
    """Byte source whose reads never complete in time."""

    async def read(self, size: int) -> bytes:
        await asyncio.sleep(10)
        return await super().read(size)


class _CancellingSink(RecordingSink):
    """Sink that cancels its session after the first frame."""

    def __init__(self) -> None:
        super().__init__()
        self.session: SelectSession | None = None

    async def send(self, frame: Frame) -> None:
        await super().send(frame)
        if self.session is not None:
            self.session.cancel()


class _StallingSink(RecordingSink):
    """Sink that stalls on the second frame."""

    async def send(self, frame: Frame) -> None:
        if self.frames:
            await asyncio.sleep(10)
        await super().send(frame)


class _BrokenWriter:
    """Stream writer stand-in whose drain fails."""

    def __init__(self) -> None:
        self.written: list[bytes] = []

    def is_closing(self) -> bool:
        return False

    def write(self, data: bytes) -> None:
        self.written.append(data)

    async def drain(self) -> None:
        msg = "peer reset"
        raise ConnectionResetError(msg)



class _StageSink(RecordingSink):
    """Sink recording the session stage seen by each send."""

    def __init__(self) -> None:
        super().__init__()
        self.session: SelectSession | None = None
        self.stages: list[SessionStage] = []

    async def send(self, frame: Frame) -> None:
        if self.session is not None:
            self.stages.append(self.session.stage)
        await super().send(frame)


class _StageRecordingSerializer:
    """Serializer wrapper recording the session stage per serialized row."""

    def __init__(self, inner: RowSerializer, sink: _StageSink) -> None:
        self.inner = inner
        self.sink = sink
        self.stages: list[SessionStage] = []

    def serialize(self, row: Row) -> bytes:
        if self.sink.session is not None:
            self.stages.append(self.sink.session.stage)
        return self.inner.serialize(row)


def test_csv_filter_end_to_end() -> None:
    """Filtered CSV rows stream as Records, then Stats, then End."""
    frames, outcome = run_session(
        csv_request("SELECT name FROM S3Object WHERE CAST(age AS INT) > 32"),
        PEOPLE_CSV,
    )
    assert records_text(frames) == "bob\ncy\n"
    assert frame_kinds(frames) == ["RecordsFrame", "StatsFrame", "EndFrame"]
    assert outcome.succeeded
    assert outcome.stats.bytes_scanned == len(PEOPLE_CSV)
    assert outcome.stats.bytes_processed == len(PEOPLE_CSV)
    assert outcome.stats.bytes_returned == len(b"bob\ncy\n")
    assert outcome.stats.rows_scanned == 3
    assert outcome.stats.rows_emitted == 2
    stats_frame = frames[-2]
    assert isinstance(stats_frame, StatsFrame)
    assert stats_frame.stats.bytes_returned == outcome.stats.bytes_returned
    assert outcome.frames_sent == len(frames)


def test_json_lines_to_json_output() -> None:
    """JSON LINES input yields JSON records with MISSING fields omitted."""
    data = (
        b'{"id": 1, "tags": ["a"], "active": true}\n'
        b'{"id": 2, "tags": [], "active": false}\n'
        b'{"id": 3, "active": true}\n'
    )
    frames, outcome = run_session(
        json_request("SELECT s.id, s.tags[0] AS tag FROM S3Object s WHERE s.active = true"),
        data,
    )
    assert outcome.succeeded
    lines = records_text(frames).splitlines()
    assert [json.loads(line) for line in lines] == [{"id": 1, "tag": "a"}, {"id": 3}]


def test_aggregate_emits_single_record() -> None:
    """Aggregates produce one record after the whole object is scanned."""
    frames, _ = run_session(csv_request("SELECT COUNT(*), MAX(age) FROM S3Object"), PEOPLE_CSV)
    assert records_text(frames) == "3,41\n"


def test_parquet_end_to_end() -> None:
    """Parquet objects are queried by column name."""
    sink = pa.BufferOutputStream()
    pq.write_table(pa.table({"city": ["Oslo", "Rome"], "pop": [700, 2800]}), sink)
    request = build_select_request(
        {
            "Expression": "SELECT city FROM S3Object WHERE pop > 1000",
            "InputSerialization": {"Parquet": {}},
            "OutputSerialization": {"CSV": {}},
        }
    )
    frames, outcome = run_session(request, sink.getvalue().to_pybytes())
    assert outcome.succeeded
    assert records_text(frames) == "Rome\n"


def test_limit_stops_reading_the_object() -> None:
    """LIMIT ends the scan early and closes the source."""
    data = b"n,i\n" + b"".join(f"row{index},{index}\n".encode() for index in range(500))
    source = BytesSource(data)
    frames, outcome = run_session(csv_request("SELECT n FROM S3Object LIMIT 1"), source)
    assert records_text(frames) == "row0\n"
    assert source.closed
    assert outcome.stats.bytes_scanned < len(data)
    assert source.reads < 10


def test_pre_commit_errors_raise() -> None:
    """Failures before the first frame raise and leave no frames."""
    source = BytesSource(PEOPLE_CSV)
    sink = RecordingSink()
    with pytest.raises(QueryCompileError) as excinfo:
        run_session(csv_request("SELECT nope FROM S3Object"), source, sink=sink)
    assert excinfo.value.code == "InvalidColumnIndex"
    assert sink.frames == []
    assert source.closed


def test_invalid_sql_releases_source() -> None:
    """A syntax error still closes the object source."""
    source = BytesSource(PEOPLE_CSV)
    with pytest.raises(QueryCompileError):
        run_session(csv_request("SELECT name FROM S3Object WHERE (age"), source)
    assert source.closed


def test_post_commit_error_sends_one_error_frame() -> None:
    """A failure after Records were sent ends the stream with one Error frame."""
    data = b"n\n5\n0\n1\n"
    frames, outcome = run_session(csv_request("SELECT 10 / CAST(n AS INT) FROM S3Object"), data)
    assert records_text(frames) == "2\n"
    assert frame_kinds(frames) == ["RecordsFrame", "ErrorFrame"]
    error = frames[-1]
    assert isinstance(error, ErrorFrame)
    assert error.code == "DivisionByZero"
    assert outcome.stage == SessionStage.ERROR
    assert outcome.error is not None
    assert outcome.error.code == "DivisionByZero"


def test_malformed_row_after_commit_aborts() -> None:
    """Under ABORT a malformed CSV row after commit becomes an Error frame."""
    frames, outcome = run_session(csv_request("SELECT * FROM S3Object"), b"a,b\n1,2\n3\n4,5\n")
    assert frame_kinds(frames) == ["RecordsFrame", "ErrorFrame"]
    assert isinstance(outcome.error, InputDecodeError)


def test_skip_policy_counts_skipped_rows() -> None:
    """Under SKIP malformed rows are dropped and counted."""
    frames, outcome = run_session(
        csv_request("SELECT * FROM S3Object", malformed="SKIP"),
        b"a,b\n1,2\n3\n4,5\n",
    )
    assert records_text(frames) == "1,2\n4,5\n"
    assert outcome.succeeded
    assert outcome.stats.rows_skipped == 1


def test_transport_failure_sends_nothing_more() -> None:
    """A broken sink after commit ends the session without an Error frame."""
    source = BytesSource(PEOPLE_CSV)
    sink = RecordingSink(fail_after=1)
    frames, outcome = run_session(csv_request("SELECT name FROM S3Object"), source, sink=sink)
    assert len(frames) == 1
    assert not any(isinstance(frame, (ErrorFrame, EndFrame)) for frame in frames)
    assert outcome.stage == SessionStage.ERROR
    assert isinstance(outcome.error, TransportError)
    assert source.closed


def test_transport_failure_before_commit_raises() -> None:
    """A sink that fails on the first frame surfaces as an exception."""
    with pytest.raises(TransportError):
        run_session(csv_request("SELECT name FROM S3Object"), PEOPLE_CSV, sink=RecordingSink(fail_after=0))


def test_cancel_from_sink_stops_session(select_config: SelectRuntimeConfig) -> None:
    """Cancelling mid-stream stops quietly and releases the source."""
    source = BytesSource(PEOPLE_CSV)
    sink = _CancellingSink()
    session = SelectSession(csv_request("SELECT name FROM S3Object"), source, config=select_config)
    sink.session = session
    outcome = asyncio.run(session.run(sink))
    assert outcome.stage == SessionStage.CANCELLED
    assert len(sink.frames) == 1
    assert session.cancelled
    assert source.closed


def test_cancel_from_another_task() -> None:
    """``cancel`` interrupts a session suspended on a full sink."""
    source = BytesSource(PEOPLE_CSV)
    session = SelectSession(csv_request("SELECT name FROM S3Object"), source, config=TEST_CONFIG)

    async def scenario() -> SessionStage:
        sink = QueueSink(maxsize=1)
        task = asyncio.create_task(session.run(sink))
        first = await sink.queue.get()
        assert isinstance(first, RecordsFrame)
        session.cancel()
        outcome = await task
        assert sink.queue.empty()
        return outcome.stage

    assert asyncio.run(scenario()) == SessionStage.CANCELLED
    assert source.closed


def test_external_task_cancellation_propagates() -> None:
    """Cancelling the running task directly re-raises after cleanup."""
    source = BytesSource(PEOPLE_CSV)
    session = SelectSession(csv_request("SELECT name FROM S3Object"), source, config=TEST_CONFIG)

    async def scenario() -> None:
        sink = QueueSink(maxsize=1)
        task = asyncio.create_task(session.run(sink))
        await sink.queue.get()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(scenario())
    assert source.closed
    assert session.stage == SessionStage.CANCELLED


def test_timeout_before_commit_raises() -> None:
    """A session that cannot start within its timeout raises."""
    source = _SlowSource(PEOPLE_CSV)
    config = msgspec.structs.replace(TEST_CONFIG, session_timeout=0.05)
    with pytest.raises(SessionTimeoutError):
        run_session(csv_request("SELECT * FROM S3Object"), source, config=config)
    assert source.closed


def test_timeout_after_commit_sends_no_error_frame() -> None:
    """A timeout after commit stops the stream without an Error frame."""
    config = msgspec.structs.replace(TEST_CONFIG, session_timeout=0.05)
    sink = _StallingSink()
    frames, outcome = run_session(csv_request("SELECT name FROM S3Object"), PEOPLE_CSV, config=config, sink=sink)
    assert len(frames) == 1
    assert outcome.stage == SessionStage.CANCELLED
    assert isinstance(outcome.error, SessionTimeoutError)


def test_scan_range_end_to_end() -> None:
    """Only records starting inside the scan range are queried."""
    frames, _ = run_session(
        csv_request("SELECT * FROM S3Object", header="NONE", scan_range=(2, 3)),
        b"a\nb\nc\n",
    )
    assert records_text(frames) == "b\n"


def test_gzip_end_to_end() -> None:
    """Compressed objects count scanned and processed bytes separately."""
    compressed = gzip.compress(PEOPLE_CSV)
    frames, outcome = run_session(csv_request("SELECT name FROM S3Object", compression="GZIP"), compressed)
    assert records_text(frames) == "ann\nbob\ncy\n"
    assert outcome.stats.bytes_scanned == len(compressed)
    assert outcome.stats.bytes_processed == len(PEOPLE_CSV)


def test_progress_frames_when_enabled() -> None:
    """Progress frames carry non-decreasing counters and precede Stats."""
    data = b"".join(f'{{"n": {index}}}\n'.encode() for index in range(5))
    session = SelectSession(
        json_request("SELECT s.n FROM S3Object s", progress=True),
        BytesSource(data),
        config=SelectRuntimeConfig(read_chunk_bytes=8, records_batch_bytes=1, progress_interval=1.0),
        clock=_StepClock(),
    )
    sink = RecordingSink()
    outcome = asyncio.run(session.run(sink))
    assert outcome.succeeded
    progress = [frame for frame in sink.frames if isinstance(frame, ProgressFrame)]
    assert progress
    scanned = [frame.stats.bytes_scanned for frame in progress]
    assert scanned == sorted(scanned)
    assert frame_kinds(sink.frames)[-2:] == ["StatsFrame", "EndFrame"]


def test_continuation_frames_during_quiet_scans() -> None:
    """Keep-alive frames are sent while no records are produced."""
    session = SelectSession(
        csv_request("SELECT name FROM S3Object WHERE name = 'nobody'"),
        BytesSource(PEOPLE_CSV),
        config=SelectRuntimeConfig(read_chunk_bytes=8, keepalive_interval=1.0),
        clock=_StepClock(),
    )
    sink = RecordingSink()
    asyncio.run(session.run(sink))
    kinds = frame_kinds(sink.frames)
    assert "ContinuationFrame" in kinds
    assert "RecordsFrame" not in kinds
    assert kinds[-2:] == ["StatsFrame", "EndFrame"]


def test_queue_sink_consumer() -> None:
    """A queue consumer receives every frame up to End."""

    async def scenario() -> list[Frame]:
        sink = QueueSink(maxsize=1)
        task = asyncio.create_task(
            run_select(csv_request("SELECT name FROM S3Object"), BytesSource(PEOPLE_CSV), sink, config=TEST_CONFIG)
        )
        frames = [frame async for frame in sink.frames()]
        await task
        return frames

    frames = asyncio.run(scenario())
    assert records_text(frames) == "ann\nbob\ncy\n"
    assert isinstance(frames[-1], EndFrame)


def test_closed_queue_sink_rejects_frames() -> None:
    """Sending to a closed queue sink is a transport failure."""
    sink = QueueSink()
    sink.close()
    with pytest.raises(TransportError, match="closed"):
        asyncio.run(sink.send(EndFrame()))


def test_stream_writer_sink_wraps_connection_errors() -> None:
    """Connection failures while draining surface as TransportError."""
    writer = _BrokenWriter()
    sink = StreamWriterSink(writer)  # type: ignore[arg-type]
    with pytest.raises(TransportError, match="peer reset"):
        asyncio.run(sink.send(EndFrame()))
    assert writer.written == [EndFrame().encode()]


def test_queue_sink_close_wakes_blocked_sender() -> None:
    """Closing the sink while a send waits for queue space ends the session."""
    source = BytesSource(PEOPLE_CSV)
    sink = QueueSink(maxsize=1)
    session = SelectSession(csv_request("SELECT name FROM S3Object"), source, config=TEST_CONFIG)

    async def scenario() -> SessionOutcome:
        task = asyncio.create_task(session.run(sink))
        for _ in range(1000):
            if task.done() or (sink.queue.full() and session.stage == SessionStage.FRAMING):
                break
            await asyncio.sleep(0)
        assert not task.done()
        sink.close()
        return await asyncio.wait_for(task, 1.0)

    outcome = asyncio.run(scenario())
    assert outcome.stage == SessionStage.ERROR
    assert isinstance(outcome.error, TransportError)
    assert outcome.frames_sent == 1
    assert sink.queue.qsize() == 1
    assert source.closed


def test_rows_serialize_in_serializing_stage(monkeypatch: pytest.MonkeyPatch) -> None:
    """Rows are rendered while the session reports the serializing stage."""
    sink = _StageSink()
    recorders: list[_StageRecordingSerializer] = []

    def recording_serializer(output: OutputSerialization) -> RowSerializer:
        recorder = _StageRecordingSerializer(serializer_for(output), sink)
        recorders.append(recorder)
        return recorder

    monkeypatch.setattr("s3select.session.serializer_for", recording_serializer)
    session = SelectSession(csv_request("SELECT name FROM S3Object"), BytesSource(PEOPLE_CSV), config=TEST_CONFIG)
    sink.session = session
    outcome = asyncio.run(session.run(sink))

    assert outcome.succeeded
    assert records_text(sink.frames) == "ann\nbob\ncy\n"
    [recorder] = recorders
    assert recorder.stages == [SessionStage.SERIALIZING] * 3
    assert set(sink.stages) == {SessionStage.FRAMING}


def test_csv_filter_to_json_output() -> None:
    """A numeric filter over CSV text emits the matching field as a JSON string."""
    frames, outcome = run_session(
        csv_request("SELECT a FROM S3Object WHERE b > 2", output="JSON"),
        b"a,b\n1,2\n3,4\n",
    )
    assert outcome.succeeded
    assert [json.loads(line) for line in records_text(frames).splitlines()] == [{"a": "3"}]
    assert frame_kinds(frames) == ["RecordsFrame", "StatsFrame", "EndFrame"]


def test_count_over_json_lines_to_csv() -> None:
    """COUNT(*) over JSON LINES yields one CSV record before Stats and End."""
    frames, outcome = run_session(
        json_request("SELECT COUNT(*) FROM S3Object", output="CSV"),
        b'{"x":1}\n{"x":5}\n',
    )
    assert outcome.succeeded
    assert records_text(frames) == "2\n"
    assert frame_kinds(frames) == ["RecordsFrame", "StatsFrame", "EndFrame"]
    assert outcome.stats.rows_emitted == 1


_RANDOM_QUERIES = (
    "SELECT k FROM S3Object",
    "SELECT k, v FROM S3Object WHERE CAST(v AS INT) > 2",
    "SELECT 100 / CAST(v AS INT) FROM S3Object",
    "SELECT COUNT(*), SUM(CAST(v AS INT)) FROM S3Object",
    "SELECT * FROM S3Object LIMIT 3",
)


def _random_csv(rng: random.Random) -> bytes:
    lines = ["k,v"]
    for index in range(rng.randint(0, 12)):
        if rng.random() < 0.1:
            lines.append(f"bad{index}")
        else:
            lines.append(f"k{index},{rng.choice(['0', '1', '5', '7', 'x'])}")
    return ("\n".join(lines) + "\n").encode()


@pytest.mark.parametrize("seed", range(40))
def test_random_sessions_keep_frame_order(seed: int) -> None:
    """Any mix of data, policy, batching and sink failure keeps the frame grammar."""
    rng = random.Random(seed)
    request = csv_request(rng.choice(_RANDOM_QUERIES), malformed=rng.choice(["ABORT", "SKIP"]))
    config = msgspec.structs.replace(
        TEST_CONFIG,
        read_chunk_bytes=rng.choice([3, 16, 4096]),
        records_batch_bytes=rng.choice([1, 8, 4096]),
        engine_batch_rows=rng.choice([1, 2, 1024]),
    )
    sink = RecordingSink(fail_after=rng.choice([None, None, 0, 1, 2]))
    source = BytesSource(_random_csv(rng))
    try:
        frames, outcome = run_session(request, source, config=config, sink=sink)
    except SelectError:
        assert sink.frames == []
        assert source.closed
        return

    assert source.closed
    assert outcome.frames_sent == len(frames)
    terminal = [index for index, frame in enumerate(frames) if frame.terminal]
    assert len(terminal) <= 1
    if terminal:
        assert terminal == [len(frames) - 1]
    stats = [index for index, frame in enumerate(frames) if isinstance(frame, StatsFrame)]
    assert len(stats) <= 1
    if stats:
        assert not any(isinstance(frame, RecordsFrame) for frame in frames[stats[0] :])
    last = frames[-1]
    if isinstance(last, EndFrame):
        assert isinstance(frames[-2], StatsFrame)
        assert outcome.succeeded
        assert outcome.error is None
    elif isinstance(last, ErrorFrame):
        assert outcome.stage == SessionStage.ERROR
        assert outcome.error is not None
        assert last.code == outcome.error.code
    else:
        assert isinstance(outcome.error, TransportError)
        assert not outcome.succeeded
