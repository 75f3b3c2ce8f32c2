"""Shared builders and runners for select session tests."""

from __future__ import annotations

import asyncio
from collections.abc import Sequence

from s3select.config import SelectRuntimeConfig
from s3select.errors import TransportError
from s3select.eventstream import Frame, MessageDecoder, RecordsFrame, frame_from_message
from s3select.request import SelectRequest, build_select_request
from s3select.session import SelectSession, SessionOutcome
from s3select.source import ByteSource, BytesSource

TEST_CONFIG = SelectRuntimeConfig(
    read_chunk_bytes=16,
    records_batch_bytes=1,
    keepalive_interval=3600.0,
    progress_interval=3600.0,
)


def csv_request(
    expression: str,
    *,
    header: str = "USE",
    output: str = "CSV",
    malformed: str = "ABORT",
    compression: str = "NONE",
    scan_range: tuple[int | None, int | None] | None = None,
    **csv_options: object,
) -> SelectRequest:
    """Return a validated request over CSV input."""
    payload: dict[str, object] = {
        "Expression": expression,
        "InputSerialization": {
            "CompressionType": compression,
            "CSV": {"FileHeaderInfo": header, **csv_options},
        },
        "OutputSerialization": {"CSV": {}} if output == "CSV" else {"JSON": {}},
        "MalformedPolicy": malformed,
    }
    if scan_range is not None:
        payload["ScanRange"] = {"Start": scan_range[0], "End": scan_range[1]}
    return build_select_request(payload)


def json_request(
    expression: str,
    *,
    json_type: str = "LINES",
    output: str = "JSON",
    malformed: str = "ABORT",
    progress: bool = False,
) -> SelectRequest:
    """Return a validated request over JSON input."""
    return build_select_request(
        {
            "Expression": expression,
            "InputSerialization": {"JSON": {"Type": json_type}},
            "OutputSerialization": {"CSV": {}} if output == "CSV" else {"JSON": {}},
            "RequestProgress": {"Enabled": progress},
            "MalformedPolicy": malformed,
        }
    )


class RecordingSink:
    """Sink keeping every frame; optionally fails after ``fail_after`` sends."""

    def __init__(self, *, fail_after: int | None = None) -> None:
        self.frames: list[Frame] = []
        self.fail_after = fail_after

    async def send(self, frame: Frame) -> None:
        if self.fail_after is not None and len(self.frames) >= self.fail_after:
            msg = "Client went away."
            raise TransportError(msg)
        await asyncio.sleep(0)
        self.frames.append(frame)


def run_session(
    request: SelectRequest,
    source: ByteSource | bytes,
    *,
    config: SelectRuntimeConfig = TEST_CONFIG,
    sink: RecordingSink | None = None,
) -> tuple[list[Frame], SessionOutcome]:
    """Run a session to completion and return its frames and outcome."""
    byte_source = BytesSource(source) if isinstance(source, bytes) else source
    recording = sink if sink is not None else RecordingSink()
    session = SelectSession(request, byte_source, config=config)
    outcome = asyncio.run(session.run(recording))
    return recording.frames, outcome


def records_text(frames: Sequence[Frame]) -> str:
    """Concatenate Records payloads as text."""
    return b"".join(frame.payload for frame in frames if isinstance(frame, RecordsFrame)).decode()


def frame_kinds(frames: Sequence[Frame]) -> list[str]:
    """Return frame class names, collapsing consecutive Records frames."""
    kinds: list[str] = []
    for frame in frames:
        name = type(frame).__name__
        if name == "RecordsFrame" and kinds and kinds[-1] == name:
            continue
        kinds.append(name)
    return kinds


def decode_wire(data: bytes) -> list[Frame]:
    """Decode a captured event stream into frames."""
    decoder = MessageDecoder()
    return [frame_from_message(message) for message in decoder.feed(data)]
