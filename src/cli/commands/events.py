"""Decode and print a captured event stream."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Annotated, BinaryIO

from cyclopts import Parameter
from rich.console import Console
from rich.table import Table

from cli.exit_codes import ExitCode
from s3select.errors import SelectError
from s3select.eventstream import EventMessage, FrameDecodeError, MessageDecoder

_READ_SIZE = 64 * 1024


def _describe(message: EventMessage) -> str:
    if message.message_type == "error":
        return f"{message.headers.get(':error-code')}: {message.headers.get(':error-message')}"
    if message.event_type in {"Progress", "Stats"}:
        return message.payload.decode(errors="replace")
    return f"{len(message.payload)} bytes"


def _read_messages(stream: BinaryIO) -> list[EventMessage]:
    decoder = MessageDecoder()
    messages: list[EventMessage] = []
    while chunk := stream.read(_READ_SIZE):
        messages.extend(decoder.feed(chunk))
    if decoder.pending:
        msg = f"Capture ends with {decoder.pending} bytes of an incomplete message."
        raise FrameDecodeError(msg)
    return messages


def events_command(
    path: Path,
    *,
    payload: Annotated[
        bool,
        Parameter(name="--payload", help="Write Records payloads to stdout instead of a summary."),
    ] = False,
) -> int:
    """Decode an event-stream capture and print one line per message.

    Parameters
    ----------
    path
        Capture file, or ``-`` for stdin.
    payload
        Write the concatenated Records payloads instead of a table.

    Returns
    -------
    int
        Exit status code.
    """
    console = Console(stderr=payload)
    try:
        if str(path) == "-":
            messages = _read_messages(sys.stdin.buffer)
        else:
            with path.open("rb") as stream:
                messages = _read_messages(stream)
    except (SelectError, OSError) as exc:
        message = exc.message if isinstance(exc, SelectError) else str(exc)
        console.print(f"[red]error[/red]: {message}")
        return ExitCode.from_exception(exc)
    if payload:
        for message in messages:
            if message.event_type == "Records":
                sys.stdout.buffer.write(message.payload)
        sys.stdout.buffer.flush()
        return ExitCode.SUCCESS
    table = Table("#", "type", "event", "detail")
    for index, message in enumerate(messages, start=1):
        table.add_row(
            str(index),
            message.message_type or "",
            message.event_type or "",
            _describe(message),
        )
    console.print(table)
    return ExitCode.SUCCESS


__all__ = ["events_command"]
