"""Run a Select query over a local object file."""

from __future__ import annotations

import asyncio
import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Annotated, BinaryIO, Literal

from cyclopts import Parameter
from rich.console import Console

from cli.exit_codes import ExitCode
from cli.groups import input_group, output_group, request_source_group, scan_group
from s3select.config import SelectRuntimeConfig
from s3select.errors import SelectError
from s3select.eventstream import ErrorFrame, Frame, RecordsFrame, StatsFrame
from s3select.request import SelectRequest, build_select_request, parse_select_request_xml
from s3select.session import SelectSession
from s3select.source import FileByteSource

logger = logging.getLogger(__name__)

type InputFormat = Literal["csv", "json", "json-lines", "parquet"]
type OutputFormat = Literal["csv", "json"]


@dataclass(frozen=True)
class InputOptions:
    """Input serialization parameters."""

    input_format: Annotated[
        InputFormat,
        Parameter(name=["--input", "-i"], help="Object encoding.", group=input_group),
    ] = "csv"
    header: Annotated[
        Literal["USE", "IGNORE", "NONE"],
        Parameter(name="--header", help="CSV FileHeaderInfo.", group=input_group),
    ] = "USE"
    field_delimiter: Annotated[
        str,
        Parameter(name="--field-delimiter", help="CSV field delimiter.", group=input_group),
    ] = ","
    record_delimiter: Annotated[
        str,
        Parameter(name="--record-delimiter", help="CSV record delimiter.", group=input_group),
    ] = "\n"
    quote_character: Annotated[
        str,
        Parameter(name="--quote-character", help="CSV quote character.", group=input_group),
    ] = '"'
    comments: Annotated[
        str,
        Parameter(name="--comments", help="CSV comment prefix.", group=input_group),
    ] = ""
    compression: Annotated[
        Literal["NONE", "GZIP", "BZIP2"],
        Parameter(name="--compression", help="Object compression.", group=input_group),
    ] = "NONE"


@dataclass(frozen=True)
class OutputOptions:
    """Output serialization and rendering parameters."""

    output_format: Annotated[
        OutputFormat,
        Parameter(name=["--output", "-o"], help="Result row encoding.", group=output_group),
    ] = "json"
    always_quote: Annotated[
        bool,
        Parameter(name="--always-quote", help="Quote every CSV output field.", group=output_group),
    ] = False
    raw: Annotated[
        bool,
        Parameter(
            name="--raw",
            help="Write the binary event stream instead of decoded records.",
            group=output_group,
        ),
    ] = False


@dataclass(frozen=True)
class ScanOptions:
    """Scan restriction and pacing parameters."""

    scan_start: Annotated[
        int | None,
        Parameter(name="--scan-start", help="First byte of the scan range.", group=scan_group),
    ] = None
    scan_end: Annotated[
        int | None,
        Parameter(name="--scan-end", help="Last byte of the scan range.", group=scan_group),
    ] = None
    progress: Annotated[
        bool,
        Parameter(name="--progress", help="Request Progress events.", group=scan_group),
    ] = False
    skip_malformed: Annotated[
        bool,
        Parameter(
            name="--skip-malformed",
            help="Skip malformed records instead of aborting.",
            group=scan_group,
        ),
    ] = False


_DEFAULT_INPUT = InputOptions()
_DEFAULT_OUTPUT = OutputOptions()
_DEFAULT_SCAN = ScanOptions()


def _input_payload(options: InputOptions) -> dict[str, object]:
    payload: dict[str, object] = {"CompressionType": options.compression}
    if options.input_format == "csv":
        payload["CSV"] = {
            "FileHeaderInfo": options.header,
            "FieldDelimiter": options.field_delimiter,
            "RecordDelimiter": options.record_delimiter,
            "QuoteCharacter": options.quote_character,
            "QuoteEscapeCharacter": options.quote_character,
            "Comments": options.comments,
        }
    elif options.input_format == "parquet":
        payload["Parquet"] = {}
    else:
        payload["JSON"] = {"Type": "LINES" if options.input_format == "json-lines" else "DOCUMENT"}
    return payload


def build_request(
    expression: str,
    *,
    input_options: InputOptions = _DEFAULT_INPUT,
    output_options: OutputOptions = _DEFAULT_OUTPUT,
    scan_options: ScanOptions = _DEFAULT_SCAN,
) -> SelectRequest:
    """Build a validated request from command line options.

    Returns
    -------
    SelectRequest
        Validated request.
    """
    if output_options.output_format == "csv":
        output: dict[str, object] = {
            "CSV": {"QuoteFields": "ALWAYS" if output_options.always_quote else "ASNEEDED"}
        }
    else:
        output = {"JSON": {}}
    payload: dict[str, object] = {
        "Expression": expression,
        "InputSerialization": _input_payload(input_options),
        "OutputSerialization": output,
        "RequestProgress": {"Enabled": scan_options.progress},
        "MalformedPolicy": "SKIP" if scan_options.skip_malformed else "ABORT",
    }
    if scan_options.scan_start is not None or scan_options.scan_end is not None:
        payload["ScanRange"] = {"Start": scan_options.scan_start, "End": scan_options.scan_end}
    return build_select_request(payload)


class WriterSink:
    """Write frames to a binary stream, raw or as decoded records."""

    def __init__(self, stream: BinaryIO, *, raw: bool, console: Console) -> None:
        self.stream = stream
        self.raw = raw
        self.console = console

    async def send(self, frame: Frame) -> None:
        """Write one frame."""
        if self.raw:
            self.stream.write(frame.encode())
        elif isinstance(frame, RecordsFrame):
            self.stream.write(frame.payload)
        elif isinstance(frame, StatsFrame):
            stats = frame.stats
            self.console.print(
                f"[dim]scanned={stats.bytes_scanned} processed={stats.bytes_processed} "
                f"returned={stats.bytes_returned}[/dim]"
            )
        elif isinstance(frame, ErrorFrame):
            self.console.print(f"[red]{frame.code}[/red]: {frame.message}")
        if frame.terminal:
            self.stream.flush()


def query_command(
    path: Path,
    *,
    expression: Annotated[
        str | None,
        Parameter(name=["--expression", "-e"], help="SQL expression.", group=request_source_group),
    ] = None,
    request_xml: Annotated[
        Path | None,
        Parameter(
            name="--request-xml",
            help="Load the whole request from a SelectObjectContentRequest XML body.",
            group=request_source_group,
        ),
    ] = None,
    input_options: Annotated[InputOptions, Parameter(name="*")] = _DEFAULT_INPUT,
    output_options: Annotated[OutputOptions, Parameter(name="*")] = _DEFAULT_OUTPUT,
    scan_options: Annotated[ScanOptions, Parameter(name="*")] = _DEFAULT_SCAN,
) -> int:
    """Run a Select expression over a local file and write the result to stdout.

    Parameters
    ----------
    path
        Object file to scan.
    expression
        SQL expression.
    request_xml
        Path to a request XML body.
    input_options
        Input serialization options.
    output_options
        Output serialization options.
    scan_options
        Scan restriction options.

    Returns
    -------
    int
        Exit status code.
    """
    console = Console(stderr=True)
    try:
        if request_xml is not None:
            request = parse_select_request_xml(request_xml.read_bytes())
        elif expression is not None:
            request = build_request(
                expression,
                input_options=input_options,
                output_options=output_options,
                scan_options=scan_options,
            )
        else:
            console.print("[red]Either --expression or --request-xml is required.[/red]")
            return ExitCode.VALIDATION_ERROR
        if not path.is_file():
            msg = f"Object file not found: {path}"
            raise FileNotFoundError(msg)
        sink = WriterSink(sys.stdout.buffer, raw=output_options.raw, console=console)
        session = SelectSession(request, FileByteSource(path), config=SelectRuntimeConfig.from_env())
        outcome = asyncio.run(session.run(sink))
    except (SelectError, OSError) as exc:
        message = exc.message if isinstance(exc, SelectError) else str(exc)
        logger.debug("Query failed before streaming", exc_info=exc)
        console.print(f"[red]error[/red]: {message}")
        return ExitCode.from_exception(exc)
    if outcome.error is not None:
        return ExitCode.from_exception(outcome.error)
    return ExitCode.SUCCESS


__all__ = ["InputOptions", "OutputOptions", "ScanOptions", "WriterSink", "build_request", "query_command"]
