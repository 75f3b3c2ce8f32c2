"""Select request descriptors and their validation.

The request mirrors the S3 ``SelectObjectContentRequest`` document. Field
names are PascalCase on the wire (``FieldDelimiter``, ``ScanRange``...) and
snake_case in Python; ``msgspec`` handles the renaming and type coercion.
"""

from __future__ import annotations

from collections.abc import Mapping
from enum import StrEnum
from typing import Any
from xml.etree import ElementTree

import msgspec

from s3select.errors import RequestValidationError


class ExpressionType(StrEnum):
    """Supported expression languages."""

    SQL = "SQL"


class CompressionType(StrEnum):
    """Compression applied to the stored object."""

    NONE = "NONE"
    GZIP = "GZIP"
    BZIP2 = "BZIP2"


class FileHeaderInfo(StrEnum):
    """How the first CSV record is treated."""

    NONE = "NONE"
    USE = "USE"
    IGNORE = "IGNORE"


class JSONType(StrEnum):
    """JSON input layout."""

    DOCUMENT = "DOCUMENT"
    LINES = "LINES"


class QuoteFields(StrEnum):
    """CSV output quoting mode."""

    ALWAYS = "ALWAYS"
    ASNEEDED = "ASNEEDED"


class MalformedPolicy(StrEnum):
    """What to do with a record that fails to decode or evaluate."""

    ABORT = "ABORT"
    SKIP = "SKIP"


class _RequestStruct(
    msgspec.Struct,
    frozen=True,
    kw_only=True,
    forbid_unknown_fields=True,
    rename="pascal",
):
    """Base struct for request descriptors."""


class CSVInput(_RequestStruct):
    """CSV input dialect."""

    file_header_info: FileHeaderInfo = FileHeaderInfo.NONE
    comments: str = ""
    quote_escape_character: str = '"'
    record_delimiter: str = "\n"
    field_delimiter: str = ","
    quote_character: str = '"'
    allow_quoted_record_delimiter: bool = False


class JSONInput(_RequestStruct):
    """JSON input layout."""

    type: JSONType = JSONType.DOCUMENT


class ParquetInput(_RequestStruct):
    """Parquet input marker; Parquet carries its own schema."""


class InputSerialization(_RequestStruct):
    """Describe how the stored object is encoded."""

    compression_type: CompressionType = CompressionType.NONE
    csv: CSVInput | None = msgspec.field(default=None, name="CSV")
    json: JSONInput | None = msgspec.field(default=None, name="JSON")
    parquet: ParquetInput | None = None


class CSVOutput(_RequestStruct):
    """CSV output dialect."""

    quote_fields: QuoteFields = QuoteFields.ASNEEDED
    quote_escape_character: str = '"'
    record_delimiter: str = "\n"
    field_delimiter: str = ","
    quote_character: str = '"'


class JSONOutput(_RequestStruct):
    """JSON output layout."""

    record_delimiter: str = "\n"


class OutputSerialization(_RequestStruct):
    """Describe how result rows are rendered."""

    csv: CSVOutput | None = msgspec.field(default=None, name="CSV")
    json: JSONOutput | None = msgspec.field(default=None, name="JSON")


class RequestProgress(_RequestStruct):
    """Whether periodic Progress events are requested."""

    enabled: bool = False


class ScanRange(_RequestStruct):
    """Inclusive byte range restricting which records are scanned."""

    start: int | None = None
    end: int | None = None


class SelectRequest(_RequestStruct):
    """Immutable description of one Select Object Content call."""

    expression: str
    input_serialization: InputSerialization
    output_serialization: OutputSerialization
    expression_type: ExpressionType = ExpressionType.SQL
    request_progress: RequestProgress = msgspec.field(default_factory=RequestProgress)
    scan_range: ScanRange | None = None
    malformed_policy: MalformedPolicy = MalformedPolicy.ABORT

    @property
    def input_format(self) -> str:
        """Return the configured input format name."""
        serialization = self.input_serialization
        if serialization.csv is not None:
            return "CSV"
        if serialization.json is not None:
            return "JSON"
        return "Parquet"

    @property
    def output_format(self) -> str:
        """Return the configured output format name."""
        return "CSV" if self.output_serialization.csv is not None else "JSON"


def _invalid(message: str) -> RequestValidationError:
    return RequestValidationError(message)


def _check_single_char(value: str, *, name: str) -> None:
    if len(value) != 1:
        msg = f"{name} must be exactly one character, got {value!r}."
        raise _invalid(msg)


def _validate_csv_input(csv: CSVInput) -> None:
    if not csv.field_delimiter:
        msg = "FieldDelimiter must not be empty."
        raise _invalid(msg)
    if not csv.record_delimiter or len(csv.record_delimiter) > 2:
        msg = "RecordDelimiter must be one or two characters."
        raise _invalid(msg)
    _check_single_char(csv.quote_character, name="QuoteCharacter")
    _check_single_char(csv.quote_escape_character, name="QuoteEscapeCharacter")
    if csv.field_delimiter == csv.record_delimiter:
        msg = "FieldDelimiter and RecordDelimiter must differ."
        raise _invalid(msg)
    if csv.quote_character in {csv.field_delimiter, csv.record_delimiter}:
        msg = "QuoteCharacter must differ from the delimiters."
        raise _invalid(msg)


def _validate_input(request: SelectRequest) -> None:
    serialization = request.input_serialization
    formats = [
        item
        for item in (serialization.csv, serialization.json, serialization.parquet)
        if item is not None
    ]
    if len(formats) != 1:
        msg = "InputSerialization must specify exactly one of CSV, JSON or Parquet."
        raise _invalid(msg)
    if serialization.csv is not None:
        _validate_csv_input(serialization.csv)
    if serialization.parquet is not None and serialization.compression_type != CompressionType.NONE:
        msg = "Parquet input does not support CompressionType."
        raise _invalid(msg)


def _validate_scan_range(request: SelectRequest) -> None:
    scan = request.scan_range
    if scan is None:
        return
    if scan.start is None and scan.end is None:
        msg = "ScanRange must specify Start, End or both."
        raise _invalid(msg)
    if (scan.start is not None and scan.start < 0) or (scan.end is not None and scan.end < 0):
        msg = "ScanRange offsets must be non-negative."
        raise _invalid(msg)
    if scan.start is not None and scan.end is not None and scan.start > scan.end:
        msg = "ScanRange Start must not exceed End."
        raise _invalid(msg)
    serialization = request.input_serialization
    if serialization.compression_type != CompressionType.NONE:
        msg = "ScanRange is not supported for compressed objects."
        raise _invalid(msg)
    if serialization.parquet is not None:
        msg = "ScanRange is not supported for Parquet input."
        raise _invalid(msg)
    if serialization.json is not None and serialization.json.type != JSONType.LINES:
        msg = "ScanRange requires JSON Type LINES."
        raise _invalid(msg)
    if serialization.csv is not None and serialization.csv.allow_quoted_record_delimiter:
        msg = "ScanRange is not supported with AllowQuotedRecordDelimiter."
        raise _invalid(msg)


def _validate_output(request: SelectRequest) -> None:
    serialization = request.output_serialization
    if (serialization.csv is None) == (serialization.json is None):
        msg = "OutputSerialization must specify exactly one of CSV or JSON."
        raise _invalid(msg)
    if serialization.csv is not None:
        csv = serialization.csv
        if not csv.field_delimiter or not csv.record_delimiter:
            msg = "Output delimiters must not be empty."
            raise _invalid(msg)
        _check_single_char(csv.quote_character, name="QuoteCharacter")
        _check_single_char(csv.quote_escape_character, name="QuoteEscapeCharacter")
    if serialization.json is not None and not serialization.json.record_delimiter:
        msg = "Output RecordDelimiter must not be empty."
        raise _invalid(msg)


def validate_request(request: SelectRequest) -> SelectRequest:
    """Validate cross-field request constraints.

    Parameters
    ----------
    request
        Request to validate.

    Returns
    -------
    SelectRequest
        The same request, for chaining.

    Raises
    ------
    RequestValidationError
        Raised when the descriptors are inconsistent.
    """
    if not request.expression.strip():
        msg = "Expression must not be empty."
        raise _invalid(msg)
    _validate_input(request)
    _validate_output(request)
    _validate_scan_range(request)
    return request


def build_select_request(payload: Mapping[str, Any]) -> SelectRequest:
    """Build and validate a request from a PascalCase mapping.

    Parameters
    ----------
    payload
        Mapping shaped like the S3 request document.

    Returns
    -------
    SelectRequest
        Validated request.

    Raises
    ------
    RequestValidationError
        Raised when the payload does not match the request schema.
    """
    try:
        request = msgspec.convert(payload, type=SelectRequest, strict=False)
    except msgspec.ValidationError as exc:
        msg = f"Malformed select request: {exc}"
        raise RequestValidationError(msg) from exc
    return validate_request(request)


_CONTAINER_TAGS = frozenset(
    {
        "InputSerialization",
        "OutputSerialization",
        "CSV",
        "JSON",
        "Parquet",
        "RequestProgress",
        "ScanRange",
    }
)
_ENUM_TAGS = frozenset(
    {
        "ExpressionType",
        "CompressionType",
        "FileHeaderInfo",
        "Type",
        "QuoteFields",
        "MalformedPolicy",
    }
)
_BOOL_TAGS = frozenset({"Enabled", "AllowQuotedRecordDelimiter"})


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _element_to_mapping(element: ElementTree.Element) -> dict[str, Any]:
    payload: dict[str, Any] = {}
    for child in element:
        name = _local_name(child.tag)
        if name in _CONTAINER_TAGS:
            payload[name] = _element_to_mapping(child)
            continue
        text = child.text or ""
        if name in _ENUM_TAGS:
            payload[name] = text.strip().upper()
        elif name in _BOOL_TAGS:
            payload[name] = text.strip().lower() == "true"
        elif name in {"Start", "End"}:
            payload[name] = text.strip()
        else:
            payload[name] = text
    return payload


def parse_select_request_xml(body: bytes | str) -> SelectRequest:
    """Parse a ``SelectObjectContentRequest`` XML document.

    Parameters
    ----------
    body
        Raw XML request body.

    Returns
    -------
    SelectRequest
        Validated request.

    Raises
    ------
    RequestValidationError
        Raised when the XML is malformed or describes an invalid request.
    """
    try:
        root = ElementTree.fromstring(body)
    except ElementTree.ParseError as exc:
        msg = f"Request body is not well-formed XML: {exc}"
        raise RequestValidationError(msg, code="MalformedXML") from exc
    if _local_name(root.tag) != "SelectObjectContentRequest":
        msg = f"Unexpected root element {_local_name(root.tag)!r}."
        raise RequestValidationError(msg, code="MalformedXML")
    return build_select_request(_element_to_mapping(root))


__all__ = [
    "CSVInput",
    "CSVOutput",
    "CompressionType",
    "ExpressionType",
    "FileHeaderInfo",
    "InputSerialization",
    "JSONInput",
    "JSONOutput",
    "JSONType",
    "MalformedPolicy",
    "OutputSerialization",
    "ParquetInput",
    "QuoteFields",
    "RequestProgress",
    "ScanRange",
    "SelectRequest",
    "build_select_request",
    "parse_select_request_xml",
    "validate_request",
]
