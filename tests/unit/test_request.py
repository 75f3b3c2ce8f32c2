"""Unit tests for request descriptors, validation and XML parsing."""

from __future__ import annotations

import pytest

from s3select.errors import RequestValidationError
from s3select.request import (
    CompressionType,
    FileHeaderInfo,
    JSONType,
    MalformedPolicy,
    QuoteFields,
    build_select_request,
    parse_select_request_xml,
)

_XML = b"""<?xml version="1.0" encoding="UTF-8"?>
<SelectObjectContentRequest xmlns="http://s3.amazonaws.com/doc/2006-03-01/">
  <Expression>SELECT s.name FROM S3Object s</Expression>
  <ExpressionType>SQL</ExpressionType>
  <InputSerialization>
    <CompressionType>gzip</CompressionType>
    <CSV>
      <FileHeaderInfo>USE</FileHeaderInfo>
      <FieldDelimiter>;</FieldDelimiter>
      <AllowQuotedRecordDelimiter>TRUE</AllowQuotedRecordDelimiter>
    </CSV>
  </InputSerialization>
  <OutputSerialization>
    <CSV><QuoteFields>ALWAYS</QuoteFields></CSV>
  </OutputSerialization>
  <RequestProgress><Enabled>true</Enabled></RequestProgress>
</SelectObjectContentRequest>
"""


def _payload(**overrides: object) -> dict[str, object]:
    payload: dict[str, object] = {
        "Expression": "SELECT * FROM S3Object",
        "InputSerialization": {"CSV": {}},
        "OutputSerialization": {"JSON": {}},
    }
    payload.update(overrides)
    return payload


def test_parse_request_xml_reads_nested_descriptors() -> None:
    """Map the XML request body onto the request structs."""
    request = parse_select_request_xml(_XML)
    assert request.expression == "SELECT s.name FROM S3Object s"
    serialization = request.input_serialization
    assert serialization.compression_type == CompressionType.GZIP
    assert serialization.csv is not None
    assert serialization.csv.file_header_info == FileHeaderInfo.USE
    assert serialization.csv.field_delimiter == ";"
    assert serialization.csv.allow_quoted_record_delimiter is True
    assert request.output_serialization.csv is not None
    assert request.output_serialization.csv.quote_fields == QuoteFields.ALWAYS
    assert request.request_progress.enabled is True
    assert request.malformed_policy == MalformedPolicy.ABORT
    assert request.input_format == "CSV"
    assert request.output_format == "CSV"


def test_parse_request_xml_rejects_malformed_body() -> None:
    """Report broken XML with the MalformedXML code."""
    with pytest.raises(RequestValidationError) as excinfo:
        parse_select_request_xml(b"<SelectObjectContentRequest>")
    assert excinfo.value.code == "MalformedXML"


def test_parse_request_xml_rejects_unexpected_root() -> None:
    """Only SelectObjectContentRequest documents are accepted."""
    with pytest.raises(RequestValidationError, match="Unexpected root"):
        parse_select_request_xml(b"<Other/>")


def test_build_request_defaults() -> None:
    """Fill defaults for omitted descriptor fields."""
    request = build_select_request(_payload())
    csv = request.input_serialization.csv
    assert csv is not None
    assert csv.field_delimiter == ","
    assert csv.record_delimiter == "\n"
    assert csv.file_header_info == FileHeaderInfo.NONE
    assert request.scan_range is None
    assert request.request_progress.enabled is False


def test_build_request_requires_single_input_format() -> None:
    """Reject requests naming two input formats."""
    payload = _payload(InputSerialization={"CSV": {}, "JSON": {"Type": "LINES"}})
    with pytest.raises(RequestValidationError, match="exactly one"):
        build_select_request(payload)


def test_build_request_requires_output_format() -> None:
    """Reject requests without an output format."""
    with pytest.raises(RequestValidationError, match="OutputSerialization"):
        build_select_request(_payload(OutputSerialization={}))


def test_build_request_rejects_unknown_fields() -> None:
    """Unknown descriptor fields are a validation error."""
    with pytest.raises(RequestValidationError, match="Malformed select request"):
        build_select_request(_payload(Bogus=1))


def test_build_request_rejects_empty_expression() -> None:
    """Blank expressions are rejected before any session starts."""
    with pytest.raises(RequestValidationError, match="Expression"):
        build_select_request(_payload(Expression="   "))


@pytest.mark.parametrize(
    ("csv", "match"),
    [
        ({"FieldDelimiter": ""}, "FieldDelimiter"),
        ({"QuoteCharacter": "''"}, "QuoteCharacter"),
        ({"FieldDelimiter": "\n"}, "must differ"),
        ({"QuoteCharacter": ","}, "QuoteCharacter must differ"),
    ],
)
def test_build_request_validates_csv_dialect(csv: dict[str, str], match: str) -> None:
    """Reject inconsistent CSV dialects."""
    with pytest.raises(RequestValidationError, match=match):
        build_select_request(_payload(InputSerialization={"CSV": csv}))


def test_scan_range_requires_uncompressed_input() -> None:
    """Scan ranges are not supported on compressed objects."""
    payload = _payload(
        InputSerialization={"CompressionType": "GZIP", "CSV": {}},
        ScanRange={"Start": 0, "End": 10},
    )
    with pytest.raises(RequestValidationError, match="compressed"):
        build_select_request(payload)


def test_scan_range_requires_json_lines() -> None:
    """JSON documents cannot be split by byte range."""
    payload = _payload(
        InputSerialization={"JSON": {"Type": "DOCUMENT"}},
        ScanRange={"Start": 0},
    )
    with pytest.raises(RequestValidationError, match="LINES"):
        build_select_request(payload)


def test_scan_range_orders_bounds() -> None:
    """Start must not exceed End."""
    with pytest.raises(RequestValidationError, match="Start must not exceed End"):
        build_select_request(_payload(ScanRange={"Start": 10, "End": 5}))


def test_parquet_rejects_compression() -> None:
    """Parquet input carries its own compression."""
    payload = _payload(InputSerialization={"CompressionType": "GZIP", "Parquet": {}})
    with pytest.raises(RequestValidationError, match="Parquet"):
        build_select_request(payload)


def test_json_lines_request() -> None:
    """Accept a JSON LINES request with the skip policy."""
    request = build_select_request(
        _payload(InputSerialization={"JSON": {"Type": "LINES"}}, MalformedPolicy="SKIP")
    )
    assert request.input_serialization.json is not None
    assert request.input_serialization.json.type == JSONType.LINES
    assert request.malformed_policy == MalformedPolicy.SKIP
    assert request.input_format == "JSON"
