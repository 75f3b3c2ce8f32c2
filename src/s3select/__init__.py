"""Streaming S3 Select Object Content pipeline.

Object bytes are decoded into rows, filtered and projected by a restricted
SQL expression, serialized as CSV or JSON and framed as an AWS event stream.
"""

from __future__ import annotations

from s3select.config import SelectRuntimeConfig
from s3select.errors import (
    ErrorKind,
    InputDecodeError,
    InternalError,
    OutputSerializationError,
    QueryCompileError,
    QueryEvaluationError,
    RequestValidationError,
    SelectError,
    SessionTimeoutError,
    TransportError,
)
from s3select.request import (
    SelectRequest,
    build_select_request,
    parse_select_request_xml,
    validate_request,
)
from s3select.session import (
    FrameSink,
    QueueSink,
    SelectSession,
    SessionOutcome,
    SessionStage,
    StreamWriterSink,
    run_select,
)
from s3select.source import ByteSource, BytesSource, FileByteSource
from s3select.stats import SelectStats

__all__ = [
    "ByteSource",
    "BytesSource",
    "ErrorKind",
    "FileByteSource",
    "FrameSink",
    "InputDecodeError",
    "InternalError",
    "OutputSerializationError",
    "QueryCompileError",
    "QueryEvaluationError",
    "QueueSink",
    "RequestValidationError",
    "SelectError",
    "SelectRequest",
    "SelectRuntimeConfig",
    "SelectSession",
    "SelectStats",
    "SessionOutcome",
    "SessionStage",
    "SessionTimeoutError",
    "StreamWriterSink",
    "TransportError",
    "build_select_request",
    "parse_select_request_xml",
    "run_select",
    "validate_request",
]
