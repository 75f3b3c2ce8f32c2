"""Error taxonomy for S3 Select sessions."""

from __future__ import annotations

from enum import StrEnum


class ErrorKind(StrEnum):
    """Categorize select failures by pipeline stage."""

    REQUEST = "request"
    DECODE = "decode"
    COMPILE = "compile"
    EVALUATE = "evaluate"
    SERIALIZE = "serialize"
    TRANSPORT = "transport"
    TIMEOUT = "timeout"
    INTERNAL = "internal"


class SelectError(Exception):
    """Base exception for select failures.

    Parameters
    ----------
    message
        Human readable error message.
    code
        Stable error code reported to clients. Defaults to the class code.
    """

    kind: ErrorKind = ErrorKind.INTERNAL
    code: str = "InternalError"
    http_status: int = 500

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class RequestValidationError(SelectError):
    """Request descriptors were malformed; no session was started."""

    kind = ErrorKind.REQUEST
    code = "InvalidRequestParameter"
    http_status = 400


class InputDecodeError(SelectError):
    """Object bytes could not be decoded into rows."""

    kind = ErrorKind.DECODE
    code = "CSVParsingError"
    http_status = 400


class QueryCompileError(SelectError):
    """The SQL expression is invalid or uses an unsupported construct."""

    kind = ErrorKind.COMPILE
    code = "ParseSelectFailure"
    http_status = 400


class QueryEvaluationError(SelectError):
    """Expression evaluation failed for a row."""

    kind = ErrorKind.EVALUATE
    code = "EvaluatorInvalidArguments"
    http_status = 400


class OutputSerializationError(SelectError):
    """A result value cannot be represented in the output format."""

    kind = ErrorKind.SERIALIZE
    code = "InvalidDataType"
    http_status = 400


class TransportError(SelectError):
    """The response sink is closed or failed to accept a frame."""

    kind = ErrorKind.TRANSPORT
    code = "TransportError"
    http_status = 500


class SessionTimeoutError(SelectError):
    """The session exceeded its configured time budget."""

    kind = ErrorKind.TIMEOUT
    code = "RequestTimeout"
    http_status = 400


class InternalError(SelectError):
    """A collaborator (storage or execution engine) faulted."""


PRE_STREAM_ONLY: tuple[type[SelectError], ...] = (RequestValidationError, QueryCompileError)


__all__ = [
    "PRE_STREAM_ONLY",
    "ErrorKind",
    "InputDecodeError",
    "InternalError",
    "OutputSerializationError",
    "QueryCompileError",
    "QueryEvaluationError",
    "RequestValidationError",
    "SelectError",
    "SessionTimeoutError",
    "TransportError",
]
