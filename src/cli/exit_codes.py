"""Exit code taxonomy for the s3select CLI."""

from __future__ import annotations

from enum import IntEnum

from s3select.errors import ErrorKind, SelectError


class ExitCode(IntEnum):
    """Standard exit codes for CLI commands.

    Exit codes follow Unix conventions with domain-specific extensions:
    - 0: Success
    - 1-9: General errors (parse, validation, config)
    - 10-19: Select pipeline stage errors
    - 20-29: Transport and runtime errors
    """

    SUCCESS = 0
    GENERAL_ERROR = 1
    PARSE_ERROR = 2
    VALIDATION_ERROR = 3
    CONFIG_ERROR = 4

    # Pipeline stage errors (10-19)
    QUERY_ERROR = 10
    DECODE_ERROR = 11
    EVALUATION_ERROR = 12
    SERIALIZATION_ERROR = 13

    # Runtime errors (20-29)
    TRANSPORT_ERROR = 20
    TIMEOUT_ERROR = 21
    INTERNAL_ERROR = 22

    @classmethod
    def from_exception(cls, exc: BaseException) -> ExitCode:
        """Map an exception to an appropriate exit code.

        Parameters
        ----------
        exc
            Exception to classify.

        Returns
        -------
        ExitCode
            Exit code appropriate for the exception type.
        """
        cyclopts_code = _exit_code_for_cyclopts(exc)
        if cyclopts_code is not None:
            return cyclopts_code

        if isinstance(exc, SelectError):
            return _SELECT_KIND_CODES.get(exc.kind, cls.GENERAL_ERROR)

        type_code = _exit_code_for_exception_type(exc)
        if type_code is not None:
            return type_code

        return cls.GENERAL_ERROR


_SELECT_KIND_CODES: dict[ErrorKind, ExitCode] = {
    ErrorKind.REQUEST: ExitCode.VALIDATION_ERROR,
    ErrorKind.COMPILE: ExitCode.QUERY_ERROR,
    ErrorKind.DECODE: ExitCode.DECODE_ERROR,
    ErrorKind.EVALUATE: ExitCode.EVALUATION_ERROR,
    ErrorKind.SERIALIZE: ExitCode.SERIALIZATION_ERROR,
    ErrorKind.TRANSPORT: ExitCode.TRANSPORT_ERROR,
    ErrorKind.TIMEOUT: ExitCode.TIMEOUT_ERROR,
    ErrorKind.INTERNAL: ExitCode.INTERNAL_ERROR,
}


def _exit_code_for_cyclopts(exc: BaseException) -> ExitCode | None:
    module = exc.__class__.__module__
    if not module.startswith("cyclopts"):
        return None
    if exc.__class__.__name__ == "ValidationError":
        return ExitCode.VALIDATION_ERROR
    return ExitCode.PARSE_ERROR


def _exit_code_for_exception_type(exc: BaseException) -> ExitCode | None:
    if isinstance(exc, (ValueError, TypeError)):
        return ExitCode.VALIDATION_ERROR
    if isinstance(exc, (FileNotFoundError, IsADirectoryError, PermissionError)):
        return ExitCode.CONFIG_ERROR
    return None


__all__ = ["ExitCode"]
