"""Build and runtime report for the s3select CLI."""

from __future__ import annotations

import sys
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as pkg_version

import msgspec

from cli.exit_codes import ExitCode
from s3select.config import SelectRuntimeConfig
from s3select.request import CompressionType, JSONType

ENGINE_PACKAGES = ("datafusion", "pyarrow", "sqlglot")
RUNTIME_PACKAGES = ("cyclopts", "msgspec", "opentelemetry-api", "rich")


class VersionReport(msgspec.Struct, frozen=True):
    """Payload printed by ``s3select version``.

    Attributes
    ----------
    s3select
        Installed package version.
    python
        Interpreter version.
    engine
        Versions of the query engine stack.
    dependencies
        Versions of the remaining runtime dependencies.
    input_formats
        Accepted input serializations.
    compression
        Accepted compression types.
    config
        Runtime configuration after ``S3SELECT_*`` overrides.
    """

    s3select: str
    python: str
    engine: dict[str, str | None]
    dependencies: dict[str, str | None]
    input_formats: tuple[str, ...]
    compression: tuple[str, ...]
    config: SelectRuntimeConfig


def _package_version(name: str) -> str | None:
    try:
        return pkg_version(name)
    except PackageNotFoundError:
        return None


def get_version() -> str:
    """Return the installed s3select version, or ``0.0.0-dev``."""
    return _package_version("s3select") or "0.0.0-dev"


def build_report() -> VersionReport:
    """Collect versions, supported formats and the effective configuration.

    Returns
    -------
    VersionReport
        Report for the current environment.
    """
    return VersionReport(
        s3select=get_version(),
        python=sys.version.split()[0],
        engine={name: _package_version(name) for name in ENGINE_PACKAGES},
        dependencies={name: _package_version(name) for name in RUNTIME_PACKAGES},
        input_formats=("CSV", *(f"JSON {kind}" for kind in JSONType), "Parquet"),
        compression=tuple(str(kind) for kind in CompressionType),
        config=SelectRuntimeConfig.from_env(),
    )


def version_command() -> int:
    """Print the version report as JSON.

    Returns
    -------
    int
        Exit status code.
    """
    payload = msgspec.json.format(msgspec.json.encode(build_report()), indent=2)
    sys.stdout.write(payload.decode() + "\n")
    return ExitCode.SUCCESS


__all__ = ["VersionReport", "build_report", "get_version", "version_command"]
