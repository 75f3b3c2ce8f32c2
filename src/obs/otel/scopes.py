"""Instrumentation scope names for select telemetry."""

from __future__ import annotations

from enum import StrEnum


class ScopeName(StrEnum):
    """Canonical instrumentation scopes."""

    SESSION = "s3select.session"
    DECODE = "s3select.decode"
    QUERY = "s3select.query"
    OBS = "s3select.obs"


SCOPE_SESSION = ScopeName.SESSION
SCOPE_DECODE = ScopeName.DECODE
SCOPE_QUERY = ScopeName.QUERY
SCOPE_OBS = ScopeName.OBS

__all__ = [
    "SCOPE_DECODE",
    "SCOPE_OBS",
    "SCOPE_QUERY",
    "SCOPE_SESSION",
    "ScopeName",
]
