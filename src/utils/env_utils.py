"""Environment variable resolution utilities."""

from __future__ import annotations

import logging
import os
from typing import overload

_LOGGER = logging.getLogger(__name__)

_TRUE_VALUES = frozenset({"1", "true", "yes", "y", "on"})
_FALSE_VALUES = frozenset({"0", "false", "no", "n", "off"})


def env_value(name: str) -> str | None:
    """Return stripped env var value, or None if empty/not set.

    Parameters
    ----------
    name
        Environment variable name.

    Returns
    -------
    str | None
        Stripped value or None.
    """
    raw = os.environ.get(name)
    if raw is None:
        return None
    stripped = raw.strip()
    return stripped if stripped else None


@overload
def env_int(name: str) -> int | None: ...


@overload
def env_int(name: str, *, default: int, minimum: int | None = None) -> int: ...


@overload
def env_int(name: str, *, default: int | None, minimum: int | None = None) -> int | None: ...


def env_int(name: str, *, default: int | None = None, minimum: int | None = None) -> int | None:
    """Parse environment variable as integer with error logging.

    Parameters
    ----------
    name
        Environment variable name.
    default
        Default value if not set or invalid.
    minimum
        Smallest accepted value; smaller values fall back to the default.

    Returns
    -------
    int | None
        Parsed integer or default/None.
    """
    raw = env_value(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        _LOGGER.warning("Invalid integer for %s: %r", name, raw)
        return default
    if minimum is not None and value < minimum:
        _LOGGER.warning("Integer for %s below minimum %d: %d", name, minimum, value)
        return default
    return value


@overload
def env_float(name: str) -> float | None: ...


@overload
def env_float(name: str, *, default: float, minimum: float | None = None) -> float: ...


@overload
def env_float(
    name: str, *, default: float | None, minimum: float | None = None
) -> float | None: ...


def env_float(
    name: str,
    *,
    default: float | None = None,
    minimum: float | None = None,
) -> float | None:
    """Parse environment variable as float with error logging.

    Parameters
    ----------
    name
        Environment variable name.
    default
        Default value if not set or invalid.
    minimum
        Smallest accepted value; smaller values fall back to the default.

    Returns
    -------
    float | None
        Parsed float or default/None.
    """
    raw = env_value(name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError:
        _LOGGER.warning("Invalid float for %s: %r", name, raw)
        return default
    if minimum is not None and value < minimum:
        _LOGGER.warning("Float for %s below minimum %s: %s", name, minimum, value)
        return default
    return value


def env_bool(name: str, *, default: bool) -> bool:
    """Parse environment variable as boolean.

    Returns
    -------
    bool
        Parsed boolean, or the default when unset or unrecognized.
    """
    raw = env_value(name)
    if raw is None:
        return default
    value = raw.lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    _LOGGER.warning("Invalid boolean for %s: %r", name, raw)
    return default


__all__ = [
    "env_bool",
    "env_float",
    "env_int",
    "env_value",
]
