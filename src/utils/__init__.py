"""Shared utilities for s3select."""

from utils.env_utils import env_bool, env_float, env_int, env_value

__all__ = [
    "env_bool",
    "env_float",
    "env_int",
    "env_value",
]
