"""Result action handler for Cyclopts integration."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from cli.exit_codes import ExitCode

if TYPE_CHECKING:
    from cyclopts import App


def cli_result_action(
    app: App,
    cmd: object,
    result: Any,
) -> int:
    """Convert command return values to exit codes.

    Returns
    -------
    int
        Exit code for the process.
    """
    _ = app
    _ = cmd
    from rich.console import Console

    if result is None:
        return ExitCode.SUCCESS
    if isinstance(result, int):
        return int(result)
    Console(stderr=True).print(f"Unexpected command return type: {type(result).__name__}")
    return ExitCode.GENERAL_ERROR


__all__ = ["cli_result_action"]
