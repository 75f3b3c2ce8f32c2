"""Main application setup for the s3select CLI."""

from __future__ import annotations

import logging
import sys
from typing import Annotated, Literal

from cyclopts import App, Parameter

from cli.commands.version import get_version
from cli.exit_codes import ExitCode
from cli.groups import session_group
from cli.result_action import cli_result_action
from obs.otel.logging import configure_logging

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")

_HELP_EPILOGUE = """
Examples:
  s3select query data.csv -e "SELECT s.name FROM S3Object s WHERE s.age > 30"
  s3select query logs.jsonl -i json-lines -e "SELECT COUNT(*) FROM S3Object"
  s3select query data.csv.gz --compression GZIP --raw -e "SELECT * FROM S3Object" > out.bin
  s3select events out.bin

Environment Variables:
  S3SELECT_LOG_LEVEL            Default log level (DEBUG, INFO, WARNING, ERROR)
  S3SELECT_RECORDS_BATCH_BYTES  Records payload size
  S3SELECT_SESSION_TIMEOUT      Whole-session time budget in seconds
"""

app = App(
    name="s3select",
    help="Run S3 Select expressions over local objects and inspect event streams.",
    help_format="rich",
    help_epilogue=_HELP_EPILOGUE,
    version=get_version(),
    version_flags=["--version", "-V"],
    default_parameter=Parameter(show_default=True, show_env_var=True),
    result_action=cli_result_action,
    exit_on_error=True,
    print_error=True,
    help_on_error=False,
)

app.meta.group_parameters = session_group


@app.meta.default
def meta_launcher(
    *tokens: Annotated[str, Parameter(show=False, allow_leading_hyphen=True)],
    log_level: Annotated[
        Literal["DEBUG", "INFO", "WARNING", "ERROR"],
        Parameter(
            name="--log-level",
            help="Logging verbosity level.",
            env_var="S3SELECT_LOG_LEVEL",
            group=session_group,
        ),
    ] = "WARNING",
) -> int:
    """Configure logging, then dispatch to the selected command.

    Returns
    -------
    int
        Exit status code from command execution.
    """
    configure_logging(getattr(logging, log_level.upper()))
    result = app(list(tokens))
    return result if isinstance(result, int) else ExitCode.SUCCESS


app.command("cli.commands.query:query_command", name="query", alias="q")
app.command("cli.commands.events:events_command", name="events")
app.command("cli.commands.version:version_command", name="version", alias="v")


def main() -> None:
    """Run the s3select CLI."""
    exit_code = app.meta()
    sys.exit(exit_code if isinstance(exit_code, int) else ExitCode.SUCCESS)


__all__ = ["app", "main"]
