"""Shared help-panel groups for the s3select CLI."""

from __future__ import annotations

from cyclopts import Group, Parameter, validators

session_group = Group(
    "Session",
    help="Logging and runtime options.",
    sort_key=0,
)

input_group = Group(
    "Input",
    help="Describe how the object is encoded.",
    sort_key=1,
)

output_group = Group(
    "Output",
    help="Describe how result rows are rendered and written.",
    sort_key=2,
)

scan_group = Group(
    "Scan",
    help="Restrict and pace the object scan.",
    sort_key=3,
)

request_source_group = Group(
    "Request Source",
    help="Specify the request inline or load it from an XML body, not both.",
    validator=validators.MutuallyExclusive(),
    default_parameter=Parameter(show_default=False),
)

__all__ = [
    "input_group",
    "output_group",
    "request_source_group",
    "scan_group",
    "session_group",
]
