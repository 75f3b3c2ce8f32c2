"""Unit tests for project metadata in ``pyproject.toml``."""

from __future__ import annotations

import tomllib
from pathlib import Path

ROOT = Path(__file__).resolve().parents[2]


def _project() -> dict[str, object]:
    with (ROOT / "pyproject.toml").open("rb") as handle:
        return tomllib.load(handle)["project"]


def test_readme_is_the_user_readme() -> None:
    """The package long description is the README, not the design ledger."""
    readme = _project()["readme"]
    assert readme == "README.md"
    text = (ROOT / str(readme)).read_text(encoding="utf-8")
    assert text.startswith("# s3select")
    assert "## Usage" in text


def test_engine_stack_is_declared() -> None:
    """Every library the query engine imports is a declared dependency."""
    declared = {str(spec).split(">")[0].split("=")[0].strip() for spec in _project()["dependencies"]}  # type: ignore[attr-defined]
    assert {"datafusion", "pyarrow", "sqlglot", "msgspec"} <= declared
