"""Shared test fixtures."""

from __future__ import annotations

import io
from pathlib import Path

import pytest

from monorun.context import Output
from monorun.engine import execute
from monorun.plan import build_plan
from monorun.utils import DirectoryListing


@pytest.fixture
def repo(tmp_path: Path) -> Path:
    """A small monorepo:

    a/ and b/ are Python projects, c/ has no marker, a/sub/ is nested,
    node_modules/ and .hidden/ hold markers that must never be found.
    """
    (tmp_path / ".git").mkdir()
    for d in ("a", "a/sub", "b", "c", "node_modules/pkg", ".hidden"):
        (tmp_path / d).mkdir(parents=True)
    for marker in ("a/pyproject.toml", "b/setup.py", "node_modules/pkg/pyproject.toml", ".hidden/pyproject.toml"):
        (tmp_path / marker).write_text("")
    (tmp_path / "c" / "README.md").write_text("")
    return tmp_path


@pytest.fixture
def listing(repo: Path) -> DirectoryListing:
    return DirectoryListing(str(repo))


class Captured:
    def __init__(self) -> None:
        self.stdout = io.StringIO()
        self.stderr = io.StringIO()
        self.output = Output(stdout=self.stdout, stderr=self.stderr)

    @property
    def out(self) -> str:
        return self.stdout.getvalue()

    @property
    def err(self) -> str:
        return self.stderr.getvalue()


@pytest.fixture
def captured() -> Captured:
    return Captured()


@pytest.fixture
def run(listing: DirectoryListing, captured: Captured):
    """Plan and execute a tree against the fixture repo, capturing output."""

    def _run(tree, **kwargs):
        plan = build_plan(tree, listing=listing)
        return execute(tree, plan, output=captured.output, **kwargs)

    return _run
