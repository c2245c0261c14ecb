"""Python project tasks: format and lint with ruff, test with pytest.

Scope them to every Python project of a repository:

    with_options(python.tasks(), detect=detect_by_file("pyproject.toml", "setup.py"))
"""

from __future__ import annotations

import sys
from dataclasses import dataclass

from ..context import ExecutionContext
from ..core import FlagDef, parallel, serial, task
from ..process import run_command


@dataclass(frozen=True)
class PythonOptions:
    # Interpreter used for `python -m ...` invocations.
    interpreter: str = sys.executable


def _python(ctx: ExecutionContext) -> str:
    return ctx.option(PythonOptions, PythonOptions()).interpreter


@task(
    name="py-format",
    usage="format Python code with ruff",
    flags={"check": FlagDef(False, "report unformatted files instead of rewriting them")},
)
def py_format(ctx: ExecutionContext):
    args = ["format"]
    if ctx.flag("check"):
        args.append("--check")
    run_command(ctx, _python(ctx), "-m", "ruff", *args, ".")


@task(
    name="py-lint",
    usage="lint Python code with ruff",
    flags={"fix": FlagDef(True, "apply safe fixes")},
)
def py_lint(ctx: ExecutionContext):
    args = ["check"]
    if ctx.flag("fix"):
        args.append("--fix")
    run_command(ctx, _python(ctx), "-m", "ruff", *args, ".")


@task(
    name="py-test",
    usage="run tests with pytest",
    flags={"select": FlagDef("", "only run tests matching this -k expression")},
)
def py_test(ctx: ExecutionContext):
    args = ["-q"]
    if ctx.flag("select"):
        args += ["-k", ctx.flag("select")]
    run_command(ctx, _python(ctx), "-m", "pytest", *args)


def tasks():
    """Format first, then lint and test side by side."""
    return serial(py_format, parallel(py_lint, py_test))
