from __future__ import annotations

import json
import signal
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

import click
import typer
from click.core import ParameterSource

from .config import (
    DEFAULT_CONFIG_PATH,
    DEFAULT_SETTINGS_PATH,
    Config,
    Settings,
    load_config,
    load_settings,
)
from .context import CancelScope
from .core import Task
from .engine import execute, run_task
from .errors import Cancelled, ConfigError, FlagError, MonorunError
from .logging import get_logger
from .plan import Plan, build_plan
from .utils import DirectoryListing, find_git_root


app = typer.Typer(add_completion=False, help="Composable task runner for monorepos")
log = get_logger("monorun.cli")

EXIT_INTERRUPTED = 130


@dataclass
class _Options:
    verbose: bool
    config: Optional[str]
    settings: Optional[str]
    scope: Optional[str]


@dataclass
class _Loaded:
    config: Config
    settings: Settings
    plan: Plan


def _load(opts: _Options) -> _Loaded:
    git_root = find_git_root()
    settings = load_settings(opts.settings or Path(git_root) / DEFAULT_SETTINGS_PATH)
    if settings.log_file:
        get_logger("monorun", log_file=Path(settings.log_file))
    config = load_config(opts.config or Path(git_root) / DEFAULT_CONFIG_PATH)
    listing = DirectoryListing(
        git_root,
        skip_dirs=settings.skip_dirs,
        include_hidden=settings.include_hidden_dirs,
    )
    return _Loaded(config=config, settings=settings, plan=build_plan(config, listing=listing))


def _guard(fn: Callable[[], None]) -> None:
    """Report errors on stderr and map them to exit codes."""
    try:
        fn()
    except Cancelled:
        typer.echo("Interrupted", err=True)
        raise typer.Exit(code=EXIT_INTERRUPTED)
    except MonorunError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1)


def _with_signals(fn: Callable[[CancelScope], None]) -> None:
    """Run `fn` with SIGINT/SIGTERM bound to a fresh root cancel scope."""
    cancel = CancelScope()

    def handler(signum, frame):  # noqa: ARG001
        log.info("Received signal %s, cancelling", signum)
        cancel.cancel()

    previous = {}
    if threading.current_thread() is threading.main_thread():
        for sig in (signal.SIGINT, signal.SIGTERM):
            previous[sig] = signal.signal(sig, handler)
    try:
        fn(cancel)
    except Cancelled:
        raise
    except MonorunError:
        if cancel.cancelled:
            raise Cancelled() from None
        raise
    except Exception as e:  # noqa: BLE001
        if cancel.cancelled:
            raise Cancelled() from e
        log.debug("Task error", exc_info=True)
        raise MonorunError(f"{type(e).__name__}: {e}") from e
    finally:
        for sig, h in previous.items():
            signal.signal(sig, h)


def task_flag_command(t: Task) -> click.Command:
    """A click command whose options mirror the task's declared flags."""
    params = []
    for name in sorted(t.flags):
        fdef = t.flags[name]
        opt = "--" + name.replace("_", "-")
        if isinstance(fdef.default, bool):
            decls = [name, f"{opt}/--no-{opt[2:]}"]
            params.append(click.Option(decls, default=fdef.default, help=fdef.help))
        else:
            params.append(
                click.Option([name, opt], type=type(fdef.default), default=fdef.default, help=fdef.help)
            )
    return click.Command(t.name, params=params, help=t.usage, add_help_option=False)


def parse_task_flags(t: Task, args: list[str]) -> dict:
    """Values of the flags actually given in `args`, converted to their types."""
    cmd = task_flag_command(t)
    try:
        cctx = cmd.make_context(t.name, list(args))
    except click.ClickException as e:
        raise FlagError(f"task {t.name!r}: {e.format_message()}") from None
    return {
        name: value
        for name, value in cctx.params.items()
        if cctx.get_parameter_source(name) == ParameterSource.COMMANDLINE
    }


def _task_help(t: Task) -> str:
    cmd = task_flag_command(t)
    with click.Context(cmd, info_name=f"monorun run {t.name}") as c:
        text = cmd.get_help(c)
    if not t.flags:
        text += "\n\nThis task accepts no flags."
    return text


@app.callback(invoke_without_command=True)
def main_callback(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Stream command output"),
    config: Optional[str] = typer.Option(None, help=f"Python config module [default: {DEFAULT_CONFIG_PATH}]"),
    settings: Optional[str] = typer.Option(None, help=f"YAML settings [default: {DEFAULT_SETTINGS_PATH}]"),
    scope: Optional[str] = typer.Option(
        None, envvar="TASK_SCOPE", help="Restrict to one directory, relative to the git root"
    ),
):
    """Run the configured tasks; with no command, the whole auto tree."""
    opts = _Options(verbose=verbose, config=config, settings=settings, scope=scope)
    ctx.obj = opts
    if ctx.invoked_subcommand is not None:
        return

    def run_all() -> None:
        loaded = _load(opts)
        _with_signals(
            lambda cancel: execute(
                loaded.config,
                loaded.plan,
                verbose=opts.verbose or loaded.settings.verbose,
                cancel=cancel,
                grace_period=loaded.settings.grace_period,
            )
        )

    _guard(run_all)


@app.command(
    "run",
    context_settings={"allow_extra_args": True, "ignore_unknown_options": True, "help_option_names": []},
)
def run_cmd(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Task name to run"),
):
    """Run a single task by name, including manual tasks.

    Arguments after the name are the task's own flags; `run <task> --help`
    lists them.
    """
    opts: _Options = ctx.obj
    args = list(ctx.args)
    if name in ("-h", "--help"):
        typer.echo(ctx.get_help())
        return

    def run_one() -> None:
        loaded = _load(opts)
        t = loaded.plan.task(name)
        if t is None:
            raise ConfigError(f"unknown task {name!r}; run `monorun list` to see available tasks")
        if any(a in ("-h", "--help") for a in args):
            typer.echo(_task_help(t))
            return
        cli_flags = parse_task_flags(t, args)
        paths = None
        if opts.scope and opts.scope != ".":
            if not loaded.plan.runs_in_path(name, opts.scope):
                raise ConfigError(f"task {name!r} does not run in {opts.scope}")
            paths = [opts.scope]
        _with_signals(
            lambda cancel: run_task(
                loaded.plan,
                name,
                paths=paths,
                cli_flags=cli_flags,
                verbose=opts.verbose or loaded.settings.verbose,
                cancel=cancel,
                grace_period=loaded.settings.grace_period,
            )
        )

    _guard(run_one)


@app.command("list")
def list_tasks(
    ctx: typer.Context,
    show_all: bool = typer.Option(False, "--all", "-a", help="Include hidden tasks"),
):
    """List tasks from the plan."""
    opts: _Options = ctx.obj

    def show() -> None:
        plan = _load(opts).plan
        visible = plan.visible_tasks(include_hidden=show_all, scope=opts.scope)
        if not visible:
            typer.echo("No tasks configured.")
            return
        width = max(len(t.name) for t in visible)
        for title, manual in (("Tasks:", False), ("Manual tasks:", True)):
            group = [t for t in visible if t.manual == manual]
            if not group:
                continue
            typer.echo(title)
            for t in group:
                typer.echo(f"  {t.name.ljust(width)}  {t.usage}".rstrip())

    _guard(show)


@app.command("plan")
def show_plan(
    ctx: typer.Context,
    as_json: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Show the execution plan without running tasks."""
    opts: _Options = ctx.obj

    def show() -> None:
        plan = _load(opts).plan
        if as_json:
            typer.echo(json.dumps(plan.to_dict(), indent=2))
            return
        typer.echo("Execution Plan")
        typer.echo("==============")
        typer.echo("")
        typer.echo("Module directories:")
        for d in plan.module_directories:
            typer.echo(f"  - {'root' if d == '.' else d}")
        typer.echo("")
        typer.echo("Composition tree:")
        for line in plan.render_tree():
            typer.echo(f"  {line}")

    _guard(show)


def main():  # pragma: no cover
    app()


if __name__ == "__main__":  # pragma: no cover
    main()
