"""Execution of a composition tree against a plan.

Serial groups and tasks run on the caller's thread. Parallel groups, and
path scopes resolving to more than one directory, run each branch on its own
worker thread inside a scoped pool: the group returns only after every
branch has finished, the first failure cancels the remaining branches, and
each branch's output reaches the parent sink as one uninterrupted block.
"""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from types import MappingProxyType
from typing import Any, Mapping, Sequence

from .cache import DedupCache, DedupKey
from .config import Config
from .context import (
    DEFAULT_GRACE_PERIOD,
    BufferedOutput,
    CancelScope,
    ExecutionContext,
    Output,
)
from .core import Leaf, ParallelGroup, PathScoped, Runnable, SerialGroup, Task
from .errors import Cancelled, ConfigError
from .logging import get_logger
from .plan import Plan, build_plan


log = get_logger("monorun.engine")

Branch = tuple[Runnable, ExecutionContext]


class Execution:
    """One run of a tree. Owns the dedup cache of that run."""

    def __init__(self, plan: Plan, cache: DedupCache | None = None):
        self.plan = plan
        self.cache = cache if cache is not None else DedupCache()

    def context(self, **kwargs: Any) -> ExecutionContext:
        kwargs.setdefault("git_root", self.plan.git_root)
        return ExecutionContext(plan=self.plan, execution=self, **kwargs)

    def run(self, node: Runnable, ctx: ExecutionContext, started: bool = False) -> None:
        """Run `node` in `ctx`.

        Cancellation is checked before each step unless `started` is set: a
        parallel branch always begins its first step, and observes
        cancellation cooperatively from then on.
        """
        if isinstance(node, Task):
            self._run_task(node, ctx, started)
        elif isinstance(node, Leaf):
            if not started:
                ctx.check_cancelled()
            node.fn(ctx)
        elif isinstance(node, SerialGroup):
            for i, child in enumerate(node.children):
                first = started and i == 0
                if not first:
                    ctx.check_cancelled()
                self.run(child, ctx, first)
        elif isinstance(node, ParallelGroup):
            self.run_branches([(child, ctx) for child in node.children], ctx, started)
        elif isinstance(node, PathScoped):
            self._run_scoped(node, ctx, started)
        else:
            raise TypeError(f"unknown runnable: {node!r}")

    def run_branches(
        self, branches: Sequence[Branch], ctx: ExecutionContext, started: bool = False
    ) -> None:
        """Run branches concurrently, fail fast, and drain before returning.

        Every branch starts even if a sibling has already failed. The error
        raised is the first failure in completion order; a Cancelled is
        reported only when no branch failed for another reason.
        """
        if not branches:
            return
        if not started:
            ctx.check_cancelled()
        if len(branches) == 1:
            node, bctx = branches[0]
            self.run(node, bctx, started)
            return

        scope = ctx.cancel.child()
        flush_lock = threading.Lock()
        error_lock = threading.Lock()
        errors: list[BaseException] = []

        def branch(node: Runnable, bctx: ExecutionContext) -> None:
            buf = BufferedOutput(bctx.output)
            try:
                self.run(node, bctx.derive(output=buf.output(), cancel=scope), started=True)
            except BaseException as e:
                with error_lock:
                    errors.append(e)
                scope.cancel()
            finally:
                with flush_lock:
                    buf.flush()

        try:
            with ThreadPoolExecutor(
                max_workers=len(branches), thread_name_prefix="monorun"
            ) as pool:
                for node, bctx in branches:
                    pool.submit(branch, node, bctx)
        finally:
            scope.close()
        if errors:
            if len(errors) > 1:
                log.debug("%d branches failed; reporting the first", len(errors))
            raise next((e for e in errors if not isinstance(e, Cancelled)), errors[0])

    def _run_scoped(self, pf: PathScoped, ctx: ExecutionContext, started: bool = False) -> None:
        if id(pf) not in self.plan.scope_paths:
            raise ConfigError("path scope is not part of the plan; build the plan from this tree")
        paths = self.plan.paths_for_scope(pf)

        scope_flags = {k: dict(v) for k, v in ctx.scope_flags.items()}
        for name, overrides in pf.flags.items():
            scope_flags.setdefault(name, {}).update(overrides)
        sctx = ctx.derive(
            scope_flags=MappingProxyType(scope_flags),
            options=ctx.options + pf.options,
            skipped=ctx.skipped | pf.skip,
            force_run=ctx.force_run or pf.force_run,
        )
        self.run_branches([(pf.inner, sctx.derive(path=p)) for p in paths], sctx, started)

    def _run_task(self, t: Task, ctx: ExecutionContext, started: bool = False) -> None:
        if t.name in ctx.skipped:
            return
        if ctx.auto_exec and (t.manual or self.plan.is_manual(t.name)):
            log.debug("Skip (manual): %s", t.name)
            return
        info = self.plan.path_mappings.get(t.name)
        if info is not None and ctx.path not in info.resolved_paths:
            log.debug("Skip (excluded): %s [%s]", t.name, ctx.path)
            return

        tctx = ctx.derive(task=t, flags=self._resolve_flags(t, ctx))
        if ctx.force_run:
            self._execute(t, tctx, started)
            return
        key = DedupKey.for_task(t.name, ctx.path, t.global_)
        self.cache.run(key, lambda: self._execute(t, tctx, started))

    @staticmethod
    def _resolve_flags(t: Task, ctx: ExecutionContext) -> Mapping[str, Any]:
        resolved = {name: fdef.default for name, fdef in t.flags.items()}
        resolved.update(ctx.scope_flags.get(t.name, {}))
        if ctx.cli_task == t.name:
            resolved.update(ctx.cli_flags)
        return MappingProxyType(resolved)

    def _execute(self, t: Task, ctx: ExecutionContext, started: bool = False) -> None:
        if not started:
            ctx.check_cancelled()
        if not t.hide_header:
            if ctx.path in ("", "."):
                ctx.print(f":: {t.name}")
            else:
                ctx.print(f":: {t.name} [{ctx.path}]")
        log.debug("Run: %s [%s]", t.name, ctx.path)
        try:
            if t.do is not None:
                t.do(ctx)
            else:
                self.run(t.body, ctx, started)
        except Cancelled:
            log.info("Cancelled: %s [%s]", t.name, ctx.path)
            raise
        except Exception:
            log.debug("Failed: %s [%s]", t.name, ctx.path, exc_info=True)
            raise


def execute(
    config: Config | Runnable | None,
    plan: Plan | None = None,
    *,
    verbose: bool = False,
    output: Output | None = None,
    cancel: CancelScope | None = None,
    grace_period: float = DEFAULT_GRACE_PERIOD,
) -> Execution:
    """Run the auto tree of `config`, skipping manual tasks."""
    if isinstance(config, Runnable):
        config = Config(auto=config)
    if plan is None:
        plan = build_plan(config)
    execution = Execution(plan)
    if config is None or config.auto is None:
        return execution
    ctx = execution.context(
        verbose=verbose,
        output=output or Output.std(),
        cancel=cancel or CancelScope(),
        grace_period=grace_period,
        auto_exec=True,
    )
    execution.run(config.auto, ctx)
    return execution


def run_task(
    plan: Plan,
    name: str,
    *,
    paths: Sequence[str] | None = None,
    cli_flags: Mapping[str, Any] | None = None,
    verbose: bool = False,
    output: Output | None = None,
    cancel: CancelScope | None = None,
    grace_period: float = DEFAULT_GRACE_PERIOD,
) -> Execution:
    """Run one task by name in each of its planned directories.

    Manual tasks are allowed here. Scope flag overrides recorded in the plan
    apply, and `cli_flags` take precedence over them.
    """
    t = plan.task(name)
    if t is None:
        raise ConfigError(f"unknown task {name!r}")
    info = plan.task_info(name)
    execution = Execution(plan)
    ctx = execution.context(
        verbose=verbose,
        output=output or Output.std(),
        cancel=cancel or CancelScope(),
        grace_period=grace_period,
        scope_flags=MappingProxyType({name: info.flags}) if info and info.flags else MappingProxyType({}),
        cli_task=name,
        cli_flags=MappingProxyType(dict(cli_flags or {})),
    )
    targets = list(paths) if paths else list(plan.paths_for_task(name))
    execution.run_branches([(t, ctx.derive(path=p)) for p in targets], ctx)
    return execution
