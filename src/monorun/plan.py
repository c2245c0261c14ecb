"""One-pass plan builder.

The plan is built once per process, before execution, by walking the
composition tree once and the filesystem once. It records every reachable
task, the directories each task runs in, and the resolved directories of
every path scope. Execution and introspection only read it.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Iterable, Mapping

from .config import Config
from .core import (
    FLAG_TYPES,
    Leaf,
    ParallelGroup,
    PathScoped,
    Runnable,
    SerialGroup,
    Task,
)
from .errors import ConfigError
from .logging import get_logger
from .utils import DirectoryListing, exclude_by_patterns, find_git_root, match_pattern


log = get_logger("monorun.plan")

# Names taken by CLI commands.
RESERVED_NAMES = frozenset({"plan", "list", "run"})


@dataclass(frozen=True)
class PathInfo:
    # Include patterns of the enclosing scope ("." for root-only tasks).
    include_paths: tuple[str, ...]
    # Directories the task runs in, relative to the git root.
    resolved_paths: tuple[str, ...]


@dataclass(frozen=True)
class TaskInfo:
    name: str
    usage: str
    paths: tuple[str, ...]
    flags: Mapping[str, Any]
    hidden: bool
    manual: bool

    def to_dict(self) -> dict:
        d: dict[str, Any] = {"name": self.name}
        if self.usage:
            d["usage"] = self.usage
        d["paths"] = list(self.paths)
        if self.flags:
            d["flags"] = dict(self.flags)
        d["hidden"] = self.hidden
        d["manual"] = self.manual
        return d


@dataclass(frozen=True)
class Plan:
    tree: Runnable | None
    manual: tuple[Runnable, ...]
    tasks: tuple[TaskInfo, ...]
    path_mappings: Mapping[str, PathInfo]
    module_directories: tuple[str, ...]
    git_root: str
    task_objects: Mapping[str, Task] = field(repr=False)
    scope_paths: Mapping[int, tuple[str, ...]] = field(repr=False)

    def task(self, name: str) -> Task | None:
        return self.task_objects.get(name)

    def task_info(self, name: str) -> TaskInfo | None:
        for info in self.tasks:
            if info.name == name:
                return info
        return None

    def is_manual(self, name: str) -> bool:
        info = self.task_info(name)
        return bool(info and info.manual)

    def paths_for_scope(self, node: PathScoped) -> tuple[str, ...]:
        return self.scope_paths.get(id(node), ())

    def paths_for_task(self, name: str) -> tuple[str, ...]:
        info = self.path_mappings.get(name)
        if info is None or not info.resolved_paths:
            return (".",)
        return info.resolved_paths

    def runs_in_path(self, name: str, path: str | None) -> bool:
        """Whether `name` is visible from the directory `path`.

        The root sees every task; a subdirectory only sees tasks whose scope
        resolved to it.
        """
        if not path or path == ".":
            return True
        info = self.path_mappings.get(name)
        return info is not None and path in info.resolved_paths

    def visible_tasks(
        self, include_hidden: bool = False, scope: str | None = None
    ) -> list[TaskInfo]:
        """The default task listing: hidden tasks only when asked for."""
        return [
            t
            for t in self.tasks
            if (include_hidden or not t.hidden) and self.runs_in_path(t.name, scope)
        ]

    def to_dict(self) -> dict:
        return {
            "moduleDirectories": list(self.module_directories),
            "tree": self._node_dict(self.tree) if self.tree is not None else None,
            "manual": [self._node_dict(r) for r in self.manual],
            "tasks": [t.to_dict() for t in self.tasks],
        }

    def _node_dict(self, node: Runnable) -> dict:
        if isinstance(node, Task):
            return {
                "type": "task",
                "name": node.name,
                "hidden": node.hidden,
                "manual": self.is_manual(node.name),
                "paths": list(self.paths_for_task(node.name)),
            }
        if isinstance(node, (SerialGroup, ParallelGroup)):
            return {
                "type": "serial" if isinstance(node, SerialGroup) else "parallel",
                "children": [self._node_dict(c) for c in node.children],
            }
        if isinstance(node, PathScoped):
            return {
                "type": "scope",
                "include": list(node.include),
                "exclude": list(node.exclude),
                "detect": node.detect is not None,
                "paths": list(self.paths_for_scope(node)),
                "inner": self._node_dict(node.inner),
            }
        if isinstance(node, Leaf):
            return {"type": "func", "name": getattr(node.fn, "__name__", repr(node.fn))}
        raise TypeError(f"unknown runnable: {node!r}")

    def render_tree(self) -> list[str]:
        """Text rendering of the auto tree, one line per node."""
        lines: list[str] = []
        if self.tree is not None:
            self._render(self.tree, "", lines)
        return lines

    def _render(self, node: Runnable, indent: str, lines: list[str]) -> None:
        if isinstance(node, Task):
            paths = self.paths_for_task(node.name)
            suffix = "" if paths == (".",) else f" [{', '.join(paths)}]"
            tags = "".join(
                f" ({t})" for t, on in (("hidden", node.hidden), ("manual", self.is_manual(node.name))) if on
            )
            lines.append(f"{indent}{node.name}{suffix}{tags}")
        elif isinstance(node, SerialGroup):
            lines.append(f"{indent}[serial]")
            for c in node.children:
                self._render(c, indent + "  ", lines)
        elif isinstance(node, ParallelGroup):
            lines.append(f"{indent}[parallel]")
            for c in node.children:
                self._render(c, indent + "  ", lines)
        elif isinstance(node, PathScoped):
            lines.append(f"{indent}[scope: {', '.join(self.paths_for_scope(node)) or '-'}]")
            self._render(node.inner, indent + "  ", lines)
        elif isinstance(node, Leaf):
            lines.append(f"{indent}<{getattr(node.fn, '__name__', 'func')}>")
        else:
            raise TypeError(f"unknown runnable: {node!r}")


@dataclass(frozen=True)
class _Scope:
    candidates: tuple[str, ...]
    excludes: tuple[str, ...] = ()
    task_excludes: tuple[tuple[str, str], ...] = ()
    skipped: frozenset[str] = frozenset()
    flags: Mapping[str, Mapping[str, Any]] = field(default_factory=lambda: MappingProxyType({}))
    includes: tuple[str, ...] = ()
    scoped: bool = False


class _Collector:
    def __init__(self, git_root: str, all_dirs: list[str]):
        self.git_root = git_root
        self.all_dirs = tuple(all_dirs)
        self.order: list[str] = []
        self.objects: dict[str, Task] = {}
        self.flags: dict[str, Mapping[str, Any]] = {}
        self.manual: set[str] = set()
        self.includes: dict[str, list[str]] = {}
        self.resolved: dict[str, list[str]] = {}
        self.scopes: dict[int, tuple[str, ...]] = {}
        self.in_manual = False

    def root_scope(self) -> _Scope:
        return _Scope(candidates=self.all_dirs)

    def walk(self, node: Runnable, scope: _Scope, stack: tuple[Task, ...] = ()) -> None:
        if isinstance(node, Task):
            self._visit_task(node, scope, stack)
        elif isinstance(node, (SerialGroup, ParallelGroup)):
            for child in node.children:
                self.walk(child, scope, stack)
        elif isinstance(node, PathScoped):
            self._visit_scope(node, scope, stack)
        elif isinstance(node, Leaf):
            pass
        else:
            raise ConfigError(f"not a runnable: {node!r}")

    def _visit_scope(self, pf: PathScoped, scope: _Scope, stack: tuple[Task, ...]) -> None:
        for pattern in (*pf.include, *pf.exclude, *(p for ps in pf.exclude_task.values() for p in ps)):
            _check_pattern(pattern)

        candidates = exclude_by_patterns(scope.candidates, scope.excludes)
        if pf.detect is not None:
            found = list(pf.detect(candidates, self.git_root))
        elif pf.include:
            found = [d for d in candidates if any(match_pattern(d, p) for p in pf.include)]
        elif scope.scoped or pf.exclude:
            found = candidates
        else:
            found = ["."]

        resolved = exclude_by_patterns(found, pf.exclude)
        if found and not resolved:
            raise ConfigError(
                f"excludes {list(pf.exclude)} removed all {len(found)} detected path(s)"
            )
        log.debug("Scope resolved to %s", resolved)
        self.scopes.setdefault(id(pf), tuple(resolved))

        flags = {k: dict(v) for k, v in scope.flags.items()}
        for name, overrides in pf.flags.items():
            flags.setdefault(name, {}).update(overrides)

        inner = _Scope(
            candidates=tuple(resolved),
            excludes=scope.excludes + pf.exclude,
            task_excludes=scope.task_excludes
            + tuple((t, p) for t, ps in pf.exclude_task.items() for p in ps),
            skipped=scope.skipped | pf.skip,
            flags=MappingProxyType(flags),
            includes=pf.include or scope.includes,
            scoped=True,
        )
        self.walk(pf.inner, inner, stack)

    def _visit_task(self, t: Task, scope: _Scope, stack: tuple[Task, ...]) -> None:
        if t.name in scope.skipped:
            return
        if t in stack:
            raise ConfigError(f"task {t.name!r} contains itself")
        _check_task(t)

        seen = self.objects.get(t.name)
        if seen is not None and seen is not t:
            raise ConfigError(f"duplicate task name {t.name!r}; task names must be unique")
        overrides = scope.flags.get(t.name, {})
        unknown = sorted(set(overrides) - set(t.flags))
        if unknown:
            raise ConfigError(f"task {t.name!r}: unknown flag(s) {', '.join(unknown)}")

        if scope.scoped:
            paths = list(scope.candidates)
            paths = exclude_by_patterns(
                paths, [p for name, p in scope.task_excludes if name == t.name]
            )
        else:
            paths = ["."]

        if seen is None:
            self.order.append(t.name)
            self.objects[t.name] = t
            self.flags[t.name] = MappingProxyType(dict(overrides))
            self.includes[t.name] = []
            self.resolved[t.name] = []
        if self.in_manual or t.manual:
            self.manual.add(t.name)
        _extend_unique(self.includes[t.name], scope.includes or (".",))
        _extend_unique(self.resolved[t.name], paths)

        if t.body is not None:
            self.walk(t.body, scope, stack + (t,))

    def build(self, tree: Runnable | None, manual: tuple[Runnable, ...]) -> Plan:
        mappings = {
            name: PathInfo(tuple(self.includes[name]), tuple(self.resolved[name]))
            for name in self.order
        }
        tasks = tuple(
            TaskInfo(
                name=name,
                usage=self.objects[name].usage,
                paths=mappings[name].resolved_paths or (".",),
                flags=self.flags[name],
                hidden=self.objects[name].hidden,
                manual=name in self.manual,
            )
            for name in self.order
        )
        module_dirs = {"."}
        for info in mappings.values():
            module_dirs.update(info.resolved_paths)
        return Plan(
            tree=tree,
            manual=manual,
            tasks=tasks,
            path_mappings=MappingProxyType(mappings),
            module_directories=tuple(sorted(module_dirs)),
            git_root=self.git_root,
            task_objects=MappingProxyType(dict(self.objects)),
            scope_paths=MappingProxyType(dict(self.scopes)),
        )


def _extend_unique(target: list[str], items: Iterable[str]) -> None:
    for item in items:
        if item not in target:
            target.append(item)


def _check_pattern(pattern: str) -> None:
    try:
        re.compile(pattern)
    except re.error as e:
        raise ConfigError(f"invalid path pattern {pattern!r}: {e}") from None


def _check_task(t: Task) -> None:
    if not t.name:
        raise ConfigError("task without a name")
    if t.name in RESERVED_NAMES:
        raise ConfigError(
            f"task name {t.name!r} conflicts with a builtin command; choose a different name"
        )
    if (t.do is None) == (t.body is None):
        raise ConfigError(f"task {t.name!r} needs exactly one of `do` or `body`")
    for flag_name, fdef in t.flags.items():
        if not isinstance(fdef.default, FLAG_TYPES):
            raise ConfigError(
                f"task {t.name!r}: flag {flag_name!r} has unsupported default type "
                f"{type(fdef.default).__name__}"
            )


def build_plan(
    config: Config | Runnable | None,
    git_root: str | None = None,
    listing: DirectoryListing | None = None,
) -> Plan:
    """Build the plan for `config`.

    The directory listing is read once, up front; every detection during
    the walk filters that same list.
    """
    if isinstance(config, Runnable):
        config = Config(auto=config)
    if listing is None:
        listing = DirectoryListing(git_root or find_git_root())
    git_root = listing.git_root

    collector = _Collector(git_root, listing.dirs())
    tree = config.auto if config else None
    manual = tuple(config.manual) if config else ()
    if tree is not None:
        collector.walk(tree, collector.root_scope())
    collector.in_manual = True
    for r in manual:
        collector.walk(r, collector.root_scope())

    plan = collector.build(tree, manual)
    log.info(
        "Plan: %d task(s), %d module directories", len(plan.tasks), len(plan.module_directories)
    )
    return plan
