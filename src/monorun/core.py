from __future__ import annotations

import inspect
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Callable, Iterable, Mapping, Union

from .detect import DetectFunc

if TYPE_CHECKING:
    from .context import ExecutionContext


TaskFn = Callable[["ExecutionContext"], None]

# Flag defaults must be one of these so CLI values can be converted.
FLAG_TYPES = (str, bool, int, float)


class Runnable:
    """Base of the composition tree nodes.

    The set of node types is closed: Leaf, Task, SerialGroup, ParallelGroup and
    PathScoped. The engine and the plan builder dispatch on them explicitly, so
    new behaviour is added there rather than by subclassing.
    """

    __slots__ = ()


@dataclass(frozen=True, eq=False)
class Leaf(Runnable):
    fn: TaskFn


@dataclass(frozen=True)
class FlagDef:
    default: Any
    help: str = ""


@dataclass(frozen=True, eq=False)
class Task(Runnable):
    """A named, addressable unit of work.

    Exactly one of `do` (a function taking the execution context) or `body`
    (a composed Runnable) must be set. Tasks are deduplicated per
    (name, path) within one execution; `global_` tasks per name only.
    """

    name: str
    usage: str = ""
    do: TaskFn | None = None
    body: Runnable | None = None
    flags: Mapping[str, FlagDef] = field(default_factory=dict)
    hidden: bool = False
    global_: bool = False
    manual: bool = False
    hide_header: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "flags", MappingProxyType(dict(self.flags)))

    def __repr__(self) -> str:
        return f"Task({self.name!r})"


@dataclass(frozen=True, eq=False)
class SerialGroup(Runnable):
    children: tuple[Runnable, ...]


@dataclass(frozen=True, eq=False)
class ParallelGroup(Runnable):
    children: tuple[Runnable, ...]


@dataclass(frozen=True, eq=False)
class PathScoped(Runnable):
    """Runs `inner` once per resolved directory.

    Directories come from `detect` when set, otherwise from the `include`
    regexes, and are then narrowed by `exclude`. The remaining fields are
    overrides visible to every task inside the scope.
    """

    inner: Runnable
    include: tuple[str, ...] = ()
    exclude: tuple[str, ...] = ()
    exclude_task: Mapping[str, tuple[str, ...]] = field(default_factory=dict)
    skip: frozenset[str] = frozenset()
    flags: Mapping[str, Mapping[str, Any]] = field(default_factory=dict)
    detect: DetectFunc | None = None
    force_run: bool = False
    options: tuple[Any, ...] = ()


RunnableLike = Union[Runnable, TaskFn]
TaskRef = Union[Task, str]


def _as_runnable(r: RunnableLike) -> Runnable:
    if isinstance(r, Runnable):
        return r
    if callable(r):
        return Leaf(r)
    raise TypeError(f"not a runnable: {r!r}")


def _task_name(ref: TaskRef) -> str:
    if isinstance(ref, Task):
        return ref.name
    if isinstance(ref, str):
        return ref
    raise TypeError(f"expected a Task or task name, got {ref!r}")


def do(fn: TaskFn) -> Leaf:
    """Wrap a plain function as the smallest Runnable."""
    return Leaf(fn)


def serial(*runnables: RunnableLike) -> SerialGroup:
    return SerialGroup(tuple(_as_runnable(r) for r in runnables))


def parallel(*runnables: RunnableLike) -> ParallelGroup:
    return ParallelGroup(tuple(_as_runnable(r) for r in runnables))


def with_options(
    inner: RunnableLike,
    *,
    include: Iterable[str] = (),
    exclude: Iterable[str] = (),
    exclude_task: Mapping[TaskRef, Iterable[str]] | None = None,
    skip: Iterable[TaskRef] = (),
    flags: Mapping[TaskRef, Mapping[str, Any]] | None = None,
    detect: DetectFunc | None = None,
    force_run: bool = False,
    options: Iterable[Any] = (),
) -> PathScoped:
    """Scope `inner` to directories of the repository.

    Example:

        with_options(
            python.tasks(),
            detect=detect_by_file("pyproject.toml"),
            exclude=["^vendor"],
            flags={python.test: {"coverage": True}},
        )
    """
    return PathScoped(
        inner=_as_runnable(inner),
        include=tuple(include),
        exclude=tuple(exclude),
        exclude_task=MappingProxyType(
            {_task_name(t): tuple(p) for t, p in (exclude_task or {}).items()}
        ),
        skip=frozenset(_task_name(t) for t in skip),
        flags=MappingProxyType(
            {_task_name(t): MappingProxyType(dict(v)) for t, v in (flags or {}).items()}
        ),
        detect=detect,
        force_run=force_run,
        options=tuple(options),
    )


def task(
    name: str,
    usage: str = "",
    flags: Mapping[str, FlagDef] | None = None,
    **attrs: Any,
):
    """Decorator to declare a task on a function.

    The wrapped function receives the execution context. The decorator returns
    the Task itself, so it composes directly with `serial` and `parallel`:

        @task(name="fmt", usage="format code")
        def fmt(ctx):
            run_command(ctx, "ruff", "format", ".")
    """

    def deco(fn: TaskFn) -> Task:
        doc = inspect.getdoc(fn) or ""
        return Task(
            name=name,
            usage=usage or doc.split("\n", 1)[0],
            do=fn,
            flags=flags or {},
            **attrs,
        )

    return deco


def children(node: Runnable) -> tuple[Runnable, ...]:
    """Direct children of a node, in declaration order."""
    if isinstance(node, (SerialGroup, ParallelGroup)):
        return node.children
    if isinstance(node, PathScoped):
        return (node.inner,)
    if isinstance(node, Task):
        return (node.body,) if node.body is not None else ()
    return ()
