"""Execution context threaded through the composition tree.

An ExecutionContext is immutable. Combinators derive a new one per branch
(per path, per task, per parallel child) from the root context, which owns
the process-wide cancel scope.
"""

from __future__ import annotations

import dataclasses
import io
import os
import sys
import threading
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Mapping, TextIO, TypeVar

from .errors import Cancelled, FlagError

if TYPE_CHECKING:
    from .core import Task
    from .engine import Execution
    from .plan import Plan


T = TypeVar("T")

DEFAULT_GRACE_PERIOD = 5.0


def _empty() -> Mapping[str, Any]:
    return MappingProxyType({})


class CancelScope:
    """Cooperative cancellation signal.

    Cancelling a scope cancels all of its child scopes; a child never
    cancels its parent. Parallel groups open a child scope so the first
    failure stops siblings without touching the rest of the run.
    """

    def __init__(self, parent: CancelScope | None = None):
        self._event = threading.Event()
        # Re-entrant: cancel() may run from a signal handler on the main thread.
        self._lock = threading.RLock()
        self._children: list[CancelScope] = []
        self._parent = parent
        if parent is not None:
            parent._attach(self)

    def child(self) -> CancelScope:
        return CancelScope(self)

    def close(self) -> None:
        """Detach from the parent once the owning group has joined."""
        if self._parent is not None:
            self._parent._detach(self)

    def _attach(self, child: CancelScope) -> None:
        with self._lock:
            self._children.append(child)
            cancelled = self._event.is_set()
        if cancelled:
            child.cancel()

    def _detach(self, child: CancelScope) -> None:
        with self._lock:
            if child in self._children:
                self._children.remove(child)

    def cancel(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            kids = list(self._children)
        for k in kids:
            k.cancel()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)

    def check(self) -> None:
        if self._event.is_set():
            raise Cancelled()


@dataclass(frozen=True)
class Output:
    stdout: TextIO
    stderr: TextIO

    @classmethod
    def std(cls) -> Output:
        return cls(stdout=sys.stdout, stderr=sys.stderr)


class BufferedOutput:
    """Captures one parallel child's output until it completes."""

    def __init__(self, parent: Output):
        self.parent = parent
        self.stdout = io.StringIO()
        self.stderr = io.StringIO()

    def output(self) -> Output:
        return Output(stdout=self.stdout, stderr=self.stderr)

    def flush(self) -> None:
        # Callers serialise flushes; each stream goes out in a single write.
        out = self.stdout.getvalue()
        if out:
            self.parent.stdout.write(out)
            self.parent.stdout.flush()
        err = self.stderr.getvalue()
        if err:
            self.parent.stderr.write(err)
            self.parent.stderr.flush()


@dataclass(frozen=True)
class ExecutionContext:
    path: str = "."
    git_root: str = field(default_factory=os.getcwd)
    verbose: bool = False
    grace_period: float = DEFAULT_GRACE_PERIOD
    output: Output = field(default_factory=Output.std)
    cancel: CancelScope = field(default_factory=CancelScope)
    plan: Plan | None = None
    execution: Execution | None = None
    task: Task | None = None
    # Resolved flag values of `task`.
    flags: Mapping[str, Any] = field(default_factory=_empty)
    # Task name -> flag overrides, accumulated from enclosing scopes.
    scope_flags: Mapping[str, Mapping[str, Any]] = field(default_factory=_empty)
    # Flag values given on the command line for `cli_task`.
    cli_task: str | None = None
    cli_flags: Mapping[str, Any] = field(default_factory=_empty)
    options: tuple[Any, ...] = ()
    skipped: frozenset[str] = frozenset()
    force_run: bool = False
    auto_exec: bool = False

    def derive(self, **changes: Any) -> ExecutionContext:
        return dataclasses.replace(self, **changes)

    @property
    def abs_path(self) -> str:
        return os.path.normpath(os.path.join(self.git_root, self.path))

    @property
    def cancelled(self) -> bool:
        return self.cancel.cancelled

    def check_cancelled(self) -> None:
        self.cancel.check()

    def option(self, cls: type[T], default: T | None = None) -> T | None:
        """Innermost option object of type `cls` set by an enclosing scope."""
        for opt in reversed(self.options):
            if isinstance(opt, cls):
                return opt
        return default

    def flag(self, name: str) -> Any:
        try:
            return self.flags[name]
        except KeyError:
            owner = self.task.name if self.task else "<no task>"
            raise FlagError(f"task {owner!r}: flag {name!r} not declared") from None

    def print(self, *args: Any, sep: str = " ", end: str = "\n") -> None:
        self.output.stdout.write(sep.join(str(a) for a in args) + end)

    def eprint(self, *args: Any, sep: str = " ", end: str = "\n") -> None:
        self.output.stderr.write(sep.join(str(a) for a in args) + end)
