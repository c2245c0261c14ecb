"""Per-execution deduplication of task runs.

Unlike a memo of return values, the cache here is single-flight: the first
caller for a key runs the work while every other caller for the same key
blocks until it finishes and then sees the same outcome.
"""

from __future__ import annotations

import enum
import threading
from dataclasses import dataclass
from typing import Callable

from .logging import get_logger


log = get_logger("monorun.cache")

# Path component of the key for global tasks.
GLOBAL = "<global>"


@dataclass(frozen=True)
class DedupKey:
    name: str
    path: str

    @classmethod
    def for_task(cls, name: str, path: str, global_: bool = False) -> "DedupKey":
        return cls(name, GLOBAL if global_ else path)

    def __str__(self) -> str:
        return f"{self.name}@{self.path}"


class TaskState(enum.Enum):
    NOT_STARTED = "not_started"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class _Cell:
    __slots__ = ("done", "error", "state")

    def __init__(self) -> None:
        self.done = threading.Event()
        self.error: BaseException | None = None
        self.state = TaskState.RUNNING


class DedupCache:
    def __init__(self) -> None:
        self._cells: dict[DedupKey, _Cell] = {}
        self._lock = threading.Lock()

    def run(self, key: DedupKey, fn: Callable[[], None]) -> bool:
        """Run `fn` once for `key`.

        Returns True if this call executed `fn`, False if it waited on (or
        found) an earlier execution. A failed execution re-raises its original
        exception to every caller.
        """
        with self._lock:
            cell = self._cells.get(key)
            owner = cell is None
            if owner:
                cell = self._cells[key] = _Cell()
        if owner:
            try:
                fn()
            except BaseException as e:
                cell.error = e
                cell.state = TaskState.FAILED
                raise
            else:
                cell.state = TaskState.SUCCEEDED
            finally:
                cell.done.set()
            return True

        log.debug("Dedup hit: %s", key)
        cell.done.wait()
        if cell.error is not None:
            raise cell.error
        return False

    def state(self, key: DedupKey) -> TaskState:
        with self._lock:
            cell = self._cells.get(key)
        return cell.state if cell else TaskState.NOT_STARTED

    def executed(self) -> list[DedupKey]:
        with self._lock:
            return list(self._cells)
