"""Error taxonomy for planning and execution."""

from __future__ import annotations

from typing import Sequence


class MonorunError(Exception):
    """Base class for every error raised by the engine itself."""


class ConfigError(MonorunError):
    """Malformed declarations, detected before any task runs."""


class FlagError(MonorunError):
    """A task flag is undeclared, or a CLI value cannot be converted."""


class Cancelled(MonorunError):
    """Execution stopped because the cancel scope was triggered."""

    def __init__(self, message: str = "interrupted"):
        super().__init__(message)


class CommandError(MonorunError):
    """An external process exited non-zero or was killed by a signal."""

    def __init__(
        self,
        command: Sequence[str],
        returncode: int,
        output: str = "",
        task: str | None = None,
        path: str = ".",
    ):
        self.command = list(command)
        self.returncode = returncode
        self.output = output
        self.task = task
        self.path = path
        super().__init__(self._format())

    def _format(self) -> str:
        where = f"task {self.task!r}" if self.task else "command"
        if self.path not in ("", "."):
            where += f" in {self.path}"
        if self.returncode < 0:
            status = f"killed by signal {-self.returncode}"
        else:
            status = f"exit status {self.returncode}"
        msg = f"{where}: {' '.join(self.command)}: {status}"
        if self.output:
            msg += "\n" + self.output.rstrip("\n")
        return msg
