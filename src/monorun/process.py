"""External processes launched by tasks.

Commands run in the context's directory, each in its own process group. When
the context is cancelled the group gets an interrupt first, and is killed
only if it is still alive after the grace period.
"""

from __future__ import annotations

import os
import signal
import subprocess
import threading
import time
from typing import IO, Iterable, Mapping, TextIO

from .context import CancelScope, ExecutionContext
from .errors import Cancelled, CommandError
from .logging import get_logger


log = get_logger("monorun.process")

# Substrings that make captured output worth showing even on success.
NOTICE_PATTERNS = ("warn", "deprecat", "notice", "caution", "error")

POLL_INTERVAL = 0.05


class _ProcessGroup:
    """A child started in its own session, so signals reach its descendants too."""

    def __init__(self, proc: subprocess.Popen):
        self.proc = proc
        self.pid = proc.pid

    def wait(self, timeout: float | None = None) -> int:
        return self.proc.wait(timeout=timeout)

    def interrupt(self) -> None:
        if os.name == "nt":
            self.proc.terminate()
        else:
            self._signal(signal.SIGINT)

    def kill(self) -> None:
        if os.name == "nt":
            self.proc.kill()
        else:
            self._signal(signal.SIGKILL)

    def _signal(self, sig: int) -> None:
        try:
            os.killpg(self.pid, sig)
        except ProcessLookupError:
            pass


def wait_process(proc: _ProcessGroup, cancel: CancelScope, grace_period: float) -> int:
    """Wait for `proc`, interrupting it on cancellation and killing it after
    `grace_period` seconds if the interrupt did not stop it."""
    interrupted_at: float | None = None
    while True:
        try:
            return proc.wait(timeout=POLL_INTERVAL)
        except subprocess.TimeoutExpired:
            pass
        if interrupted_at is None:
            if cancel.cancelled:
                log.debug("Interrupting pid %s", proc.pid)
                proc.interrupt()
                interrupted_at = time.monotonic()
        elif time.monotonic() - interrupted_at >= grace_period:
            log.warning("Killing pid %s after %.1fs grace period", proc.pid, grace_period)
            proc.kill()
            return proc.wait()


def _pump(
    stream: IO[str], chunks: list[str], sink: TextIO | None, detached: threading.Event
) -> None:
    try:
        for line in iter(stream.readline, ""):
            chunks.append(line)
            if sink is not None and not detached.is_set():
                sink.write(line)
    finally:
        stream.close()


def contains_notice(output: str, patterns: Iterable[str] = NOTICE_PATTERNS) -> bool:
    lower = output.lower()
    return any(p in lower for p in patterns)


def run_command(
    ctx: ExecutionContext,
    *args: str,
    env: Mapping[str, str] | None = None,
    notice_patterns: Iterable[str] = NOTICE_PATTERNS,
) -> str:
    """Run a command in `ctx.abs_path` and return its combined output.

    In verbose mode output streams to the context's stdout. Otherwise it is
    captured, attached to the CommandError on failure, and written to stderr
    on success only when it contains a notice word.
    """
    if not args:
        raise ValueError("run_command needs a command")
    ctx.check_cancelled()
    cmd = [str(a) for a in args]
    task_name = ctx.task.name if ctx.task else None
    log.debug("Exec: %s (in %s)", " ".join(cmd), ctx.path)
    try:
        popen = subprocess.Popen(
            cmd,
            cwd=ctx.abs_path,
            env={**os.environ, **(env or {})},
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            errors="replace",
            start_new_session=os.name != "nt",
        )
    except OSError as e:
        raise CommandError(cmd, 127, str(e), task=task_name, path=ctx.path) from e
    proc = _ProcessGroup(popen)

    chunks: list[str] = []
    detached = threading.Event()
    pump = threading.Thread(
        target=_pump,
        args=(popen.stdout, chunks, ctx.output.stdout if ctx.verbose else None, detached),
        daemon=True,
    )
    pump.start()
    returncode = wait_process(proc, ctx.cancel, ctx.grace_period)
    # A descendant outside the killed group may still hold the pipe open.
    pump.join(timeout=max(ctx.grace_period, POLL_INTERVAL))
    if pump.is_alive():
        detached.set()
        log.warning("Output of pid %s still open after exit; not waiting for it", proc.pid)
    output = "".join(list(chunks))

    if returncode != 0:
        if ctx.cancelled:
            raise Cancelled(f"{cmd[0]} interrupted")
        raise CommandError(
            cmd,
            returncode,
            "" if ctx.verbose else output,
            task=task_name,
            path=ctx.path,
        )
    if not ctx.verbose and output and contains_notice(output, notice_patterns):
        ctx.output.stderr.write(output)
    return output
