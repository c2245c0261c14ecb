from __future__ import annotations

"""Filesystem helpers: git root discovery and the shared directory walk."""

import os
import re
import threading
from pathlib import Path
from typing import Iterable

from .logging import get_logger


log = get_logger("monorun.utils")

DEFAULT_SKIP_DIRS = ("vendor", "node_modules", "__pycache__", "dist", "build", "venv")


def find_git_root(start: str | Path | None = None) -> str:
    """Walk up from `start` (default: cwd) to the directory holding `.git`.

    Falls back to `start` itself outside a repository.
    """
    cur = Path(start or os.getcwd()).resolve()
    for d in (cur, *cur.parents):
        if (d / ".git").exists():
            return str(d)
    return str(cur)


def walk_directories(
    git_root: str,
    skip_dirs: Iterable[str] = DEFAULT_SKIP_DIRS,
    include_hidden: bool = False,
) -> list[str]:
    """List every directory under `git_root`, relative and slash-separated.

    "." comes first. Directories named in `skip_dirs`, and hidden ones unless
    `include_hidden`, are pruned together with their subtrees.
    """
    skip = set(skip_dirs)
    dirs = ["."]
    for root, subdirs, _ in os.walk(git_root):
        subdirs[:] = sorted(
            d
            for d in subdirs
            if d not in skip and (include_hidden or not d.startswith("."))
        )
        rel = os.path.relpath(root, git_root)
        if rel != ".":
            dirs.append(rel.replace(os.sep, "/"))
    log.debug("Walked %s: %d directories", git_root, len(dirs))
    return dirs


class DirectoryListing:
    """The directory list of one process run, computed by a single walk.

    Every detection in a run reads the same list; `walks` counts how often
    the filesystem was actually traversed.
    """

    def __init__(
        self,
        git_root: str,
        skip_dirs: Iterable[str] = DEFAULT_SKIP_DIRS,
        include_hidden: bool = False,
    ):
        self.git_root = git_root
        self.skip_dirs = tuple(skip_dirs)
        self.include_hidden = include_hidden
        self.walks = 0
        self._dirs: tuple[str, ...] | None = None
        self._lock = threading.Lock()

    def dirs(self) -> list[str]:
        with self._lock:
            if self._dirs is None:
                self._dirs = tuple(
                    walk_directories(self.git_root, self.skip_dirs, self.include_hidden)
                )
                self.walks += 1
        return list(self._dirs)


def match_pattern(path: str, pattern: str) -> bool:
    """Regex search of `pattern` in a slash-separated relative path."""
    return re.search(pattern, path) is not None


def exclude_by_patterns(dirs: Iterable[str], patterns: Iterable[str]) -> list[str]:
    patterns = list(patterns)
    if not patterns:
        return list(dirs)
    return [d for d in dirs if not any(match_pattern(d, p) for p in patterns)]
