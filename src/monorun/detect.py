"""Directory detection predicates used to scope tasks automatically."""

from __future__ import annotations

import os
from typing import Callable, List

# Receives the shared directory listing (relative to the git root, forward
# slashes) and the git root; returns the matching subset in listing order.
DetectFunc = Callable[[List[str], str], List[str]]


def detect_by_file(*filenames: str) -> DetectFunc:
    """Match directories containing any of `filenames`.

    detect_by_file("pyproject.toml", "setup.py") finds every Python project.
    """
    if not filenames:
        raise ValueError("detect_by_file needs at least one filename")

    def detect(dirs: list[str], git_root: str) -> list[str]:
        found = []
        for d in dirs:
            base = os.path.join(git_root, d)
            if any(os.path.exists(os.path.join(base, f)) for f in filenames):
                found.append(d)
        return found

    detect.__qualname__ = f"detect_by_file({', '.join(filenames)})"
    return detect
