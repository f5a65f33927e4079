"""Scoped control over process-wide state touched during a run.

``intercept_stderr`` swaps ``sys.stderr`` for a line filter that only lets
agent-mux's own lines through; ``extend_path`` prepends directories to
``PATH``. Both restore the original state on every exit path.
"""

from __future__ import annotations

import io
import os
import sys
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from typing import Any, TextIO

DIAGNOSTIC_PREFIXES: tuple[str, ...] = ("[heartbeat]", "[agent-mux]")


class FilteredStream(io.TextIOBase):
    """Text stream passing through only lines that start with given prefixes.

    Decisions are made per line, so a line written in several chunks is kept
    or dropped as a whole.
    """

    def __init__(self, target: TextIO, prefixes: Sequence[str] = DIAGNOSTIC_PREFIXES) -> None:
        super().__init__()
        self._target = target
        self._prefixes = tuple(prefixes)
        self._at_line_start = True
        self._passing = False
        self.swallowed = 0

    def writable(self) -> bool:
        return True

    def write(self, text: str) -> int:
        for piece in text.splitlines(keepends=True):
            if self._at_line_start:
                self._passing = piece.startswith(self._prefixes)
            if self._passing:
                self._target.write(piece)
            else:
                self.swallowed += len(piece)
            self._at_line_start = piece.endswith(("\n", "\r"))
        return len(text)

    def flush(self) -> None:
        self._target.flush()

    def fileno(self) -> int:
        return self._target.fileno()

    def isatty(self) -> bool:
        return self._target.isatty()

    def __getattr__(self, name: str) -> Any:
        return getattr(self._target, name)


@contextmanager
def intercept_stderr(prefixes: Sequence[str] = DIAGNOSTIC_PREFIXES) -> Iterator[FilteredStream]:
    """Filter ``sys.stderr`` for the duration of the block."""
    original = sys.stderr
    filtered = FilteredStream(original, prefixes)
    sys.stderr = filtered
    try:
        yield filtered
    finally:
        sys.stderr = original


@contextmanager
def extend_path(directories: Sequence[str]) -> Iterator[None]:
    """Prepend ``directories`` to ``PATH`` and restore it afterwards."""
    original = os.environ.get("PATH")
    if directories:
        os.environ["PATH"] = os.pathsep.join([*directories, original or ""])
    try:
        yield
    finally:
        if original is None:
            os.environ.pop("PATH", None)
        else:
            os.environ["PATH"] = original
