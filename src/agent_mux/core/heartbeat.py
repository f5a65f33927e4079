"""Heartbeat protocol: periodic liveness lines on the diagnostic channel.

Each tick writes ``[heartbeat] {elapsed}s — {description}`` where the
description is whatever the engine last reported. Ticks are scheduled on the
running event loop (no threads) and stop for good once :meth:`stop` is called.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from typing import TextIO

HEARTBEAT_INTERVAL_SECONDS = 15.0
HEARTBEAT_PREFIX = "[heartbeat]"
INITIAL_DESCRIPTION = "initializing"


class HeartbeatEmitter:
    """Fixed-interval liveness ticks with a monotonic counter."""

    def __init__(
        self,
        stream: TextIO,
        *,
        interval: float = HEARTBEAT_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._stream = stream
        self._interval = interval
        self._clock = clock
        self._started_at: float | None = None
        self._description = INITIAL_DESCRIPTION
        self._count = 0
        self._handle: asyncio.TimerHandle | None = None
        self._stopped = False

    @property
    def count(self) -> int:
        return self._count

    @property
    def description(self) -> str:
        return self._description

    @property
    def running(self) -> bool:
        return self._handle is not None and not self._stopped

    def start(self, started_at: float | None = None) -> None:
        """Begin ticking on the running loop."""
        if self._handle is not None or self._stopped:
            return
        self._started_at = self._clock() if started_at is None else started_at
        self._schedule(1)

    def update(self, description: str) -> None:
        self._description = description

    def stop(self) -> None:
        """Stop ticking. No tick fires after this returns."""
        self._stopped = True
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _schedule(self, tick_number: int) -> None:
        # Anchor every tick to the start time so intervals do not drift.
        assert self._started_at is not None
        loop = asyncio.get_running_loop()
        delay = self._started_at + tick_number * self._interval - self._clock()
        self._handle = loop.call_later(max(0.0, delay), self._tick, tick_number)

    def _tick(self, tick_number: int) -> None:
        if self._stopped:
            return
        self._count += 1
        elapsed = round(self._clock() - (self._started_at or 0.0))
        self._stream.write(f"{HEARTBEAT_PREFIX} {elapsed}s — {self._description}\n")
        self._stream.flush()
        self._schedule(tick_number + 1)
