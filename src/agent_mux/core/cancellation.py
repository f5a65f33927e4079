"""Asyncio-based one-shot cancellation for a single run.

The first trigger wins: whichever of the deadline or an operator interrupt
fires first sets the token and records its reason; later triggers are no-ops.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import StrEnum

from agent_mux.errors import CancellationError


class CancelReason(StrEnum):
    """Why a run was cancelled."""

    TIMEOUT = "timeout"
    INTERRUPT = "interrupt"


@dataclass
class CancellationToken:
    """A token that can be checked for cancellation.

    Uses asyncio.Event internally. cancel() should be called from the
    event loop.
    """

    _event: asyncio.Event = field(default_factory=asyncio.Event, repr=False)
    _reason: str = ""

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str:
        return self._reason

    def cancel(self, reason: str = CancelReason.TIMEOUT) -> bool:
        """Signal cancellation. Returns False if it was already signalled."""
        if self._event.is_set():
            return False
        self._reason = str(reason)
        self._event.set()
        return True

    def check(self) -> None:
        """Raise CancellationError if cancelled."""
        if self.is_cancelled:
            raise CancellationError(f"Run cancelled ({self._reason})")

    async def wait(self) -> None:
        """Wait until cancellation is signalled."""
        await self._event.wait()


@dataclass
class CancellationTokenSource:
    """Owns the run's token; the only party allowed to trigger it."""

    _token: CancellationToken = field(default_factory=CancellationToken)

    @property
    def token(self) -> CancellationToken:
        return self._token

    @property
    def is_cancelled(self) -> bool:
        return self._token.is_cancelled

    def cancel(self, reason: str = CancelReason.TIMEOUT) -> bool:
        return self._token.cancel(reason)
