"""Activity aggregation: fold an engine's item stream into one snapshot."""

from __future__ import annotations

import logging

from agent_mux.types.activity import Activity, ActivityItem, ActivityKind

logger = logging.getLogger(__name__)


class ActivityAggregator:
    """Collects activity items until the run is finalized.

    Changed and read files are kept as insertion-ordered sets; commands and
    MCP calls keep every occurrence. Messages are not side effects and are
    ignored. After :meth:`freeze` nothing more is recorded.
    """

    def __init__(self) -> None:
        self._files_changed: dict[str, None] = {}
        self._commands_run: list[str] = []
        self._files_read: dict[str, None] = {}
        self._mcp_calls: list[str] = []
        self._frozen: Activity | None = None
        self._dropped = 0

    @property
    def frozen(self) -> Activity | None:
        """The final snapshot, once :meth:`freeze` has been called."""
        return self._frozen

    @property
    def dropped(self) -> int:
        """Items that arrived after finalization."""
        return self._dropped

    def add(self, item: ActivityItem) -> bool:
        """Record one item. Returns False if the aggregator is frozen."""
        if self._frozen is not None:
            self._dropped += 1
            logger.debug("Dropping %s item after finalization: %s", item.kind, item.summary)
            return False

        if item.kind == ActivityKind.FILE_CHANGE:
            self._files_changed.setdefault(item.summary, None)
        elif item.kind == ActivityKind.FILE_READ:
            self._files_read.setdefault(item.summary, None)
        elif item.kind == ActivityKind.COMMAND:
            self._commands_run.append(item.summary)
        elif item.kind == ActivityKind.MCP_CALL:
            self._mcp_calls.append(item.summary)
        return True

    def snapshot(self, heartbeat_count: int) -> Activity:
        """Build a snapshot of what has been recorded so far."""
        return Activity(
            files_changed=tuple(self._files_changed),
            commands_run=tuple(self._commands_run),
            files_read=tuple(self._files_read),
            mcp_calls=tuple(self._mcp_calls),
            heartbeat_count=heartbeat_count,
        )

    def freeze(self, heartbeat_count: int) -> Activity:
        """Produce the final snapshot. May be called only once."""
        if self._frozen is not None:
            raise RuntimeError("Activity has already been finalized")
        self._frozen = self.snapshot(heartbeat_count)
        return self._frozen
