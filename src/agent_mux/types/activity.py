"""Activity types: what an engine did while it ran."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Any


class ActivityKind(StrEnum):
    """Kinds of activity an engine can report."""

    FILE_CHANGE = "file_change"
    COMMAND = "command"
    FILE_READ = "file_read"
    MCP_CALL = "mcp_call"
    MESSAGE = "message"


@dataclass(frozen=True, slots=True)
class ActivityItem:
    """One side effect (or message) observed during a run."""

    kind: ActivityKind
    summary: str
    detail: str | None = None


@dataclass(frozen=True, slots=True)
class Activity:
    """Immutable snapshot of everything recorded during one run.

    ``files_changed`` and ``files_read`` are deduplicated (first occurrence
    order); ``commands_run`` and ``mcp_calls`` keep every occurrence.
    """

    files_changed: tuple[str, ...] = ()
    commands_run: tuple[str, ...] = ()
    files_read: tuple[str, ...] = ()
    mcp_calls: tuple[str, ...] = ()
    heartbeat_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "files_changed": list(self.files_changed),
            "commands_run": list(self.commands_run),
            "files_read": list(self.files_read),
            "mcp_calls": list(self.mcp_calls),
            "heartbeat_count": self.heartbeat_count,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Activity:
        return cls(
            files_changed=tuple(data.get("files_changed", ())),
            commands_run=tuple(data.get("commands_run", ())),
            files_read=tuple(data.get("files_read", ())),
            mcp_calls=tuple(data.get("mcp_calls", ())),
            heartbeat_count=int(data.get("heartbeat_count", 0)),
        )


def empty_activity(heartbeat_count: int = 0) -> Activity:
    """Activity for runs that never reached an engine."""
    return Activity(heartbeat_count=heartbeat_count)
