"""Engine adapter contract and the data it exchanges with the executor."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Protocol

from agent_mux.types.activity import ActivityItem

if TYPE_CHECKING:
    from agent_mux.core.cancellation import CancellationToken


class EngineName(StrEnum):
    """Backends agent-mux can drive."""

    CODEX = "codex"
    CLAUDE = "claude"
    OPENCODE = "opencode"


class EffortLevel(StrEnum):
    """Coarse effort knob; scales the default deadline and turn budgets."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    XHIGH = "xhigh"


TIMEOUT_BY_EFFORT_MS: dict[EffortLevel, int] = {
    EffortLevel.LOW: 120_000,       # 2 min
    EffortLevel.MEDIUM: 600_000,    # 10 min
    EffortLevel.HIGH: 1_200_000,    # 20 min
    EffortLevel.XHIGH: 2_400_000,   # 40 min
}


@dataclass(frozen=True, slots=True)
class McpServerConfig:
    """A stdio MCP server an engine should be able to reach."""

    command: str
    args: tuple[str, ...] = ()
    cwd: str | None = None
    env: dict[str, str] | None = None


@dataclass(frozen=True, slots=True)
class RunConfig:
    """Everything an adapter needs for one run.

    ``token`` is the run's shared cancellation token; adapters must check it
    at every safe point and stop as soon as it is set.
    """

    prompt: str
    cwd: str
    timeout_ms: int
    token: CancellationToken
    model: str = ""
    effort: EffortLevel = EffortLevel.MEDIUM
    mcp_servers: dict[str, McpServerConfig] = field(default_factory=dict)
    system_prompt: str | None = None
    engine_options: dict[str, Any] = field(default_factory=dict)


class EngineCallbacks(Protocol):
    """Hooks an adapter uses to report progress while it runs."""

    def on_heartbeat(self, description: str) -> None:
        """Record what the engine is doing right now (drives heartbeat lines)."""

    def on_item(self, item: ActivityItem) -> None:
        """Record one structured activity item."""


# Placeholder response when a run finishes without any text.
EMPTY_RESPONSE = "(no response)"


@dataclass(slots=True)
class EngineResult:
    """What an adapter returns when it finishes normally.

    ``metadata`` is backend specific; known keys are ``session_id``,
    ``cost_usd``, ``tokens`` (``input``/``output``/``reasoning``), ``turns``
    and ``model``.
    """

    response: str
    items: list[ActivityItem] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)


class EngineAdapter(Protocol):
    """One backend's execution strategy."""

    async def run(self, config: RunConfig, callbacks: EngineCallbacks) -> EngineResult: ...
