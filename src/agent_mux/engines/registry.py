"""Static engine lookup keyed by EngineName."""

from __future__ import annotations

from typing import Any

from agent_mux.engines.claude import ClaudeEngine
from agent_mux.engines.codex import CodexEngine
from agent_mux.engines.opencode import OpenCodeEngine
from agent_mux.types.engine import EngineAdapter, EngineName

ENGINES: dict[EngineName, type[Any]] = {
    EngineName.CODEX: CodexEngine,
    EngineName.CLAUDE: ClaudeEngine,
    EngineName.OPENCODE: OpenCodeEngine,
}


def create_engine(name: EngineName | str, **kwargs: Any) -> EngineAdapter:
    """Instantiate the adapter for ``name``."""
    engine_cls = ENGINES[EngineName(name)]
    return engine_cls(**kwargs)
