"""Engine adapters for the supported agent backends."""

from agent_mux.engines.claude import ClaudeEngine
from agent_mux.engines.codex import CodexEngine
from agent_mux.engines.opencode import OpenCodeEngine
from agent_mux.engines.registry import ENGINES, create_engine

__all__ = ["ENGINES", "ClaudeEngine", "CodexEngine", "OpenCodeEngine", "create_engine"]
