"""Tests for engine lookup."""

from __future__ import annotations

import pytest

from agent_mux.engines import ENGINES, ClaudeEngine, CodexEngine, OpenCodeEngine, create_engine
from agent_mux.types.engine import EngineName


class TestCreateEngine:
    @pytest.mark.parametrize(
        ("name", "engine_cls"),
        [("codex", CodexEngine), ("claude", ClaudeEngine), (EngineName.OPENCODE, OpenCodeEngine)],
    )
    def test_lookup(self, name: str, engine_cls: type) -> None:
        assert isinstance(create_engine(name), engine_cls)

    def test_every_engine_is_registered(self) -> None:
        assert set(ENGINES) == set(EngineName)

    def test_kwargs_reach_the_adapter(self) -> None:
        engine = create_engine("claude", command=["/opt/claude"])
        assert engine.build_argv  # type: ignore[attr-defined]
        assert engine._command == ["/opt/claude"]  # type: ignore[attr-defined]

    def test_unknown(self) -> None:
        with pytest.raises(ValueError):
            create_engine("gemini")
