"""Global test fixtures for agent-mux."""

from __future__ import annotations

from pathlib import Path

import pytest


@pytest.fixture
def tmp_workdir(tmp_path: Path) -> Path:
    """Provide a temporary working directory for file operation tests."""
    return tmp_path


@pytest.fixture
def claude_workspace(tmp_path: Path) -> Path:
    """A workspace with empty ``.claude/agents`` and ``.claude/skills`` roots."""
    (tmp_path / ".claude" / "agents").mkdir(parents=True)
    (tmp_path / ".claude" / "skills").mkdir(parents=True)
    return tmp_path
