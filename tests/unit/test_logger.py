"""Tests for logging setup."""

from __future__ import annotations

import logging
from collections.abc import Iterator

import pytest

from agent_mux.utilities.logger import LOG_PREFIX, debug_requested, get_logger, setup_logging


@pytest.fixture
def restore_root_logging() -> Iterator[None]:
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


class TestDebugRequested:
    @pytest.mark.parametrize("value", ["1", "true", "YES", " yes "])
    def test_truthy(self, value: str) -> None:
        assert debug_requested({"AGENT_MUX_DEBUG": value}) is True

    @pytest.mark.parametrize("value", ["", "0", "no", "off"])
    def test_falsy(self, value: str) -> None:
        assert debug_requested({"AGENT_MUX_DEBUG": value}) is False


@pytest.mark.usefixtures("restore_root_logging")
class TestSetupLogging:
    def test_default_level_is_warning(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("AGENT_MUX_DEBUG", raising=False)
        setup_logging()
        assert logging.getLogger().level == logging.WARNING

    def test_debug_flag(self) -> None:
        setup_logging(debug=True)
        assert logging.getLogger().level == logging.DEBUG

    def test_env_enables_debug(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("AGENT_MUX_DEBUG", "1")
        setup_logging()
        assert logging.getLogger().level == logging.DEBUG

    def test_records_carry_prefix_on_stderr(self, capsys: pytest.CaptureFixture[str]) -> None:
        setup_logging(debug=True)
        get_logger("agent_mux.test").warning("engine_started", engine="codex")
        captured = capsys.readouterr()
        assert captured.out == ""
        assert captured.err.startswith(f"{LOG_PREFIX} ")
        assert "engine_started" in captured.err
        assert "engine=codex" in captured.err
