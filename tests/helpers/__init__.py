"""Shared test helpers for the agent-mux test suite."""

from __future__ import annotations

from tests.helpers.fixtures import (
    RecordingCallbacks,
    make_mux_config,
    make_run_config,
    write_fake_engine,
)

__all__ = ["RecordingCallbacks", "make_mux_config", "make_run_config", "write_fake_engine"]
