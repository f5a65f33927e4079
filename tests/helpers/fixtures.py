"""Factories for configs, recording callbacks and fake engine CLIs."""

from __future__ import annotations

import json
import sys
import textwrap
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from agent_mux.config import MuxConfig
from agent_mux.core.cancellation import CancellationToken
from agent_mux.types.activity import ActivityItem
from agent_mux.types.engine import EffortLevel, EngineName, McpServerConfig, RunConfig


@dataclass
class RecordingCallbacks:
    """EngineCallbacks that remember everything they were told."""

    heartbeats: list[str] = field(default_factory=list)
    items: list[ActivityItem] = field(default_factory=list)

    def on_heartbeat(self, description: str) -> None:
        self.heartbeats.append(description)

    def on_item(self, item: ActivityItem) -> None:
        self.items.append(item)


def make_mux_config(
    engine: EngineName = EngineName.CODEX,
    *,
    prompt: str = "do the thing",
    cwd: str = "/tmp",
    timeout_ms: int = 60_000,
    **kwargs: Any,
) -> MuxConfig:
    return MuxConfig(engine=engine, prompt=prompt, cwd=cwd, timeout_ms=timeout_ms, **kwargs)


def make_run_config(
    *,
    prompt: str = "do the thing",
    cwd: str = "/tmp",
    token: CancellationToken | None = None,
    model: str = "",
    effort: EffortLevel = EffortLevel.MEDIUM,
    mcp_servers: dict[str, McpServerConfig] | None = None,
    system_prompt: str | None = None,
    engine_options: dict[str, Any] | None = None,
) -> RunConfig:
    return RunConfig(
        prompt=prompt,
        cwd=cwd,
        timeout_ms=60_000,
        token=token or CancellationToken(),
        model=model,
        effort=effort,
        mcp_servers=mcp_servers or {},
        system_prompt=system_prompt,
        engine_options=engine_options or {},
    )


def write_fake_engine(
    directory: Path,
    lines: list[dict[str, Any] | str],
    *,
    exit_code: int = 0,
    stderr: str = "",
    hang: bool = False,
) -> list[str]:
    """Write a script that prints ``lines`` as JSON lines, like a vendor CLI.

    The script echoes its argv and stdin into ``argv.json`` / ``stdin.txt``
    next to itself. Returns the command prefix to launch it.
    """
    rendered = [line if isinstance(line, str) else json.dumps(line) for line in lines]
    script = directory / "fake_engine.py"
    script.write_text(
        textwrap.dedent(
            f"""
            import json, sys, time
            from pathlib import Path

            here = Path(__file__).parent
            (here / "argv.json").write_text(json.dumps(sys.argv[1:]))
            (here / "stdin.txt").write_text(sys.stdin.read())
            for line in {rendered!r}:
                print(line, flush=True)
            if {stderr!r}:
                print({stderr!r}, file=sys.stderr, flush=True)
            if {hang!r}:
                time.sleep(60)
            sys.exit({exit_code})
            """
        ),
        encoding="utf-8",
    )
    return [sys.executable, str(script)]
