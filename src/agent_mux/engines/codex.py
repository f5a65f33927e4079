"""Codex engine: drives ``codex exec --json``.

Codex prints thread events as JSON lines (``thread.started``,
``turn.started``, ``item.started``/``item.updated``/``item.completed``,
``turn.completed``, ``turn.failed``, ``error``). The last completed agent
message is the response.
"""

from __future__ import annotations

import json
import re
from collections.abc import Sequence
from typing import Any

from agent_mux.engines.base import EngineProcess, truncate
from agent_mux.errors import EngineError
from agent_mux.mcp.clusters import ClusterRegistry, get_registry
from agent_mux.types.activity import ActivityItem, ActivityKind
from agent_mux.types.engine import (
    EMPTY_RESPONSE,
    EngineCallbacks,
    EngineName,
    EngineResult,
    McpServerConfig,
    RunConfig,
)

DEFAULT_MODEL = "gpt-5.3-codex"
DEFAULT_REASONING = "medium"
DEFAULT_SANDBOX = "read-only"
VALID_REASONING = ("minimal", "low", "medium", "high", "xhigh")

_BARE_KEY = re.compile(r"^[A-Za-z0-9_-]+$")


def toml_key(key: str) -> str:
    return key if _BARE_KEY.match(key) else json.dumps(key)


def toml_value(value: Any) -> str:
    """Render a value for a ``codex -c key=value`` override."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int | float):
        return str(value)
    if isinstance(value, list | tuple):
        return "[" + ", ".join(toml_value(item) for item in value) + "]"
    if isinstance(value, dict):
        inner = ", ".join(f"{toml_key(str(k))} = {toml_value(v)}" for k, v in value.items())
        return "{ " + inner + " }" if inner else "{}"
    return json.dumps(str(value))


def mcp_overrides(
    requested: dict[str, McpServerConfig],
    known_servers: Sequence[str],
) -> list[str]:
    """``-c`` overrides disabling every known MCP server, then enabling the requested ones."""
    overrides: list[str] = []
    for name in known_servers:
        if name not in requested:
            overrides.append(f"mcp_servers.{toml_key(name)}.enabled=false")
    for name, server in requested.items():
        prefix = f"mcp_servers.{toml_key(name)}"
        overrides.append(f"{prefix}.enabled=true")
        overrides.append(f"{prefix}.command={toml_value(server.command)}")
        overrides.append(f"{prefix}.args={toml_value(list(server.args))}")
        if server.cwd:
            overrides.append(f"{prefix}.cwd={toml_value(server.cwd)}")
        if server.env:
            overrides.append(f"{prefix}.env={toml_value(server.env)}")
    return overrides


def classify_item(item: dict[str, Any]) -> list[ActivityItem]:
    """Map one completed thread item to activity items."""
    kind = item.get("type")
    if kind == "file_change":
        status = item.get("status", "completed")
        return [
            ActivityItem(
                ActivityKind.FILE_CHANGE,
                change.get("path", ""),
                f"{status}: {change.get('kind', 'update')} {change.get('path', '')}",
            )
            for change in item.get("changes") or []
            if isinstance(change, dict)
        ]
    if kind == "command_execution":
        output = item.get("aggregated_output")
        return [
            ActivityItem(
                ActivityKind.COMMAND,
                str(item.get("command", "")),
                truncate(output, 500) if output else None,
            )
        ]
    if kind == "mcp_tool_call":
        return [ActivityItem(ActivityKind.MCP_CALL, f"{item.get('server')}/{item.get('tool')}")]
    if kind == "agent_message":
        return [ActivityItem(ActivityKind.MESSAGE, truncate(str(item.get("text", "")), 200))]
    return []


def describe_event(event: dict[str, Any]) -> str:
    kind = event.get("type")
    item_type = (event.get("item") or {}).get("type")
    if kind == "thread.started":
        return "thread started"
    if kind == "turn.started":
        return "turn started"
    if kind == "turn.completed":
        usage = event.get("usage") or {}
        return f"turn completed ({usage.get('input_tokens', 0)} in, {usage.get('output_tokens', 0)} out)"
    if kind == "turn.failed":
        return f"turn failed: {(event.get('error') or {}).get('message')}"
    if kind == "item.started":
        return f"{item_type} started"
    if kind == "item.updated":
        return f"{item_type} updating"
    if kind == "item.completed":
        return f"{item_type} completed"
    if kind == "error":
        return f"error: {event.get('message')}"
    return "unknown event"


class CodexStreamState:
    """Folds codex thread events into an EngineResult."""

    def __init__(self, model: str) -> None:
        self.model = model
        self.items: list[ActivityItem] = []
        self.response = ""
        self.thread_id = ""
        self.input_tokens = 0
        self.output_tokens = 0
        self.reasoning_tokens = 0

    def handle(self, event: dict[str, Any], callbacks: EngineCallbacks) -> None:
        callbacks.on_heartbeat(describe_event(event))
        kind = event.get("type")

        if kind == "thread.started":
            self.thread_id = event.get("thread_id") or self.thread_id
        elif kind == "item.completed":
            item = event.get("item") or {}
            for activity in classify_item(item):
                callbacks.on_item(activity)
                self.items.append(activity)
            if item.get("type") == "agent_message":
                self.response = str(item.get("text", ""))
        elif kind == "turn.completed":
            usage = event.get("usage") or {}
            self.input_tokens += usage.get("input_tokens") or 0
            self.output_tokens += usage.get("output_tokens") or 0
            self.reasoning_tokens += usage.get("reasoning_output_tokens") or 0
        elif kind == "turn.failed":
            message = (event.get("error") or {}).get("message", "unknown error")
            raise EngineError(f"Codex turn failed: {message}", engine=EngineName.CODEX.value)
        elif kind == "error":
            raise EngineError(f"Codex stream error: {event.get('message')}", engine=EngineName.CODEX.value)

    def to_result(self) -> EngineResult:
        metadata: dict[str, Any] = {
            "model": self.model,
            "tokens": {"input": self.input_tokens, "output": self.output_tokens},
        }
        if self.reasoning_tokens:
            metadata["tokens"]["reasoning"] = self.reasoning_tokens
        if self.thread_id:
            metadata["session_id"] = self.thread_id
        return EngineResult(response=self.response or EMPTY_RESPONSE, items=self.items, metadata=metadata)


class CodexEngine:
    """Adapter for the Codex CLI."""

    name = EngineName.CODEX

    def __init__(
        self,
        command: Sequence[str] = ("codex",),
        registry: ClusterRegistry | None = None,
    ) -> None:
        self._command = list(command)
        self._registry = registry

    def build_argv(self, config: RunConfig) -> list[str]:
        options = config.engine_options
        reasoning = options.get("reasoning") or DEFAULT_REASONING
        if reasoning not in VALID_REASONING:
            reasoning = DEFAULT_REASONING

        argv = [
            *self._command,
            "exec",
            "--json",
            "--skip-git-repo-check",
            "--model", config.model or DEFAULT_MODEL,
            "--sandbox", options.get("sandbox") or DEFAULT_SANDBOX,
            "--cd", config.cwd,
        ]
        for directory in options.get("add_dirs") or []:
            argv.extend(["--add-dir", directory])
        argv.extend(["-c", f"model_reasoning_effort={toml_value(reasoning)}"])
        if options.get("network"):
            argv.extend(["-c", "sandbox_workspace_write.network_access=true"])

        registry = self._registry or get_registry()
        for override in mcp_overrides(config.mcp_servers, registry.all_server_names()):
            argv.extend(["-c", override])
        # Prompt comes from stdin.
        argv.append("-")
        return argv

    async def run(self, config: RunConfig, callbacks: EngineCallbacks) -> EngineResult:
        state = CodexStreamState(config.model or DEFAULT_MODEL)
        callbacks.on_heartbeat("starting codex agent")
        config.token.check()

        async with EngineProcess(
            self.name.value,
            self.build_argv(config),
            token=config.token,
            cwd=config.cwd,
            stdin_text=config.prompt,
        ) as proc:
            async for event in proc.json_events():
                state.handle(event, callbacks)
                if config.token.is_cancelled:
                    break
            config.token.check()
            await proc.check_exit()

        return state.to_result()
