"""Claude Code engine: drives ``claude -p --output-format stream-json``.

The CLI prints one JSON message per line: ``system`` (init), ``assistant``
(content blocks, including ``tool_use``), ``user`` (tool results),
``tool_progress`` and finally one ``result``. Turn and budget limits end the
run normally with whatever text was produced; other error results are
failures.
"""

from __future__ import annotations

import json
from collections.abc import Sequence
from typing import Any

from agent_mux.engines.base import EngineProcess, truncate
from agent_mux.errors import EngineError
from agent_mux.types.activity import ActivityItem, ActivityKind
from agent_mux.types.engine import EffortLevel, EngineCallbacks, EngineName, EngineResult, RunConfig

DEFAULT_MODEL = "claude-sonnet-4-20250514"
DEFAULT_PERMISSION_MODE = "bypassPermissions"

MAX_TURNS_BY_EFFORT: dict[EffortLevel, int] = {
    EffortLevel.LOW: 5,
    EffortLevel.MEDIUM: 15,
    EffortLevel.HIGH: 30,
    EffortLevel.XHIGH: 50,
}

FILE_CHANGE_TOOLS = frozenset({"Edit", "Write", "MultiEdit", "NotebookEdit"})
LIMIT_SUBTYPES = frozenset({"error_max_turns", "error_max_budget_usd"})
COMMAND_SUMMARY_LIMIT = 200


def _path_of(tool_name: str, tool_input: dict[str, Any]) -> str:
    for key in ("file_path", "notebook_path", "path"):
        value = tool_input.get(key)
        if isinstance(value, str) and value:
            return value
    return tool_name


def classify_tool_use(tool_name: str, tool_input: dict[str, Any] | None) -> ActivityItem | None:
    """Map one ``tool_use`` block to an activity item, if it is a side effect."""
    tool_input = tool_input or {}
    if tool_name in FILE_CHANGE_TOOLS:
        return ActivityItem(ActivityKind.FILE_CHANGE, _path_of(tool_name, tool_input))
    if tool_name == "Bash":
        command = str(tool_input.get("command") or "")
        return ActivityItem(ActivityKind.COMMAND, truncate(command, COMMAND_SUMMARY_LIMIT))
    if tool_name == "Read":
        return ActivityItem(ActivityKind.FILE_READ, _path_of(tool_name, tool_input))
    if tool_name.startswith("mcp__"):
        server, _, tool = tool_name[len("mcp__"):].partition("__")
        return ActivityItem(ActivityKind.MCP_CALL, f"{server}/{tool}" if tool else server)
    return None


def describe_message(message: dict[str, Any]) -> str:
    """One-line heartbeat description of a stream message."""
    kind = message.get("type")
    if kind == "system":
        return "system init"
    if kind == "assistant":
        return "assistant response"
    if kind == "user":
        return "user message (tool result)"
    if kind == "result":
        return f"result: {message.get('subtype')}"
    if kind == "tool_progress":
        elapsed = message.get("elapsed_time_seconds")
        suffix = f" ({elapsed}s)" if elapsed is not None else ""
        return f"tool progress: {message.get('tool_name')}{suffix}"
    return f"event: {kind}"


class ClaudeStreamState:
    """Folds stream-json messages into an EngineResult."""

    def __init__(self, model: str) -> None:
        self.model = model
        self.items: list[ActivityItem] = []
        self.session_id = ""
        self.last_text = ""
        self.result: EngineResult | None = None

    def handle(self, message: dict[str, Any], callbacks: EngineCallbacks) -> None:
        callbacks.on_heartbeat(describe_message(message))
        kind = message.get("type")

        if kind == "system":
            self.session_id = message.get("session_id") or self.session_id
            if isinstance(message.get("model"), str) and message["model"]:
                self.model = message["model"]
        elif kind == "assistant":
            self._handle_assistant(message, callbacks)
        elif kind == "result":
            self._handle_result(message)

    def _emit(self, item: ActivityItem, callbacks: EngineCallbacks) -> None:
        callbacks.on_item(item)
        self.items.append(item)

    def _handle_assistant(self, message: dict[str, Any], callbacks: EngineCallbacks) -> None:
        content = (message.get("message") or {}).get("content") or []
        texts: list[str] = []
        for block in content:
            if not isinstance(block, dict):
                continue
            if block.get("type") == "tool_use":
                item = classify_tool_use(str(block.get("name") or ""), block.get("input"))
                if item is not None:
                    self._emit(item, callbacks)
            elif block.get("type") == "text" and block.get("text"):
                texts.append(block["text"])
        if texts:
            text = "\n".join(texts)
            self.last_text = text
            self._emit(ActivityItem(ActivityKind.MESSAGE, truncate(text, 200)), callbacks)

    def _handle_result(self, message: dict[str, Any]) -> None:
        subtype = message.get("subtype") or ""
        self.session_id = message.get("session_id") or self.session_id
        metadata: dict[str, Any] = {
            "session_id": self.session_id,
            "cost_usd": message.get("total_cost_usd") or 0,
            "turns": message.get("num_turns") or 0,
            "model": self.model,
        }
        usage = message.get("usage")
        if isinstance(usage, dict):
            metadata["tokens"] = {
                "input": usage.get("input_tokens") or 0,
                "output": usage.get("output_tokens") or 0,
            }

        if subtype == "success" and not message.get("is_error"):
            response = message.get("result") or ""
        elif subtype in LIMIT_SUBTYPES:
            response = message.get("result") or self.last_text
            metadata["stop_reason"] = subtype
        else:
            errors = message.get("errors") or []
            if not errors and message.get("result"):
                errors = [message["result"]]
            detail = "; ".join(str(e) for e in errors) or "unknown error"
            raise EngineError(f"Claude agent error ({subtype or 'error'}): {detail}", engine=EngineName.CLAUDE.value)

        self.result = EngineResult(response=response, items=self.items, metadata=metadata)


class ClaudeEngine:
    """Adapter for the Claude Code CLI."""

    name = EngineName.CLAUDE

    def __init__(self, command: Sequence[str] = ("claude",)) -> None:
        self._command = list(command)

    def build_argv(self, config: RunConfig) -> list[str]:
        options = config.engine_options
        model = config.model or DEFAULT_MODEL
        permission_mode = options.get("permission_mode") or DEFAULT_PERMISSION_MODE
        max_turns = options.get("max_turns") or MAX_TURNS_BY_EFFORT.get(config.effort, 15)
        allowed_tools = list(options.get("allowed_tools") or [])

        argv = [
            *self._command,
            "-p",
            "--output-format", "stream-json",
            "--verbose",
            "--model", model,
            "--max-turns", str(max_turns),
            "--permission-mode", permission_mode,
        ]
        if permission_mode == "bypassPermissions":
            argv.append("--dangerously-skip-permissions")
        if options.get("max_budget") is not None:
            argv.extend(["--max-budget-usd", str(options["max_budget"])])
        if config.system_prompt:
            argv.extend(["--append-system-prompt", config.system_prompt])

        if config.mcp_servers:
            servers: dict[str, Any] = {}
            for name, server in config.mcp_servers.items():
                entry: dict[str, Any] = {"type": "stdio", "command": server.command, "args": list(server.args)}
                if server.env:
                    entry["env"] = dict(server.env)
                if server.cwd:
                    entry["cwd"] = server.cwd
                servers[name] = entry
                if allowed_tools:
                    allowed_tools.append(f"mcp__{name}__*")
            argv.extend(["--mcp-config", json.dumps({"mcpServers": servers})])

        if allowed_tools:
            argv.extend(["--allowedTools", ",".join(allowed_tools)])
        return argv

    async def run(self, config: RunConfig, callbacks: EngineCallbacks) -> EngineResult:
        state = ClaudeStreamState(config.model or DEFAULT_MODEL)
        callbacks.on_heartbeat("starting claude agent")
        config.token.check()

        async with EngineProcess(
            self.name.value,
            self.build_argv(config),
            token=config.token,
            cwd=config.cwd,
            stdin_text=config.prompt,
        ) as proc:
            async for message in proc.json_events():
                state.handle(message, callbacks)
                if config.token.is_cancelled:
                    break
            config.token.check()

            if state.result is not None:
                await proc.wait()
                return state.result
            await proc.check_exit()

        raise EngineError("No result message received from Claude agent", engine=self.name.value)
