"""OpenCode engine: runs ``opencode serve`` and talks to it over HTTP.

Flow: start the server and wait for its listening URL, create a session,
subscribe to the global SSE event stream, send the prompt asynchronously and
fold events until our session goes idle. When the event stream cannot be
opened the synchronous message endpoint is used instead. Cancellation aborts
the session and closes the stream; the server is always torn down.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import re
from collections.abc import AsyncIterator, Sequence
from pathlib import Path
from typing import TYPE_CHECKING, Any

import httpx

from agent_mux.engines.base import EngineProcess, child_env, truncate
from agent_mux.errors import EngineError
from agent_mux.mcp.clusters import to_opencode_mcp
from agent_mux.types.activity import ActivityItem, ActivityKind
from agent_mux.types.engine import EngineCallbacks, EngineName, EngineResult, RunConfig

if TYPE_CHECKING:
    from agent_mux.core.cancellation import CancellationToken

logger = logging.getLogger(__name__)

ENGINE = EngineName.OPENCODE.value
DEFAULT_MODEL = "openrouter/moonshotai/kimi-k2.5"
DEFAULT_PROVIDER = "openrouter"
DEFAULT_HOSTNAME = "127.0.0.1"
DEFAULT_PORT = 4096
SERVER_STARTUP_TIMEOUT_SECONDS = 30.0
NO_TEXT_RESPONSE = "(no text response)"

MODEL_PRESETS: dict[str, str] = {
    # Kimi
    "kimi": "openrouter/moonshotai/kimi-k2.5",
    "kimi-k2.5": "openrouter/moonshotai/kimi-k2.5",
    "kimi-k2": "openrouter/moonshotai/kimi-k2",
    "kimi-k2-thinking": "openrouter/moonshotai/kimi-k2-thinking",
    "kimi-dev": "openrouter/moonshotai/kimi-dev-72b:free",
    "kimi-free": "openrouter/moonshotai/kimi-k2:free",
    # GLM
    "glm": "openrouter/z-ai/glm-5",
    "glm-5": "openrouter/z-ai/glm-5",
    "glm-4.7": "openrouter/z-ai/glm-4.7",
    "glm-4.7-flash": "openrouter/z-ai/glm-4.7-flash",
    "glm-4.6": "openrouter/z-ai/glm-4.6",
    "glm-4.5": "openrouter/z-ai/glm-4.5",
    "glm-free": "openrouter/z-ai/glm-4.5-air:free",
    # DeepSeek
    "deepseek": "openrouter/deepseek/deepseek-v3.2",
    "deepseek-r1": "openrouter/deepseek/deepseek-r1:free",
    "deepseek-v3.2": "openrouter/deepseek/deepseek-v3.2",
    # Qwen
    "qwen": "openrouter/qwen/qwen3-coder",
    "qwen-coder": "openrouter/qwen/qwen3-coder",
    "qwen-max": "openrouter/qwen/qwen3-max",
    # OpenCode native
    "opencode-kimi": "opencode/kimi-k2.5-free",
    "opencode-minimax": "opencode/minimax-m2.5-free",
    "free": "openrouter/z-ai/glm-4.5-air:free",
}

FILE_CHANGE_TOOLS = frozenset({"edit", "write", "patch", "multiedit"})

_LISTENING = re.compile(r"opencode server listening.*?\bon\s+(https?://\S+)", re.IGNORECASE)


def resolve_model(value: str) -> tuple[str, str, str]:
    """Resolve a preset or ``provider/model`` string to (provider, model, full)."""
    resolved = MODEL_PRESETS.get(value, value)
    provider, sep, model = resolved.partition("/")
    if not sep:
        return DEFAULT_PROVIDER, resolved, f"{DEFAULT_PROVIDER}/{resolved}"
    return provider, model, resolved


def classify_tool_part(part: dict[str, Any]) -> ActivityItem:
    """Map a completed tool part to an activity item."""
    tool = str(part.get("tool") or part.get("toolName") or "unknown")
    state = part.get("state") if isinstance(part.get("state"), dict) else {}
    tool_input = state.get("input") if isinstance(state.get("input"), dict) else {}
    path = tool_input.get("filePath") or tool_input.get("file_path") or tool_input.get("path")

    if tool == "bash":
        return ActivityItem(ActivityKind.COMMAND, truncate(str(tool_input.get("command") or ""), 200))
    if tool in FILE_CHANGE_TOOLS:
        return ActivityItem(ActivityKind.FILE_CHANGE, str(path or tool))
    if tool == "read":
        return ActivityItem(ActivityKind.FILE_READ, str(path or tool))
    return ActivityItem(ActivityKind.MCP_CALL, tool)


def _is_tool_part(part: dict[str, Any]) -> bool:
    return part.get("type") in ("tool", "tool-invocation")


def _tool_part_finished(part: dict[str, Any]) -> bool:
    if part.get("type") == "tool-invocation":
        return True
    state = part.get("state")
    return isinstance(state, dict) and state.get("status") in ("completed", "error")


def _tokens(data: Any) -> dict[str, int]:
    data = data if isinstance(data, dict) else {}
    return {
        "input": data.get("input") or 0,
        "output": data.get("output") or 0,
        "reasoning": data.get("reasoning") or 0,
    }


class OpenCodeEventState:
    """Folds global SSE events for one session into an EngineResult."""

    def __init__(self, session_id: str, model: str) -> None:
        self.session_id = session_id
        self.model = model
        self.items: list[ActivityItem] = []
        self.text_parts: dict[str, str] = {}
        self.cost: float = 0
        self.tokens = _tokens(None)
        self.idle = False
        self._seen_tools: set[str] = set()

    def emit(self, item: ActivityItem, callbacks: EngineCallbacks) -> None:
        callbacks.on_item(item)
        self.items.append(item)

    def handle(self, event: dict[str, Any], callbacks: EngineCallbacks) -> bool:
        """Apply one event. Returns True once our session is idle."""
        payload = event.get("payload") if isinstance(event.get("payload"), dict) else event
        kind = str(payload.get("type") or "")
        props = payload.get("properties") if isinstance(payload.get("properties"), dict) else payload
        callbacks.on_heartbeat(f"event: {kind}")

        if kind == "message.part.updated":
            part = props.get("part")
            if isinstance(part, dict) and part.get("sessionID") == self.session_id:
                self._handle_part(part, callbacks)
        elif kind == "message.updated":
            info = props.get("info")
            if isinstance(info, dict) and info.get("role") == "assistant" and info.get("sessionID") == self.session_id:
                self.cost = info.get("cost") or self.cost
                if info.get("tokens"):
                    self.tokens = _tokens(info["tokens"])
        elif kind == "session.idle":
            if props.get("sessionID") == self.session_id:
                self.idle = True
        elif kind == "session.error":
            if props.get("sessionID") == self.session_id:
                raise EngineError(f"OpenCode session error: {json.dumps(props)}", engine=ENGINE)
        return self.idle

    def _handle_part(self, part: dict[str, Any], callbacks: EngineCallbacks) -> None:
        part_id = str(part.get("id") or "default")
        if part.get("type") == "text":
            text = str(part.get("text") or "")
            self.text_parts[part_id] = text
            self.emit(ActivityItem(ActivityKind.MESSAGE, truncate(text, 200)), callbacks)
        elif _is_tool_part(part) and _tool_part_finished(part) and part_id not in self._seen_tools:
            self._seen_tools.add(part_id)
            self.emit(classify_tool_part(part), callbacks)

    @property
    def text(self) -> str:
        return "\n".join(self.text_parts.values()).strip()

    def to_result(self, response: str) -> EngineResult:
        return EngineResult(
            response=response or NO_TEXT_RESPONSE,
            items=self.items,
            metadata={
                "session_id": self.session_id,
                "cost_usd": self.cost,
                "tokens": self.tokens,
                "model": self.model,
            },
        )


class OpenCodeClient:
    """Thin async HTTP client for the OpenCode server API."""

    def __init__(self, http: httpx.AsyncClient, directory: str) -> None:
        self._http = http
        self._params = {"directory": directory}

    async def _post(self, path: str, body: dict[str, Any] | None = None) -> httpx.Response:
        response = await self._http.post(path, params=self._params, json=body or {})
        if response.status_code >= 400:
            raise EngineError(
                f"OpenCode API error {response.status_code} on {path}: {truncate(response.text, 500)}",
                engine=ENGINE,
            )
        return response

    async def create_session(self) -> str:
        data = (await self._post("/session")).json()
        session_id = data.get("id") if isinstance(data, dict) else None
        if not session_id:
            raise EngineError("Session creation returned no data", engine=ENGINE)
        return str(session_id)

    async def open_events(self) -> httpx.Response:
        """Open the global SSE stream. The caller must close the response."""
        request = self._http.build_request("GET", "/global/event", params=self._params)
        response = await self._http.send(request, stream=True)
        if response.status_code >= 400:
            await response.aclose()
            raise EngineError(f"OpenCode event stream unavailable ({response.status_code})", engine=ENGINE)
        return response

    @staticmethod
    async def iter_events(response: httpx.Response) -> AsyncIterator[dict[str, Any]]:
        async for line in response.aiter_lines():
            if not line.startswith("data:"):
                continue
            try:
                event = json.loads(line[len("data:"):].strip())
            except json.JSONDecodeError:
                continue
            if isinstance(event, dict):
                yield event

    async def prompt_async(self, session_id: str, body: dict[str, Any]) -> None:
        await self._post(f"/session/{session_id}/prompt_async", body)

    async def prompt(self, session_id: str, body: dict[str, Any]) -> dict[str, Any]:
        data = (await self._post(f"/session/{session_id}/message", body)).json()
        if not isinstance(data, dict):
            raise EngineError("Prompt returned no data", engine=ENGINE)
        return data

    async def messages(self, session_id: str) -> list[dict[str, Any]]:
        response = await self._http.get(f"/session/{session_id}/message", params=self._params)
        if response.status_code >= 400:
            return []
        data = response.json()
        return data if isinstance(data, list) else []

    async def abort(self, session_id: str) -> None:
        await self._post(f"/session/{session_id}/abort")


class OpenCodeServer:
    """``opencode serve`` child process, as an async context manager."""

    def __init__(
        self,
        token: CancellationToken,
        *,
        command: Sequence[str] = ("opencode",),
        hostname: str = DEFAULT_HOSTNAME,
        port: int = DEFAULT_PORT,
        config: dict[str, Any] | None = None,
        startup_timeout: float = SERVER_STARTUP_TIMEOUT_SECONDS,
    ) -> None:
        self._token = token
        self._startup_timeout = startup_timeout
        extra = {"PATH": os.pathsep.join([str(Path.home() / ".opencode" / "bin"), os.environ.get("PATH", "")])}
        if config:
            extra["OPENCODE_CONFIG_CONTENT"] = json.dumps(config)
        self._process = EngineProcess(
            ENGINE,
            [*command, "serve", f"--hostname={hostname}", f"--port={port}"],
            token=token,
            env=child_env(extra),
        )
        self._drain: asyncio.Task[None] | None = None
        self.url = ""

    async def __aenter__(self) -> OpenCodeServer:
        await self._process.start()
        try:
            self.url = await asyncio.wait_for(self._read_url(), timeout=self._startup_timeout)
        except TimeoutError:
            await self._process.close()
            self._token.check()
            raise EngineError(
                f"Timeout waiting for opencode server to start after {int(self._startup_timeout * 1000)}ms",
                engine=ENGINE,
            ) from None
        except BaseException:
            await self._process.close()
            raise
        self._drain = asyncio.create_task(self._drain_output())
        logger.debug("opencode server listening at %s", self.url)
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        if self._drain is not None:
            self._drain.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._drain
        await self._process.close()

    async def _read_url(self) -> str:
        async for line in self._process.lines():
            match = _LISTENING.search(line)
            if match:
                return match.group(1)
        self._token.check()
        tail = self._process.stderr_tail
        raise EngineError(
            f"opencode server exited before listening{': ' + truncate(tail, 500) if tail else ''}",
            engine=ENGINE,
        )

    async def _drain_output(self) -> None:
        async for _ in self._process.lines():
            pass


class OpenCodeEngine:
    """Adapter for OpenCode."""

    name = EngineName.OPENCODE

    def __init__(
        self,
        command: Sequence[str] = ("opencode",),
        *,
        hostname: str = DEFAULT_HOSTNAME,
        port: int = DEFAULT_PORT,
    ) -> None:
        self._command = list(command)
        self._hostname = hostname
        self._port = port

    @staticmethod
    def prompt_body(config: RunConfig, provider_id: str, model_id: str) -> dict[str, Any]:
        body: dict[str, Any] = {
            "parts": [{"type": "text", "text": config.prompt}],
            "model": {"providerID": provider_id, "modelID": model_id},
        }
        if config.system_prompt:
            body["system"] = config.system_prompt
        if config.engine_options.get("agent"):
            body["agent"] = config.engine_options["agent"]
        return body

    async def run(self, config: RunConfig, callbacks: EngineCallbacks) -> EngineResult:
        server_config = {"mcp": to_opencode_mcp(config.mcp_servers)} if config.mcp_servers else None

        callbacks.on_heartbeat("starting opencode server")
        config.token.check()
        async with OpenCodeServer(
            config.token,
            command=self._command,
            hostname=self._hostname,
            port=self._port,
            config=server_config,
        ) as server:
            async with httpx.AsyncClient(
                base_url=server.url,
                timeout=httpx.Timeout(30.0, read=None),
            ) as http:
                return await self.run_with_client(OpenCodeClient(http, config.cwd), config, callbacks)

    async def run_with_client(
        self,
        client: OpenCodeClient,
        config: RunConfig,
        callbacks: EngineCallbacks,
    ) -> EngineResult:
        variant = config.engine_options.get("variant")
        provider_id, model_id, full_model = resolve_model(config.model or variant or DEFAULT_MODEL)
        body = self.prompt_body(config, provider_id, model_id)

        config.token.check()
        callbacks.on_heartbeat("creating session")
        try:
            session_id = await client.create_session()
        except httpx.HTTPError as exc:
            config.token.check()
            raise EngineError(f"Failed to create session: {exc}", engine=ENGINE) from exc

        config.token.check()
        callbacks.on_heartbeat("subscribing to events")
        try:
            events = await client.open_events()
        except (httpx.HTTPError, EngineError) as exc:
            logger.debug("SSE unavailable, falling back to sync prompt: %s", exc)
            return await self._run_sync(client, session_id, body, full_model, config, callbacks)

        state = OpenCodeEventState(session_id, full_model)
        watcher = asyncio.create_task(self._abort_on_cancel(client, session_id, events, config.token))
        try:
            config.token.check()
            callbacks.on_heartbeat("sending prompt")
            await client.prompt_async(session_id, body)
            async for event in client.iter_events(events):
                if config.token.is_cancelled or state.handle(event, callbacks):
                    break
        except (httpx.HTTPError, httpx.StreamError) as exc:
            config.token.check()
            raise EngineError(f"OpenCode connection lost: {exc}", engine=ENGINE) from exc
        finally:
            watcher.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await watcher
            await events.aclose()

        config.token.check()
        text = state.text or await self._fetch_text(client, session_id)
        return state.to_result(text)

    async def _abort_on_cancel(
        self,
        client: OpenCodeClient,
        session_id: str,
        events: httpx.Response,
        token: CancellationToken,
    ) -> None:
        await token.wait()
        logger.debug("Aborting opencode session %s", session_id)
        try:
            await client.abort(session_id)
        except (httpx.HTTPError, EngineError) as exc:
            logger.debug("Session abort failed: %s", exc)
        await events.aclose()

    async def _run_sync(
        self,
        client: OpenCodeClient,
        session_id: str,
        body: dict[str, Any],
        full_model: str,
        config: RunConfig,
        callbacks: EngineCallbacks,
    ) -> EngineResult:
        callbacks.on_heartbeat("using sync prompt (SSE unavailable)")
        config.token.check()
        try:
            data = await client.prompt(session_id, body)
        except httpx.HTTPError as exc:
            config.token.check()
            raise EngineError(f"Prompt failed: {exc}", engine=ENGINE) from exc

        state = OpenCodeEventState(session_id, full_model)
        texts: list[str] = []
        for part in data.get("parts") or []:
            if not isinstance(part, dict):
                continue
            if part.get("type") == "text" and part.get("text"):
                texts.append(str(part["text"]))
            elif _is_tool_part(part):
                state.emit(classify_tool_part(part), callbacks)

        info = data.get("info") if isinstance(data.get("info"), dict) else {}
        state.cost = info.get("cost") or 0
        state.tokens = _tokens(info.get("tokens"))

        text = "\n".join(texts).strip() or await self._fetch_text(client, session_id)
        return state.to_result(text)

    async def _fetch_text(self, client: OpenCodeClient, session_id: str) -> str:
        """Assistant text from the session history; empty on any failure."""
        try:
            messages = await client.messages(session_id)
        except (httpx.HTTPError, ValueError) as exc:
            logger.debug("Could not fetch opencode messages: %s", exc)
            return ""
        texts: list[str] = []
        for message in messages:
            if (message.get("info") or {}).get("role") != "assistant":
                continue
            for part in message.get("parts") or []:
                if isinstance(part, dict) and part.get("type") == "text" and part.get("text"):
                    texts.append(str(part["text"]))
        return "\n".join(texts).strip()
