"""Run configuration: validation of raw arguments into one immutable MuxConfig."""

from __future__ import annotations

import json
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from agent_mux.errors import ConfigurationError, MissingApiKeyError
from agent_mux.mcp.clusters import ClusterRegistry, get_registry
from agent_mux.prompting import (
    Skill,
    build_system_prompt,
    load_coordinator,
    read_system_prompt_file,
    resolve_skills,
)
from agent_mux.types.engine import TIMEOUT_BY_EFFORT_MS, EffortLevel, EngineName, McpServerConfig

# Load .env files
load_dotenv()

VALID_ENGINES: tuple[str, ...] = tuple(engine.value for engine in EngineName)
VALID_EFFORTS: tuple[str, ...] = tuple(effort.value for effort in EffortLevel)
BROWSER_CLUSTER = "browser"

_ENGINE_LIST = ", ".join(VALID_ENGINES)
_TIMEOUT_ERROR = "--timeout must be a positive integer in milliseconds."
_DIGITS = re.compile(r"^\d+$")


@dataclass(slots=True)
class CliArgs:
    """Raw, unvalidated values as they arrive from the command line."""

    prompt_words: tuple[str, ...] = ()
    engine: str | None = None
    cwd: str | None = None
    model: str | None = None
    effort: str | None = None
    timeout: str | None = None
    system_prompt: str | None = None
    system_prompt_file: str | None = None
    coordinator: str | None = None
    skills: tuple[str, ...] = ()
    mcp_clusters: tuple[str, ...] = ()
    browser: bool = False
    full: bool = False
    # codex
    sandbox: str | None = None
    reasoning: str | None = None
    network: bool = False
    add_dirs: tuple[str, ...] = ()
    # claude
    permission_mode: str | None = None
    max_turns: str | None = None
    max_budget: str | None = None
    allowed_tools: str | None = None
    # opencode
    variant: str | None = None
    agent: str | None = None


@dataclass(frozen=True, slots=True)
class MuxConfig:
    """Fully validated description of one run."""

    engine: EngineName
    prompt: str
    cwd: str
    effort: EffortLevel = EffortLevel.MEDIUM
    timeout_ms: int = TIMEOUT_BY_EFFORT_MS[EffortLevel.MEDIUM]
    model: str | None = None
    system_prompt: str | None = None
    skills: tuple[Skill, ...] = ()
    mcp_clusters: tuple[str, ...] = ()
    mcp_servers: dict[str, McpServerConfig] = field(default_factory=dict)
    engine_options: dict[str, Any] = field(default_factory=dict)


def parse_engine(value: str | None) -> EngineName:
    if not value:
        raise ConfigurationError(f"--engine is required. Use: {_ENGINE_LIST}")
    if value not in VALID_ENGINES:
        raise ConfigurationError(f"Invalid engine: {value}. Use: {_ENGINE_LIST}")
    return EngineName(value)


def parse_timeout(value: str | None, effort: EffortLevel) -> int:
    if value is None:
        return TIMEOUT_BY_EFFORT_MS[effort]
    text = value.strip()
    if not _DIGITS.match(text) or int(text) <= 0:
        raise ConfigurationError(_TIMEOUT_ERROR)
    return int(text)


def _positive_int(value: str | None) -> int | None:
    if value is None:
        return None
    try:
        parsed = int(value.strip())
    except ValueError:
        return None
    return parsed if parsed > 0 else None


def _positive_float(value: str | None) -> float | None:
    if value is None:
        return None
    try:
        parsed = float(value.strip())
    except ValueError:
        return None
    return parsed if parsed > 0 and parsed != float("inf") else None


def _split_tools(value: str | None) -> list[str]:
    if not value:
        return []
    return [tool.strip() for tool in value.split(",") if tool.strip()]


def _dedupe(items: list[str]) -> list[str]:
    return list(dict.fromkeys(items))


def build_engine_options(
    engine: EngineName,
    args: CliArgs,
    *,
    skills: list[Skill],
    coordinator_tools: tuple[str, ...] = (),
) -> dict[str, Any]:
    """The option bag for the selected engine only."""
    options: dict[str, Any] = {}
    full = args.full

    if engine == EngineName.CODEX:
        options["sandbox"] = "danger-full-access" if full else (args.sandbox or "read-only")
        options["reasoning"] = args.reasoning or "medium"
        options["network"] = full or args.network
        options["add_dirs"] = [*args.add_dirs, *(skill.dir for skill in skills)]

    elif engine == EngineName.CLAUDE:
        options["permission_mode"] = (
            "bypassPermissions" if full else (args.permission_mode or "bypassPermissions")
        )
        max_turns = _positive_int(args.max_turns)
        if max_turns is not None:
            options["max_turns"] = max_turns
        max_budget = _positive_float(args.max_budget)
        if max_budget is not None:
            options["max_budget"] = max_budget
        tools = _dedupe([*coordinator_tools, *_split_tools(args.allowed_tools)])
        if tools:
            options["allowed_tools"] = tools
        options["full"] = full

    elif engine == EngineName.OPENCODE:
        if args.variant:
            options["variant"] = args.variant
        if args.agent:
            options["agent"] = args.agent

    return options


def load_config(args: CliArgs, *, registry: ClusterRegistry | None = None) -> MuxConfig:
    """Validate raw arguments. Raises ConfigurationError on any problem."""
    engine = parse_engine(args.engine)

    prompt = " ".join(args.prompt_words).strip()
    if not prompt:
        raise ConfigurationError("A prompt is required.", engine=engine)

    effort_value = args.effort or EffortLevel.MEDIUM.value
    if effort_value not in VALID_EFFORTS:
        raise ConfigurationError(
            f"Invalid effort: {effort_value}. Use: {', '.join(VALID_EFFORTS)}", engine=engine
        )
    effort = EffortLevel(effort_value)

    try:
        timeout_ms = parse_timeout(args.timeout, effort)

        clusters = list(args.mcp_clusters)
        if args.browser and BROWSER_CLUSTER not in clusters:
            clusters.append(BROWSER_CLUSTER)
        mcp_servers = (registry or get_registry()).resolve(clusters) if clusters else {}

        cwd = args.cwd or os.getcwd()
        if not os.path.isdir(cwd):
            raise ConfigurationError(f"Working directory not found or not a directory: {cwd}")

        coordinator = load_coordinator(cwd, args.coordinator) if args.coordinator else None
        skill_names = [*(coordinator.skills if coordinator else ()), *args.skills]
        skills = resolve_skills(cwd, skill_names)

        file_prompt = (
            read_system_prompt_file(cwd, args.system_prompt_file) if args.system_prompt_file else None
        )
        system_prompt = build_system_prompt(
            coordinator.body if coordinator else None,
            file_prompt,
            args.system_prompt,
        )
    except ConfigurationError as exc:
        if exc.engine is None:
            exc.engine = engine
        raise

    model = args.model or (coordinator.model if coordinator else None) or None

    return MuxConfig(
        engine=engine,
        prompt=prompt,
        cwd=cwd,
        effort=effort,
        timeout_ms=timeout_ms,
        model=model,
        system_prompt=system_prompt,
        skills=tuple(skills),
        mcp_clusters=tuple(clusters),
        mcp_servers=mcp_servers,
        engine_options=build_engine_options(
            engine,
            args,
            skills=skills,
            coordinator_tools=coordinator.allowed_tools if coordinator else (),
        ),
    )


# --- API key pre-flight ---


@dataclass(frozen=True, slots=True)
class ApiKeySpec:
    env_var: str
    hard_error: bool
    hint: str


API_KEY_MAP: dict[EngineName, ApiKeySpec] = {
    EngineName.CODEX: ApiKeySpec(
        env_var="OPENAI_API_KEY",
        hard_error=False,
        hint="Get one at https://platform.openai.com/api-keys — or run `codex auth` to set up OAuth device auth",
    ),
    EngineName.CLAUDE: ApiKeySpec(
        env_var="ANTHROPIC_API_KEY",
        hard_error=False,
        hint="Get one at https://console.anthropic.com/ — or use Claude Code device OAuth",
    ),
    EngineName.OPENCODE: ApiKeySpec(
        env_var="OPENROUTER_API_KEY",
        hard_error=False,
        hint="Get one at https://openrouter.ai/keys — or configure provider keys directly in OpenCode",
    ),
}


def has_codex_oauth(home: Path | None = None) -> bool:
    """True if ``~/.codex/auth.json`` holds an OAuth access token."""
    auth_path = (home or Path.home()) / ".codex" / "auth.json"
    try:
        auth = json.loads(auth_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return False
    tokens = auth.get("tokens") if isinstance(auth, dict) else None
    return isinstance(tokens, dict) and bool(tokens.get("access_token"))


def check_api_key(
    engine: EngineName,
    *,
    environ: dict[str, str] | None = None,
    home: Path | None = None,
) -> str | None:
    """Check credentials for ``engine``.

    Returns a warning message when a soft requirement is missing, None when
    all is well. Raises MissingApiKeyError for hard requirements.
    """
    spec = API_KEY_MAP[engine]
    env = environ if environ is not None else os.environ
    if env.get(spec.env_var, "").strip():
        return None
    if engine == EngineName.CODEX and has_codex_oauth(home):
        return None

    message = f"{spec.env_var} is not set. {spec.hint}"
    if spec.hard_error:
        raise MissingApiKeyError(message, engine=engine.value, env_var=spec.env_var)
    return message
