"""Tests for argument validation and API key pre-flight."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from agent_mux.config import (
    CliArgs,
    build_engine_options,
    check_api_key,
    has_codex_oauth,
    load_config,
    parse_engine,
    parse_timeout,
)
from agent_mux.errors import ConfigurationError, MissingApiKeyError
from agent_mux.mcp.clusters import ClusterRegistry
from agent_mux.types.engine import TIMEOUT_BY_EFFORT_MS, EffortLevel, EngineName

CLUSTERS_YAML = """\
clusters:
  browser:
    description: Headless browser
    servers:
      agent-browser:
        command: node
        args: [browser.mjs]
  search:
    servers:
      web-search:
        command: search-mcp
"""


def _args(workspace: Path, *words: str, **kwargs: object) -> CliArgs:
    kwargs.setdefault("engine", "codex")
    return CliArgs(prompt_words=words or ("fix", "it"), cwd=str(workspace), **kwargs)  # type: ignore[arg-type]


def _skill(workspace: Path, name: str, content: str = "Skill body", *, scripts: bool = False) -> Path:
    directory = workspace / ".claude" / "skills" / name
    directory.mkdir(parents=True)
    (directory / "SKILL.md").write_text(content, encoding="utf-8")
    if scripts:
        (directory / "scripts").mkdir()
    return directory


@pytest.fixture
def registry(tmp_path: Path) -> ClusterRegistry:
    path = tmp_path / "mcp-clusters.yaml"
    path.write_text(CLUSTERS_YAML, encoding="utf-8")
    return ClusterRegistry(search_paths=[path])


class TestParseEngine:
    def test_missing(self) -> None:
        with pytest.raises(ConfigurationError, match="--engine is required"):
            parse_engine(None)

    def test_unknown(self) -> None:
        with pytest.raises(ConfigurationError, match="Invalid engine: gemini"):
            parse_engine("gemini")

    def test_valid(self) -> None:
        assert parse_engine("opencode") is EngineName.OPENCODE


class TestParseTimeout:
    @pytest.mark.parametrize("effort", list(EffortLevel))
    def test_default_scales_with_effort(self, effort: EffortLevel) -> None:
        assert parse_timeout(None, effort) == TIMEOUT_BY_EFFORT_MS[effort]

    def test_explicit(self) -> None:
        assert parse_timeout(" 5000 ", EffortLevel.LOW) == 5000

    @pytest.mark.parametrize("value", ["0", "-5", "1.5", "abc", "", "10s"])
    def test_rejects_non_positive_integers(self, value: str) -> None:
        with pytest.raises(ConfigurationError, match="--timeout must be a positive integer"):
            parse_timeout(value, EffortLevel.MEDIUM)


class TestLoadConfig:
    def test_minimal(self, claude_workspace: Path) -> None:
        config = load_config(_args(claude_workspace, "  hello", "world  "))
        assert config.engine is EngineName.CODEX
        assert config.prompt == "hello world"
        assert config.cwd == str(claude_workspace)
        assert config.effort is EffortLevel.MEDIUM
        assert config.timeout_ms == 600_000
        assert config.model is None
        assert config.system_prompt is None
        assert config.skills == ()
        assert config.mcp_servers == {}

    def test_missing_prompt_keeps_engine(self, claude_workspace: Path) -> None:
        with pytest.raises(ConfigurationError, match="A prompt is required") as excinfo:
            load_config(_args(claude_workspace, "   ", engine="claude"))
        assert excinfo.value.engine == "claude"

    def test_invalid_effort(self, claude_workspace: Path) -> None:
        with pytest.raises(ConfigurationError, match="Invalid effort: extreme"):
            load_config(_args(claude_workspace, effort="extreme"))

    def test_effort_scales_timeout(self, claude_workspace: Path) -> None:
        config = load_config(_args(claude_workspace, effort="high"))
        assert config.timeout_ms == 1_200_000

    def test_explicit_timeout_wins(self, claude_workspace: Path) -> None:
        config = load_config(_args(claude_workspace, effort="xhigh", timeout="90000"))
        assert config.timeout_ms == 90_000

    def test_bad_timeout_error_names_engine(self, claude_workspace: Path) -> None:
        with pytest.raises(ConfigurationError) as excinfo:
            load_config(_args(claude_workspace, engine="opencode", timeout="soon"))
        assert excinfo.value.engine == "opencode"

    def test_default_cwd_is_process_cwd(self, claude_workspace: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.chdir(claude_workspace)
        config = load_config(CliArgs(prompt_words=("x",), engine="codex"))
        assert config.cwd == str(claude_workspace)

    def test_system_prompt_only(self, claude_workspace: Path) -> None:
        config = load_config(_args(claude_workspace, system_prompt="  Be brief.  "))
        assert config.system_prompt == "Be brief."

    def test_missing_cwd(self, claude_workspace: Path) -> None:
        with pytest.raises(ConfigurationError, match="Working directory not found") as excinfo:
            load_config(_args(claude_workspace / "nope", engine="claude"))
        assert excinfo.value.engine == "claude"

    def test_cwd_must_be_a_directory(self, claude_workspace: Path) -> None:
        (claude_workspace / "notes.txt").write_text("x", encoding="utf-8")
        with pytest.raises(ConfigurationError, match="not a directory"):
            load_config(_args(claude_workspace / "notes.txt"))


class TestSystemPromptFile:
    def test_relative_to_cwd(self, claude_workspace: Path) -> None:
        (claude_workspace / "prompts").mkdir()
        (claude_workspace / "prompts" / "sys.md").write_text("From file.\n", encoding="utf-8")
        config = load_config(
            _args(claude_workspace, system_prompt_file="prompts/sys.md", system_prompt="Inline.")
        )
        assert config.system_prompt == "From file.\n\nInline."

    def test_missing_file(self, claude_workspace: Path) -> None:
        with pytest.raises(ConfigurationError, match="System prompt file not found"):
            load_config(_args(claude_workspace, system_prompt_file="nope.md"))

    def test_directory_is_rejected(self, claude_workspace: Path) -> None:
        (claude_workspace / "prompts").mkdir()
        with pytest.raises(ConfigurationError, match="is not a file"):
            load_config(_args(claude_workspace, system_prompt_file="prompts"))

    def test_undecodable_file(self, claude_workspace: Path) -> None:
        (claude_workspace / "sys.md").write_bytes(b"\xff\xfe")
        with pytest.raises(ConfigurationError, match="Cannot read system prompt file 'sys.md'"):
            load_config(_args(claude_workspace, system_prompt_file="sys.md"))


class TestCoordinator:
    def _write(self, workspace: Path, name: str, text: str) -> None:
        (workspace / ".claude" / "agents" / f"{name}.md").write_text(text, encoding="utf-8")

    def test_full_composition(self, claude_workspace: Path) -> None:
        _skill(claude_workspace, "review", "Review carefully.")
        _skill(claude_workspace, "tests", "Write tests.")
        self._write(
            claude_workspace,
            "lead",
            "---\nskills: [review]\nmodel: opus\nallowedTools: Read, Grep\n---\n\nYou coordinate.\n",
        )
        (claude_workspace / "sys.md").write_text("File prompt.", encoding="utf-8")

        config = load_config(
            _args(
                claude_workspace,
                engine="claude",
                coordinator="lead",
                skills=("tests", "review"),
                system_prompt_file="sys.md",
                system_prompt="Inline prompt.",
                allowed_tools="Grep,Bash",
            )
        )

        assert config.system_prompt == "You coordinate.\n\nFile prompt.\n\nInline prompt."
        assert [skill.name for skill in config.skills] == ["review", "tests"]
        assert config.model == "opus"
        assert config.engine_options["allowed_tools"] == ["Read", "Grep", "Bash"]

    def test_cli_model_beats_coordinator(self, claude_workspace: Path) -> None:
        self._write(claude_workspace, "lead", "---\nmodel: opus\n---\nBody")
        config = load_config(_args(claude_workspace, coordinator="lead", model="sonnet"))
        assert config.model == "sonnet"

    def test_name_with_md_suffix(self, claude_workspace: Path) -> None:
        self._write(claude_workspace, "lead", "Plain body, no frontmatter.")
        config = load_config(_args(claude_workspace, coordinator="lead.md"))
        assert config.system_prompt == "Plain body, no frontmatter."

    def test_missing(self, claude_workspace: Path) -> None:
        with pytest.raises(ConfigurationError, match="Coordinator 'ghost' not found"):
            load_config(_args(claude_workspace, coordinator="ghost"))

    def test_traversal(self, claude_workspace: Path) -> None:
        with pytest.raises(ConfigurationError, match="path traversal detected") as excinfo:
            load_config(_args(claude_workspace, engine="claude", coordinator="../../etc/passwd"))
        assert excinfo.value.engine == "claude"

    def test_bad_skills_type(self, claude_workspace: Path) -> None:
        self._write(claude_workspace, "lead", "---\nskills: review\n---\nBody")
        with pytest.raises(ConfigurationError, match="frontmatter.skills must be a string array"):
            load_config(_args(claude_workspace, coordinator="lead"))

    def test_unclosed_frontmatter(self, claude_workspace: Path) -> None:
        self._write(claude_workspace, "lead", "---\nmodel: opus\nBody")
        with pytest.raises(ConfigurationError, match="missing closing --- marker"):
            load_config(_args(claude_workspace, coordinator="lead"))


class TestSkills:
    def test_dedupe_preserves_first_order(self, claude_workspace: Path) -> None:
        _skill(claude_workspace, "a")
        _skill(claude_workspace, "b")
        config = load_config(_args(claude_workspace, skills=("b", "a", "b")))
        assert [skill.name for skill in config.skills] == ["b", "a"]

    def test_missing_skill(self, claude_workspace: Path) -> None:
        with pytest.raises(ConfigurationError, match="Skill 'nope' not found"):
            load_config(_args(claude_workspace, skills=("nope",)))

    @pytest.mark.parametrize("name", ["../escape", "..", ".", "a/../../b"])
    def test_traversal_rejected(self, claude_workspace: Path, name: str) -> None:
        with pytest.raises(ConfigurationError, match="path traversal detected"):
            load_config(_args(claude_workspace, skills=(name,)))

    def test_symlinked_skill_is_followed(self, claude_workspace: Path, tmp_path_factory: pytest.TempPathFactory) -> None:
        outside = tmp_path_factory.mktemp("shared") / "linked"
        outside.mkdir()
        (outside / "SKILL.md").write_text("Shared skill", encoding="utf-8")
        (claude_workspace / ".claude" / "skills" / "linked").symlink_to(outside, target_is_directory=True)

        config = load_config(_args(claude_workspace, skills=("linked",)))
        assert config.skills[0].content == "Shared skill"

    def test_codex_add_dirs_include_skill_dirs(self, claude_workspace: Path) -> None:
        skill_dir = _skill(claude_workspace, "a", scripts=True)
        config = load_config(_args(claude_workspace, skills=("a",), add_dirs=("/data",)))
        assert config.engine_options["add_dirs"] == ["/data", str(skill_dir)]
        assert config.skills[0].has_scripts is True


class TestMcpClusters:
    def test_resolve_named(self, claude_workspace: Path, registry: ClusterRegistry) -> None:
        config = load_config(_args(claude_workspace, mcp_clusters=("search",)), registry=registry)
        assert list(config.mcp_servers) == ["web-search"]
        assert config.mcp_clusters == ("search",)

    def test_browser_flag_adds_cluster_once(self, claude_workspace: Path, registry: ClusterRegistry) -> None:
        config = load_config(
            _args(claude_workspace, mcp_clusters=("browser",), browser=True), registry=registry
        )
        assert config.mcp_clusters == ("browser",)
        assert list(config.mcp_servers) == ["agent-browser"]

    def test_all(self, claude_workspace: Path, registry: ClusterRegistry) -> None:
        config = load_config(_args(claude_workspace, mcp_clusters=("all",)), registry=registry)
        assert sorted(config.mcp_servers) == ["agent-browser", "web-search"]

    def test_unknown_cluster(self, claude_workspace: Path, registry: ClusterRegistry) -> None:
        with pytest.raises(ConfigurationError, match="Unknown MCP cluster: 'nope'"):
            load_config(_args(claude_workspace, mcp_clusters=("nope",)), registry=registry)


class TestEngineOptions:
    def test_codex_defaults(self) -> None:
        options = build_engine_options(EngineName.CODEX, CliArgs(), skills=[])
        assert options == {"sandbox": "read-only", "reasoning": "medium", "network": False, "add_dirs": []}

    def test_codex_full_mode(self) -> None:
        options = build_engine_options(
            EngineName.CODEX, CliArgs(full=True, sandbox="workspace-write"), skills=[]
        )
        assert options["sandbox"] == "danger-full-access"
        assert options["network"] is True

    def test_claude_numbers(self) -> None:
        options = build_engine_options(
            EngineName.CLAUDE, CliArgs(max_turns="12", max_budget="2.5", permission_mode="plan"), skills=[]
        )
        assert options["max_turns"] == 12
        assert options["max_budget"] == 2.5
        assert options["permission_mode"] == "plan"
        assert options["full"] is False

    def test_claude_ignores_bad_numbers(self) -> None:
        options = build_engine_options(
            EngineName.CLAUDE, CliArgs(max_turns="-3", max_budget="lots"), skills=[]
        )
        assert "max_turns" not in options
        assert "max_budget" not in options

    def test_claude_full_forces_bypass(self) -> None:
        options = build_engine_options(EngineName.CLAUDE, CliArgs(full=True, permission_mode="plan"), skills=[])
        assert options["permission_mode"] == "bypassPermissions"
        assert options["full"] is True

    def test_opencode_only_gets_its_own_options(self) -> None:
        options = build_engine_options(
            EngineName.OPENCODE, CliArgs(variant="high", agent="build", sandbox="read-only"), skills=[]
        )
        assert options == {"variant": "high", "agent": "build"}


class TestCheckApiKey:
    def test_key_present(self, tmp_path: Path) -> None:
        assert check_api_key(EngineName.CLAUDE, environ={"ANTHROPIC_API_KEY": "sk"}, home=tmp_path) is None

    @pytest.mark.parametrize(
        ("engine", "env_var"),
        [
            (EngineName.CODEX, "OPENAI_API_KEY"),
            (EngineName.CLAUDE, "ANTHROPIC_API_KEY"),
            (EngineName.OPENCODE, "OPENROUTER_API_KEY"),
        ],
    )
    def test_missing_key_is_a_warning(self, tmp_path: Path, engine: EngineName, env_var: str) -> None:
        warning = check_api_key(engine, environ={env_var: "  "}, home=tmp_path)
        assert warning is not None
        assert warning.startswith(f"{env_var} is not set.")

    def test_codex_oauth_satisfies(self, tmp_path: Path) -> None:
        (tmp_path / ".codex").mkdir()
        (tmp_path / ".codex" / "auth.json").write_text(
            json.dumps({"tokens": {"access_token": "abc"}}), encoding="utf-8"
        )
        assert has_codex_oauth(tmp_path) is True
        assert check_api_key(EngineName.CODEX, environ={}, home=tmp_path) is None

    def test_codex_oauth_without_token(self, tmp_path: Path) -> None:
        (tmp_path / ".codex").mkdir()
        (tmp_path / ".codex" / "auth.json").write_text("{not json", encoding="utf-8")
        assert has_codex_oauth(tmp_path) is False

    def test_hard_requirement_raises(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        from agent_mux import config as config_module

        spec = config_module.API_KEY_MAP[EngineName.CLAUDE]
        monkeypatch.setitem(
            config_module.API_KEY_MAP,
            EngineName.CLAUDE,
            config_module.ApiKeySpec(env_var=spec.env_var, hard_error=True, hint=spec.hint),
        )
        with pytest.raises(MissingApiKeyError) as excinfo:
            check_api_key(EngineName.CLAUDE, environ={}, home=tmp_path)
        assert excinfo.value.env_var == "ANTHROPIC_API_KEY"
