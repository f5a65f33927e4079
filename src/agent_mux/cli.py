"""CLI entry point using Click.

stdout carries exactly one JSON result document (or the help/version text);
everything else goes to stderr. Usage errors are reported as INVALID_ARGS
documents rather than click's usual usage message.
"""

from __future__ import annotations

import asyncio
import sys
from typing import Any

import click

from agent_mux import __version__
from agent_mux.config import VALID_ENGINES, CliArgs, check_api_key, load_config
from agent_mux.core.executor import ExecuteOptions, execute
from agent_mux.engines.registry import create_engine
from agent_mux.errors import ConfigurationError, ErrorCode, MissingApiKeyError
from agent_mux.mcp.clusters import describe_clusters
from agent_mux.types.activity import empty_activity
from agent_mux.types.engine import EngineName
from agent_mux.types.output import ErrorOutput, exit_code_for, write_output
from agent_mux.utilities.logger import get_logger, setup_logging

logger = get_logger(__name__)

DEFAULT_ERROR_ENGINE = EngineName.CODEX.value

_PRESET_SUMMARY = "kimi, kimi-k2.5, glm, glm-5, deepseek, deepseek-r1, qwen, qwen-coder, free"

_BASE_HELP = """Usage: agent-mux --engine <engine> [options] "prompt"

Engines: codex, claude, opencode

Common Options:
  -E, --engine <name>        Engine: codex, claude, opencode (required)
  -C, --cwd <dir>            Working directory (default: current dir)
  -m, --model <name>         Model string (engine-specific)
  -e, --effort <level>       Effort: low, medium (default), high, xhigh
  -t, --timeout <ms>         Timeout in ms (default: effort-scaled)
  -s, --system-prompt <text> System prompt (appended)
      --system-prompt-file <path>
                             Read system prompt from a file (relative to --cwd)
      --coordinator <name>   Load <cwd>/.claude/agents/<name>.md
      --skill <name>         Load skill (repeatable, reads <cwd>/.claude/skills/<name>/SKILL.md)
      --mcp-cluster <name>   Enable MCP cluster (repeatable)
  -b, --browser              Sugar for --mcp-cluster browser
  -f, --full                 Full access mode
      --debug                Verbose logging on stderr
  -V, --version              Show version
  -h, --help                 Show this help

MCP Clusters:
{clusters}"""

_ENGINE_HELP: dict[str, str] = {
    EngineName.CODEX.value: """

Codex Options:
      --sandbox <mode>       read-only (default), workspace-write, danger-full-access
  -r, --reasoning <level>    Codex reasoning: minimal, low, medium, high, xhigh
  -n, --network              Enable network access
  -d, --add-dir <path>       Additional writable directory (repeatable)""",
    EngineName.CLAUDE.value: """

Claude Options:
  -p, --permission-mode <m>  default, acceptEdits, bypassPermissions (default), plan
      --max-turns <n>        Max conversation turns
      --max-budget <usd>     Max budget in USD
      --allowed-tools <list> Comma-separated tool whitelist""",
    EngineName.OPENCODE.value: f"""

OpenCode Options:
      --variant <level>      Model variant / reasoning effort
      --agent <name>         OpenCode agent name

OpenCode Model Presets:
  {_PRESET_SUMMARY}""",
}


def build_help_text(engine: str | None = None) -> str:
    """Help text, narrowed to one engine's options when it is known."""
    text = _BASE_HELP.format(clusters=describe_clusters())
    if engine in _ENGINE_HELP:
        return text + _ENGINE_HELP[engine]
    return text + "".join(_ENGINE_HELP.values())


def _error_document(message: str, code: ErrorCode, engine: str | None) -> ErrorOutput:
    return ErrorOutput(
        engine=str(engine or DEFAULT_ERROR_ENGINE),
        error=message,
        code=code,
        duration_ms=0,
        activity=empty_activity(),
    )


def _fail(message: str, code: ErrorCode, engine: str | None) -> int:
    output = _error_document(message, code, engine)
    write_output(output, sys.stdout)
    return exit_code_for(output)


class MuxCommand(click.Command):
    """Click command that reports usage errors as INVALID_ARGS documents."""

    def main(  # type: ignore[override]
        self,
        args: Any = None,
        prog_name: str | None = None,
        complete_var: str | None = None,
        standalone_mode: bool = True,
        **extra: Any,
    ) -> Any:
        try:
            rv = super().main(args, prog_name, complete_var, standalone_mode=False, **extra)
        except click.ClickException as exc:
            rv = _fail(exc.format_message(), ErrorCode.INVALID_ARGS, None)
        except click.exceptions.Abort:
            rv = _fail("Interrupted before the run started", ErrorCode.SDK_ERROR, None)
        if standalone_mode:
            sys.exit(rv or 0)
        return rv


@click.command(cls=MuxCommand, context_settings={"help_option_names": []})
@click.argument("prompt", nargs=-1)
@click.option("--engine", "-E", help="Engine: codex, claude, opencode")
@click.option("--cwd", "-C", help="Working directory")
@click.option("--model", "-m", help="Model string (engine-specific)")
@click.option("--effort", "-e", help="Effort: low, medium, high, xhigh")
@click.option("--timeout", "-t", help="Timeout in milliseconds")
@click.option("--system-prompt", "-s", help="System prompt (appended)")
@click.option("--system-prompt-file", help="System prompt file, relative to --cwd")
@click.option("--coordinator", help="Coordinator spec name")
@click.option("--skill", "skills", multiple=True, help="Skill name (repeatable)")
@click.option("--mcp-cluster", "mcp_clusters", multiple=True, help="MCP cluster (repeatable)")
@click.option("--browser", "-b", is_flag=True, help="Sugar for --mcp-cluster browser")
@click.option("--full", "-f", is_flag=True, help="Full access mode")
@click.option("--sandbox", help="Codex sandbox mode")
@click.option("--reasoning", "-r", help="Codex reasoning effort")
@click.option("--network", "-n", is_flag=True, help="Codex network access")
@click.option("--add-dir", "-d", "add_dirs", multiple=True, help="Codex writable directory (repeatable)")
@click.option("--permission-mode", "-p", help="Claude permission mode")
@click.option("--max-turns", help="Claude max turns")
@click.option("--max-budget", help="Claude max budget in USD")
@click.option("--allowed-tools", help="Claude tool whitelist (comma-separated)")
@click.option("--variant", help="OpenCode model variant")
@click.option("--agent", help="OpenCode agent name")
@click.option("--debug", is_flag=True, help="Enable debug logging")
@click.option("--version", "-V", "show_version", is_flag=True, help="Show version and exit")
@click.option("--help", "-h", "show_help", is_flag=True, help="Show help and exit")
def main(
    prompt: tuple[str, ...],
    engine: str | None,
    debug: bool,
    show_version: bool,
    show_help: bool,
    **options: Any,
) -> int:
    """agent-mux - one CLI for Codex, Claude Code and OpenCode agents."""
    if show_version:
        click.echo(__version__)
        return 0

    if show_help:
        click.echo(build_help_text(engine if engine in VALID_ENGINES else None))
        return 0

    setup_logging(debug=debug)

    try:
        config = load_config(CliArgs(prompt_words=prompt, engine=engine, **options))
    except ConfigurationError as exc:
        return _fail(str(exc), ErrorCode.INVALID_ARGS, exc.engine)

    logger.debug(
        "config_loaded",
        engine=config.engine.value,
        cwd=config.cwd,
        timeout_ms=config.timeout_ms,
        skills=[skill.name for skill in config.skills],
        mcp_servers=list(config.mcp_servers),
    )

    try:
        warning = check_api_key(config.engine)
    except MissingApiKeyError as exc:
        return _fail(str(exc), exc.code, config.engine.value)
    if warning:
        click.echo(f"[agent-mux] warning: {warning}", err=True)

    adapter = create_engine(config.engine)
    try:
        output = asyncio.run(
            execute(config, adapter, ExecuteOptions(filter_stderr=True, handle_signals=True))
        )
    except Exception as exc:
        return _fail(str(exc) or type(exc).__name__, ErrorCode.SDK_ERROR, config.engine.value)
    return exit_code_for(output)


if __name__ == "__main__":
    main()
