"""Prompt augmentation: skills, coordinator specs and system prompts.

Skills live at ``<cwd>/.claude/skills/<name>/SKILL.md`` and coordinators at
``<cwd>/.claude/agents/<name>.md``. Names are joined onto their root
lexically and must stay inside it; symlinks inside the root are followed
wherever they point.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from agent_mux.errors import ConfigurationError

SKILL_FILE = "SKILL.md"
SCRIPTS_DIR = "scripts"
FRONTMATTER_MARKER = "---"


@dataclass(frozen=True, slots=True)
class Skill:
    """A resolved skill ready to be injected into the prompt."""

    name: str
    dir: str
    content: str
    has_scripts: bool = False

    @property
    def source(self) -> str:
        return os.path.join(self.dir, SKILL_FILE)

    @property
    def scripts_dir(self) -> str:
        return os.path.join(self.dir, SCRIPTS_DIR)


@dataclass(frozen=True, slots=True)
class CoordinatorSpec:
    """A coordinator agent definition: frontmatter plus a prompt body."""

    name: str
    path: str
    body: str = ""
    skills: tuple[str, ...] = ()
    model: str | None = None
    allowed_tools: tuple[str, ...] = ()
    metadata: dict[str, Any] = field(default_factory=dict)


def skills_root(cwd: str) -> str:
    return os.path.abspath(os.path.join(cwd, ".claude", "skills"))


def agents_root(cwd: str) -> str:
    return os.path.abspath(os.path.join(cwd, ".claude", "agents"))


def resolve_contained(root: str, name: str, *, kind: str) -> str:
    """Join ``name`` onto ``root`` and ensure it stays strictly inside.

    The check is lexical, so a symlink inside the root may point anywhere.
    The root itself is rejected.
    """
    root = os.path.normpath(os.path.abspath(root))
    candidate = os.path.normpath(os.path.join(root, name))
    rel = os.path.relpath(candidate, root)
    if rel == os.curdir or rel == os.pardir or rel.startswith(os.pardir + os.sep) or os.path.isabs(rel):
        raise ConfigurationError(f"Invalid {kind} name '{name}': path traversal detected")
    return candidate


def _read_text(path: str, *, kind: str, name: str) -> str:
    try:
        return Path(path).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise ConfigurationError(f"Cannot read {kind} '{name}': {exc}") from exc


def load_skill(cwd: str, name: str) -> Skill:
    """Resolve one skill by name."""
    skill_dir = resolve_contained(skills_root(cwd), name, kind="skill")
    skill_file = os.path.join(skill_dir, SKILL_FILE)
    if not os.path.exists(skill_file):
        raise ConfigurationError(f"Skill '{name}' not found: expected {SKILL_FILE} at {skill_file}")
    content = _read_text(skill_file, kind="skill", name=name)
    return Skill(
        name=name,
        dir=skill_dir,
        content=content,
        has_scripts=os.path.exists(os.path.join(skill_dir, SCRIPTS_DIR)),
    )


def resolve_skills(cwd: str, names: list[str] | tuple[str, ...]) -> list[Skill]:
    """Load skills in order, each name at most once."""
    skills: list[Skill] = []
    seen: set[str] = set()
    for name in names:
        if name in seen:
            continue
        seen.add(name)
        skills.append(load_skill(cwd, name))
    return skills


def skill_script_dirs(skills: list[Skill] | tuple[Skill, ...]) -> list[str]:
    """``scripts/`` directories to put on PATH for the run."""
    return [skill.scripts_dir for skill in skills if skill.has_scripts]


def split_frontmatter(text: str, *, source: str = "") -> tuple[dict[str, Any], str]:
    """Split ``---`` delimited YAML frontmatter from a markdown body.

    The closing marker may be the last line of the file. Text without an
    opening marker is all body.
    """
    lines = text.splitlines(keepends=True)
    if not lines or lines[0].rstrip("\r\n") != FRONTMATTER_MARKER:
        return {}, text

    for index in range(1, len(lines)):
        if lines[index].rstrip("\r\n") == FRONTMATTER_MARKER:
            raw = "".join(lines[1:index])
            body = "".join(lines[index + 1:])
            break
    else:
        label = f" in {source}" if source else ""
        raise ConfigurationError(f"Invalid frontmatter{label}: missing closing --- marker")

    try:
        data = yaml.safe_load(raw) if raw.strip() else {}
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Invalid frontmatter in {source or 'document'}: {exc}") from exc
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Invalid frontmatter in {source or 'document'}: expected a mapping")
    return data, body


def _string_list(value: Any) -> tuple[str, ...] | None:
    if isinstance(value, list) and all(isinstance(item, str) for item in value):
        return tuple(value)
    return None


def parse_tool_list(value: Any) -> tuple[str, ...]:
    """Accept ``[a, b]`` or ``"a, b"`` and return trimmed, non-empty names."""
    if value is None:
        return ()
    if isinstance(value, str):
        items = value.split(",")
    elif isinstance(value, list):
        items = [str(item) for item in value]
    else:
        raise ConfigurationError("frontmatter.allowedTools must be a string or string array")
    return tuple(item.strip() for item in items if item.strip())


def load_coordinator(cwd: str, name: str) -> CoordinatorSpec:
    """Load ``<cwd>/.claude/agents/<name>.md``."""
    stem = name[:-3] if name.endswith(".md") else name
    base = resolve_contained(agents_root(cwd), stem, kind="coordinator")
    path = base + ".md"
    if not os.path.exists(path):
        raise ConfigurationError(f"Coordinator '{name}' not found: expected {path}")
    if not os.path.isfile(path):
        raise ConfigurationError(f"Coordinator '{name}' at {path} is not a file")

    meta, body = split_frontmatter(_read_text(path, kind="coordinator", name=name), source=path)

    skills: tuple[str, ...] = ()
    if "skills" in meta and meta["skills"] is not None:
        parsed = _string_list(meta["skills"])
        if parsed is None:
            raise ConfigurationError(f"Invalid coordinator '{name}': frontmatter.skills must be a string array")
        skills = parsed

    model = meta.get("model")
    if model is not None and not isinstance(model, str):
        raise ConfigurationError(f"Invalid coordinator '{name}': frontmatter.model must be a string")

    return CoordinatorSpec(
        name=name,
        path=path,
        body=body.strip(),
        skills=skills,
        model=model or None,
        allowed_tools=parse_tool_list(meta.get("allowedTools")),
        metadata=meta,
    )


def read_system_prompt_file(cwd: str, file_path: str) -> str:
    """Read ``--system-prompt-file`` (relative paths resolve against cwd)."""
    path = os.path.abspath(os.path.join(cwd, file_path))
    if not os.path.exists(path):
        raise ConfigurationError(f"System prompt file not found: {path}")
    if not os.path.isfile(path):
        raise ConfigurationError(f"System prompt file {path} is not a file")
    return _read_text(path, kind="system prompt file", name=file_path)


def build_system_prompt(*parts: str | None) -> str | None:
    """Join non-empty parts with blank lines; None when nothing is left."""
    kept = [part.strip() for part in parts if part and part.strip()]
    return "\n\n".join(kept) if kept else None


def _escape_attr(value: str) -> str:
    return value.replace('"', "&quot;")


def render_skills(skills: list[Skill] | tuple[Skill, ...]) -> str:
    return "".join(
        f'<skill name="{_escape_attr(skill.name)}" source="{_escape_attr(skill.source)}">\n'
        f"{skill.content}\n</skill>\n\n"
        for skill in skills
    )


def format_seconds(timeout_ms: int) -> str:
    seconds = timeout_ms / 1000
    return str(int(seconds)) if seconds.is_integer() else str(seconds)


def build_engine_prompt(
    prompt: str,
    skills: list[Skill] | tuple[Skill, ...],
    timeout_ms: int,
) -> str:
    """The prompt actually sent to the engine: time budget, skills, task."""
    return (
        f"You have a time budget of {format_seconds(timeout_ms)} seconds. "
        "Prioritize delivering complete output over exploration.\n\n"
        f"{render_skills(skills)}{prompt}"
    )
