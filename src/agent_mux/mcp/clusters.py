"""YAML-driven MCP cluster registry.

A cluster is a named group of MCP servers enabled together with
``--mcp-cluster``. Definitions are loaded from the first file found:

1. ``./mcp-clusters.yaml`` (project-local)
2. ``~/.config/agent-mux/mcp-clusters.yaml`` (user-global)

With no file, no clusters exist. The name ``all`` is the union of every
cluster.

Expected format (see ``mcp-clusters.example.yaml``)::

    clusters:
      browser:
        description: Headless browser automation
        servers:
          playwright:
            command: npx
            args: ["-y", "@playwright/mcp@latest", "--headless"]
            env: {DEBUG: "0"}
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from agent_mux.errors import ConfigurationError
from agent_mux.types.engine import McpServerConfig

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "mcp-clusters.yaml"
ALL_CLUSTERS = "all"


@dataclass(slots=True)
class McpCluster:
    """A named group of MCP servers."""

    name: str
    description: str
    servers: dict[str, McpServerConfig] = field(default_factory=dict)


def default_search_paths() -> list[Path]:
    return [
        Path.cwd() / CONFIG_FILENAME,
        Path.home() / ".config" / "agent-mux" / CONFIG_FILENAME,
    ]


def _parse_server(entry: dict[str, Any]) -> McpServerConfig:
    env = entry.get("env")
    return McpServerConfig(
        command=str(entry.get("command", "")),
        args=tuple(str(arg) for arg in entry.get("args") or ()),
        cwd=entry.get("cwd") or None,
        env={str(k): str(v) for k, v in env.items()} if isinstance(env, dict) and env else None,
    )


def parse_clusters(data: Any) -> dict[str, McpCluster]:
    """Build clusters from a parsed YAML document."""
    if not isinstance(data, dict) or not isinstance(data.get("clusters"), dict):
        return {}

    clusters: dict[str, McpCluster] = {}
    for name, body in data["clusters"].items():
        body = body or {}
        servers = {
            str(server_name): _parse_server(entry)
            for server_name, entry in (body.get("servers") or {}).items()
            if isinstance(entry, dict)
        }
        clusters[str(name)] = McpCluster(
            name=str(name),
            description=body.get("description") or str(name),
            servers=servers,
        )
    return clusters


class ClusterRegistry:
    """Lazily loads cluster definitions from the first config file found."""

    def __init__(self, search_paths: list[Path] | None = None) -> None:
        self._search_paths = search_paths
        self._clusters: dict[str, McpCluster] | None = None
        self._source: Path | None = None

    @property
    def source(self) -> Path | None:
        """The file clusters were loaded from, if any."""
        self.clusters()
        return self._source

    def _find_config_file(self) -> Path | None:
        paths = self._search_paths if self._search_paths is not None else default_search_paths()
        for path in paths:
            if path.is_file():
                return path
        return None

    def _load(self) -> dict[str, McpCluster]:
        path = self._find_config_file()
        if path is None:
            return {}
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
            clusters = parse_clusters(data)
        except (OSError, yaml.YAMLError, AttributeError, TypeError) as exc:
            logger.warning("Warning: failed to load %s: %s", path, exc)
            return {}
        self._source = path
        return clusters

    def clusters(self) -> dict[str, McpCluster]:
        if self._clusters is None:
            self._clusters = self._load()
        return self._clusters

    def reload(self) -> None:
        self._clusters = None
        self._source = None

    def all_server_names(self) -> list[str]:
        """Every server name across all clusters, first occurrence order."""
        names: dict[str, None] = {}
        for cluster in self.clusters().values():
            for server_name in cluster.servers:
                names.setdefault(server_name, None)
        return list(names)

    def resolve(self, names: list[str] | tuple[str, ...]) -> dict[str, McpServerConfig]:
        """Merge the servers of the named clusters; later names win on clashes."""
        clusters = self.clusters()
        servers: dict[str, McpServerConfig] = {}
        for name in names:
            if name == ALL_CLUSTERS:
                for cluster in clusters.values():
                    servers.update(cluster.servers)
            elif name in clusters:
                servers.update(clusters[name].servers)
            else:
                available = ", ".join([*clusters, ALL_CLUSTERS])
                if not clusters:
                    available = f"{available} (none — no config file found)"
                raise ConfigurationError(f"Unknown MCP cluster: '{name}'. Available: {available}")
        return servers

    def describe(self) -> str:
        """Cluster listing for help output."""
        entries = list(self.clusters().values())
        if not entries:
            return f"  (none — create {CONFIG_FILENAME} to define clusters)"
        lines = [f"  {cluster.name:<12} {cluster.description}" for cluster in entries]
        lines.append(f"  {ALL_CLUSTERS:<12} All clusters combined")
        return "\n".join(lines)


def to_opencode_mcp(servers: dict[str, McpServerConfig]) -> dict[str, dict[str, Any]]:
    """Convert to OpenCode's local MCP config shape."""
    result: dict[str, dict[str, Any]] = {}
    for name, server in servers.items():
        entry: dict[str, Any] = {"type": "local", "command": [server.command, *server.args]}
        if server.env:
            entry["environment"] = dict(server.env)
        result[name] = entry
    return result


_default_registry = ClusterRegistry()


def get_registry() -> ClusterRegistry:
    return _default_registry


def describe_clusters() -> str:
    return _default_registry.describe()
