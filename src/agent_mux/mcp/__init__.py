"""MCP cluster support."""

from agent_mux.mcp.clusters import (
    ClusterRegistry,
    McpCluster,
    describe_clusters,
    get_registry,
    to_opencode_mcp,
)

__all__ = [
    "ClusterRegistry",
    "McpCluster",
    "describe_clusters",
    "get_registry",
    "to_opencode_mcp",
]
