"""Shared data types."""

from agent_mux.types.activity import Activity, ActivityItem, ActivityKind, empty_activity
from agent_mux.types.engine import (
    TIMEOUT_BY_EFFORT_MS,
    EffortLevel,
    EngineAdapter,
    EngineCallbacks,
    EngineName,
    EngineResult,
    McpServerConfig,
    RunConfig,
)
from agent_mux.types.output import (
    ErrorOutput,
    Output,
    SuccessOutput,
    exit_code_for,
    output_from_dict,
    output_from_json,
    output_to_json,
    write_output,
)

__all__ = [
    "TIMEOUT_BY_EFFORT_MS",
    "Activity",
    "ActivityItem",
    "ActivityKind",
    "EffortLevel",
    "EngineAdapter",
    "EngineCallbacks",
    "EngineName",
    "EngineResult",
    "ErrorOutput",
    "McpServerConfig",
    "Output",
    "RunConfig",
    "SuccessOutput",
    "empty_activity",
    "exit_code_for",
    "output_from_dict",
    "output_from_json",
    "output_to_json",
    "write_output",
]
