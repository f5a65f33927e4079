"""Execution core: cancellation, heartbeat, activity aggregation and the orchestrator."""

from agent_mux.core.activity import ActivityAggregator
from agent_mux.core.cancellation import CancellationToken, CancellationTokenSource, CancelReason
from agent_mux.core.executor import (
    EMPTY_RESPONSE,
    INTERRUPT_RESPONSE,
    TIMEOUT_RESPONSE,
    ExecuteOptions,
    RunOutcome,
    classify_termination,
    execute,
)
from agent_mux.core.heartbeat import HEARTBEAT_INTERVAL_SECONDS, HeartbeatEmitter

__all__ = [
    "EMPTY_RESPONSE",
    "HEARTBEAT_INTERVAL_SECONDS",
    "INTERRUPT_RESPONSE",
    "TIMEOUT_RESPONSE",
    "ActivityAggregator",
    "CancelReason",
    "CancellationToken",
    "CancellationTokenSource",
    "ExecuteOptions",
    "HeartbeatEmitter",
    "RunOutcome",
    "classify_termination",
    "execute",
]
