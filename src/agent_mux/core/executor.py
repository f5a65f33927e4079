"""Execution orchestrator: drive one run from validated config to one Output.

Lifecycle::

    INIT -> RUNNING -> {COMPLETED, CANCELLED, FAILED} -> TERMINATED

The deadline timer, the interrupt handlers and the heartbeat are armed in one
synchronous step, so none of them can fire before the others are in place.
Cancellation is cooperative: the shared token is set and the adapter is
expected to unwind. Whatever the adapter does afterwards, a set token always
classifies the run as CANCELLED, which is reported as a success with
``timed_out=True``.

Every exit path releases the scoped guards (stderr filter, PATH, timers,
signal handlers) before exactly one Output document is written.
"""

from __future__ import annotations

import asyncio
import signal
import sys
import time
from collections.abc import Callable
from contextlib import ExitStack
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, TextIO

from agent_mux.core.activity import ActivityAggregator
from agent_mux.core.cancellation import CancellationToken, CancellationTokenSource, CancelReason
from agent_mux.core.diagnostics import extend_path, intercept_stderr
from agent_mux.core.heartbeat import HEARTBEAT_INTERVAL_SECONDS, HeartbeatEmitter
from agent_mux.errors import CancellationError, ErrorCode
from agent_mux.prompting import build_engine_prompt, skill_script_dirs
from agent_mux.types.activity import Activity, ActivityItem, empty_activity
from agent_mux.types.engine import EMPTY_RESPONSE, EngineAdapter, EngineResult, RunConfig
from agent_mux.types.output import ErrorOutput, Output, SuccessOutput, write_output
from agent_mux.utilities.logger import get_logger

if TYPE_CHECKING:
    from agent_mux.config import MuxConfig

logger = get_logger(__name__)

TIMEOUT_RESPONSE = "(timed out — partial results may be available in activity log)"
INTERRUPT_RESPONSE = "(shutdown requested — partial results may be available in activity log)"

INTERRUPT_SIGNALS: tuple[signal.Signals, ...] = (signal.SIGINT, signal.SIGTERM)


class RunOutcome(StrEnum):
    """How a run ended."""

    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass(slots=True)
class ExecuteOptions:
    """Process-level behavior of :func:`execute`.

    The CLI turns on stderr filtering and signal handling; tests keep both
    off and inject their own streams and a short heartbeat interval.
    """

    filter_stderr: bool = False
    handle_signals: bool = False
    heartbeat_interval: float = HEARTBEAT_INTERVAL_SECONDS
    stdout: TextIO | None = None
    stderr: TextIO | None = None


def classify_termination(token: CancellationToken, error: BaseException | None) -> RunOutcome:
    """Map the end state of a run onto exactly one outcome.

    A set token wins over any error the adapter raised while unwinding.
    """
    if token.is_cancelled:
        return RunOutcome.CANCELLED
    if error is None:
        return RunOutcome.COMPLETED
    if isinstance(error, CancellationError | asyncio.CancelledError):
        return RunOutcome.CANCELLED
    return RunOutcome.FAILED


class _RunCallbacks:
    """EngineCallbacks bound to this run's heartbeat and aggregator."""

    def __init__(self, heartbeat: HeartbeatEmitter, aggregator: ActivityAggregator) -> None:
        self._heartbeat = heartbeat
        self._aggregator = aggregator

    def on_heartbeat(self, description: str) -> None:
        self._heartbeat.update(description)

    def on_item(self, item: ActivityItem) -> None:
        self._aggregator.add(item)


def _describe_error(error: BaseException | None) -> str:
    if error is None:
        return "Unknown error"
    return str(error) or type(error).__name__


def _elapsed_ms(started_at: float) -> int:
    return round((time.monotonic() - started_at) * 1000)


def build_output(
    config: MuxConfig,
    outcome: RunOutcome,
    *,
    result: EngineResult | None,
    error: BaseException | None,
    reason: str,
    activity: Activity,
    duration_ms: int,
) -> Output:
    """Assemble the Output for a classified run."""
    engine = config.engine.value

    if outcome is RunOutcome.CANCELLED:
        return SuccessOutput(
            engine=engine,
            response=INTERRUPT_RESPONSE if reason == CancelReason.INTERRUPT else TIMEOUT_RESPONSE,
            timed_out=True,
            duration_ms=duration_ms,
            activity=activity,
            metadata={},
        )

    if outcome is RunOutcome.FAILED or result is None:
        return ErrorOutput(
            engine=engine,
            error=_describe_error(error),
            code=ErrorCode.SDK_ERROR,
            duration_ms=duration_ms,
            activity=activity,
        )

    metadata = dict(result.metadata)
    if not metadata.get("model") and config.model:
        metadata["model"] = config.model
    response = result.response if result.response and result.response.strip() else EMPTY_RESPONSE
    return SuccessOutput(
        engine=engine,
        response=response,
        timed_out=False,
        duration_ms=duration_ms,
        activity=activity,
        metadata=metadata,
    )


async def execute(
    config: MuxConfig,
    adapter: EngineAdapter,
    options: ExecuteOptions | None = None,
) -> Output:
    """Run ``adapter`` once under ``config`` and write the Output to stdout.

    Never raises for adapter failures; the returned Output is the document
    that was written.
    """
    options = options or ExecuteOptions()
    stdout = options.stdout or sys.stdout
    diagnostic = options.stderr or sys.stderr
    loop = asyncio.get_running_loop()
    started_at = time.monotonic()

    source = CancellationTokenSource()
    heartbeat = HeartbeatEmitter(diagnostic, interval=options.heartbeat_interval)
    aggregator = ActivityAggregator()
    callbacks = _RunCallbacks(heartbeat, aggregator)

    run_config = RunConfig(
        prompt=build_engine_prompt(config.prompt, config.skills, config.timeout_ms),
        cwd=config.cwd,
        timeout_ms=config.timeout_ms,
        token=source.token,
        model=config.model or "",
        effort=config.effort,
        mcp_servers=dict(config.mcp_servers),
        system_prompt=config.system_prompt,
        engine_options=dict(config.engine_options),
    )

    def trigger(reason: CancelReason) -> None:
        if source.cancel(reason):
            logger.info("run_cancelled", engine=config.engine.value, reason=str(reason))

    result: EngineResult | None = None
    error: BaseException | None = None

    try:
        with ExitStack() as guards:
            if options.filter_stderr:
                guards.enter_context(intercept_stderr())
            guards.enter_context(extend_path(skill_script_dirs(config.skills)))

            # Arm deadline, interrupts and heartbeat together.
            deadline = loop.call_later(config.timeout_ms / 1000, trigger, CancelReason.TIMEOUT)
            guards.callback(deadline.cancel)
            if options.handle_signals:
                _install_signal_handlers(loop, guards, trigger)
            heartbeat.start(started_at)
            guards.callback(heartbeat.stop)
            logger.debug("run_armed", engine=config.engine.value, timeout_ms=config.timeout_ms)

            try:
                result = await adapter.run(run_config, callbacks)
            except (Exception, asyncio.CancelledError) as exc:
                error = exc
    except Exception as exc:
        # A guard failed to arm or release.
        heartbeat.stop()
        if error is None and result is None:
            error = exc

    try:
        outcome = classify_termination(source.token, error)
        logger.debug("run_classified", engine=config.engine.value, outcome=str(outcome))
        output = build_output(
            config,
            outcome,
            result=result,
            error=error,
            reason=source.token.reason,
            activity=aggregator.freeze(heartbeat.count),
            duration_ms=_elapsed_ms(started_at),
        )
    except Exception as exc:
        logger.error("finalize_failed", engine=config.engine.value, error=str(exc))
        output = ErrorOutput(
            engine=config.engine.value,
            error=_describe_error(exc),
            code=ErrorCode.SDK_ERROR,
            duration_ms=_elapsed_ms(started_at),
            activity=aggregator.frozen or empty_activity(heartbeat.count),
        )

    write_output(output, stdout)
    return output


def _install_signal_handlers(
    loop: asyncio.AbstractEventLoop,
    guards: ExitStack,
    trigger: Callable[[CancelReason], None],
) -> None:
    for sig in INTERRUPT_SIGNALS:
        try:
            loop.add_signal_handler(sig, trigger, CancelReason.INTERRUPT)
        except (NotImplementedError, RuntimeError):
            logger.debug("signal_handler_unavailable", signal=sig.name)
            continue
        guards.callback(loop.remove_signal_handler, sig)
