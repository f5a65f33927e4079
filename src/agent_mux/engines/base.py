"""Subprocess plumbing shared by the engine adapters.

Every backend is a vendor CLI run with ``asyncio.create_subprocess_exec``
(argv list, no shell). :class:`EngineProcess` owns one child: it feeds the
prompt on stdin, reads stdout line by line, keeps a bounded tail of stderr,
and terminates the child as soon as the run's cancellation token is set.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
from collections import deque
from collections.abc import AsyncIterator, Mapping, Sequence
from typing import TYPE_CHECKING, Any

from agent_mux.errors import EngineError, EngineNotFoundError

if TYPE_CHECKING:
    from agent_mux.core.cancellation import CancellationToken

logger = logging.getLogger(__name__)

SIGTERM_GRACE_SECONDS = 5.0
STREAM_LIMIT = 16 * 1024 * 1024
STDERR_TAIL_LINES = 40

# Variables that make a nested ``claude`` refuse to start ("cannot launch
# inside another session").
STRIP_ENV_VARS = frozenset({
    "CLAUDECODE",
    "CLAUDE_CODE_ENTRYPOINT",
    "CLAUDE_REPL",
    "CLAUDE_CODE_PACKAGE_DIR",
})


def child_env(extra: Mapping[str, str] | None = None) -> dict[str, str]:
    """Environment for an engine child: ours, minus nested-session markers."""
    env = {k: v for k, v in os.environ.items() if k not in STRIP_ENV_VARS}
    if extra:
        env.update(extra)
    return env


def truncate(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[:limit]


async def kill_process(proc: asyncio.subprocess.Process, grace: float = SIGTERM_GRACE_SECONDS) -> None:
    """Kill a process with SIGTERM → SIGKILL chain.

    Sends SIGTERM first, waits up to ``grace`` seconds, then sends SIGKILL
    if the process is still alive.
    """
    if proc.returncode is not None:
        return
    try:
        proc.terminate()  # SIGTERM
    except ProcessLookupError:
        return

    try:
        await asyncio.wait_for(proc.wait(), timeout=grace)
    except TimeoutError:
        try:
            proc.kill()  # SIGKILL
        except ProcessLookupError:
            return
        await proc.wait()


class EngineProcess:
    """One engine CLI child process, used as an async context manager.

    ``async with EngineProcess(...) as proc:`` spawns the child; leaving the
    block always reaps it. While it runs, a watcher kills it once ``token``
    is cancelled, which ends the stdout stream and lets the adapter unwind.
    """

    def __init__(
        self,
        engine: str,
        argv: Sequence[str],
        *,
        token: CancellationToken,
        cwd: str | None = None,
        env: Mapping[str, str] | None = None,
        stdin_text: str | None = None,
        kill_grace: float = SIGTERM_GRACE_SECONDS,
    ) -> None:
        self.engine = engine
        self.argv = list(argv)
        self._token = token
        self._cwd = cwd
        self._env = dict(env) if env is not None else child_env()
        self._stdin_text = stdin_text
        self._kill_grace = kill_grace
        self._proc: asyncio.subprocess.Process | None = None
        self._stderr_tail: deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        self._tasks: list[asyncio.Task[None]] = []

    @property
    def process(self) -> asyncio.subprocess.Process:
        if self._proc is None:
            raise RuntimeError("Engine process has not been started")
        return self._proc

    @property
    def returncode(self) -> int | None:
        return self._proc.returncode if self._proc is not None else None

    @property
    def stderr_tail(self) -> str:
        return "\n".join(self._stderr_tail)

    async def __aenter__(self) -> EngineProcess:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def start(self) -> None:
        logger.debug("Spawning %s: %s", self.engine, " ".join(self.argv[:3]))
        try:
            self._proc = await asyncio.create_subprocess_exec(
                *self.argv,
                stdin=asyncio.subprocess.PIPE if self._stdin_text is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self._cwd,
                env=self._env,
                limit=STREAM_LIMIT,
            )
        except (FileNotFoundError, NotADirectoryError) as exc:
            # Both a missing binary and a missing cwd surface as ENOENT.
            if self._cwd is not None and not os.path.isdir(self._cwd):
                raise EngineError(
                    f"{self.engine} working directory {self._cwd} not found",
                    engine=self.engine,
                ) from exc
            raise EngineNotFoundError(self.engine, self.argv[0]) from exc

        self._tasks.append(asyncio.create_task(self._pump_stderr()))
        self._tasks.append(asyncio.create_task(self._kill_on_cancel()))
        if self._stdin_text is not None:
            await self._write_stdin(self._stdin_text)

    async def _write_stdin(self, text: str) -> None:
        stdin = self.process.stdin
        assert stdin is not None
        try:
            stdin.write(text.encode("utf-8"))
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            logger.debug("%s closed stdin before the prompt was written", self.engine)
        finally:
            stdin.close()

    async def _pump_stderr(self) -> None:
        stream = self.process.stderr
        assert stream is not None
        while True:
            try:
                raw = await stream.readline()
            except ValueError:
                # Over-long line; keep draining.
                continue
            if not raw:
                return
            line = raw.decode("utf-8", errors="replace").rstrip()
            if line:
                self._stderr_tail.append(line)

    async def _kill_on_cancel(self) -> None:
        await self._token.wait()
        logger.debug("Cancellation requested, terminating %s", self.engine)
        await self.terminate()

    async def terminate(self) -> None:
        if self._proc is not None:
            await kill_process(self._proc, self._kill_grace)

    async def lines(self) -> AsyncIterator[str]:
        """Yield stdout lines (without line endings) until EOF."""
        stream = self.process.stdout
        assert stream is not None
        while True:
            try:
                raw = await stream.readline()
            except ValueError as exc:
                raise EngineError(
                    f"{self.engine} emitted a line longer than {STREAM_LIMIT} bytes",
                    engine=self.engine,
                ) from exc
            if not raw:
                return
            yield raw.decode("utf-8", errors="replace").rstrip("\r\n")

    async def json_events(self) -> AsyncIterator[dict[str, Any]]:
        """Yield each stdout line that parses as a JSON object."""
        async for line in self.lines():
            text = line.strip()
            if not text:
                continue
            try:
                event = json.loads(text)
            except json.JSONDecodeError:
                logger.debug("Skipping non-JSON output from %s: %s", self.engine, truncate(text, 200))
                continue
            if isinstance(event, dict):
                yield event

    async def wait(self) -> int:
        code = await self.process.wait()
        # Let the stderr pump catch up so the tail is complete.
        if self._tasks:
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(asyncio.shield(self._tasks[0]), timeout=1.0)
        logger.debug("%s exited with code %s", self.engine, code)
        return code

    async def check_exit(self) -> None:
        """Raise EngineError for a non-zero exit that was not caused by cancellation."""
        code = await self.wait()
        if code != 0 and not self._token.is_cancelled:
            tail = self.stderr_tail
            detail = f": {truncate(tail, 500)}" if tail else ""
            raise EngineError(
                f"{self.engine} exited with code {code}{detail}",
                engine=self.engine,
                exit_code=code,
                stderr_tail=tail,
            )

    async def close(self) -> None:
        if self._proc is not None and self._proc.returncode is None:
            await self.terminate()
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()
