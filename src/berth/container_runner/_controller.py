"""Per-run controller: relays framed records and enforces the two deadlines.

A run has a hard deadline and an idle deadline, both counted from spawn. Every
decoded record counts as liveness and pushes both out from the moment it
arrived. Both are checked on a periodic tick; whichever passes first triggers
one graceful stop.
"""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import time
from collections.abc import Awaitable, Callable
from enum import StrEnum
from typing import Literal

from berth.container_runner._framing import FrameError, OutputDecoder
from berth.container_runner._process import (
    _CappedBuffer,
    _ExitInfo,
    _graceful_stop,
    read_stderr,
)
from berth.logger import container_logger
from berth.types import ContainerOutput

TimeoutKind = Literal["hard", "idle"]


class ControllerState(StrEnum):
    STARTING = "starting"
    RUNNING = "running"
    AWAITING_OUTPUT = "awaiting_output"
    IDLE = "idle"
    CLOSING_SUCCESS = "closing_success"
    CLOSING_TIMEOUT = "closing_timeout"
    CLOSING_ERROR = "closing_error"
    EXITED = "exited"


_CLOSING_STATES = frozenset(
    {
        ControllerState.CLOSING_SUCCESS,
        ControllerState.CLOSING_TIMEOUT,
        ControllerState.CLOSING_ERROR,
    }
)


class SessionHostController:
    """Drives one spawned container until its process exits.

    Records are handed to ``on_output`` strictly in stdout order. A failing
    callback is logged and the run continues; nothing in here raises to the
    caller for anything the container does.
    """

    def __init__(
        self,
        proc: asyncio.subprocess.Process,
        *,
        container_name: str,
        group_name: str,
        hard_timeout: float,
        idle_timeout: float,
        tick_interval: float,
        max_output_size: int,
        on_output: Callable[[ContainerOutput], Awaitable[None]] | None = None,
    ) -> None:
        self._proc = proc
        self._container_name = container_name
        self._group_name = group_name
        self._hard_timeout = hard_timeout
        self._idle_timeout = idle_timeout
        self._tick_interval = tick_interval
        self._max_output_size = max_output_size
        self._on_output = on_output
        self._log = container_logger(group_name, container_name)

        self._decoder = OutputDecoder()
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._stdout = _CappedBuffer(max_output_size)
        self._hard_deadline = 0.0
        self._idle_deadline = 0.0

        self.state = ControllerState.STARTING
        self.history: list[ControllerState] = [ControllerState.STARTING]
        self.output_count = 0
        self.last_output: ContainerOutput | None = None
        self.last_session_id: str | None = None
        self.timeout_kind: TimeoutKind | None = None

    # -- state ---------------------------------------------------------------

    def _transition(self, new: ControllerState) -> None:
        if new is self.state:
            return
        self._log.debug("Controller state", old=str(self.state), new=str(new))
        self.state = new
        self.history.append(new)

    @property
    def stdout(self) -> str:
        return self._stdout.text

    @property
    def stdout_truncated(self) -> bool:
        return self._stdout.truncated

    # -- deadlines -----------------------------------------------------------

    def note_record(self, now: float) -> None:
        """Restart both deadlines from ``now``."""
        self._hard_deadline = now + self._hard_timeout
        self._idle_deadline = now + self._idle_timeout

    def expired(self, now: float) -> TimeoutKind | None:
        if now >= self._hard_deadline:
            return "hard"
        if now >= self._idle_deadline:
            return "idle"
        return None

    async def _watch_deadlines(self) -> None:
        while True:
            await asyncio.sleep(self._tick_interval)
            kind = self.expired(time.monotonic())
            if kind is None:
                continue
            self.timeout_kind = kind
            self._transition(ControllerState.CLOSING_TIMEOUT)
            self._log.error(
                "Container timeout, stopping gracefully",
                timeout=kind,
                hard_timeout=self._hard_timeout,
                idle_timeout=self._idle_timeout,
            )
            await _graceful_stop(self._proc, self._container_name)
            return

    # -- stdout --------------------------------------------------------------

    async def _handle_output(self, output: ContainerOutput) -> None:
        self.output_count += 1
        self.last_output = output
        if output.new_session_id:
            self.last_session_id = output.new_session_id
        self.note_record(time.monotonic())
        if self.state not in _CLOSING_STATES:
            self._transition(ControllerState.IDLE)

        if self._on_output is None:
            return
        try:
            await self._on_output(output)
        except Exception as exc:
            self._log.error(
                "Output callback failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )

    async def _dispatch(self, frames: list[ContainerOutput | FrameError]) -> None:
        for frame in frames:
            if isinstance(frame, FrameError):
                preview = frame.payload[:200]
                self._log.warning(
                    "Dropping malformed output record", reason=frame.reason, preview=preview
                )
                continue
            await self._handle_output(frame)

    async def _read_stdout(self) -> None:
        stream = self._proc.stdout
        assert stream is not None
        while True:
            chunk = await stream.read(8192)
            if not chunk:
                break
            # A multi-byte character may straddle two reads
            await self._consume_text(self._utf8.decode(chunk))
        await self._consume_text(self._utf8.decode(b"", final=True))
        await self._dispatch(self._decoder.finish())

    async def _consume_text(self, text: str) -> None:
        if not text:
            return
        if self._stdout.append(text):
            self._log.warning("Container stdout truncated", size=len(self._stdout.text))
        if self.state is ControllerState.IDLE:
            self._transition(ControllerState.AWAITING_OUTPUT)
        await self._dispatch(self._decoder.feed(text))

    # -- run -----------------------------------------------------------------

    async def run(self) -> _ExitInfo:
        """Consume the process's output until it exits and report what happened."""
        start = time.monotonic()
        self._hard_deadline = start + self._hard_timeout
        self._idle_deadline = start + self._idle_timeout
        self._transition(ControllerState.RUNNING)

        assert self._proc.stderr is not None
        watcher = asyncio.create_task(self._watch_deadlines())
        stderr_task = asyncio.create_task(
            read_stderr(self._proc.stderr, self._max_output_size, self._group_name)
        )
        stderr_buf: _CappedBuffer | None = None
        try:
            await self._read_stdout()
            stderr_buf = await stderr_task
            exit_code = await self._proc.wait()
        finally:
            if self.timeout_kind is None:
                watcher.cancel()
            if not stderr_task.done():
                stderr_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await watcher

        if self.timeout_kind is None:
            if self.output_count or exit_code == 0:
                self._transition(ControllerState.CLOSING_SUCCESS)
            else:
                self._transition(ControllerState.CLOSING_ERROR)

        return _ExitInfo(
            exit_code=exit_code,
            stderr=stderr_buf.text if stderr_buf else "",
            stderr_truncated=stderr_buf.truncated if stderr_buf else False,
            timeout_kind=self.timeout_kind,
            timeout_secs=self._hard_timeout if self.timeout_kind == "hard" else self._idle_timeout,
            duration_ms=(time.monotonic() - start) * 1000,
            output_count=self.output_count,
            last_output=self.last_output,
            last_session_id=self.last_session_id,
        )

    def mark_exited(self) -> None:
        self._transition(ControllerState.EXITED)
