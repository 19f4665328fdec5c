"""Stderr draining, container shutdown, and mapping a finished run to a result."""

from __future__ import annotations

import asyncio
import codecs
import contextlib
from dataclasses import dataclass
from typing import Literal

from berth.config import get_settings
from berth.logger import logger
from berth.types import ContainerOutput


class _CappedBuffer:
    """Accumulates text up to a byte budget, remembering whether it overflowed."""

    def __init__(self, limit: int) -> None:
        self.limit = limit
        self.text = ""
        self.truncated = False

    def append(self, chunk: str) -> bool:
        """Append a chunk. Returns True only on the call that first truncates."""
        if self.truncated:
            return False
        remaining = self.limit - len(self.text)
        if len(chunk) > remaining:
            self.text += chunk[:remaining]
            self.truncated = True
            return True
        self.text += chunk
        return False


async def read_stderr(
    stream: asyncio.StreamReader,
    max_output_size: int,
    group_name: str,
) -> _CappedBuffer:
    """Read container stderr, log each line at debug, and keep a capped copy."""
    buf = _CappedBuffer(max_output_size)
    utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
    while True:
        chunk = await stream.read(8192)
        text = utf8.decode(chunk, final=not chunk)
        if not text:
            if not chunk:
                break
            continue

        for line in text.strip().splitlines():
            if line:
                logger.debug("Container stderr", line=line, group=group_name)

        if buf.append(text):
            logger.warning(
                "Container stderr truncated at max_output_size",
                group=group_name,
                size=len(buf.text),
            )
    return buf


async def _graceful_stop(proc: asyncio.subprocess.Process, container_name: str) -> None:
    """``<runtime> stop -t 5`` the container, killing the run process if that stalls."""
    try:
        stop_proc = await asyncio.create_subprocess_exec(
            get_settings().container.runtime,
            "stop",
            "-t",
            "5",
            container_name,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
        try:
            await asyncio.wait_for(stop_proc.wait(), timeout=7.0)
        except TimeoutError:
            logger.warning("Container stop hung, killing run process", container=container_name)
            proc.kill()
        if proc.returncode is None:
            try:
                await asyncio.wait_for(proc.wait(), timeout=5.0)
            except TimeoutError:
                logger.warning(
                    "Run process outlived container stop, killing",
                    container=container_name,
                )
                proc.kill()
                with contextlib.suppress(ProcessLookupError):
                    await proc.wait()
    except OSError as exc:
        logger.error(
            "Could not launch container stop, killing run process",
            container=container_name,
            error=str(exc),
        )
        with contextlib.suppress(ProcessLookupError):
            proc.kill()


# ---------------------------------------------------------------------------
# Exit classification
# ---------------------------------------------------------------------------


@dataclass
class _ExitInfo:
    """Everything known about a run once its process has exited."""

    exit_code: int | None
    stderr: str
    stderr_truncated: bool
    timeout_kind: Literal["hard", "idle"] | None
    timeout_secs: float
    duration_ms: float
    output_count: int
    last_output: ContainerOutput | None
    last_session_id: str | None

    @property
    def timed_out(self) -> bool:
        return self.timeout_kind is not None


def _classify_exit(
    exit_info: _ExitInfo,
    group_name: str,
    container_name: str,
    *,
    streaming: bool,
) -> ContainerOutput:
    """Reduce a finished run to the ContainerOutput handed back to the caller.

    - Any output decoded → success with the last session id (idle cleanup if
      a timer fired). Without a streaming callback the last record's result
      is carried too, so the caller still gets the answer.
    - Timeout with no output → error
    - Non-zero exit with no output → error
    - Clean exit with no output → empty success
    """
    if exit_info.output_count:
        if exit_info.timed_out:
            logger.info(
                "Container reaped by timer after output",
                group=group_name,
                container=container_name,
                timeout=exit_info.timeout_kind,
                duration_ms=exit_info.duration_ms,
            )
        else:
            logger.info(
                "Container run finished",
                group=group_name,
                duration_ms=exit_info.duration_ms,
                exit_exit_code=exit_info.exit_code,
                output_events=exit_info.output_count,
                new_session_id=exit_info.last_session_id,
            )
        result = None
        if not streaming and exit_info.last_output is not None:
            result = exit_info.last_output.result
        return ContainerOutput(
            status="success", result=result, new_session_id=exit_info.last_session_id
        )

    if exit_info.timed_out:
        logger.error(
            "Container timed out before any output",
            group=group_name,
            container=container_name,
            timeout=exit_info.timeout_kind,
            duration_ms=exit_info.duration_ms,
        )
        return ContainerOutput(
            status="error",
            result=None,
            error=(
                f"Container timed out after {exit_info.timeout_secs:.0f}s "
                f"({exit_info.timeout_kind} timeout) with no output"
            ),
        )

    if exit_info.exit_code != 0:
        logger.error(
            "Container run failed",
            group=group_name,
            exit_code=exit_info.exit_code,
            duration_ms=exit_info.duration_ms,
        )
        return ContainerOutput(
            status="error",
            result=None,
            error=f"Container exited with code {exit_info.exit_code}: {exit_info.stderr[-200:]}",
        )

    logger.warning(
        "Container exited cleanly without output",
        group=group_name,
        duration_ms=exit_info.duration_ms,
    )
    return ContainerOutput(status="success", result=None)
