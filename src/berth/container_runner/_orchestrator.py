"""Main entry point: spawns a container agent, drives it, returns the result."""

from __future__ import annotations

import asyncio
import json
import time
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

from berth.backend_selection import SDK_BACKEND_ENV, build_container_env
from berth.config import get_settings
from berth.container_runner._controller import SessionHostController
from berth.container_runner._logging import _write_run_log
from berth.container_runner._mounts import _build_container_args, _build_volume_mounts
from berth.container_runner._process import _classify_exit
from berth.container_runner._serialization import _input_to_dict
from berth.ipc import clean_ipc_input
from berth.logger import logger
from berth.types import ContainerInput, ContainerOutput, RegisteredGroup

# ---------------------------------------------------------------------------
# Type aliases
# ---------------------------------------------------------------------------

OnProcess = Callable[[asyncio.subprocess.Process, str], Any]
OnOutput = Callable[[ContainerOutput], Awaitable[None]]


# ---------------------------------------------------------------------------
# Container timeout resolution
# ---------------------------------------------------------------------------


def resolve_container_timeout(group: RegisteredGroup) -> float:
    """Seconds allowed for a run: the group override, else ``container.timeout_ms``."""
    if group.container_config and group.container_config.timeout:
        return group.container_config.timeout
    return get_settings().container_timeout


def resolve_hard_timeout(group: RegisteredGroup) -> float:
    """Hard ceiling for a run: never shorter than the idle timeout plus 30s grace."""
    return max(resolve_container_timeout(group), get_settings().idle_timeout + 30.0)


# ---------------------------------------------------------------------------
# Container name helpers
# ---------------------------------------------------------------------------


def oneshot_container_name(group_folder: str) -> str:
    """Timestamped container name; unique per run."""
    safe_name = "".join(c if c.isalnum() or c == "-" else "-" for c in group_folder)
    return f"berth-{safe_name}-{int(time.time() * 1000)}"


# ---------------------------------------------------------------------------
# Concurrency limit
# ---------------------------------------------------------------------------

_spawn_limit: asyncio.Semaphore | None = None


def _get_spawn_limit() -> asyncio.Semaphore:
    global _spawn_limit
    if _spawn_limit is None:
        _spawn_limit = asyncio.Semaphore(get_settings().container.max_concurrent)
    return _spawn_limit


def reset_spawn_limit() -> None:
    """Drop the shared semaphore so the next run re-reads max_concurrent."""
    global _spawn_limit
    _spawn_limit = None


# ---------------------------------------------------------------------------
# Stdin payload
# ---------------------------------------------------------------------------


async def _write_stdin(
    proc: asyncio.subprocess.Process, input_data: ContainerInput, container_name: str
) -> None:
    """Write the input payload and close stdin so the runner sees EOF."""
    if proc.stdin is None:
        return
    try:
        proc.stdin.write(json.dumps(_input_to_dict(input_data)).encode())
        await proc.stdin.drain()
    except (BrokenPipeError, ConnectionResetError) as exc:
        # The exit path reports the real failure from the exit code and stderr
        logger.warning(
            "Container closed stdin before input was written",
            container=container_name,
            error=str(exc),
        )
    finally:
        proc.stdin.close()


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


async def run_container_agent(
    group: RegisteredGroup,
    input_data: ContainerInput,
    on_process: OnProcess,
    on_output: OnOutput | None = None,
) -> ContainerOutput:
    """Spawn a container agent, relay its records, and resolve one final result.

    With ``on_output`` every decoded record is delivered as it arrives and the
    return value only carries the last session id. Without it the result of
    the last record is carried as well (legacy mode).

    Workspace, spawn and process failures resolve to an ``error`` result; the
    run log and the ``on_process`` callback are best effort.

    Args:
        group: Group whose folder, mounts and backend override shape the run.
        input_data: Input payload written to the agent-runner's stdin.
        on_process: Callback invoked with (proc, container_name) after spawn.
        on_output: If provided, awaited for each record in stdout order.

    Raises:
        ConfigurationError: the group's backend override is not a known backend.
    """
    s = get_settings()

    container_name = oneshot_container_name(group.folder)
    container_env = build_container_env(group)

    try:
        mounts = _build_volume_mounts(group)
        clean_ipc_input(group.folder)
    except OSError as exc:
        logger.error("Failed to prepare group workspace", group=group.name, error=str(exc))
        return ContainerOutput(status="error", result=None, error=f"Workspace setup failed: {exc}")
    container_args = _build_container_args(mounts, container_name, container_env)

    logs_dir: Path | None = s.groups_dir / group.folder / "logs"
    try:
        logs_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        logger.warning("Run log disabled for this run", group=group.name, error=str(exc))
        logs_dir = None

    async with _get_spawn_limit():
        logger.info(
            "Starting agent container",
            group=group.name,
            container=container_name,
            sdk_backend=container_env.get(SDK_BACKEND_ENV),
            mount_count=len(mounts),
            is_main=input_data.is_main,
        )
        try:
            proc = await asyncio.create_subprocess_exec(
                s.container.runtime,
                *container_args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            logger.error("Failed to spawn container", error=str(exc), container=container_name)
            return ContainerOutput(status="error", result=None, error=f"Spawn failed: {exc}")

        try:
            on_process(proc, container_name)
        except Exception as exc:
            logger.error(
                "Process callback failed",
                container=container_name,
                error_type=type(exc).__name__,
                error=str(exc),
            )
        await _write_stdin(proc, input_data, container_name)

        controller = SessionHostController(
            proc,
            container_name=container_name,
            group_name=group.name,
            hard_timeout=resolve_hard_timeout(group),
            idle_timeout=s.idle_timeout,
            tick_interval=s.tick_interval,
            max_output_size=s.container.max_output_size,
            on_output=on_output,
        )
        exit_info = await controller.run()

    if logs_dir is not None:
        try:
            _write_run_log(
                logs_dir=logs_dir,
                group_name=group.name,
                container_name=container_name,
                input_data=input_data,
                container_args=container_args,
                mounts=mounts,
                stdout=controller.stdout,
                stdout_truncated=controller.stdout_truncated,
                exit_info=exit_info,
            )
        except OSError as exc:
            logger.warning("Failed to write run log", container=container_name, error=str(exc))

    result = _classify_exit(exit_info, group.name, container_name, streaming=on_output is not None)
    controller.mark_exited()
    return result
