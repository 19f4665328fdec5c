"""Per-run report files under ``groups/<folder>/logs``."""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from pathlib import Path

from berth.container_runner._process import _ExitInfo
from berth.container_runner._serialization import _input_to_dict
from berth.types import ContainerInput, VolumeMount


def _section(title: str, *body: str) -> list[str]:
    return [f"[{title}]", *body, ""]


def _mount_line(m: VolumeMount, *, with_host: bool) -> str:
    mode = "ro" if m.readonly else "rw"
    if with_host:
        return f"{m.host_path} => {m.container_path} ({mode})"
    return f"{m.container_path} ({mode})"


def _write_run_log(
    *,
    logs_dir: Path,
    group_name: str,
    container_name: str,
    input_data: ContainerInput,
    container_args: list[str],
    mounts: list[VolumeMount],
    stdout: str,
    stdout_truncated: bool,
    exit_info: _ExitInfo,
) -> Path:
    """Write one report per container run and return its path.

    Timed-out runs get a short report. Failed runs, or any run while the
    host logs at debug, include the full input, argv, mounts and captured
    streams.
    """
    started = datetime.now(UTC)
    stamp = started.strftime("%Y%m%dT%H%M%S%fZ")
    log_file = logs_dir / f"container-{stamp}.log"

    header = [
        f"berth run report: {group_name}",
        f"at={started.isoformat()} container={container_name}",
        f"exit_code={exit_info.exit_code} duration_ms={exit_info.duration_ms:.0f}"
        f" records={exit_info.output_count}",
    ]

    if exit_info.timed_out:
        header.append(
            f"TIMED OUT after {exit_info.timeout_secs:.0f}s ({exit_info.timeout_kind})"
        )
        log_file.write_text("\n".join(header) + "\n")
        return log_file

    header.append(f"main={input_data.is_main}")
    header.append(
        f"truncated: stdout={stdout_truncated} stderr={exit_info.stderr_truncated}"
    )
    lines = [*header, ""]

    verbose = logging.getLogger("berth").isEnabledFor(logging.DEBUG)
    if verbose or exit_info.exit_code != 0:
        lines += _section("input", json.dumps(_input_to_dict(input_data), indent=2))
        lines += _section("argv", " ".join(container_args))
        lines += _section("mounts", *(_mount_line(m, with_host=True) for m in mounts))
        lines += _section("stderr", exit_info.stderr)
        lines += _section("stdout", stdout)
    else:
        lines += _section(
            "input",
            f"prompt_chars={len(input_data.prompt)}",
            f"session={input_data.session_id or '<new>'}",
        )
        lines += _section("mounts", *(_mount_line(m, with_host=False) for m in mounts))

    log_file.write_text("\n".join(lines))
    return log_file
