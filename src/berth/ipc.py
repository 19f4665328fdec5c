"""Host half of the mailbox: enqueue follow-up turns and request close.

A running container polls ``<data_dir>/ipc/<group>/input`` (mounted at
``/workspace/ipc/input``). Each ``.json`` file there is one message; the
empty ``_close`` file tells the container to exit after the current turn.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import random
import time
from pathlib import Path

from berth.config import get_settings

CLOSE_SENTINEL = "_close"


def ipc_input_dir(group_folder: str) -> Path:
    return get_settings().data_dir / "ipc" / group_folder / "input"


def _write_message_file(input_dir: Path, text: str) -> Path:
    input_dir.mkdir(parents=True, exist_ok=True)
    # ms timestamp first so filename order is enqueue order
    filename = f"{int(time.time() * 1000)}-{random.randbytes(3).hex()}.json"
    filepath = input_dir / filename
    temp_path = filepath.with_suffix(".json.tmp")
    temp_path.write_text(json.dumps({"type": "message", "text": text}))
    temp_path.rename(filepath)
    return filepath


async def send_ipc_message(group_folder: str, text: str) -> Path:
    """Queue a follow-up message for the group's running container.

    The write is atomic (tmp file, then rename) so the reader never sees a
    partial entry.
    """
    input_dir = ipc_input_dir(group_folder)
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, _write_message_file, input_dir, text)


def request_close(group_folder: str) -> None:
    """Ask the group's container to shut down once it is between turns."""
    input_dir = ipc_input_dir(group_folder)
    input_dir.mkdir(parents=True, exist_ok=True)
    (input_dir / CLOSE_SENTINEL).touch()


def clean_ipc_input(group_folder: str) -> None:
    """Remove stale mailbox entries left over from a previous container."""
    input_dir = ipc_input_dir(group_folder)
    if not input_dir.is_dir():
        return
    for f in input_dir.iterdir():
        with contextlib.suppress(OSError):
            f.unlink()
