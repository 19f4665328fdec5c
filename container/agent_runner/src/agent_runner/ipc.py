"""Container half of the mailbox: follow-up turns and the close sentinel.

The host drops ``<ms>-<hex>.json`` files (``{"type": "message", "text": ...}``)
into the input directory and touches ``_close`` to end the session. Files are
consumed in filename order and deleted once read.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
from pathlib import Path

from agent_runner.framing import log

IPC_INPUT_DIR = Path("/workspace/ipc/input")
CLOSE_SENTINEL = "_close"
IPC_POLL_SECONDS = 0.5


class Mailbox:
    def __init__(self, input_dir: Path = IPC_INPUT_DIR, poll_interval: float = IPC_POLL_SECONDS):
        self.input_dir = input_dir
        self.poll_interval = poll_interval

    @property
    def close_sentinel(self) -> Path:
        return self.input_dir / CLOSE_SENTINEL

    def drain_pending(self) -> list[str]:
        """Consume every pending message file. Returns the texts found, in order."""
        try:
            self.input_dir.mkdir(parents=True, exist_ok=True)
            files = sorted(f for f in self.input_dir.iterdir() if f.suffix == ".json")
        except OSError as exc:
            log(f"IPC drain error: {exc}")
            return []

        messages: list[str] = []
        for file_path in files:
            try:
                data = json.loads(file_path.read_text())
            except FileNotFoundError:
                # Consumed by someone else between listing and reading
                continue
            except (OSError, ValueError) as exc:
                log(f"Failed to process input file {file_path.name}: {exc}")
                with contextlib.suppress(OSError):
                    file_path.unlink()
                continue

            with contextlib.suppress(FileNotFoundError):
                file_path.unlink()
            if isinstance(data, dict) and data.get("type") == "message" and data.get("text"):
                messages.append(data["text"])
            else:
                log(f"Ignoring input file {file_path.name}: not a message entry")
        return messages

    def is_close_requested(self) -> bool:
        """Check for the close sentinel, consuming it if present."""
        if self.close_sentinel.exists():
            with contextlib.suppress(OSError):
                self.close_sentinel.unlink()
            return True
        return False

    def clear_stale_close(self) -> None:
        self.input_dir.mkdir(parents=True, exist_ok=True)
        with contextlib.suppress(FileNotFoundError):
            self.close_sentinel.unlink()

    async def await_next(self) -> str | None:
        """Wait for the next turn's prompt, or None once close is requested.

        Pending messages win over a close that lands in the same poll: the
        messages are returned now and the sentinel is left for the next call.
        """
        while True:
            messages = self.drain_pending()
            if messages:
                return "\n".join(messages)
            if self.is_close_requested():
                return None
            await asyncio.sleep(self.poll_interval)
