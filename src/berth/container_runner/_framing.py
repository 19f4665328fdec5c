"""Marker-delimited output framing on the container's stdout.

Each record is three lines::

    ---OUTPUT-START---
    {"status": "success", "result": "...", "newSessionId": "..."}
    ---OUTPUT-END---

Only the start marker matters to the decoder: the first complete line after
it is the payload. Anything else on stdout (SDK chatter, stray prints) is
ignored, and a record may be split across any number of reads.
"""

from __future__ import annotations

import json
from collections.abc import Iterable
from dataclasses import dataclass

from berth.container_runner._serialization import _output_to_dict, _parse_container_output
from berth.types import ContainerOutput

OUTPUT_START_MARKER = "---OUTPUT-START---"
OUTPUT_END_MARKER = "---OUTPUT-END---"


@dataclass(frozen=True)
class FrameError:
    """A start marker whose payload line could not be decoded."""

    payload: str
    reason: str


DecodedFrame = ContainerOutput | FrameError


def encode(output: ContainerOutput) -> str:
    return f"{OUTPUT_START_MARKER}\n{json.dumps(_output_to_dict(output))}\n{OUTPUT_END_MARKER}\n"


class OutputDecoder:
    """Incremental decoder; feed it text as it arrives from the pipe."""

    def __init__(self) -> None:
        self._buffer = ""
        self._awaiting_payload = False

    @property
    def leftover(self) -> str:
        """Text after the last complete line, held until more data arrives."""
        return self._buffer

    def feed(self, text: str) -> list[DecodedFrame]:
        self._buffer += text
        frames: list[DecodedFrame] = []
        while True:
            newline = self._buffer.find("\n")
            if newline == -1:
                break
            line = self._buffer[:newline]
            self._buffer = self._buffer[newline + 1 :]
            frame = self._consume_line(line)
            if frame is not None:
                frames.append(frame)
        return frames

    def finish(self) -> list[DecodedFrame]:
        """Treat whatever is buffered at EOF as a final line."""
        if not self._buffer:
            return []
        line, self._buffer = self._buffer, ""
        frame = self._consume_line(line)
        return [frame] if frame is not None else []

    def _consume_line(self, line: str) -> DecodedFrame | None:
        stripped = line.strip()
        if not self._awaiting_payload:
            if stripped == OUTPUT_START_MARKER:
                self._awaiting_payload = True
            return None

        if stripped == OUTPUT_START_MARKER:
            # Previous record never got its payload; start over on this marker
            return FrameError(payload="", reason="start marker without payload")
        self._awaiting_payload = False
        if stripped == OUTPUT_END_MARKER:
            return FrameError(payload="", reason="empty record")
        try:
            return _parse_container_output(stripped)
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
            return FrameError(payload=stripped, reason=f"{type(exc).__name__}: {exc}")


def decode(chunks: Iterable[str]) -> tuple[list[DecodedFrame], str]:
    """Decode a finite sequence of chunks. Returns (frames, leftover)."""
    decoder = OutputDecoder()
    frames: list[DecodedFrame] = []
    for chunk in chunks:
        frames.extend(decoder.feed(chunk))
    return frames, decoder.leftover
