"""Output framing on stdout.

stdout carries nothing but framed records; diagnostics go to stderr.
"""

from __future__ import annotations

import json
import sys

from agent_runner.models import ContainerOutput

OUTPUT_START_MARKER = "---OUTPUT-START---"
OUTPUT_END_MARKER = "---OUTPUT-END---"


def encode(output: ContainerOutput) -> str:
    return f"{OUTPUT_START_MARKER}\n{json.dumps(output.to_dict())}\n{OUTPUT_END_MARKER}\n"


def write_output(output: ContainerOutput) -> None:
    """Write a marker-wrapped output to stdout."""
    sys.stdout.write(encode(output))
    sys.stdout.flush()


def log(message: str) -> None:
    """Log to stderr (captured by host container runner)."""
    print(f"[agent-runner] {message}", file=sys.stderr, flush=True)
