"""Container runner: spawns agent execution in containers.

Writes the input payload to the container's stdin, decodes framed records
from its stdout as they arrive, enforces the hard and idle deadlines, and
writes a run log per invocation.

This package is split into focused submodules:
  _serialization: JSON boundary crossing (ContainerInput -> dict, output parsing)
  _framing: marker-delimited record encoding and incremental decoding
  _mounts: Volume mount list and container arg construction
  _process: stderr reading, graceful stop, exit classification
  _controller: per-run state machine, deadlines and record relay
  _logging: Run log file writing
  _orchestrator: Main entry point (run_container_agent)
"""

# Re-export public API so that `from berth.container_runner import X` works.
# Private helpers (_xxx) should be imported from their submodules directly.

from berth.container_runner._controller import ControllerState, SessionHostController
from berth.container_runner._framing import (
    OUTPUT_END_MARKER,
    OUTPUT_START_MARKER,
    FrameError,
    OutputDecoder,
    decode,
    encode,
)
from berth.container_runner._orchestrator import (
    OnOutput,
    OnProcess,
    oneshot_container_name,
    reset_spawn_limit,
    resolve_container_timeout,
    resolve_hard_timeout,
    run_container_agent,
)
from berth.container_runner._process import read_stderr

__all__ = [
    "OUTPUT_END_MARKER",
    "OUTPUT_START_MARKER",
    "ControllerState",
    "FrameError",
    "OnOutput",
    "OnProcess",
    "OutputDecoder",
    "SessionHostController",
    "decode",
    "encode",
    "oneshot_container_name",
    "read_stderr",
    "reset_spawn_limit",
    "resolve_container_timeout",
    "resolve_hard_timeout",
    "run_container_agent",
]
