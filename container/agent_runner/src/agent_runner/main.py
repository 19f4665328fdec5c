"""Berth agent runner, executed inside the container.

Input protocol:
  Stdin: Full ContainerInput JSON (read until EOF)
  IPC:   Follow-up messages written as JSON files to /workspace/ipc/input/
         Sentinel: /workspace/ipc/input/_close signals session end

Stdout protocol:
  Each turn's result is wrapped in OUTPUT_START_MARKER / OUTPUT_END_MARKER
  pairs. Nothing else is written to stdout.
"""

from __future__ import annotations

import json
import os
import sys
from collections.abc import Mapping

from agent_runner.adapters import AgentAdapter, SdkBackend, create_adapter, get_sdk_backend
from agent_runner.adapters.base import QueryOptions, Session, SessionConfig
from agent_runner.errors import ConfigurationError
from agent_runner.framing import log, write_output
from agent_runner.ipc import IPC_INPUT_DIR, Mailbox
from agent_runner.models import ContainerInput, ContainerOutput, ResultMessage, SystemMessage

MODEL_ENV = "BERTH_MODEL"
OPENCODE_MODEL_ENV = "BERTH_OPENCODE_MODEL"

SCHEDULED_TASK_PREFIX = (
    "[SCHEDULED TASK - The following message was sent automatically "
    "and is not coming directly from the user or group.]\n\n"
)

DEFAULT_ALLOWED_TOOLS = [
    "Bash",
    "Read",
    "Write",
    "Edit",
    "Glob",
    "Grep",
    "WebSearch",
    "WebFetch",
    "Task",
    "TodoWrite",
    "NotebookEdit",
]


# ---------------------------------------------------------------------------
# Input → session
# ---------------------------------------------------------------------------


def build_initial_prompt(container_input: ContainerInput, mailbox: Mailbox) -> str:
    """The first turn's prompt, with any messages queued before startup folded in."""
    prompt = container_input.prompt
    if container_input.is_scheduled_task:
        prompt = SCHEDULED_TASK_PREFIX + prompt
    pending = mailbox.drain_pending()
    if pending:
        log(f"Draining {len(pending)} pending IPC messages into initial prompt")
        prompt += "\n" + "\n".join(pending)
    return prompt


def resolve_model(backend: SdkBackend, env: Mapping[str, str] | None = None) -> str | None:
    env = os.environ if env is None else env
    candidates = [env.get(MODEL_ENV)]
    if backend == "opencode":
        candidates.insert(0, env.get(OPENCODE_MODEL_ENV))
    for candidate in candidates:
        if candidate and candidate.strip():
            return candidate.strip()
    return None


def build_session_config(
    container_input: ContainerInput,
    backend: SdkBackend,
    env: Mapping[str, str] | None = None,
) -> SessionConfig:
    allowed = container_input.allowed_tools
    return SessionConfig(
        allowed_tools=list(allowed) if allowed is not None else list(DEFAULT_ALLOWED_TOOLS),
        system_prompt_append=container_input.system_prompt_append,
        mcp_servers=dict(container_input.mcp_servers or {}),
        model=resolve_model(backend, env),
    )


def result_to_output(result: ResultMessage, session_id: str | None) -> ContainerOutput:
    """Map one turn's result onto the wire record."""
    if result.subtype == "success":
        return ContainerOutput(status="success", result=result.result, new_session_id=session_id)
    status = "timeout" if result.subtype == "timeout" else "error"
    return ContainerOutput(status=status, result=result.result, new_session_id=session_id)


async def open_session(
    adapter: AgentAdapter, container_input: ContainerInput, config: SessionConfig
) -> Session:
    if container_input.session_id:
        log(
            f"Resuming session {container_input.session_id}"
            f"{f' at {container_input.resume_at}' if container_input.resume_at else ''}"
        )
        session = await adapter.resume_session(
            container_input.session_id, container_input.resume_at
        )
        session.config = config
        return session
    return await adapter.create_session(config)


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------


async def run(
    adapter: AgentAdapter,
    container_input: ContainerInput,
    backend: SdkBackend,
    mailbox: Mailbox,
) -> str | None:
    """Run the session until close; returns the last session id."""
    config = build_session_config(container_input, backend)
    prompt = build_initial_prompt(container_input, mailbox)
    session = await open_session(adapter, container_input, config)

    result_count = 0
    async for message in adapter.run_multi_turn_query(session, prompt, QueryOptions(), mailbox):
        if isinstance(message, SystemMessage) and message.subtype == "init":
            log(f"Session initialized: {message.session_id}")
        elif isinstance(message, ResultMessage):
            result_count += 1
            log(f"Result #{result_count}: subtype={message.subtype}")
            write_output(result_to_output(message, session.id))
    log(f"Session ended after {result_count} turns")
    return session.id


async def main() -> None:
    # Read input from stdin
    try:
        stdin_data = sys.stdin.read()
        container_input = ContainerInput.from_dict(json.loads(stdin_data))
        log(f"Received input for group: {container_input.group_folder}")
    except (ValueError, TypeError) as exc:
        write_output(ContainerOutput(status="error", result=f"Failed to parse input: {exc}"))
        sys.exit(1)

    try:
        backend = get_sdk_backend()
    except ConfigurationError as exc:
        log(str(exc))
        write_output(ContainerOutput(status="error", result=str(exc)))
        sys.exit(1)
    log(f"Using SDK backend: {backend}")

    # Drop a _close left over from the previous container
    mailbox = Mailbox(IPC_INPUT_DIR)
    mailbox.clear_stale_close()

    try:
        await run(create_adapter(backend), container_input, backend, mailbox)
    except Exception as exc:
        log(f"Agent error: {exc}")
        write_output(
            ContainerOutput(
                status="error",
                new_session_id=container_input.session_id,
                result=f"{type(exc).__name__}: {exc}",
            )
        )
        sys.exit(1)
