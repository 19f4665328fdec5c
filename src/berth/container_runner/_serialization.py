"""Serialization helpers for the host/container JSON boundary.

Converts ContainerInput to the stdin payload, and parses framed JSON from the
container back into ContainerOutput.
"""

from __future__ import annotations

import json
from typing import Any

from berth.types import ContainerInput, ContainerOutput

_VALID_STATUSES = frozenset({"success", "error", "timeout"})


def _input_to_dict(input_data: ContainerInput) -> dict[str, Any]:
    """Convert ContainerInput to dict for the agent-runner's stdin."""
    d: dict[str, Any] = {
        "prompt": input_data.prompt,
        "group_folder": input_data.group_folder,
        "chat_jid": input_data.chat_jid,
        "is_main": input_data.is_main,
    }
    if input_data.session_id is not None:
        d["session_id"] = input_data.session_id
    if input_data.resume_at is not None:
        d["resume_at"] = input_data.resume_at
    if input_data.is_scheduled_task:
        d["is_scheduled_task"] = True
    if input_data.allowed_tools is not None:
        d["allowed_tools"] = input_data.allowed_tools
    if input_data.system_prompt_append:
        d["system_prompt_append"] = input_data.system_prompt_append
    if input_data.mcp_servers is not None:
        d["mcp_servers"] = input_data.mcp_servers
    return d


def _output_to_dict(output: ContainerOutput) -> dict[str, Any]:
    d: dict[str, Any] = {"status": output.status, "result": output.result}
    if output.new_session_id:
        d["newSessionId"] = output.new_session_id
    return d


def _parse_container_output(json_str: str) -> ContainerOutput:
    """Parse one framed payload into ContainerOutput.

    Raises json.JSONDecodeError, KeyError (missing status), TypeError (payload
    is not an object) or ValueError (unknown status).
    """
    data = json.loads(json_str)
    if not isinstance(data, dict):
        raise TypeError(f"expected a JSON object, got {type(data).__name__}")
    status = data["status"]
    if status not in _VALID_STATUSES:
        raise ValueError(f"unknown status {status!r}")
    return ContainerOutput(
        status=status,
        result=data.get("result"),
        new_session_id=data.get("newSessionId"),
    )
