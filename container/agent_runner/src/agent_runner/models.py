"""Container I/O models and normalized agent messages.

ContainerInput: parsed from JSON on stdin at container start.
ContainerOutput: serialized to JSON on stdout, wrapped in output markers.
AgentMessage: what every backend adapter yields, whichever SDK is underneath.

The I/O models are the container-side equivalents of the host-side types in
``berth.types``. They share the same wire format but are defined
independently so the container has no dependency on the host package.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from typing import Any, Literal


@dataclass
class ContainerInput:
    """Parsed input received from the host via stdin JSON."""

    prompt: str
    group_folder: str
    chat_jid: str
    is_main: bool
    session_id: str | None = None
    resume_at: str | None = None
    is_scheduled_task: bool = False
    allowed_tools: list[str] | None = None
    system_prompt_append: str | None = None
    mcp_servers: dict[str, dict[str, Any]] | None = None

    def __post_init__(self) -> None:
        # The host may send "" for unset ids
        if self.session_id == "":
            self.session_id = None
        if self.resume_at == "":
            self.resume_at = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ContainerInput:
        """Create from a JSON-parsed dict, ignoring unknown keys."""
        if not isinstance(data, dict):
            raise TypeError(f"expected a JSON object, got {type(data).__name__}")
        known = {f.name for f in dataclasses.fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class ContainerOutput:
    """One framed record sent to the host per completed turn.

    Failures carry their ``"<Kind>: <detail>"`` text in ``result``.
    """

    status: Literal["success", "error", "timeout"]
    result: str | None = None
    new_session_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"status": self.status, "result": self.result}
        if self.new_session_id:
            d["newSessionId"] = self.new_session_id
        return d


# ---------------------------------------------------------------------------
# Normalized agent messages
# ---------------------------------------------------------------------------


ResultSubtype = Literal["success", "error", "timeout", "abort", "tool_error"]


@dataclass
class TokenUsage:
    input: int = 0
    output: int = 0
    reasoning: int = 0
    cache_read: int = 0
    cache_write: int = 0


@dataclass
class TextMessage:
    content: str
    uuid: str | None = None
    synthetic: bool = False
    type: Literal["text"] = "text"


@dataclass
class ToolUseMessage:
    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)
    state: str | None = None
    type: Literal["tool_use"] = "tool_use"


@dataclass
class ToolResultMessage:
    tool_use_id: str
    content: str
    is_error: bool = False
    metadata: dict[str, Any] | None = None
    type: Literal["tool_result"] = "tool_result"


@dataclass
class SystemMessage:
    subtype: str  # init, status, compacted, error, warning, task_notification, ...
    session_id: str | None = None
    message: str | None = None
    data: dict[str, Any] | None = None
    type: Literal["system"] = "system"


@dataclass
class ResultMessage:
    subtype: ResultSubtype
    result: str | None = None
    usage: TokenUsage | None = None
    cost: float | None = None
    type: Literal["result"] = "result"

    @property
    def is_success(self) -> bool:
        return self.subtype == "success"


@dataclass
class PermissionMessage:
    id: str
    permission_type: str
    title: str
    pattern: str | list[str] | None = None
    metadata: dict[str, Any] | None = None
    type: Literal["permission"] = "permission"


AgentMessage = (
    TextMessage
    | ToolUseMessage
    | ToolResultMessage
    | SystemMessage
    | ResultMessage
    | PermissionMessage
)


def error_text(kind: str, detail: str) -> str:
    """Render a failure as ``"<Kind>: <detail>"``, the one format every result uses."""
    return f"{kind}: {detail}"


def abort_result() -> ResultMessage:
    return ResultMessage(subtype="abort", result=error_text("MessageAbortedError", "Query aborted"))
