"""Data models for berth."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

SdkBackend = Literal["claude", "opencode"]
OutputStatus = Literal["success", "error", "timeout"]


@dataclass
class AdditionalMount:
    host_path: str  # Absolute path on host (supports ~ for home)
    container_path: str | None = None  # Defaults to /workspace/extra/<basename>
    readonly: bool = True


@dataclass
class VolumeMount:
    host_path: str
    container_path: str
    readonly: bool = False


@dataclass
class GroupContainerConfig:
    """Per-group overrides. ``None`` fields inherit the global settings."""

    additional_mounts: list[AdditionalMount] = field(default_factory=list)
    timeout: float | None = None  # Seconds
    sdk_backend: str | None = None  # validated at spawn time, not here
    opencode_model: str | None = None

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> GroupContainerConfig:
        return cls(
            additional_mounts=[AdditionalMount(**m) for m in raw.get("additional_mounts", [])],
            timeout=raw.get("timeout"),
            sdk_backend=raw.get("sdk_backend"),
            opencode_model=raw.get("opencode_model"),
        )


@dataclass
class RegisteredGroup:
    jid: str  # Canonical chat identifier
    name: str  # Display name
    folder: str  # Folder under groups/
    trigger: str = ""
    added_at: str = ""
    container_config: GroupContainerConfig | None = None


@dataclass
class ContainerInput:
    """Payload written to the container's stdin at spawn."""

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


@dataclass
class ContainerOutput:
    """One framed record from the container, or the controller's final verdict.

    On the wire the session id travels as ``newSessionId`` and a failed turn
    puts its text in ``result``. ``error`` is never read from the wire; only
    verdicts the host synthesizes (spawn failure, timeout, crash) set it.
    """

    status: OutputStatus
    result: str | None = None
    new_session_id: str | None = None
    error: str | None = None
