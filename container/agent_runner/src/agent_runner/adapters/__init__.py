"""Agent backend adapters and backend selection.

``BERTH_SDK_BACKEND`` picks the backend for the whole container process.
Anything other than ``claude`` or ``opencode`` is a configuration error.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from typing import Literal

from agent_runner.adapters.base import AgentAdapter, QueryOptions, Session, SessionConfig
from agent_runner.errors import ConfigurationError

SdkBackend = Literal["claude", "opencode"]

SDK_BACKEND_ENV = "BERTH_SDK_BACKEND"
SDK_BACKENDS: tuple[str, ...] = ("claude", "opencode")


def get_sdk_backend(env: Mapping[str, str] | None = None) -> SdkBackend:
    """Backend named by ``BERTH_SDK_BACKEND``; ``claude`` when unset or blank."""
    env = os.environ if env is None else env
    raw = (env.get(SDK_BACKEND_ENV) or "").strip()
    if not raw:
        return "claude"
    if raw not in SDK_BACKENDS:
        raise ConfigurationError(f"Invalid SDK backend: {raw}. Must be 'claude' or 'opencode'")
    return raw  # type: ignore[return-value]


def create_adapter(backend: SdkBackend | None = None) -> AgentAdapter:
    """Instantiate the adapter for ``backend`` (read from the environment if omitted).

    SDK imports are deferred so a container only loads the backend it runs.
    """
    selected = backend or get_sdk_backend()
    match selected:
        case "claude":
            from agent_runner.adapters.claude import ClaudeAdapter

            return ClaudeAdapter()
        case "opencode":
            from agent_runner.adapters.opencode import OpenCodeAdapter

            return OpenCodeAdapter()
    raise ConfigurationError(f"Invalid SDK backend: {selected}. Must be 'claude' or 'opencode'")


__all__ = [
    "SDK_BACKEND_ENV",
    "AgentAdapter",
    "QueryOptions",
    "SdkBackend",
    "Session",
    "SessionConfig",
    "create_adapter",
    "get_sdk_backend",
]
