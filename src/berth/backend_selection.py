"""Backend selection: which agent SDK a container runs, and with which model.

The global backend comes from ``BERTH_SDK_BACKEND`` when set, otherwise from
``[agent] sdk_backend``. A group may override it through its container config.
Both are validated against the two supported backends; a bad value is a
``ConfigurationError`` rather than a silent fallback.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Literal, cast

from berth.config import DEFAULT_OPENCODE_MODEL, SDK_BACKENDS, get_settings
from berth.errors import ConfigurationError
from berth.types import RegisteredGroup, SdkBackend

SDK_BACKEND_ENV = "BERTH_SDK_BACKEND"
MODEL_ENV = "BERTH_MODEL"
OPENCODE_MODEL_ENV = "BERTH_OPENCODE_MODEL"
OPENCODE_PORT_ENV = "BERTH_OPENCODE_PORT"


def parse_sdk_backend(value: str, *, label: str = "SDK backend") -> SdkBackend:
    """Validate a backend name, raising ConfigurationError for anything unknown."""
    if value not in SDK_BACKENDS:
        raise ConfigurationError(f"Invalid {label}: {value}. Must be 'claude' or 'opencode'")
    return cast(SdkBackend, value)


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


def resolve_global_backend(env: Mapping[str, str] | None = None) -> SdkBackend:
    env = os.environ if env is None else env
    raw = _clean(env.get(SDK_BACKEND_ENV))
    if raw is not None:
        return parse_sdk_backend(raw)
    return get_settings().agent.sdk_backend


def resolve_opencode_model(env: Mapping[str, str] | None = None) -> str:
    """Global OpenCode model: BERTH_OPENCODE_MODEL > BERTH_MODEL > config > default.

    Blank values are skipped at every level.
    """
    env = os.environ if env is None else env
    s = get_settings()
    for candidate in (
        env.get(OPENCODE_MODEL_ENV),
        env.get(MODEL_ENV),
        s.agent.opencode_model,
        s.agent.model,
    ):
        if cleaned := _clean(candidate):
            return cleaned
    return DEFAULT_OPENCODE_MODEL


@dataclass(frozen=True)
class GroupBackendSelection:
    sdk_backend: SdkBackend
    source: Literal["global", "group"]
    opencode_model: str


def resolve_group_backend(
    group: RegisteredGroup, env: Mapping[str, str] | None = None
) -> GroupBackendSelection:
    """Backend and model in effect for one group."""
    global_backend = resolve_global_backend(env)
    global_model = resolve_opencode_model(env)

    cfg = group.container_config
    if cfg is None:
        return GroupBackendSelection(global_backend, "global", global_model)

    model = _clean(cfg.opencode_model) or global_model
    group_backend = _clean(cfg.sdk_backend)
    if group_backend is None:
        return GroupBackendSelection(global_backend, "global", model)
    return GroupBackendSelection(
        parse_sdk_backend(group_backend, label="group SDK backend"), "group", model
    )


def build_container_env(
    group: RegisteredGroup, env: Mapping[str, str] | None = None
) -> dict[str, str]:
    """Environment variables passed into the group's container."""
    selection = resolve_group_backend(group, env)
    container_env = {
        SDK_BACKEND_ENV: selection.sdk_backend,
        OPENCODE_PORT_ENV: str(get_settings().agent.opencode_port),
    }
    if selection.sdk_backend == "opencode":
        container_env[MODEL_ENV] = selection.opencode_model
        container_env[OPENCODE_MODEL_ENV] = selection.opencode_model
    elif model := get_settings().agent.model:
        container_env[MODEL_ENV] = model
    return container_env
