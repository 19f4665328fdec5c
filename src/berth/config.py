"""Host settings for berth, loaded once per process.

Values come from ``config.toml`` in the working directory, then ``.env``,
then the environment, each layer overriding the one before it. Nested keys
are addressed with a double underscore, so ``CONTAINER__IDLE_TIMEOUT_MS=60000``
overrides ``[container] idle_timeout_ms``.

    >>> from berth.config import get_settings
    >>> get_settings().container.runtime
    'docker'
"""

from __future__ import annotations

from functools import cached_property
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

from berth.logger import apply_log_level
from berth.types import AdditionalMount, GroupContainerConfig, RegisteredGroup

SDK_BACKENDS: tuple[str, ...] = ("claude", "opencode")
DEFAULT_OPENCODE_MODEL = "anthropic/claude-sonnet-4-20250514"

# ---------------------------------------------------------------------------
# config.toml tables
# ---------------------------------------------------------------------------


class _StrictModel(BaseModel):
    """Unknown keys in a table are an error."""

    model_config = {"extra": "forbid"}


class AgentConfig(_StrictModel):
    sdk_backend: Literal["claude", "opencode"] = "claude"
    model: str | None = None
    opencode_model: str | None = None
    opencode_port: int = 4096


class ContainerConfig(_StrictModel):
    image: str = "berth-agent:latest"
    runtime: str = "docker"  # CLI used for run/stop
    timeout_ms: int = 30 * 60 * 1000
    idle_timeout_ms: int = 30 * 60 * 1000
    tick_interval_ms: int = 1000
    max_output_size: int = 10 * 1024 * 1024  # bytes of stdout/stderr kept
    max_concurrent: int = 5

    @field_validator("max_concurrent")
    @classmethod
    def clamp_max_concurrent(cls, v: int) -> int:
        return max(1, v)

    @field_validator("tick_interval_ms")
    @classmethod
    def validate_tick_interval(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("tick_interval_ms must be positive")
        return v


class HealthConfig(_StrictModel):
    host: str = "127.0.0.1"
    port: int = 8787


class LoggingConfig(_StrictModel):
    level: str = "INFO"

    @field_validator("level")
    @classmethod
    def normalize_level(cls, v: str) -> str:
        return v.upper()


class MountConfig(_StrictModel):
    host_path: str
    container_path: str | None = None
    readonly: bool = True


class GroupConfig(_StrictModel):
    """A registered group under [groups.<folder>]."""

    jid: str
    name: str
    trigger: str = ""
    timeout: float | None = None  # seconds; None → container.timeout_ms
    sdk_backend: str | None = None  # None → inherit [agent] sdk_backend
    opencode_model: str | None = None
    additional_mounts: list[MountConfig] = []

    @field_validator("sdk_backend")
    @classmethod
    def validate_sdk_backend(cls, v: str | None) -> str | None:
        if v is not None and v not in SDK_BACKENDS:
            raise ValueError(f"Invalid group SDK backend: {v}. Must be 'claude' or 'opencode'")
        return v

    def to_registered_group(self, folder: str) -> RegisteredGroup:
        return RegisteredGroup(
            jid=self.jid,
            name=self.name,
            folder=folder,
            trigger=self.trigger,
            container_config=GroupContainerConfig(
                additional_mounts=[AdditionalMount(**m.model_dump()) for m in self.additional_mounts],
                timeout=self.timeout,
                sdk_backend=self.sdk_backend,
                opencode_model=self.opencode_model,
            ),
        )


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        toml_file="config.toml",
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
    )

    agent: AgentConfig = AgentConfig()
    container: ContainerConfig = ContainerConfig()
    health: HealthConfig = HealthConfig()
    logging: LoggingConfig = LoggingConfig()
    groups: dict[str, GroupConfig] = {}  # [groups.<folder>]

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Put config.toml beneath .env and the environment."""
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlConfigSettingsSource(settings_cls),
            file_secret_settings,
        )

    # Derived values, cached on first access

    @cached_property
    def container_timeout(self) -> float:
        return self.container.timeout_ms / 1000

    @cached_property
    def idle_timeout(self) -> float:
        return self.container.idle_timeout_ms / 1000

    @cached_property
    def tick_interval(self) -> float:
        return self.container.tick_interval_ms / 1000

    @cached_property
    def project_root(self) -> Path:
        return Path.cwd()

    @cached_property
    def groups_dir(self) -> Path:
        return (self.project_root / "groups").resolve()

    @cached_property
    def data_dir(self) -> Path:
        return (self.project_root / "data").resolve()

    def registered_groups(self) -> dict[str, RegisteredGroup]:
        """Registered groups keyed by jid."""
        return {
            cfg.jid: cfg.to_registered_group(folder) for folder, cfg in self.groups.items()
        }


# ---------------------------------------------------------------------------
# Process-wide instance
# ---------------------------------------------------------------------------

_settings: Settings | None = None


def get_settings() -> Settings:
    """Return the process-wide settings, building them on first use."""
    global _settings
    if _settings is None:
        _settings = Settings()
        apply_log_level(_settings.logging.level)
    return _settings


def reset_settings() -> None:
    """Drop the cached settings so the next call re-reads config."""
    global _settings
    _settings = None
