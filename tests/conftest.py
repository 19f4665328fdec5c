"""Shared test fixtures for berth."""

from __future__ import annotations

import pytest

# ---------------------------------------------------------------------------
# Shared helpers (plain functions, importable by test files)
# ---------------------------------------------------------------------------

# Cached property names that must be set via __dict__ (not model_construct).
_CACHED_PROPERTY_NAMES = frozenset(
    {
        "project_root",
        "groups_dir",
        "data_dir",
        "container_timeout",
        "idle_timeout",
        "tick_interval",
    }
)


def make_settings(**overrides):
    """Create a Settings object with sensible defaults for testing.

    Accepts both model fields (agent, container, etc.) and cached property
    overrides (project_root, data_dir, groups_dir, idle_timeout, etc.).

    Usage::

        s = make_settings(data_dir=tmp_path)
        s = make_settings(container=ContainerConfig(max_concurrent=3))
        s = make_settings(idle_timeout=0.05, tick_interval=0.01)
    """
    from berth.config import (
        AgentConfig,
        ContainerConfig,
        HealthConfig,
        LoggingConfig,
        Settings,
    )

    cached = {k: overrides.pop(k) for k in list(overrides) if k in _CACHED_PROPERTY_NAMES}

    defaults = {
        "agent": AgentConfig(),
        "container": ContainerConfig(),
        "health": HealthConfig(),
        "logging": LoggingConfig(),
        "groups": {},
    }
    defaults.update(overrides)
    s = Settings.model_construct(**defaults)

    for key, value in cached.items():
        s.__dict__[key] = value

    return s


# ---------------------------------------------------------------------------
# Autouse fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _isolated_settings(monkeypatch, tmp_path):
    """Every test starts from default settings rooted in its own tmp_path.

    Tests that need different values call ``use_settings``.
    """
    from berth import config
    from berth.container_runner import reset_spawn_limit

    for var in ("BERTH_SDK_BACKEND", "BERTH_MODEL", "BERTH_OPENCODE_MODEL"):
        monkeypatch.delenv(var, raising=False)

    monkeypatch.setattr(
        config,
        "_settings",
        make_settings(
            project_root=tmp_path,
            groups_dir=tmp_path / "groups",
            data_dir=tmp_path / "data",
        ),
    )
    reset_spawn_limit()
    yield
    reset_spawn_limit()


@pytest.fixture
def use_settings(monkeypatch, tmp_path):
    """Install a Settings built by ``make_settings`` for the rest of the test."""
    from berth import config

    def _use(**overrides):
        overrides.setdefault("project_root", tmp_path)
        overrides.setdefault("groups_dir", tmp_path / "groups")
        overrides.setdefault("data_dir", tmp_path / "data")
        s = make_settings(**overrides)
        monkeypatch.setattr(config, "_settings", s)
        return s

    return _use
