"""Exceptions raised inside the container by the runner and its adapters."""

from __future__ import annotations


class AgentRunnerError(Exception):
    pass


class ConfigurationError(AgentRunnerError, ValueError):
    """A backend name, template, or other setting is invalid."""


class BackendUnavailableError(AgentRunnerError):
    """The agent backend cannot be reached (e.g. the OpenCode server is down)."""


class SessionError(AgentRunnerError):
    """A session is not in the state an operation needs (e.g. it has no id yet)."""
