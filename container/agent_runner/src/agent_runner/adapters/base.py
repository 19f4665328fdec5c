"""Backend adapter contract.

Every backend turns its SDK's stream into the same ``AgentMessage`` sequence:
at most one ``system/init`` per session, then per turn any number of text,
tool and system messages followed by exactly one ``result``.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from agent_runner.models import AgentMessage

if TYPE_CHECKING:
    from agent_runner.ipc import Mailbox

DEFAULT_CWD = "/workspace/group"


@dataclass
class SessionConfig:
    cwd: str = DEFAULT_CWD
    allowed_tools: list[str] = field(default_factory=list)
    system_prompt_append: str | None = None
    mcp_servers: dict[str, dict[str, Any]] = field(default_factory=dict)
    model: str | None = None  # "<provider>/<model>"
    permission_mode: str = "bypassPermissions"


@dataclass
class QueryOptions:
    resume: str | None = None
    resume_at: str | None = None  # message id to resume from; forks the session
    max_turns: int | None = None
    abort_event: asyncio.Event | None = None

    @property
    def aborted(self) -> bool:
        return self.abort_event is not None and self.abort_event.is_set()


@dataclass
class Session:
    id: str | None
    config: SessionConfig
    query_options: QueryOptions | None = None
    project_id: str | None = None
    directory: str | None = None
    title: str | None = None
    created_at: int | None = None
    updated_at: int | None = None
    initialized: bool = False


@runtime_checkable
class AgentAdapter(Protocol):
    """Protocol every agent backend implements."""

    async def create_session(self, config: SessionConfig) -> Session: ...

    async def resume_session(self, session_id: str, resume_at: str | None = None) -> Session: ...

    def run_query(
        self, session: Session, prompt: str, options: QueryOptions
    ) -> AsyncIterator[AgentMessage]: ...

    def run_multi_turn_query(
        self,
        session: Session,
        prompt: str,
        options: QueryOptions,
        mailbox: Mailbox | None = None,
    ) -> AsyncIterator[AgentMessage]: ...

    async def abort_session(self, session: Session) -> None: ...
