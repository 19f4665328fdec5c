"""Claude Agent SDK adapter."""

from __future__ import annotations

import json
import sys
from collections.abc import AsyncIterator
from typing import TYPE_CHECKING, Any

from claude_agent_sdk import (
    AssistantMessage,
    ClaudeAgentOptions,
    ClaudeSDKClient,
    ClaudeSDKError,
    ResultMessage,
    SystemMessage,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
    UserMessage,
)

from agent_runner.adapters.base import QueryOptions, Session, SessionConfig
from agent_runner.models import (
    AgentMessage,
    TextMessage,
    TokenUsage,
    ToolResultMessage,
    ToolUseMessage,
    abort_result,
    error_text,
)
from agent_runner.models import ResultMessage as AgentResult
from agent_runner.models import SystemMessage as AgentSystem

if TYPE_CHECKING:
    from agent_runner.ipc import Mailbox

# ResultMessage subtypes other than "success", as "<Kind>" plus a fallback detail
_RESULT_ERRORS: dict[str, tuple[str, str]] = {
    "error_max_turns": ("MaxTurnsError", "Reached maximum number of turns"),
    "error_during_execution": ("ExecutionError", "Error during execution"),
}


def _log(message: str) -> None:
    """Log to stderr (captured by host container runner)."""
    print(f"[claude-adapter] {message}", file=sys.stderr, flush=True)


def _claude_model(model: str | None) -> str | None:
    """Strip the provider prefix: ``anthropic/claude-x`` → ``claude-x``."""
    if not model:
        return None
    return model.split("/", 1)[1] if "/" in model else model


def _flatten_tool_content(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return json.dumps(content)
    return ""


def _map_usage(usage: dict[str, Any] | None) -> TokenUsage | None:
    if not usage:
        return None
    return TokenUsage(
        input=usage.get("input_tokens", 0) or 0,
        output=usage.get("output_tokens", 0) or 0,
        cache_read=usage.get("cache_read_input_tokens", 0) or 0,
        cache_write=usage.get("cache_creation_input_tokens", 0) or 0,
    )


def map_result(message: ResultMessage) -> AgentResult:
    """Normalize a ResultMessage; failures become ``"<Kind>: <detail>"``."""
    usage = _map_usage(message.usage)
    if message.subtype == "success" and not message.is_error:
        return AgentResult(
            subtype="success", result=message.result, usage=usage, cost=message.total_cost_usd
        )
    kind, fallback = _RESULT_ERRORS.get(message.subtype, ("SessionError", message.subtype))
    return AgentResult(
        subtype="error",
        result=error_text(kind, message.result or fallback),
        usage=usage,
        cost=message.total_cost_usd,
    )


class ClaudeAdapter:
    """Runs turns through one ``ClaudeSDKClient`` per query."""

    def __init__(self) -> None:
        self._aborted = False

    async def create_session(self, config: SessionConfig) -> Session:
        # The SDK assigns the id; it arrives with the first system/init
        return Session(id=None, config=config)

    async def resume_session(self, session_id: str, resume_at: str | None = None) -> Session:
        return Session(
            id=session_id,
            config=SessionConfig(),
            query_options=QueryOptions(resume=session_id, resume_at=resume_at),
        )

    async def abort_session(self, session: Session) -> None:
        # Nothing to cancel remotely; the running loop checks this between messages
        self._aborted = True
        _log(f"Abort requested for session {session.id or 'new'}")

    # -- options -------------------------------------------------------------

    def _build_options(self, session: Session, options: QueryOptions) -> ClaudeAgentOptions:
        config = session.config
        resume_opts = session.query_options or QueryOptions()
        resume = options.resume or resume_opts.resume or session.id
        resume_at = options.resume_at or resume_opts.resume_at

        system_prompt: dict[str, Any] | None = None
        if config.system_prompt_append:
            system_prompt = {
                "type": "preset",
                "preset": "claude_code",
                "append": config.system_prompt_append,
            }

        extra_args: dict[str, str | None] = {}
        if resume_at:
            extra_args["resume-session-at"] = resume_at

        return ClaudeAgentOptions(
            model=_claude_model(config.model),
            cwd=config.cwd,
            resume=resume,
            # A resume point must not rewrite the original transcript
            fork_session=bool(resume and resume_at),
            extra_args=extra_args,
            system_prompt=system_prompt,
            allowed_tools=list(config.allowed_tools),
            permission_mode=config.permission_mode,
            setting_sources=["project", "user"],
            mcp_servers=config.mcp_servers,
            max_turns=options.max_turns,
        )

    # -- message mapping -----------------------------------------------------

    def _map_message(self, session: Session, message: Any) -> list[AgentMessage]:
        if isinstance(message, SystemMessage):
            data = message.data if isinstance(message.data, dict) else {}
            if message.subtype == "init":
                sid = data.get("session_id")
                if sid:
                    session.id = sid
                    _log(f"Session initialized: {sid}")
                if session.initialized:
                    return []
                session.initialized = True
                return [AgentSystem(subtype="init", session_id=session.id, data=data)]
            return [
                AgentSystem(
                    subtype=message.subtype,
                    session_id=data.get("session_id"),
                    message=data.get("message"),
                    data=data,
                )
            ]

        if isinstance(message, AssistantMessage | UserMessage):
            blocks = message.content if isinstance(message.content, list) else []
            mapped: list[AgentMessage] = []
            texts: list[str] = []
            for block in blocks:
                if isinstance(block, TextBlock):
                    texts.append(block.text)
                elif isinstance(block, ToolUseBlock):
                    mapped.append(ToolUseMessage(id=block.id, name=block.name, input=block.input))
                elif isinstance(block, ToolResultBlock):
                    mapped.append(
                        ToolResultMessage(
                            tool_use_id=block.tool_use_id,
                            content=_flatten_tool_content(block.content),
                            is_error=bool(block.is_error),
                        )
                    )
            if texts and isinstance(message, AssistantMessage):
                mapped.insert(
                    0, TextMessage(content="".join(texts), uuid=getattr(message, "uuid", None))
                )
            return mapped

        return []

    # -- queries -------------------------------------------------------------

    async def _run_turn(
        self, client: ClaudeSDKClient, session: Session, prompt: str, options: QueryOptions
    ) -> AsyncIterator[AgentMessage]:
        """One turn on an open client. Always ends with exactly one result."""
        if options.aborted or self._aborted:
            yield abort_result()
            return
        _log(f"Starting query (session: {session.id or 'new'})...")
        await client.query(prompt)

        message_count = 0
        async for message in client.receive_response():
            message_count += 1
            if options.aborted or self._aborted:
                _log("Abort requested, interrupting query")
                try:
                    await client.interrupt()
                except Exception as exc:
                    _log(f"Interrupt failed: {exc}")
                yield abort_result()
                return

            if isinstance(message, ResultMessage):
                if message.session_id:
                    session.id = message.session_id
                result = map_result(message)
                _log(
                    f"Result: subtype={message.subtype}"
                    f"{f' text={message.result[:200]}' if message.result else ''}"
                )
                yield result
                _log(f"Query done. Messages: {message_count}")
                return

            for mapped in self._map_message(session, message):
                yield mapped

        yield AgentResult(
            subtype="error", result=error_text("SessionError", "Stream ended without a result")
        )

    async def run_query(
        self, session: Session, prompt: str, options: QueryOptions
    ) -> AsyncIterator[AgentMessage]:
        async for message in self.run_multi_turn_query(session, prompt, options, mailbox=None):
            yield message

    async def run_multi_turn_query(
        self,
        session: Session,
        prompt: str,
        options: QueryOptions,
        mailbox: Mailbox | None = None,
    ) -> AsyncIterator[AgentMessage]:
        self._aborted = False
        # The first prompt is pending from the start, so a failed connect still owes a result
        in_turn = True
        try:
            async with ClaudeSDKClient(self._build_options(session, options)) as client:
                while True:
                    aborted = False
                    in_turn = True
                    async for message in self._run_turn(client, session, prompt, options):
                        if isinstance(message, AgentResult):
                            in_turn = False
                            aborted = message.subtype == "abort"
                        yield message
                    if aborted or mailbox is None:
                        return

                    _log("Query ended, waiting for next IPC message...")
                    next_prompt = await mailbox.await_next()
                    if next_prompt is None:
                        _log("Close sentinel received, exiting")
                        return
                    _log(f"Got new message ({len(next_prompt)} chars), starting new query")
                    prompt = next_prompt
        except ClaudeSDKError as exc:
            _log(f"SDK error: {exc}")
            if in_turn:
                yield AgentResult(subtype="error", result=error_text(type(exc).__name__, str(exc)))
