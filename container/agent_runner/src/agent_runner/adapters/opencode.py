"""OpenCode server adapter.

Talks to the ``opencode serve`` process started by the container entrypoint.
A turn is a ``POST /session/{id}/message`` sent in the background while the
``/event`` stream is consumed; the turn ends on ``session.idle`` (or an
error), never on message completion alone.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import sys
from collections.abc import AsyncIterator
from typing import TYPE_CHECKING, Any

from opencode_ai import APIError

from agent_runner.adapters._opencode_client import OpenCodeClient
from agent_runner.adapters._opencode_events import EventNormalizer
from agent_runner.adapters.base import QueryOptions, Session, SessionConfig
from agent_runner.errors import BackendUnavailableError, SessionError
from agent_runner.models import (
    AgentMessage,
    ResultMessage,
    SystemMessage,
    abort_result,
    error_text,
)
from agent_runner.tool_names import build_tools_map

if TYPE_CHECKING:
    from agent_runner.ipc import Mailbox

OPENCODE_PORT_ENV = "BERTH_OPENCODE_PORT"
DEFAULT_OPENCODE_PORT = 4096
DEFAULT_TURN_TIMEOUT = 15 * 60.0  # seconds without any event


def _log(message: str) -> None:
    """Log to stderr (captured by host container runner)."""
    print(f"[opencode-adapter] {message}", file=sys.stderr, flush=True)


class _StreamEnd:
    def __init__(self, error: BaseException | None = None) -> None:
        self.error = error


_ABORTED = object()
_INACTIVE = object()


def _session_metadata(data: dict[str, Any]) -> dict[str, Any]:
    times = data.get("time") if isinstance(data.get("time"), dict) else {}
    return {
        "project_id": data.get("projectID"),
        "directory": data.get("directory"),
        "title": data.get("title"),
        "created_at": times.get("created"),
        "updated_at": times.get("updated"),
    }


def _split_model(model: str) -> dict[str, str]:
    provider, sep, model_id = model.partition("/")
    if not sep:
        return {"providerID": "anthropic", "modelID": model}
    return {"providerID": provider, "modelID": model_id}


class OpenCodeAdapter:
    def __init__(
        self,
        client: OpenCodeClient | None = None,
        *,
        port: int | None = None,
        turn_timeout: float = DEFAULT_TURN_TIMEOUT,
    ) -> None:
        if port is None:
            port = int(os.environ.get(OPENCODE_PORT_ENV) or DEFAULT_OPENCODE_PORT)
        self.port = port
        self.base_url = f"http://127.0.0.1:{port}"
        self._client = client or OpenCodeClient(self.base_url)
        self._turn_timeout = turn_timeout
        self._server_checked = False
        self._abort_signal = asyncio.Event()

    # -- sessions ------------------------------------------------------------

    async def _ensure_server(self) -> None:
        if self._server_checked:
            return
        if not await self._client.health():
            raise BackendUnavailableError(
                f"OpenCode server unavailable at {self.base_url}. It is started by the "
                "container entrypoint (container/entrypoint.sh); check its logs."
            )
        self._server_checked = True

    async def create_session(self, config: SessionConfig) -> Session:
        await self._ensure_server()
        data = await self._client.create_session(config.cwd)
        _log(f"Created session {data.get('id')}")
        return Session(id=data["id"], config=config, **_session_metadata(data))

    async def resume_session(self, session_id: str, resume_at: str | None = None) -> Session:
        await self._ensure_server()
        data = await self._client.get_session(session_id)
        if resume_at:
            # Fork so the original history stays as it was
            data = await self._client.fork_session(session_id, resume_at)
            _log(f"Forked session {session_id} at {resume_at} -> {data.get('id')}")
        return Session(
            id=data["id"],
            config=SessionConfig(),
            query_options=QueryOptions(resume=session_id, resume_at=resume_at),
            **_session_metadata(data),
        )

    async def abort_session(self, session: Session) -> None:
        self._abort_signal.set()
        await self._abort_remote(session)

    async def _abort_remote(self, session: Session) -> None:
        if session.id is None:
            return
        try:
            await self._client.abort_session(session.id)
        except Exception as exc:
            _log(f"Abort failed for session {session.id}: {exc}")

    # -- prompt --------------------------------------------------------------

    def _build_message_body(self, session: Session, prompt: str) -> dict[str, Any]:
        config = session.config
        body: dict[str, Any] = {"parts": [{"type": "text", "text": prompt}]}
        if config.model:
            body["model"] = _split_model(config.model)
        if config.system_prompt_append:
            body["system"] = config.system_prompt_append
        tools = build_tools_map(config.allowed_tools or None)
        if tools is not None:
            body["tools"] = tools
        return body

    async def _send_prompt(self, session: Session, prompt: str) -> None:
        if session.id is None:
            raise SessionError("Cannot send a prompt before the session has an id")
        await self._client.send_message(session.id, self._build_message_body(session, prompt))

    # -- event plumbing ------------------------------------------------------

    async def _pump(self, queue: asyncio.Queue[Any]) -> None:
        try:
            async for event in self._client.events():
                await queue.put(event)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            await queue.put(_StreamEnd(exc))
        else:
            await queue.put(_StreamEnd())

    @staticmethod
    def _drop_stale(queue: asyncio.Queue[Any]) -> int:
        """Discard queued events left over from a finished turn; keeps a stream end."""
        dropped = 0
        while not queue.empty():
            item = queue.get_nowait()
            if isinstance(item, _StreamEnd):
                queue.put_nowait(item)
                break
            dropped += 1
        return dropped

    async def _next_item(
        self,
        queue: asyncio.Queue[Any],
        options: QueryOptions,
        send_task: asyncio.Task[None],
    ) -> Any:
        """Next event, or a sentinel for abort / inactivity / a failed send."""
        getter = asyncio.ensure_future(queue.get())
        waiters: set[asyncio.Future[Any]] = {getter}
        abort_waiters = [asyncio.ensure_future(self._abort_signal.wait())]
        if options.abort_event is not None:
            abort_waiters.append(asyncio.ensure_future(options.abort_event.wait()))
        waiters.update(abort_waiters)
        if not send_task.done():
            waiters.add(send_task)

        try:
            done, _ = await asyncio.wait(
                waiters, timeout=self._turn_timeout, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for waiter in (getter, *abort_waiters):
                if not waiter.done():
                    waiter.cancel()

        if getter in done:
            return getter.result()
        if any(w in done for w in abort_waiters):
            return _ABORTED
        if send_task in done:
            return send_task
        return _INACTIVE

    # -- queries -------------------------------------------------------------

    async def _run_turn(
        self,
        session: Session,
        prompt: str,
        options: QueryOptions,
        queue: asyncio.Queue[Any],
        *,
        follow_up: bool = False,
    ) -> AsyncIterator[AgentMessage]:
        """One turn on the shared event subscription. Ends with exactly one result.

        A follow-up turn ignores idle and error events until it sees activity
        of its own, since the previous turn's terminal events can still be in
        flight on the shared stream.
        """
        normalizer = EventNormalizer(session, awaiting_start=follow_up)
        send_task = asyncio.create_task(self._send_prompt(session, prompt))
        try:
            while not normalizer.resolved:
                if options.aborted or self._abort_signal.is_set():
                    await self._abort_remote(session)
                    yield abort_result()
                    return

                item = await self._next_item(queue, options, send_task)
                if item is _ABORTED:
                    continue
                if item is _INACTIVE:
                    minutes = f"{self._turn_timeout / 60:g}"
                    _log(f"No events for {minutes} minutes, giving up on the turn")
                    await self._abort_remote(session)
                    yield ResultMessage(
                        subtype="timeout",
                        result=error_text("TimeoutError", f"No activity for {minutes} minutes"),
                    )
                    return
                if item is send_task:
                    exc = send_task.exception()
                    if exc is not None:
                        _log(f"Prompt request failed: {exc}")
                        yield ResultMessage(
                            subtype="error", result=error_text(type(exc).__name__, str(exc))
                        )
                        return
                    normalizer.mark_started()
                    continue
                if isinstance(item, _StreamEnd):
                    if item.error is not None:
                        kind, detail = type(item.error).__name__, str(item.error)
                    else:
                        kind = "SessionError"
                        detail = "Event stream ended before the turn completed"
                    yield ResultMessage(subtype="error", result=error_text(kind, detail))
                    return

                for message in normalizer.handle(item):
                    yield message
        finally:
            if not send_task.done():
                send_task.cancel()
            (outcome,) = await asyncio.gather(send_task, return_exceptions=True)
            if isinstance(outcome, APIError) and normalizer.resolved:
                _log(f"Prompt request failed after the turn resolved: {outcome}")

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
        self._abort_signal.clear()
        if session.id is None:
            created = await self.create_session(session.config)
            session.id = created.id
            session.project_id = created.project_id
            session.directory = created.directory
            session.title = created.title

        queue: asyncio.Queue[Any] = asyncio.Queue()
        pump = asyncio.create_task(self._pump(queue))
        try:
            if not session.initialized:
                session.initialized = True
                yield SystemMessage(subtype="init", session_id=session.id)

            follow_up = False
            while True:
                _log(f"Starting query (session: {session.id})...")
                if follow_up:
                    dropped = self._drop_stale(queue)
                    if dropped:
                        _log(f"Dropped {dropped} events left over from the previous turn")
                result: ResultMessage | None = None
                turn = self._run_turn(session, prompt, options, queue, follow_up=follow_up)
                async for message in turn:
                    if isinstance(message, ResultMessage):
                        result = message
                    yield message

                if result is None or result.subtype == "abort" or mailbox is None:
                    return
                if pump.done():
                    # Subscription is gone; a further turn could never resolve
                    _log("Event stream closed, ending session")
                    return

                _log("Query ended, waiting for next IPC message...")
                next_prompt = await mailbox.await_next()
                if next_prompt is None:
                    _log("Close sentinel received, exiting")
                    return
                _log(f"Got new message ({len(next_prompt)} chars), starting new query")
                prompt = next_prompt
                follow_up = True
        finally:
            pump.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await pump
