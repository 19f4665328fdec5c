"""OpenCode event stream → AgentMessage, one normalizer per turn.

OpenCode reports text parts either as deltas or as full snapshots of the
part so far. Snapshots are diffed against the last value seen for the same
part, so every character reaches the caller once.

``session.idle`` is the only signal that a turn is over. ``session.error``
also ends it; whichever terminal event arrives first wins and anything after
it is ignored. A normalizer built with ``awaiting_start`` also ignores both
until the turn shows activity of its own: a busy status, a message or a part
update, or the prompt request returning.
"""

from __future__ import annotations

import sys
from typing import Any

from agent_runner.adapters.base import Session
from agent_runner.models import (
    AgentMessage,
    PermissionMessage,
    ResultMessage,
    SystemMessage,
    TextMessage,
    ToolResultMessage,
    ToolUseMessage,
    error_text,
)


def _log(message: str) -> None:
    print(f"[opencode-adapter] {message}", file=sys.stderr, flush=True)


def event_session_id(properties: dict[str, Any]) -> str | None:
    """The session an event belongs to, wherever the server put it."""
    for key in ("sessionID", "session_id"):
        value = properties.get(key)
        if isinstance(value, str) and value:
            return value
    for nested in ("info", "part"):
        inner = properties.get(nested)
        if isinstance(inner, dict):
            for key in ("sessionID", "session_id"):
                value = inner.get(key)
                if isinstance(value, str) and value:
                    return value
    return None


def common_prefix_len(a: str, b: str) -> int:
    limit = min(len(a), len(b))
    i = 0
    while i < limit and a[i] == b[i]:
        i += 1
    return i


def _status_label(properties: dict[str, Any]) -> Any:
    status = properties.get("status")
    return status.get("type") if isinstance(status, dict) else status


def classify_error_name(name: str) -> str:
    """Result subtype for a ``session.error`` name."""
    if name == "MessageAbortedError":
        return "abort"
    if "Timeout" in name:
        return "timeout"
    return "error"


class EventNormalizer:
    """Translates one turn's worth of server events.

    Feed every event to :meth:`handle`; stop once :attr:`result` is set.
    """

    def __init__(self, session: Session, *, awaiting_start: bool = False) -> None:
        self.session = session
        self.started = not awaiting_start
        # ids this turn accepts events for; grows when the server reports a new session
        self._session_ids: set[str] = {session.id} if session.id else set()
        self._part_text: dict[str, str] = {}
        self._tool_states: set[tuple[str, str]] = set()
        self._user_message_ids: set[str] = set()
        self._text: list[str] = []
        self.result: ResultMessage | None = None

    @property
    def resolved(self) -> bool:
        return self.result is not None

    @property
    def text(self) -> str:
        return "".join(self._text)

    def mark_started(self) -> None:
        self.started = True

    def handle(self, event: dict[str, Any]) -> list[AgentMessage]:
        if self.result is not None:
            if event.get("type") in ("session.idle", "session.error"):
                _log(f"Ignoring {event.get('type')} after the turn already resolved")
            return []

        event_type = event.get("type")
        properties = event.get("properties")
        if not isinstance(properties, dict):
            properties = {}

        if event_type == "session.created":
            self._on_session_created(properties)
            return []

        sid = event_session_id(properties)
        if sid and self._session_ids and sid not in self._session_ids:
            return []

        if not self.started:
            if event_type in ("session.idle", "session.error"):
                _log(f"Ignoring {event_type} from before this turn started")
                return []
            if event_type in ("message.updated", "message.part.updated") or (
                event_type == "session.status" and _status_label(properties) == "busy"
            ):
                self.started = True

        match event_type:
            case "message.part.updated":
                return self._on_part_updated(properties)
            case "message.updated":
                info = properties.get("info")
                if isinstance(info, dict) and info.get("role") == "user" and info.get("id"):
                    self._user_message_ids.add(info["id"])
                return []
            case "session.status":
                label = _status_label(properties)
                return [
                    SystemMessage(
                        subtype="status",
                        session_id=sid,
                        message=str(label) if label is not None else None,
                        data=properties,
                    )
                ]
            case "session.compacted":
                return [SystemMessage(subtype="compacted", session_id=sid, data=properties)]
            case "permission.updated":
                return [self._on_permission(properties)]
            case "session.idle":
                return self._resolve(ResultMessage(subtype="success", result=self.text or None))
            case "session.error":
                return self._resolve(self._error_result(properties.get("error")))
        return []

    # -- handlers ------------------------------------------------------------

    def _on_session_created(self, properties: dict[str, Any]) -> None:
        info = properties.get("info")
        if not isinstance(info, dict) or not info.get("id"):
            return
        if self.session.id is not None and info.get("parentID"):
            return
        new_id = info["id"]
        if new_id != self.session.id:
            _log(f"Session id updated: {self.session.id} -> {new_id}")
        self.session.id = new_id
        self._session_ids.add(new_id)
        self.session.project_id = info.get("projectID", self.session.project_id)
        self.session.directory = info.get("directory", self.session.directory)
        self.session.title = info.get("title", self.session.title)

    def _on_part_updated(self, properties: dict[str, Any]) -> list[AgentMessage]:
        part = properties.get("part")
        if not isinstance(part, dict):
            return []
        if part.get("messageID") in self._user_message_ids:
            return []
        match part.get("type"):
            case "text":
                return self._on_text_part(part, properties.get("delta"))
            case "tool":
                return self._on_tool_part(part)
        return []

    def _on_text_part(self, part: dict[str, Any], delta: Any) -> list[AgentMessage]:
        part_id = part.get("id") or "_"
        previous = self._part_text.get(part_id, "")
        if isinstance(delta, str) and delta:
            self._part_text[part_id] = previous + delta
            chunk = delta
        else:
            snapshot = part.get("text") or ""
            common = common_prefix_len(previous, snapshot)
            if common < len(previous):
                _log(f"Protocol violation: snapshot for part {part_id} does not extend previous text")
            self._part_text[part_id] = snapshot
            chunk = snapshot[common:]
        if not chunk:
            return []
        self._text.append(chunk)
        return [
            TextMessage(
                content=chunk,
                uuid=part.get("id"),
                synthetic=bool(part.get("synthetic")),
            )
        ]

    def _on_tool_part(self, part: dict[str, Any]) -> list[AgentMessage]:
        call_id = part.get("callID") or part.get("id") or ""
        state = part.get("state")
        if not isinstance(state, dict):
            return []
        status = state.get("status", "")
        if (call_id, status) in self._tool_states:
            return []
        self._tool_states.add((call_id, status))

        if status in ("pending", "running"):
            tool_input = state.get("input")
            return [
                ToolUseMessage(
                    id=call_id,
                    name=part.get("tool", ""),
                    input=tool_input if isinstance(tool_input, dict) else {},
                    state=status,
                )
            ]
        if status == "completed":
            return [
                ToolResultMessage(
                    tool_use_id=call_id,
                    content=str(state.get("output") or ""),
                    is_error=False,
                    metadata=state.get("metadata"),
                )
            ]
        if status == "error":
            return [
                ToolResultMessage(
                    tool_use_id=call_id,
                    content=str(state.get("error") or ""),
                    is_error=True,
                    metadata=state.get("metadata"),
                )
            ]
        return []

    def _on_permission(self, properties: dict[str, Any]) -> PermissionMessage:
        return PermissionMessage(
            id=properties.get("id", ""),
            permission_type=properties.get("type", ""),
            title=properties.get("title", ""),
            pattern=properties.get("pattern"),
            metadata=properties.get("metadata"),
        )

    def _error_result(self, error: Any) -> ResultMessage:
        name = "UnknownError"
        detail = "Unknown error"
        if isinstance(error, dict):
            name = error.get("name") or name
            data = error.get("data")
            if isinstance(data, dict) and data.get("message"):
                detail = str(data["message"])
        return ResultMessage(subtype=classify_error_name(name), result=error_text(name, detail))  # type: ignore[arg-type]

    def _resolve(self, result: ResultMessage) -> list[AgentMessage]:
        self.result = result
        return [result]
