"""Thin async wrapper over the OpenCode server API (``opencode-ai`` SDK).

Requests go through the SDK's raw ``get``/``post`` with ``httpx.Response`` as
the cast target, so the adapter works with plain dicts and does not depend on
which model unions the pinned SDK version knows about.
"""

from __future__ import annotations

import warnings
from collections.abc import AsyncIterator
from typing import Any
from urllib.parse import quote, urlencode

import httpx
from opencode_ai import APIConnectionError, APIStatusError, AsyncOpencode

# Newer servers emit union variants the SDK models do not know about yet
warnings.filterwarnings(
    "ignore",
    message=r"Pydantic serializer warnings:.*",
    category=UserWarning,
)


def to_jsonable(value: Any) -> Any:
    if hasattr(value, "model_dump"):
        try:
            return value.model_dump(mode="json", warnings=False)
        except TypeError:
            return value.model_dump()
    if isinstance(value, dict):
        return {k: to_jsonable(v) for k, v in value.items()}
    if isinstance(value, list):
        return [to_jsonable(v) for v in value]
    return value


class OpenCodeClient:
    def __init__(self, base_url: str, *, timeout: float = 600.0, max_retries: int = 2) -> None:
        self.base_url = base_url
        self._client = AsyncOpencode(base_url=base_url, timeout=timeout, max_retries=max_retries)

    async def _get(self, path: str) -> Any:
        response = await self._client.get(path, cast_to=httpx.Response)
        return response.json()

    async def _post(self, path: str, body: dict[str, Any] | None = None) -> Any:
        response = await self._client.post(path, cast_to=httpx.Response, body=body or {})
        try:
            return response.json()
        except ValueError:
            return response.text

    async def health(self) -> bool:
        try:
            response = await self._client.get("/global/health", cast_to=httpx.Response)
        except (APIConnectionError, APIStatusError, httpx.HTTPError):
            return False
        return 200 <= response.status_code < 400

    async def create_session(self, directory: str) -> dict[str, Any]:
        return await self._post(f"/session?{urlencode({'directory': directory})}")

    async def get_session(self, session_id: str) -> dict[str, Any]:
        return await self._get(f"/session/{quote(session_id)}")

    async def fork_session(self, session_id: str, message_id: str) -> dict[str, Any]:
        return await self._post(f"/session/{quote(session_id)}/fork", {"messageID": message_id})

    async def send_message(self, session_id: str, body: dict[str, Any]) -> Any:
        return await self._post(f"/session/{quote(session_id)}/message", body)

    async def abort_session(self, session_id: str) -> Any:
        return await self._post(f"/session/{quote(session_id)}/abort")

    async def events(self) -> AsyncIterator[dict[str, Any]]:
        """Server-sent events from ``/event``, as plain dicts."""
        stream = await self._client.event.list()
        async with stream:
            async for event in stream:
                event_obj = to_jsonable(event)
                if isinstance(event_obj, dict):
                    yield event_obj

    async def close(self) -> None:
        await self._client.close()
