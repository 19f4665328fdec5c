"""Embedded HTTP server for health checks.

Reports which agent backend each registered group runs on, so an operator
can see at a glance where a group's containers will go.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Protocol

from aiohttp import web

from berth.backend_selection import resolve_global_backend, resolve_group_backend, resolve_opencode_model
from berth.config import get_settings
from berth.logger import logger
from berth.types import RegisteredGroup


class HealthDeps(Protocol):
    """Dependencies injected by the caller."""

    def registered_groups(self) -> dict[str, RegisteredGroup]: ...


class SettingsHealthDeps:
    """Reads registered groups from ``[groups.*]`` in config.toml."""

    def registered_groups(self) -> dict[str, RegisteredGroup]:
        return get_settings().registered_groups()


deps_key = web.AppKey("deps", HealthDeps)


def build_health_payload(groups: dict[str, RegisteredGroup]) -> dict[str, Any]:
    global_backend = resolve_global_backend()
    entries: list[dict[str, Any]] = []
    for jid, group in groups.items():
        selection = resolve_group_backend(group)
        entries.append(
            {
                "jid": jid,
                "name": group.name,
                "folder": group.folder,
                "sdk_backend": selection.sdk_backend,
                "source": selection.source,
                "opencode_model": (
                    selection.opencode_model if selection.sdk_backend == "opencode" else None
                ),
            }
        )

    opencode_count = sum(1 for e in entries if e["sdk_backend"] == "opencode")
    return {
        "status": "ok",
        "timestamp": datetime.now(UTC).isoformat(),
        "global": {
            "sdk_backend": global_backend,
            "opencode_model": resolve_opencode_model(),
            "opencode_server_port": get_settings().agent.opencode_port,
        },
        "groups": entries,
        "summary": {
            "total_groups": len(entries),
            "claude_groups": len(entries) - opencode_count,
            "opencode_groups": opencode_count,
        },
    }


async def _handle_health(request: web.Request) -> web.Response:
    deps = request.app[deps_key]
    return web.json_response(build_health_payload(deps.registered_groups()))


def create_app(deps: HealthDeps) -> web.Application:
    app = web.Application()
    app[deps_key] = deps
    app.router.add_get("/health", _handle_health)
    app.router.add_get("/healthz", _handle_health)
    return app


async def start_health_server(
    deps: HealthDeps, host: str | None = None, port: int | None = None
) -> web.AppRunner:
    """Create, start, and return the HTTP server runner."""
    s = get_settings()
    host = host or s.health.host
    port = port if port is not None else s.health.port

    runner = web.AppRunner(create_app(deps))
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    logger.info("Health server listening", host=host, port=port)
    return runner
