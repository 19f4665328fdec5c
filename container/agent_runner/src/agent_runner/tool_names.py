"""Allow-list translation from Claude tool names to OpenCode's tools map.

Claude names MCP tools ``mcp__<server>__<tool>``; OpenCode registers them as
``<server>_<tool>`` and lowercases its built-ins.
"""

from __future__ import annotations

GLOBAL_WILDCARD = "*"
_MCP_PREFIX = "mcp__"


def to_opencode_tool_name(name: str) -> str:
    """``mcp__server__tool`` → ``server_tool``, ``mcp__server__*`` → ``server_*``, ``Bash`` → ``bash``."""
    if name.startswith(_MCP_PREFIX):
        server, sep, tool = name[len(_MCP_PREFIX) :].partition("__")
        if sep:
            return f"{server}_{tool}"
        return server
    return name.lower()


def build_tools_map(allowed_tools: list[str] | None) -> dict[str, bool] | None:
    """Translate an allow-list into OpenCode's ``tools`` request field.

    ``None`` means no restriction (the server's defaults apply). Without a
    global wildcard, ``{"*": False}`` switches everything else off.
    """
    if allowed_tools is None:
        return None
    if GLOBAL_WILDCARD in allowed_tools:
        return {GLOBAL_WILDCARD: True}
    tools: dict[str, bool] = {GLOBAL_WILDCARD: False}
    for name in allowed_tools:
        tools[to_opencode_tool_name(name)] = True
    return tools
