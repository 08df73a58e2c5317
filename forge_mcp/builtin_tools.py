"""
Built-in actions registered by MCPManager under plugin id ``builtin``.

Only monitoring lives here; starting and stopping servers is the
manager's job (start_server / stop_server).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable

from forge_mcp.executor import STATUS_ACTION


@dataclass(frozen=True)
class BuiltinTool:
    name: str
    description: str
    input_schema: dict[str, Any]
    handler: Callable[[dict[str, Any], dict[str, Any]], Any]


def get_mcp_servers_status(params: dict[str, Any], context: dict[str, Any]) -> dict[str, Any]:
    """Connection status of every registered server, connected or not."""
    manager = context.get("mcp_manager")
    if manager is None:
        return {"success": False, "error": "MCP Manager not available"}

    connected = {s["name"]: s for s in manager.get_connected_servers_summary()}
    servers = []
    for name in list(manager.server_configs):
        summary = connected.get(name)
        servers.append({
            "name": name,
            "connected": summary is not None,
            "connected_at": summary["connected_at"] if summary else None,
            "tools": summary["tools"] if summary else 0,
            "webview_supported": summary["webview_supported"] if summary else False,
        })
    return {"success": True, "servers": servers}


BUILTIN_TOOLS: dict[str, BuiltinTool] = {
    STATUS_ACTION: BuiltinTool(
        name=STATUS_ACTION,
        description="Get connection status of all registered MCP servers",
        input_schema={
            "type": "object",
            "properties": {},
            "additionalProperties": False,
        },
        handler=get_mcp_servers_status,
    ),
}
