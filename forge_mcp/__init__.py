"""
forge_mcp — MCP connection and tool dispatch for the AgentForge framework.

Architecture:
    ┌──────────────┐   execute()   ┌─────────────┐   stdio JSON-RPC   ┌──────────────┐
    │  Core Agent   │ ────────────> │ MCPExecutor  │ ─────────────────> │  Tool Server  │
    │  / host app   │               │ (MCPClient   │      pipes         │  (subprocess) │
    └──────────────┘               │  per server) │                    └──────────────┘
           │                        └─────────────┘
           └── MCPManager: server configs, bulk connect/disconnect, status

Each tool server is a standalone process that communicates via
stdin/stdout using newline-delimited JSON-RPC 2.0 (the MCP stdio
transport). MCPClient runs the handshake and discovery for one server,
MCPExecutor registers its tools as ``mcp_<server>_<tool>`` actions and
connects servers lazily on first use, MCPManager holds the configs.
"""

from forge_mcp.client import MCPClient
from forge_mcp.config import PROTOCOL_VERSION, ClientSettings, ServerConfig, load_server_configs
from forge_mcp.errors import (
    MCPConnectionError,
    MCPError,
    MCPRequestError,
    MCPTimeoutError,
    PermissionDeniedError,
    ToolNotFoundError,
    UnknownActionError,
)
from forge_mcp.executor import MCPExecutor
from forge_mcp.manager import MCPManager

__version__ = "1.0.0"


# Bridge needs langchain-core; imported on first use so tool servers stay standalone
def action_to_langchain_tool(*args, **kwargs):
    from forge_mcp.bridge import action_to_langchain_tool as _impl
    return _impl(*args, **kwargs)


def executor_langchain_tools(*args, **kwargs):
    from forge_mcp.bridge import executor_langchain_tools as _impl
    return _impl(*args, **kwargs)


def create_mcp_manager(logger=None, settings=None) -> MCPManager:
    return MCPManager(logger=logger, settings=settings)


__all__ = [
    "PROTOCOL_VERSION",
    "ClientSettings",
    "MCPClient",
    "MCPConnectionError",
    "MCPError",
    "MCPExecutor",
    "MCPManager",
    "MCPRequestError",
    "MCPTimeoutError",
    "PermissionDeniedError",
    "ServerConfig",
    "ToolNotFoundError",
    "UnknownActionError",
    "action_to_langchain_tool",
    "create_mcp_manager",
    "executor_langchain_tools",
    "load_server_configs",
]
