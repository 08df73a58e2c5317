"""
MCP Executor — the registry of every action the agent may run.

Two kinds of actions live in the same registry:

  - local actions contributed by the framework or a plugin
    (``register_action("get_weather", handler, "weather-plugin")``)
  - proxy actions for tools on connected MCP servers, named
    ``mcp_<server>_<tool>`` and owned by plugin id ``mcp-server-<server>``

execute() is the single dispatch path: lookup (with lazy connection of
unconnected servers), permission check, parameter validation, handler
call, success/error event.

Usage:
    executor = MCPExecutor()
    await executor.connect_mcp_server(ServerConfig(name="calc", command="python",
                                                   args=["-m", "forge_mcp.servers.calculator"]))
    result = await executor.execute("mcp_calc_add", {"a": 2, "b": 3}, role="Agent")
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from forge_mcp.client import MCPClient
from forge_mcp.config import ClientSettings, ServerConfig
from forge_mcp.errors import (
    MCPConnectionError,
    MCPError,
    PermissionDeniedError,
    ToolNotFoundError,
    UnknownActionError,
    with_context,
)
from forge_mcp.events import EventEmitter

if TYPE_CHECKING:
    from forge_mcp.manager import MCPManager

logger = logging.getLogger(__name__)

MCP_ACTION_PREFIX = "mcp_"
STATUS_ACTION = "get_mcp_servers_status"

ActionHandler = Callable[[dict[str, Any], str], Any | Awaitable[Any]]
ClientFactory = Callable[..., MCPClient]


def mcp_action_name(server_name: str, tool_name: str) -> str:
    return f"{MCP_ACTION_PREFIX}{server_name}_{tool_name}"


def mcp_plugin_id(server_name: str) -> str:
    return f"mcp-server-{server_name}"


@dataclass
class ActionEntry:
    """Registry value for one action."""
    handler: ActionHandler
    plugin_id: str
    registered_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    # Set for MCP proxy actions, so dispatch never has to re-parse the name
    server: str | None = None
    tool: str | None = None
    description: str | None = None
    input_schema: dict[str, Any] | None = None


class MCPExecutor(EventEmitter):
    """
    Registry and dispatcher for framework, plugin and MCP proxy actions.

    Events:
        action:success  {action_name, params, role, result, duration_ms, plugin_id}
        action:error    {action_name, params, role, error, duration_ms, plugin_id}
        server-crashed  {server_name, code, signal}
    """

    def __init__(
        self,
        persistence_client: Any = None,
        logger: logging.Logger | None = None,
        settings: ClientSettings | None = None,
        mcp_manager: "MCPManager | None" = None,
        client_factory: ClientFactory = MCPClient,
    ):
        """
        Args:
            persistence_client: External storage client. Passed through for
                plugins; nothing in this package uses it.
            logger: Logger for this executor and the clients it creates.
            settings: Settings handed to every MCPClient.
            mcp_manager: Manager used to lazily start servers by name.
            client_factory: Builds an MCPClient from (config, logger=, settings=).
        """
        super().__init__()
        self.persistence_client = persistence_client
        self.logger = logger or logging.getLogger(__name__)
        self.settings = settings or ClientSettings()
        self.mcp_manager = mcp_manager
        self._client_factory = client_factory

        self.registered_actions: dict[str, ActionEntry] = {}
        self.plugin_actions: dict[str, set[str]] = {}
        self.mcp_clients: dict[str, MCPClient] = {}

        # In-flight connection attempts, keyed by server name
        self._connecting: dict[str, asyncio.Future] = {}
        self._lazy_connections: dict[str, asyncio.Future] = {}
        self._background: set[asyncio.Future] = set()

    def set_mcp_manager(self, manager: "MCPManager") -> None:
        self.mcp_manager = manager

    # ── Registry ───────────────────────────────────────────

    def register_action(
        self,
        action_name: str,
        handler: ActionHandler,
        plugin_id: str = "framework",
        *,
        server: str | None = None,
        tool: str | None = None,
        description: str | None = None,
        input_schema: dict[str, Any] | None = None,
    ) -> None:
        """Register (or overwrite) an action. Handlers are called as ``handler(params, role)``."""
        previous = self.registered_actions.get(action_name)
        if previous is not None:
            self.logger.warning(f"Action {action_name} is already registered, overriding")
            self._untrack(action_name, previous.plugin_id)

        self.registered_actions[action_name] = ActionEntry(
            handler=handler,
            plugin_id=plugin_id,
            server=server,
            tool=tool,
            description=description,
            input_schema=input_schema,
        )
        self.plugin_actions.setdefault(plugin_id, set()).add(action_name)
        self.logger.info(f"MCP action registered: {action_name} (plugin: {plugin_id})")

    def unregister_action(self, action_name: str) -> bool:
        entry = self.registered_actions.pop(action_name, None)
        if entry is None:
            return False
        self._untrack(action_name, entry.plugin_id)
        self.logger.info(f"MCP action unregistered: {action_name}")
        return True

    def unregister_plugin_actions(self, plugin_id: str) -> list[str]:
        """Remove every action owned by ``plugin_id``. Returns the removed names."""
        names = self.plugin_actions.pop(plugin_id, set())
        for action_name in names:
            self.registered_actions.pop(action_name, None)
        if names:
            self.logger.info(f"All MCP actions unregistered for plugin: {plugin_id} ({len(names)})")
        return sorted(names)

    def _untrack(self, action_name: str, plugin_id: str) -> None:
        names = self.plugin_actions.get(plugin_id)
        if names is None:
            return
        names.discard(action_name)
        if not names:
            del self.plugin_actions[plugin_id]

    def get_registered_actions(self) -> list[str]:
        return list(self.registered_actions)

    def get_plugin_actions(self, plugin_id: str) -> list[str]:
        return sorted(self.plugin_actions.get(plugin_id, ()))

    def get_action_info(self, action_name: str) -> dict[str, Any] | None:
        entry = self.registered_actions.get(action_name)
        if entry is None:
            return None
        return {
            "action_name": action_name,
            "plugin_id": entry.plugin_id,
            "registered_at": entry.registered_at.isoformat(),
            "server": entry.server,
            "tool": entry.tool,
        }

    def is_action_registered(self, action_name: str) -> bool:
        return action_name in self.registered_actions

    # ── Dispatch ───────────────────────────────────────────

    async def execute(
        self,
        action_name: str,
        params: dict[str, Any] | None = None,
        role: str = "Agent",
    ) -> Any:
        """
        Run an action on behalf of ``role``.

        Unregistered ``mcp_<server>_<tool>`` names trigger a lazy connection
        of ``<server>`` through the manager before dispatch.

        Raises:
            UnknownActionError: not registered and not an MCP action name.
            ToolNotFoundError: the server is connected but has no such tool.
            MCPConnectionError: lazy connection of the server failed.
            PermissionDeniedError: has_permission() refused the role.
        """
        params = {} if params is None else params
        start = time.monotonic()
        entry: ActionEntry | None = None

        try:
            entry = await self._resolve_action(action_name)

            if not self.has_permission(role, action_name):
                raise PermissionDeniedError(role, action_name)

            self.validate_parameters(action_name, params)

            self.logger.info(f"Executing MCP action: {action_name} (role: {role})")
            result = entry.handler(params, role)
            if inspect.isawaitable(result):
                result = await result

        except Exception as e:
            duration_ms = int((time.monotonic() - start) * 1000)
            self.logger.error(f"MCP action failed: {action_name} ({duration_ms}ms): {e}")
            self.emit("action:error", {
                "action_name": action_name,
                "params": params,
                "role": role,
                "error": str(e),
                "duration_ms": duration_ms,
                "plugin_id": entry.plugin_id if entry else None,
            })
            raise

        duration_ms = int((time.monotonic() - start) * 1000)
        self.logger.info(f"MCP action completed: {action_name} ({duration_ms}ms)")
        self.emit("action:success", {
            "action_name": action_name,
            "params": params,
            "role": role,
            "result": result,
            "duration_ms": duration_ms,
            "plugin_id": entry.plugin_id,
        })
        return result

    async def _resolve_action(self, action_name: str) -> ActionEntry:
        entry = self.registered_actions.get(action_name)
        if entry is not None:
            return entry

        target = self.parse_mcp_action_name(action_name)
        if target is None:
            raise UnknownActionError(f"Unknown MCP action: {action_name}")

        server_name, tool_name = target
        if self.is_server_connected(server_name):
            raise ToolNotFoundError(
                f"Tool '{tool_name}' not found on MCP server '{server_name}' "
                f"(action {action_name}). Use {STATUS_ACTION} to check available servers and tools."
            )

        await self._lazy_connect(server_name, action_name)

        entry = self.registered_actions.get(action_name)
        if entry is None:
            raise ToolNotFoundError(
                f"Tool '{tool_name}' not found on MCP server '{server_name}' after connecting "
                f"(action {action_name}). Use {STATUS_ACTION} to check available servers and tools."
            )
        return entry

    async def _lazy_connect(self, server_name: str, action_name: str) -> None:
        if self.mcp_manager is None:
            raise MCPConnectionError(
                f"Failed to connect to MCP server '{server_name}' for action {action_name}: "
                f"no MCP manager available"
            )

        # Concurrent first uses of one server share a single start_server() call
        pending = self._lazy_connections.get(server_name)
        if pending is None:
            self.logger.info(f"Lazily connecting MCP server {server_name} for action {action_name}")
            pending = asyncio.ensure_future(self.mcp_manager.start_server(server_name))
            self._track_inflight(self._lazy_connections, server_name, pending)

        try:
            result = await asyncio.shield(pending)
        except Exception as e:
            raise MCPConnectionError(
                f"Failed to connect to MCP server '{server_name}' for action {action_name}: {e}"
            ) from e

        if not result.get("success"):
            raise MCPConnectionError(
                f"Failed to connect to MCP server '{server_name}' for action {action_name}: "
                f"{result.get('error', 'unknown error')}"
            )

    @staticmethod
    def _track_inflight(registry: dict[str, asyncio.Future], key: str, future: asyncio.Future) -> None:
        registry[key] = future

        def _done(done: asyncio.Future) -> None:
            if registry.get(key) is done:
                del registry[key]

        future.add_done_callback(_done)

    def parse_mcp_action_name(self, action_name: str) -> tuple[str, str] | None:
        """
        Split ``mcp_<server>_<tool>`` into ``(server, tool)``.

        Known server names are matched first (longest wins) so servers
        whose names contain underscores resolve correctly. Otherwise the
        first segment after ``mcp_`` is taken as the server name.
        """
        if not action_name.startswith(MCP_ACTION_PREFIX):
            return None
        rest = action_name[len(MCP_ACTION_PREFIX):]

        matches = [
            name for name in self.known_server_names()
            if rest.startswith(f"{name}_") and len(rest) > len(name) + 1
        ]
        if matches:
            server_name = max(matches, key=len)
            return server_name, rest[len(server_name) + 1:]

        server_name, sep, tool_name = rest.partition("_")
        if not server_name or not sep or not tool_name:
            return None
        return server_name, tool_name

    def known_server_names(self) -> set[str]:
        names = set(self.mcp_clients)
        if self.mcp_manager is not None:
            names.update(self.mcp_manager.server_configs)
        return names

    def has_permission(self, role: str, action_name: str) -> bool:
        """Permission hook. Every role may run every action unless a subclass says otherwise."""
        return True

    def validate_parameters(self, action_name: str, params: dict[str, Any]) -> None:
        """Validation hook. Raise ParameterValidationError to reject a call."""

    # ── MCP servers ────────────────────────────────────────

    def is_server_connected(self, server_name: str) -> bool:
        client = self.mcp_clients.get(server_name)
        return client is not None and client.connected

    async def connect_mcp_server(self, server_config: ServerConfig) -> MCPClient:
        """
        Connect to a server and register its tools as ``mcp_<server>_<tool>``.

        Concurrent calls for the same server name share one connection
        attempt. An already connected server is returned as is.
        """
        name = server_config.name
        existing = self.mcp_clients.get(name)
        if existing is not None and existing.connected:
            self.logger.debug(f"MCP server {name} already connected")
            return existing

        pending = self._connecting.get(name)
        if pending is None:
            pending = asyncio.ensure_future(self._connect(server_config))
            self._track_inflight(self._connecting, name, pending)
        return await asyncio.shield(pending)

    async def _connect(self, server_config: ServerConfig) -> MCPClient:
        name = server_config.name
        self.logger.info(f"Connecting to external MCP server: {name}")

        client = self._client_factory(server_config, logger=self.logger, settings=self.settings)
        try:
            await client.connect()
        except Exception as e:
            await client.cleanup()
            if isinstance(e, MCPConnectionError):
                raise
            if isinstance(e, MCPError):
                raise with_context(e, f"Failed to connect to MCP server {name}") from e
            raise MCPConnectionError(f"Failed to connect to MCP server {name}: {e}") from e

        stale = self.mcp_clients.pop(name, None)
        if stale is not None:
            self.unregister_plugin_actions(mcp_plugin_id(name))
            await stale.cleanup()

        tools = client.get_tools_for_llm()
        for tool in tools:
            self.register_action(
                mcp_action_name(name, tool["name"]),
                self._make_proxy(client, tool["name"]),
                mcp_plugin_id(name),
                server=name,
                tool=tool["name"],
                description=tool["description"],
                input_schema=tool["inputSchema"],
            )

        client.on("disconnected", lambda payload: self._on_client_disconnected(name, client, payload))
        self.mcp_clients[name] = client

        self.logger.info(f"Connected and registered {len(tools)} tools from MCP server: {name}")
        return client

    def _make_proxy(self, client: MCPClient, tool_name: str) -> ActionHandler:
        async def _call_mcp(params: dict[str, Any], role: str | None = None) -> Any:
            try:
                return await client.call_tool(tool_name, params)
            except MCPError as e:
                raise with_context(e, f"MCP tool {client.name}/{tool_name} failed") from e

        return _call_mcp

    def _on_client_disconnected(self, name: str, client: MCPClient, payload: dict[str, Any]) -> None:
        if payload.get("requested") or self.mcp_clients.get(name) is not client:
            return

        self.logger.warning(f"MCP server {name} stopped unexpectedly, unregistering its actions")
        self.unregister_plugin_actions(mcp_plugin_id(name))
        del self.mcp_clients[name]

        task = asyncio.ensure_future(client.cleanup())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

        self.emit("server-crashed", {
            "server_name": name,
            "code": payload.get("code"),
            "signal": payload.get("signal"),
        })

    async def disconnect_mcp_server(self, server_name: str) -> bool:
        client = self.mcp_clients.pop(server_name, None)
        if client is None:
            return False

        self.unregister_plugin_actions(mcp_plugin_id(server_name))
        await client.cleanup()
        self.logger.info(f"Disconnected from MCP server: {server_name}")
        return True

    def get_connected_mcp_servers(self) -> list[dict[str, Any]]:
        return [client.get_server_info() for client in self.mcp_clients.values()]

    async def call_mcp_tool(
        self,
        server_name: str,
        tool_name: str,
        parameters: dict[str, Any] | None = None,
    ) -> Any:
        client = self.mcp_clients.get(server_name)
        if client is None:
            raise MCPConnectionError(f"MCP server not connected: {server_name}")
        return await client.call_tool(tool_name, parameters or {})

    # ── Prompt injection ───────────────────────────────────

    def get_mcp_tools_for_prompt(self) -> list[dict[str, Any]]:
        """
        Built-in actions plus every connected server's tools, in the shape
        the LLM prompt builder consumes.
        """
        tools = [
            {
                "name": action_name,
                "description": entry.description or action_name,
                "inputSchema": entry.input_schema or {"type": "object", "properties": {}},
                "server": "builtin",
                "original_name": action_name,
            }
            for action_name, entry in self.registered_actions.items()
            if entry.plugin_id == "builtin"
        ]

        for server_name, client in self.mcp_clients.items():
            if not client.connected or not client.initialized:
                continue
            for tool in client.get_tools_for_llm():
                tools.append({
                    "name": mcp_action_name(server_name, tool["name"]),
                    "description": tool["description"],
                    "inputSchema": tool["inputSchema"],
                    "server": server_name,
                    "original_name": tool["name"],
                })
        return tools

    def generate_mcp_tools_prompt_section(self) -> str:
        """Human-readable tool catalogue for the system prompt ('' when empty)."""
        tools = self.get_mcp_tools_for_prompt()
        if not tools:
            return ""

        lines = [
            "",
            "## Available MCP Tools",
            "",
            "The following external tools are available through the Model Context Protocol:",
            "",
        ]
        for tool in tools:
            lines.append(f"### {tool['name']}")
            lines.append(f"**Description**: {tool['description']}")
            lines.append(f"**Server**: {tool['server']}")

            schema = tool.get("inputSchema") or {}
            properties = schema.get("properties") or {}
            required = set(schema.get("required") or [])
            if properties:
                lines.append("**Parameters**:")
                for pname, pinfo in properties.items():
                    ptype = pinfo.get("type", "any")
                    pdesc = pinfo.get("description") or "parameter"
                    marker = ", required" if pname in required else ""
                    lines.append(f"- `{pname}` ({ptype}{marker}): {pdesc}")
            lines.append("")

        lines += [
            "**How to use MCP tools**:",
            "```json",
            '"mcp_actions": [',
            "  {",
            '    "action": "mcp_servername_toolname",',
            '    "parameters": {"param1": "value1"}',
            "  }",
            "]",
            "```",
            "",
        ]
        return "\n".join(lines) + "\n"

    # ── Shutdown ───────────────────────────────────────────

    async def cleanup(self) -> None:
        for server_name, client in list(self.mcp_clients.items()):
            try:
                await client.cleanup()
            except Exception as e:
                self.logger.error(f"Error cleaning up MCP client {server_name}: {e}")
        self.mcp_clients.clear()

        for pending in (*self._connecting.values(), *self._lazy_connections.values()):
            pending.cancel()
        self._connecting.clear()
        self._lazy_connections.clear()

        self.registered_actions.clear()
        self.plugin_actions.clear()
        self.remove_all_listeners()
        self.logger.info("MCP Executor cleanup completed")
