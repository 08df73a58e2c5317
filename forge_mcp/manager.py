"""
MCP Manager — coordinates many tool servers behind one facade.

The manager owns the registry of server *configurations* contributed by
the framework and by each plugin/app, and decides when they get
connected. Connections and actions themselves live in the MCPExecutor.

Per server name:

    unregistered -> registered -> connecting -> connected -> disconnected | crashed

Both end states keep the config, so start_server() can reconnect later.

Usage:
    manager = MCPManager()
    await manager.initialize()

    # Register servers (does not start them)
    manager.register_server_configs("calc-app", [
        {"name": "calc", "command": "python", "args": ["-m", "forge_mcp.servers.calculator"]},
    ])

    # Connect everything, or let execute() connect on first use
    await manager.connect_all_servers()
    result = await manager.execute_mcp_tool("mcp_calc_add", {"a": 2, "b": 3})

    # Stop everything
    await manager.cleanup()
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping

from forge_mcp.builtin_tools import BUILTIN_TOOLS, BuiltinTool
from forge_mcp.client import MCPClient
from forge_mcp.config import ClientSettings, ServerConfig
from forge_mcp.errors import MCPError
from forge_mcp.events import EventEmitter
from forge_mcp.executor import ActionHandler, ClientFactory, MCPExecutor

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class ConnectedServer:
    client: MCPClient
    config: ServerConfig
    connected_at: str = field(default_factory=_now)


class MCPManager(EventEmitter):
    """
    Central coordinator for MCP server configs and connections.

    Events:
        initialized
        servers-connected          {total, successful, failed, connected_servers}
        server-connected           {server_name, app_id, server_info}
        server-connection-failed   {server_name, app_id, error}
        server-disconnected        {server_name, crashed, code?, signal?}
        server-stopped             {server_name, stopped_at}
        server-webview-available   {server_name, config}
    """

    def __init__(
        self,
        logger: logging.Logger | None = None,
        settings: ClientSettings | None = None,
        client_factory: ClientFactory = MCPClient,
    ):
        super().__init__()
        self.logger = logger or logging.getLogger(__name__)
        self.settings = settings or ClientSettings()
        self._client_factory = client_factory

        self.mcp_executor: MCPExecutor | None = None
        self.connected_servers: dict[str, ConnectedServer] = {}
        self.server_configs: dict[str, ServerConfig] = {}
        self.initialized = False

    async def initialize(self, persistence_client: Any = None) -> bool:
        """Create the executor and register built-in actions."""
        self.logger.info("Initializing MCP Manager...")

        self.mcp_executor = MCPExecutor(
            persistence_client,
            logger=self.logger,
            settings=self.settings,
            mcp_manager=self,
            client_factory=self._client_factory,
        )
        self.mcp_executor.on("server-crashed", self._on_server_crashed)
        self.register_builtin_tools()

        self.initialized = True
        self.logger.info("MCP Manager initialized")
        self.emit("initialized")
        return True

    def _require_executor(self) -> MCPExecutor:
        if self.mcp_executor is None:
            raise MCPError("MCP Manager not initialized")
        return self.mcp_executor

    def register_builtin_tools(self, tools: Mapping[str, BuiltinTool] = BUILTIN_TOOLS) -> None:
        executor = self._require_executor()
        for tool in tools.values():
            executor.register_action(
                tool.name,
                self._contextual_handler(tool),
                "builtin",
                description=tool.description,
                input_schema=tool.input_schema,
            )

    def _contextual_handler(self, tool: BuiltinTool) -> ActionHandler:
        def _handler(params: dict[str, Any], role: str) -> Any:
            return tool.handler(params, {"mcp_manager": self, "logger": self.logger, "role": role})

        return _handler

    # ── Configs ────────────────────────────────────────────

    def register_server_configs(
        self,
        app_id: str,
        server_configs: Iterable[Mapping[str, Any] | ServerConfig] | Mapping[str, Mapping[str, Any]],
    ) -> list[str]:
        """
        Add server configs contributed by ``app_id`` without connecting them.

        Accepts a list of configs or a ``{name: config}`` mapping. Entries
        without a name (or command) are skipped with a warning; an existing
        entry with the same name is replaced. Returns the registered names.
        """
        if server_configs is None or isinstance(server_configs, (str, bytes)):
            self.logger.warning(f"Invalid MCP server configs for app {app_id}")
            return []

        if isinstance(server_configs, Mapping):
            entries = [(name, cfg) for name, cfg in server_configs.items()]
        else:
            entries = [(None, cfg) for cfg in server_configs]

        registered = []
        for name, raw in entries:
            try:
                config = raw if isinstance(raw, ServerConfig) else ServerConfig.from_dict(raw, name=name)
            except (ValueError, TypeError, AttributeError) as e:
                self.logger.warning(f"Skipping MCP server config for app {app_id}: {e}")
                continue

            if config.name in self.server_configs:
                self.logger.debug(f"Replacing MCP server config: {config.name}")
            self.server_configs[config.name] = config.with_registration(app_id)
            registered.append(config.name)
            self.logger.debug(f"Registered MCP server config: {config.name} (app: {app_id})")

        self.logger.info(f"Registered {len(registered)} MCP server configs for app: {app_id}")
        return registered

    def get_registered_server_configs(self) -> list[ServerConfig]:
        return list(self.server_configs.values())

    # ── Connect / disconnect ───────────────────────────────

    async def connect_all_servers(self) -> dict[str, int]:
        """
        Connect every registered server concurrently.

        One server failing never affects the others. Returns and emits a
        ``{total, successful, failed}`` summary.
        """
        if not self.initialized:
            raise MCPError("MCP Manager not initialized")

        configs = list(self.server_configs.values())
        if not configs:
            self.logger.info("No MCP servers configured")
            return {"total": 0, "successful": 0, "failed": 0}

        self.logger.info(f"Connecting to {len(configs)} registered MCP servers...")
        results = await asyncio.gather(
            *(self.connect_server(config) for config in configs),
            return_exceptions=True,
        )

        successful = 0
        for config, result in zip(configs, results):
            if isinstance(result, BaseException):
                self.logger.error(f"MCP server connection for {config.name} raised: {result}")
            elif result["success"]:
                successful += 1
        failed = len(configs) - successful

        self.logger.info(f"MCP server connections completed: {successful} successful, {failed} failed")
        summary = {"total": len(configs), "successful": successful, "failed": failed}
        self.emit("servers-connected", {**summary, "connected_servers": self.get_connected_servers_summary()})
        return summary

    async def connect_server(self, server_config: ServerConfig) -> dict[str, Any]:
        """Connect one server. Returns ``{success, server_name, error?}``; never raises."""
        name = server_config.name
        try:
            executor = self._require_executor()
            self.logger.info(f"Connecting to MCP server: {name} (app: {server_config.app_id})")
            client = await executor.connect_mcp_server(server_config)
        except Exception as e:
            self.logger.error(f"Failed to connect to MCP server {name}: {e}")
            self.emit("server-connection-failed", {
                "server_name": name,
                "app_id": server_config.app_id,
                "error": str(e),
            })
            return {"success": False, "server_name": name, "error": str(e)}

        record = self.connected_servers.get(name)
        if record is not None and record.client is client:
            return {"success": True, "server_name": name, "already_connected": True}

        self.connected_servers[name] = ConnectedServer(client=client, config=server_config)
        self.logger.info(f"Successfully connected to MCP server: {name}")
        self.emit("server-connected", {
            "server_name": name,
            "app_id": server_config.app_id,
            "server_info": client.get_server_info(),
        })
        return {"success": True, "server_name": name}

    async def start_server(
        self,
        server_name: str,
        embed_params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """
        Ensure ``server_name`` is connected.

        Used by the executor's lazy path and by the host application.
        For webview-capable servers the result carries ``webview_config``
        (with ``url``/``title`` when get_embeddable_url provides them).
        """
        if server_name in self.connected_servers:
            self.logger.info(f"MCP server {server_name} is already connected")
            result: dict[str, Any] = {"success": True, "server_name": server_name, "already_connected": True}
        else:
            config = self.server_configs.get(server_name)
            if config is None:
                error = f"No configuration found for server: {server_name}"
                self.logger.error(f"Failed to start MCP server {server_name}: {error}")
                return {"success": False, "server_name": server_name, "error": error}
            result = await self.connect_server(config)

        if not result["success"]:
            return result

        record = self.connected_servers.get(server_name)
        if record is not None and record.client.supports_webview_embedding():
            webview_config = await self._resolve_webview_config(record.client, embed_params)
            result["webview_config"] = webview_config
            self.emit("server-webview-available", {"server_name": server_name, "config": webview_config})
        return result

    async def _resolve_webview_config(
        self,
        client: MCPClient,
        embed_params: dict[str, Any] | None,
    ) -> dict[str, Any] | None:
        webview_config = client.get_webview_config()
        if not webview_config or not webview_config.get("requires_url_call"):
            return webview_config

        try:
            embed = await client.get_embeddable_url(embed_params or {})
        except MCPError as e:
            # The webview is optional; the caller still gets a connected server
            self.logger.error(f"Failed to get embeddable URL for {client.name}: {e}")
            return webview_config

        if embed.get("url"):
            webview_config["url"] = embed["url"]
            webview_config["title"] = embed.get("title") or client.name
            self.logger.info(f"Embeddable URL for {client.name}: {embed['url']}")
        return webview_config

    async def stop_server(self, server_name: str) -> dict[str, Any]:
        stopped = await self.disconnect_server(server_name)
        self.emit("server-stopped", {"server_name": server_name, "stopped_at": _now()})
        return {"success": stopped, "server_name": server_name}

    async def disconnect_server(self, server_name: str) -> bool:
        if server_name not in self.connected_servers:
            self.logger.warning(f"MCP server not connected: {server_name}")
            return False

        try:
            await self._require_executor().disconnect_mcp_server(server_name)
        except Exception as e:
            self.logger.error(f"Failed to disconnect from MCP server {server_name}: {e}")
            return False
        finally:
            self.connected_servers.pop(server_name, None)

        self.logger.info(f"Disconnected from MCP server: {server_name}")
        self.emit("server-disconnected", {"server_name": server_name, "crashed": False})
        return True

    async def disconnect_all_servers(self) -> dict[str, int]:
        names = list(self.connected_servers)
        if not names:
            self.logger.info("No MCP servers to disconnect")
            return {"total": 0, "disconnected": 0}

        self.logger.info(f"Disconnecting from {len(names)} MCP servers...")
        results = await asyncio.gather(
            *(self.disconnect_server(name) for name in names),
            return_exceptions=True,
        )
        disconnected = sum(1 for r in results if r is True)
        self.logger.info(f"Disconnected {disconnected}/{len(names)} MCP servers")
        return {"total": len(names), "disconnected": disconnected}

    def _on_server_crashed(self, payload: dict[str, Any]) -> None:
        name = payload["server_name"]
        if self.connected_servers.pop(name, None) is None:
            return
        self.logger.warning(f"MCP server {name} crashed (code {payload.get('code')}); config kept for reconnect")
        self.emit("server-disconnected", {
            "server_name": name,
            "crashed": True,
            "code": payload.get("code"),
            "signal": payload.get("signal"),
        })

    # ── Executor facade ────────────────────────────────────

    def get_mcp_tools_for_prompt(self) -> list[dict[str, Any]]:
        if self.mcp_executor is None:
            return []
        return self.mcp_executor.get_mcp_tools_for_prompt()

    def generate_mcp_tools_prompt_section(self) -> str:
        if self.mcp_executor is None:
            return ""
        return self.mcp_executor.generate_mcp_tools_prompt_section()

    async def execute_mcp_tool(
        self,
        action_name: str,
        params: dict[str, Any] | None = None,
        role: str = "Agent",
    ) -> Any:
        return await self._require_executor().execute(action_name, params, role)

    def register_mcp_tool(
        self,
        action_name: str,
        handler: ActionHandler,
        plugin_id: str = "framework",
    ) -> None:
        self._require_executor().register_action(action_name, handler, plugin_id)

    # ── Read-only views ────────────────────────────────────

    def get_webview_capable_servers(self) -> list[dict[str, Any]]:
        return [
            {
                "name": name,
                "app_id": record.config.app_id,
                "config": record.client.get_webview_config(),
                "server_info": record.client.get_server_info(),
            }
            for name, record in self.connected_servers.items()
            if record.client.supports_webview_embedding()
        ]

    def get_server_webview_config(self, server_name: str) -> dict[str, Any] | None:
        record = self.connected_servers.get(server_name)
        return record.client.get_webview_config() if record else None

    def get_connected_servers_summary(self) -> list[dict[str, Any]]:
        summary = []
        for name, record in self.connected_servers.items():
            info = record.client.get_server_info()
            server_info = info["server_info"] or {}
            summary.append({
                "name": name,
                "app_id": record.config.app_id,
                "connected_at": record.connected_at,
                "tools": len(info["tools"]),
                "resources": len(info["resources"]),
                "prompts": len(info["prompts"]),
                "webview_supported": info["webview_supported"],
                "server_info": {
                    "name": server_info.get("name"),
                    "version": server_info.get("version"),
                },
            })
        return summary

    def get_connected_servers_info(self) -> list[dict[str, Any]]:
        if self.mcp_executor is None:
            return []
        return self.mcp_executor.get_connected_mcp_servers()

    def is_ready(self) -> bool:
        return self.initialized and self.mcp_executor is not None

    def get_statistics(self) -> dict[str, Any]:
        return {
            "initialized": self.initialized,
            "registered_servers": len(self.server_configs),
            "connected_servers": len(self.connected_servers),
            "total_tools": len(self.get_mcp_tools_for_prompt()),
            "total_actions": len(self.mcp_executor.registered_actions) if self.mcp_executor else 0,
            "server_details": self.get_connected_servers_summary(),
        }

    async def cleanup(self) -> None:
        self.logger.info("Cleaning up MCP Manager...")
        await self.disconnect_all_servers()

        if self.mcp_executor is not None:
            await self.mcp_executor.cleanup()
            self.mcp_executor = None

        self.connected_servers.clear()
        self.server_configs.clear()
        self.initialized = False
        self.remove_all_listeners()
        self.logger.info("MCP Manager cleanup completed")
