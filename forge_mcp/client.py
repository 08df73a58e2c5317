"""
MCP client — one connection to one external tool server.

Lifecycle:

    disconnected ──connect()──> connecting ──handshake ok──> connected
         ^                          │                            │
         │                    (failure: caller                   ├── disconnect() ──> closed
         └────── connect() ──  cleans up) ─────────────────────  └── process exit ──> crashed

connect() spawns the server, runs the initialize / notifications/initialized
handshake and then discovers tools, resources and prompts. Requests are
matched to responses by id, so several may be in flight at once.

Usage:
    client = MCPClient(ServerConfig(name="calc", command="python",
                                    args=["-m", "forge_mcp.servers.calculator"]))
    await client.connect()
    result = await client.call_tool("add", {"a": 2, "b": 3})
    await client.cleanup()
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import signal
from typing import Any

from forge_mcp.config import ClientSettings, ServerConfig
from forge_mcp.errors import (
    MCPConnectionError,
    MCPError,
    MCPRequestError,
    MCPTimeoutError,
    PromptNotFoundError,
    ResourceNotFoundError,
    ToolNotFoundError,
)
from forge_mcp.events import EventEmitter
from forge_mcp.transport import (
    JsonRpcNotification,
    JsonRpcRequest,
    JsonRpcResponse,
    Transport,
    build_stdio_transport,
    is_protocol_line,
)

logger = logging.getLogger(__name__)

EMBEDDABLE_URL_TOOL = "get_embeddable_url"

_EMBED_URL_RE = re.compile(r"Embed URL:\s*\n(.+?)(?:\n|$)")
_TITLE_RE = re.compile(r"Title:\s*(.+?)(?:\n|$)")

# capability -> (list method, result key, map key field)
_DISCOVERY = {
    "tools": ("tools/list", "tools", "name"),
    "resources": ("resources/list", "resources", "uri"),
    "prompts": ("prompts/list", "prompts", "name"),
}


def _signal_name(code: int | None) -> str | None:
    # asyncio reports death-by-signal as a negative return code
    if code is None or code >= 0:
        return None
    try:
        return signal.Signals(-code).name
    except ValueError:
        return str(-code)


class MCPClient(EventEmitter):
    """
    Manages one tool server process and its JSON-RPC session.

    Events:
        connected     {server_name, capabilities, tools, resources, prompts}
        disconnected  {server_name, code, signal, requested}
    """

    def __init__(
        self,
        server_config: ServerConfig,
        logger: logging.Logger | None = None,
        settings: ClientSettings | None = None,
        transport: Transport | None = None,
    ):
        super().__init__()
        self.server_config = server_config
        self.logger = logger or logging.getLogger(__name__)
        self.settings = settings or ClientSettings()
        self.transport = transport

        self.state = "disconnected"
        self.connected = False
        self.initialized = False
        self.exit_code: int | None = None

        # Filled from the initialize result
        self.server_capabilities: dict[str, Any] | None = None
        self.server_info: dict[str, Any] | None = None

        self.tools: dict[str, dict] = {}
        self.resources: dict[str, dict] = {}
        self.prompts: dict[str, dict] = {}

        self.message_id = 0
        self.pending_requests: dict[int, asyncio.Future] = {}
        self._timers: dict[int, asyncio.TimerHandle] = {}

    @property
    def name(self) -> str:
        return self.server_config.name

    @property
    def protocol_version(self) -> str:
        return self.settings.protocol_version

    # ── Connection ─────────────────────────────────────────

    async def connect(self) -> None:
        """
        Spawn the server, run the handshake and discover capabilities.

        Raises on spawn or initialize failure; the caller is responsible
        for calling disconnect()/cleanup() afterwards.
        """
        self.logger.info(f"Connecting to MCP server: {self.name}")
        self.state = "connecting"
        self.exit_code = None

        try:
            await self._start_server_process()
            await self._perform_initialization()
            await self._send_initialized_notification()
            await self.discover_capabilities()
        except Exception as e:
            self.logger.error(f"Failed to connect to MCP server {self.name}: {e}")
            raise

        if self.state != "connecting":
            # Process died while we were discovering
            raise MCPConnectionError(
                f"MCP server {self.name} exited during initialization (code {self.exit_code})"
            )

        self.state = "connected"
        self.connected = True
        self.initialized = True

        self.logger.info(
            f"Connected to MCP server {self.name}: {len(self.tools)} tools, "
            f"{len(self.resources)} resources, {len(self.prompts)} prompts"
        )
        self.emit("connected", {
            "server_name": self.name,
            "capabilities": self.server_capabilities,
            "tools": list(self.tools),
            "resources": list(self.resources),
            "prompts": list(self.prompts),
        })

    async def _start_server_process(self) -> None:
        if self.transport is None:
            self.transport = build_stdio_transport(self.server_config, self.settings, self.logger)

        self.logger.debug(
            f"Starting MCP server: {' '.join(self.server_config.full_command())}"
        )
        await self.transport.start(self._handle_line, self._handle_exit)

        # Give the process a moment to fail fast (bad script, missing module, ...)
        await asyncio.sleep(self.settings.startup_grace)
        if not self.transport.is_alive():
            code = getattr(self.transport, "returncode", self.exit_code)
            raise MCPConnectionError(
                f"Failed to start MCP server process: {self.name} exited with code {code}"
            )

    async def _perform_initialization(self) -> dict[str, Any]:
        self.logger.debug(f"Performing MCP initialization with {self.name}")
        result = await self.send_request("initialize", {
            "protocolVersion": self.protocol_version,
            "capabilities": {"sampling": {}},
            "clientInfo": self.settings.client_info(),
        })

        if not isinstance(result, dict):
            raise MCPConnectionError(
                f"Invalid initialize result from MCP server {self.name}: {result!r}"
            )

        self.server_capabilities = result.get("capabilities") or {}
        self.server_info = result.get("serverInfo") or {}

        server_version = result.get("protocolVersion")
        if server_version != self.protocol_version:
            self.logger.warning(
                f"Protocol version mismatch with {self.name}: "
                f"client={self.protocol_version}, server={server_version}"
            )

        self.logger.debug(f"MCP initialization completed: {self.server_info}")
        return result

    async def _send_initialized_notification(self) -> None:
        await self.send_notification("notifications/initialized")

    async def discover_capabilities(self) -> None:
        """
        Populate tools/resources/prompts for every advertised capability.

        Each capability is discovered independently; a failing ``*/list``
        call is logged and leaves only that map empty.
        """
        capabilities = self.server_capabilities or {}
        for kind in ("tools", "resources", "prompts"):
            if capabilities.get(kind) in (None, False):
                continue
            await self._discover(kind)

        self.logger.debug(
            f"Capability discovery for {self.name} completed: {len(self.tools)} tools, "
            f"{len(self.resources)} resources, {len(self.prompts)} prompts"
        )

    async def _discover(self, kind: str) -> None:
        method, result_key, key_field = _DISCOVERY[kind]
        target: dict[str, dict] = getattr(self, kind)
        try:
            result = await self.send_request(method)
        except MCPError as e:
            self.logger.warning(f"Failed to discover {kind} on {self.name}: {e}")
            return

        items = result.get(result_key) if isinstance(result, dict) else None
        if not isinstance(items, list):
            self.logger.warning(f"Malformed {method} result from {self.name}: {result!r}")
            return

        for item in items:
            if isinstance(item, dict) and item.get(key_field):
                target[item[key_field]] = item
                self.logger.debug(f"Discovered MCP {kind[:-1]} on {self.name}: {item[key_field]}")

    async def refresh_capabilities(self) -> None:
        """Drop and re-discover all capability maps."""
        self.tools.clear()
        self.resources.clear()
        self.prompts.clear()
        await self.discover_capabilities()

    # ── Inbound messages ───────────────────────────────────

    def _handle_line(self, line: str) -> None:
        """Parse one stdout line. Never raises."""
        line = line.strip()
        if not line:
            return
        if not is_protocol_line(line):
            self.logger.debug(f"MCP server {self.name} stdout (non-JSON): {line}")
            return

        try:
            message = json.loads(line)
        except json.JSONDecodeError as e:
            self.logger.error(f"Failed to parse JSON-RPC message from {self.name}: {e}")
            self.logger.debug(f"Invalid line: {line[:100]}{'...' if len(line) > 100 else ''}")
            return

        # JSON-RPC batch
        messages = message if isinstance(message, list) else [message]
        for item in messages:
            if isinstance(item, dict):
                self.handle_message(item)
            else:
                self.logger.debug(f"Ignoring non-object JSON-RPC message from {self.name}")

    def handle_message(self, message: dict[str, Any]) -> None:
        msg_id = message.get("id")

        # Server-initiated requests carry their own ids and must not resolve ours
        if "method" not in message and msg_id is not None and msg_id in self.pending_requests:
            self._resolve(msg_id, JsonRpcResponse.from_dict(message))
        elif "method" in message:
            self._handle_server_message(message)
        elif msg_id is not None:
            # Response for a request that already timed out or was rejected
            self.logger.debug(f"Dropping response for unknown request id {msg_id} from {self.name}")
        else:
            self.logger.debug(f"Unrecognized message from {self.name}: {message}")

    def _handle_server_message(self, message: dict[str, Any]) -> None:
        method = message["method"]
        params = message.get("params") or {}

        if method == "notifications/message":
            text = params.get("data", params.get("text", "No message"))
            self.logger.info(f"Server message from {self.name}: {text}")
        elif method in (
            "notifications/resources/list_changed",
            "notifications/tools/list_changed",
            "notifications/prompts/list_changed",
        ):
            # No automatic re-discovery; see refresh_capabilities()
            self.logger.debug(f"{self.name}: {method.split('/')[1]} list changed")
        else:
            self.logger.debug(f"Unhandled server message from {self.name}: {method}")

    def _resolve(self, request_id: int, response: JsonRpcResponse) -> None:
        future = self._evict(request_id)
        if future is None or future.done():
            return
        if response.is_error:
            error = response.error if isinstance(response.error, dict) else {}
            future.set_exception(MCPRequestError(
                response.error_message,
                code=error.get("code"),
                data=error.get("data"),
            ))
        else:
            future.set_result(response.result)

    def _handle_exit(self, code: int | None) -> None:
        self.exit_code = code
        if self.state == "closed":
            return

        sig = _signal_name(code)
        self.logger.warning(f"MCP server process {self.name} exited with code {code}, signal {sig}")
        self.state = "crashed"
        self.connected = False
        self.initialized = False
        self._reject_pending(MCPConnectionError(
            f"MCP server {self.name} exited (code {code})"
        ))
        self.emit("disconnected", {
            "server_name": self.name,
            "code": code,
            "signal": sig,
            "requested": False,
        })

    # ── Outbound messages ──────────────────────────────────

    async def send_request(self, method: str, params: dict[str, Any] | None = None) -> Any:
        """
        Send a JSON-RPC request and wait for its response.

        Raises MCPTimeoutError if nothing arrives within the request
        timeout, MCPRequestError if the server answers with an error.
        """
        self.message_id += 1
        request_id = self.message_id
        loop = asyncio.get_running_loop()
        future = loop.create_future()
        self.pending_requests[request_id] = future
        self._timers[request_id] = loop.call_later(
            self.settings.request_timeout, self._expire_request, request_id, method
        )

        request = JsonRpcRequest(method=method, params=params or {}, id=request_id)
        self.logger.debug(f"Sending MCP request to {self.name}: {method} (id {request_id})")
        try:
            if self.transport is None:
                raise MCPConnectionError(f"MCP server process not available: {self.name}")
            await self.transport.write(request.to_json())
            return await future
        finally:
            self._evict(request_id)

    async def send_notification(self, method: str, params: dict[str, Any] | None = None) -> None:
        if self.transport is None or not self.transport.is_alive():
            self.logger.debug(f"Skipping notification {method}: {self.name} not running")
            return
        self.logger.debug(f"Sending MCP notification to {self.name}: {method}")
        await self.transport.write(JsonRpcNotification(method=method, params=params or {}).to_json())

    def _expire_request(self, request_id: int, method: str) -> None:
        future = self._evict(request_id)
        if future is not None and not future.done():
            self.logger.warning(f"MCP request timeout on {self.name}: {method} (id {request_id})")
            future.set_exception(MCPTimeoutError(f"MCP request timeout: {method}"))

    def _evict(self, request_id: int) -> asyncio.Future | None:
        timer = self._timers.pop(request_id, None)
        if timer is not None:
            timer.cancel()
        return self.pending_requests.pop(request_id, None)

    def _reject_pending(self, error: MCPError) -> None:
        for request_id in list(self.pending_requests):
            future = self._evict(request_id)
            if future is not None and not future.done():
                future.set_exception(error)

    # ── Capability calls ───────────────────────────────────

    async def call_tool(self, tool_name: str, arguments: dict[str, Any] | None = None) -> Any:
        if tool_name not in self.tools:
            raise ToolNotFoundError(f"Tool not found: {tool_name}")

        self.logger.debug(f"Calling MCP tool {self.name}/{tool_name}: {arguments}")
        try:
            return await self.send_request("tools/call", {
                "name": tool_name,
                "arguments": arguments or {},
            })
        except MCPError as e:
            self.logger.error(f"MCP tool call failed: {self.name}/{tool_name}: {e}")
            raise

    async def read_resource(self, uri: str) -> Any:
        if uri not in self.resources:
            raise ResourceNotFoundError(f"Resource not found: {uri}")

        self.logger.debug(f"Reading MCP resource {self.name}: {uri}")
        try:
            return await self.send_request("resources/read", {"uri": uri})
        except MCPError as e:
            self.logger.error(f"MCP resource read failed: {uri}: {e}")
            raise

    async def get_prompt(self, prompt_name: str, arguments: dict[str, Any] | None = None) -> Any:
        if prompt_name not in self.prompts:
            raise PromptNotFoundError(f"Prompt not found: {prompt_name}")

        self.logger.debug(f"Getting MCP prompt {self.name}/{prompt_name}")
        try:
            return await self.send_request("prompts/get", {
                "name": prompt_name,
                "arguments": arguments or {},
            })
        except MCPError as e:
            self.logger.error(f"MCP prompt get failed: {prompt_name}: {e}")
            raise

    def get_tools_for_llm(self) -> list[dict[str, Any]]:
        """Discovered tools as ``{name, description, inputSchema}`` entries."""
        return [
            {
                "name": name,
                "description": tool.get("description") or f"MCP tool: {name}",
                "inputSchema": tool.get("inputSchema") or {
                    "type": "object",
                    "properties": {},
                    "additionalProperties": True,
                },
            }
            for name, tool in self.tools.items()
        ]

    # ── Webview embedding ──────────────────────────────────

    def supports_webview_embedding(self) -> bool:
        """A server is embeddable iff it exposes a ``get_embeddable_url`` tool."""
        return EMBEDDABLE_URL_TOOL in self.tools

    def get_webview_config(self) -> dict[str, Any] | None:
        if not self.supports_webview_embedding():
            return None

        experimental = (self.server_capabilities or {}).get("experimental") or {}
        embedding = experimental.get("embedding") or {}
        features = list(embedding.get("features") or [])
        return {
            "supported": True,
            "features": features,
            "version": embedding.get("version", "1.0.0"),
            "post_message_supported": "postMessage" in features,
            # The URL itself comes from calling get_embeddable_url
            "requires_url_call": True,
        }

    async def get_embeddable_url(self, params: dict[str, Any] | None = None) -> dict[str, Any]:
        """Call ``get_embeddable_url`` and pull ``url``/``title`` out of the result."""
        if not self.supports_webview_embedding():
            raise ToolNotFoundError(
                f"MCP server {self.name} does not have {EMBEDDABLE_URL_TOOL} tool"
            )

        result = await self.call_tool(EMBEDDABLE_URL_TOOL, params or {})
        extracted: dict[str, Any] = {}

        if isinstance(result, dict):
            for item in result.get("content") or []:
                if isinstance(item, dict) and item.get("type") == "text" and item.get("text"):
                    url_match = _EMBED_URL_RE.search(item["text"])
                    if url_match:
                        extracted["url"] = url_match.group(1).strip()
                    title_match = _TITLE_RE.search(item["text"])
                    if title_match:
                        extracted["title"] = title_match.group(1).strip()
                    break

            for structured in (result.get("structuredContent"), result.get("data")):
                if isinstance(structured, dict):
                    extracted.update(structured)

            for key in ("url", "title"):
                if key in result and key not in extracted:
                    extracted[key] = result[key]

        if not extracted.get("url"):
            self.logger.warning(f"No URL in {EMBEDDABLE_URL_TOOL} response from {self.name}")
        return extracted

    def get_server_info(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "connected": self.connected,
            "initialized": self.initialized,
            "server_info": self.server_info,
            "capabilities": self.server_capabilities,
            "webview_supported": self.supports_webview_embedding(),
            "tools": [
                {
                    "name": name,
                    "description": tool.get("description"),
                    "inputSchema": tool.get("inputSchema"),
                }
                for name, tool in self.tools.items()
            ],
            "resources": [
                {
                    "uri": uri,
                    "name": resource.get("name"),
                    "description": resource.get("description"),
                }
                for uri, resource in self.resources.items()
            ],
            "prompts": [
                {
                    "name": name,
                    "description": prompt.get("description"),
                    "arguments": prompt.get("arguments"),
                }
                for name, prompt in self.prompts.items()
            ],
        }

    # ── Shutdown ───────────────────────────────────────────

    async def disconnect(self) -> None:
        """
        Reject pending requests, stop the process and clear discovered state.

        Safe to call repeatedly and after the process has already died.
        """
        if self.state == "closed":
            return

        was_up = self.state in ("connecting", "connected")
        self.logger.info(f"Disconnecting from MCP server: {self.name}")
        self.state = "closed"
        self.connected = False
        self.initialized = False

        self._reject_pending(MCPConnectionError("Connection closed"))

        code = self.exit_code
        if self.transport is not None:
            stopped = await self.transport.stop()
            if stopped is not None:
                code = stopped
                self.exit_code = stopped

        self.tools.clear()
        self.resources.clear()
        self.prompts.clear()

        if was_up:
            self.emit("disconnected", {
                "server_name": self.name,
                "code": code,
                "signal": _signal_name(code),
                "requested": True,
            })
        self.logger.info(f"Disconnected from MCP server: {self.name}")

    async def cleanup(self) -> None:
        await self.disconnect()
        self.remove_all_listeners()

    def __repr__(self) -> str:
        return f"MCPClient(name={self.name!r}, state={self.state!r}, tools={len(self.tools)})"
