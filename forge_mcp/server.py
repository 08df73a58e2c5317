"""
StdioToolServer — the server side of the MCP stdio transport.

A tool server process reads one JSON-RPC message per line from stdin and
writes responses (and its own notifications) to stdout. This base class
answers the handshake, lists what was registered and routes calls:

    tools      ToolHandler subclasses      tools/list, tools/call
    resources  Resource(uri, reader)       resources/list, resources/read
    prompts    Prompt(name, render)        prompts/list, prompts/get

stdout is reserved for protocol traffic; logs go to stderr (see
configure_server_logging). An optional banner line is printed first, which
clients are expected to skip.

Minimal server:

    class WordCount(ToolHandler):
        name = "word_count"
        description = "Count words in a text"
        parameters = {"text": {"type": "string", "description": "Text to count"}}
        required = ["text"]

        def handle(self, params: dict) -> dict:
            return {"words": len(params["text"].split())}

    if __name__ == "__main__":
        server = StdioToolServer("text-tools")
        server.register(WordCount())
        server.run()
"""

from __future__ import annotations

import json
import logging
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, TextIO

from forge_mcp.config import PROTOCOL_VERSION

logger = logging.getLogger(__name__)

PARSE_ERROR = -32700
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603


class ToolHandler(ABC):
    """
    One tool exposed by a StdioToolServer.

    ``parameters`` maps argument names to JSON-schema fragments and
    ``required`` lists the mandatory ones; get_schema() turns them into the
    ``inputSchema`` reported by tools/list.
    """

    name: str = ""
    description: str = ""
    parameters: dict[str, dict] = {}
    required: list[str] = []

    @abstractmethod
    def handle(self, params: dict[str, Any]) -> Any:
        """
        Run the tool on the ``arguments`` of a tools/call request.

        A dict result is also sent as ``structuredContent``; a str is sent
        as-is in the text content. Raising turns into a JSON-RPC error.
        """
        ...

    def get_schema(self) -> dict:
        """tools/list entry for this tool."""
        schema: dict[str, Any] = {
            "type": "object",
            "properties": self.parameters,
        }
        if self.required:
            schema["required"] = list(self.required)
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": schema,
        }


@dataclass
class Resource:
    uri: str
    name: str
    reader: Callable[[], str]
    description: str = ""
    mime_type: str = "text/plain"

    def describe(self) -> dict:
        return {
            "uri": self.uri,
            "name": self.name,
            "description": self.description,
            "mimeType": self.mime_type,
        }


@dataclass
class Prompt:
    name: str
    render: Callable[[dict[str, Any]], str]
    description: str = ""
    arguments: list[dict[str, Any]] = field(default_factory=list)

    def describe(self) -> dict:
        return {
            "name": self.name,
            "description": self.description,
            "arguments": self.arguments,
        }


class RpcError(Exception):
    def __init__(self, code: int, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


class StdioToolServer:
    """
    JSON-RPC tool server that speaks MCP over stdin/stdout.

    Protocol:
    - One JSON-RPC message per line
    - Requests: initialize, ping, tools/list, tools/call, resources/list,
      resources/read, prompts/list, prompts/get
    - Notifications (no id) are never answered
    """

    def __init__(
        self,
        name: str = "forge-tool-server",
        version: str = "1.0.0",
        protocol_version: str = PROTOCOL_VERSION,
        banner: str | None = None,
        fail_methods: set[str] | None = None,
        stdin: TextIO | None = None,
        stdout: TextIO | None = None,
    ):
        """
        Args:
            name: serverInfo.name reported in the initialize result.
            version: serverInfo.version.
            protocol_version: Version answered to initialize.
            banner: Non-protocol line printed to stdout at startup.
            fail_methods: Methods that always answer with an error.
        """
        self.name = name
        self.version = version
        self.protocol_version = protocol_version
        self.banner = banner
        self.fail_methods = set(fail_methods or ())
        self.stdin = stdin or sys.stdin
        self.stdout = stdout or sys.stdout
        self.initialized = False
        self._handlers: dict[str, ToolHandler] = {}
        self._resources: dict[str, Resource] = {}
        self._prompts: dict[str, Prompt] = {}
        self.experimental: dict[str, Any] = {}

    def register(self, handler: ToolHandler) -> None:
        """Register a tool handler."""
        if not handler.name:
            raise ValueError(f"ToolHandler {handler.__class__.__name__} has no name")
        self._handlers[handler.name] = handler
        logger.info(f"Registered tool: {handler.name}")

    def register_resource(self, resource: Resource) -> None:
        self._resources[resource.uri] = resource

    def register_prompt(self, prompt: Prompt) -> None:
        self._prompts[prompt.name] = prompt

    def capabilities(self) -> dict[str, Any]:
        capabilities: dict[str, Any] = {}
        if self._handlers:
            capabilities["tools"] = {"listChanged": False}
        if self._resources:
            capabilities["resources"] = {"listChanged": False}
        if self._prompts:
            capabilities["prompts"] = {"listChanged": False}
        if self.experimental:
            capabilities["experimental"] = self.experimental
        return capabilities

    def run(self) -> None:
        """
        Main loop: read messages from stdin, dispatch, write responses to stdout.

        This blocks until stdin is closed (parent process terminates).
        """
        logger.info(f"Tool server {self.name} starting with {len(self._handlers)} tools: "
                    f"{list(self._handlers.keys())}")

        if self.banner:
            self.stdout.write(self.banner + "\n")
            self.stdout.flush()

        for line in self.stdin:
            self.handle_line(line)

    def handle_line(self, line: str) -> None:
        line = line.strip()
        if not line:
            return

        try:
            message = json.loads(line)
        except json.JSONDecodeError as e:
            self._write_error(None, PARSE_ERROR, f"Parse error: {e}")
            return

        request_id = message.get("id")
        method = message.get("method", "")
        params = message.get("params") or {}

        if request_id is None:
            self._handle_notification(method, params)
            return

        try:
            result = self._dispatch(method, params)
            self._write_result(request_id, result)
        except RpcError as e:
            self._write_error(request_id, e.code, e.message)
        except Exception as e:
            self._write_error(request_id, INTERNAL_ERROR, str(e))

    def _handle_notification(self, method: str, params: dict) -> None:
        if method == "notifications/initialized":
            self.initialized = True
            self.notify("notifications/message", {"level": "info", "data": f"{self.name} ready"})
        else:
            logger.debug(f"Ignoring notification: {method}")

    def _dispatch(self, method: str, params: dict) -> Any:
        """Route a method call to the appropriate handler."""
        if method in self.fail_methods:
            raise RpcError(INTERNAL_ERROR, f"{method} is unavailable on {self.name}")

        if method == "initialize":
            return {
                "protocolVersion": self.protocol_version,
                "capabilities": self.capabilities(),
                "serverInfo": {"name": self.name, "version": self.version},
            }

        if method == "ping":
            return {}

        if method == "tools/list":
            return {"tools": [h.get_schema() for h in self._handlers.values()]}

        if method == "tools/call":
            return self._call_tool(params.get("name", ""), params.get("arguments") or {})

        if method == "resources/list":
            return {"resources": [r.describe() for r in self._resources.values()]}

        if method == "resources/read":
            resource = self._resources.get(params.get("uri", ""))
            if not resource:
                raise RpcError(INVALID_PARAMS, f"Unknown resource: '{params.get('uri')}'")
            return {"contents": [{
                "uri": resource.uri,
                "mimeType": resource.mime_type,
                "text": resource.reader(),
            }]}

        if method == "prompts/list":
            return {"prompts": [p.describe() for p in self._prompts.values()]}

        if method == "prompts/get":
            prompt = self._prompts.get(params.get("name", ""))
            if not prompt:
                raise RpcError(INVALID_PARAMS, f"Unknown prompt: '{params.get('name')}'")
            text = prompt.render(params.get("arguments") or {})
            return {
                "description": prompt.description,
                "messages": [{"role": "user", "content": {"type": "text", "text": text}}],
            }

        raise RpcError(METHOD_NOT_FOUND, f"Unknown method: '{method}'")

    def _call_tool(self, tool_name: str, arguments: dict) -> dict:
        handler = self._handlers.get(tool_name)
        if not handler:
            raise RpcError(
                INVALID_PARAMS,
                f"Unknown tool: '{tool_name}'. Available: {list(self._handlers.keys())}",
            )

        result = handler.handle(arguments)
        text = result if isinstance(result, str) else json.dumps(result)
        response: dict[str, Any] = {
            "content": [{"type": "text", "text": text}],
            "isError": False,
        }
        if isinstance(result, dict):
            response["structuredContent"] = result
        return response

    def notify(self, method: str, params: dict | None = None) -> None:
        """Send a server-initiated notification."""
        self._write({"jsonrpc": "2.0", "method": method, "params": params or {}})

    def _write_result(self, request_id: Any, result: Any) -> None:
        """Write a JSON-RPC success response to stdout."""
        self._write({"jsonrpc": "2.0", "id": request_id, "result": result})

    def _write_error(self, request_id: Any, code: int, message: str) -> None:
        """Write a JSON-RPC error response to stdout."""
        self._write({
            "jsonrpc": "2.0",
            "id": request_id,
            "error": {"code": code, "message": message},
        })

    def _write(self, message: dict) -> None:
        self.stdout.write(json.dumps(message) + "\n")
        self.stdout.flush()


def configure_server_logging(level: int = logging.INFO) -> None:
    """Tool servers log to stderr; stdout belongs to the protocol."""
    logging.basicConfig(stream=sys.stderr, level=level, format="%(levelname)s: %(message)s")
