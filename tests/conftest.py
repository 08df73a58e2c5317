import asyncio
import json
import os
import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).parent.parent.resolve()
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from forge_mcp.client import MCPClient
from forge_mcp.config import PROTOCOL_VERSION, ClientSettings, ServerConfig
from forge_mcp.errors import MCPConnectionError
from forge_mcp.transport import Transport


class FakeServer:
    """In-memory MCP server: maps each outbound message to the replies it provokes."""

    def __init__(
        self,
        tools=("bar",),
        resources=(),
        prompts=(),
        fail=(),
        hold=(),
        protocol_version=PROTOCOL_VERSION,
        server_name="fake",
        extra_tools=None,
    ):
        self.tools = {
            name: {
                "name": name,
                "description": f"{name} tool",
                "inputSchema": {
                    "type": "object",
                    "properties": {"x": {"type": "number", "description": "Input value"}},
                    "required": ["x"],
                },
            }
            for name in tools
        }
        self.tools.update(extra_tools or {})
        self.resources = list(resources)
        self.prompts = list(prompts)
        self.fail = set(fail)
        self.hold = set(hold)
        self.held = []
        self.protocol_version = protocol_version
        self.server_name = server_name
        self.calls = []

    def capabilities(self):
        caps = {}
        if self.tools:
            caps["tools"] = {}
        if self.resources:
            caps["resources"] = {}
        if self.prompts:
            caps["prompts"] = {}
        return caps

    def __call__(self, message):
        if "id" not in message:
            return []
        method = message["method"]
        if method in self.hold:
            self.held.append(message)
            return []
        if method in self.fail:
            return [{"jsonrpc": "2.0", "id": message["id"],
                     "error": {"code": -32603, "message": f"{method} exploded"}}]
        return [{"jsonrpc": "2.0", "id": message["id"], "result": self.result_for(method, message.get("params", {}))}]

    def result_for(self, method, params):
        if method == "initialize":
            return {
                "protocolVersion": self.protocol_version,
                "capabilities": self.capabilities(),
                "serverInfo": {"name": self.server_name, "version": "0.1"},
            }
        if method == "tools/list":
            return {"tools": list(self.tools.values())}
        if method == "resources/list":
            return {"resources": [{"uri": uri, "name": uri, "description": ""} for uri in self.resources]}
        if method == "prompts/list":
            return {"prompts": [{"name": name, "description": "", "arguments": []} for name in self.prompts]}
        if method == "tools/call":
            self.calls.append(params)
            return {"content": [{"type": "text", "text": json.dumps(params)}], "echo": params}
        if method == "resources/read":
            return {"contents": [{"uri": params["uri"], "text": "resource body"}]}
        if method == "prompts/get":
            return {"messages": [{"role": "user", "content": {"type": "text", "text": "hi"}}]}
        return {}


class FakeTransport(Transport):
    """Transport double: records outbound messages, replies asynchronously."""

    def __init__(self, server=None, fail_start=None):
        self.server = server if server is not None else FakeServer()
        self.fail_start = fail_start
        self.sent = []
        self.alive = False
        self.started = 0
        self._on_line = None
        self._on_exit = None

    async def start(self, on_line, on_exit):
        self.started += 1
        if self.fail_start:
            raise MCPConnectionError(self.fail_start)
        self._on_line = on_line
        self._on_exit = on_exit
        self.alive = True

    async def write(self, line):
        if not self.alive:
            raise MCPConnectionError("MCP server process not available: fake")
        message = json.loads(line)
        self.sent.append(message)
        loop = asyncio.get_running_loop()
        for reply in self.server(message):
            loop.call_soon(self.feed, reply)

    def feed(self, reply):
        line = reply if isinstance(reply, str) else json.dumps(reply)
        self._on_line(line)

    async def stop(self):
        if self.alive:
            self.alive = False
            self._on_exit(0)
        return 0

    def is_alive(self):
        return self.alive

    def crash(self, code=1):
        self.alive = False
        self._on_exit(code)

    @property
    def methods(self):
        return [m["method"] for m in self.sent]


FAST_SETTINGS = ClientSettings(startup_grace=0, request_timeout=2.0, shutdown_timeout=2.0)


def make_client(server=None, name="fake", settings=None, transport=None):
    transport = transport or FakeTransport(server)
    config = ServerConfig(name=name, command="fake-server")
    return MCPClient(config, settings=settings or FAST_SETTINGS, transport=transport), transport


class FakeClientFactory:
    """client_factory for executors/managers: builds MCPClients on FakeTransports."""

    def __init__(self, servers=None, fail_start=None):
        self.servers = servers or {}
        self.fail_start = fail_start or {}
        self.created = []

    def __call__(self, config, logger=None, settings=None):
        server = self.servers.get(config.name)
        if server is None:
            server = FakeServer()
        transport = FakeTransport(server, fail_start=self.fail_start.get(config.name))
        client = MCPClient(config, logger=logger, settings=settings, transport=transport)
        self.created.append(client)
        return client

    def count(self, name):
        return sum(1 for c in self.created if c.name == name)


async def wait_until(predicate, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.001)


def server_config(module, name, **env):
    """ServerConfig launching one of the bundled reference servers."""
    return ServerConfig(
        name=name,
        command=sys.executable,
        args=["-m", f"forge_mcp.servers.{module}"],
        env={"PYTHONPATH": str(PROJECT_ROOT), **env},
    )


@pytest.fixture()
def fast_settings():
    return ClientSettings(startup_grace=0, request_timeout=2.0, shutdown_timeout=2.0)


@pytest.fixture()
def process_settings():
    return ClientSettings(startup_grace=0.2, request_timeout=15.0, shutdown_timeout=5.0)


@pytest.fixture()
def clean_forge_env(monkeypatch):
    monkeypatch.delenv("FORGE_MCP_REQUEST_TIMEOUT", raising=False)
    monkeypatch.delenv("FORGE_MCP_STARTUP_GRACE", raising=False)
    monkeypatch.delenv("FORGE_MCP_SHUTDOWN_TIMEOUT", raising=False)
    return os.environ
