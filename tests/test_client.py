import asyncio
import logging

import pytest

from forge_mcp.config import ClientSettings
from forge_mcp.errors import (
    MCPConnectionError,
    MCPRequestError,
    MCPTimeoutError,
    PromptNotFoundError,
    ResourceNotFoundError,
    ToolNotFoundError,
)

from conftest import FakeServer, FakeTransport, make_client, wait_until


class EmbedServer(FakeServer):
    """FakeServer whose get_embeddable_url answers in the text format."""

    def __init__(self, text="Embed URL:\nhttp://localhost:9000/ui\nTitle: Console", structured=None, **kwargs):
        super().__init__(extra_tools={"get_embeddable_url": {"name": "get_embeddable_url"}}, **kwargs)
        self.text = text
        self.structured = structured

    def result_for(self, method, params):
        result = super().result_for(method, params)
        if method == "initialize":
            result["capabilities"]["experimental"] = {
                "embedding": {"features": ["iframe", "postMessage"], "version": "2.0.0"}
            }
        if method == "tools/call" and params["name"] == "get_embeddable_url":
            result = {"content": [{"type": "text", "text": self.text}]}
            if self.structured is not None:
                result["structuredContent"] = self.structured
        return result


class DeadOnArrival(FakeTransport):
    async def start(self, on_line, on_exit):
        await super().start(on_line, on_exit)
        self.alive = False


class TestHandshake:
    """connect(): spawn, initialize, initialized, discovery"""

    @pytest.mark.asyncio
    async def test_handshake_order(self):
        server = FakeServer(tools=("bar",), resources=("file:///a",), prompts=("p",))
        client, transport = make_client(server)

        await client.connect()

        assert transport.methods == [
            "initialize",
            "notifications/initialized",
            "tools/list",
            "resources/list",
            "prompts/list",
        ]
        assert client.connected and client.initialized
        assert client.state == "connected"
        assert client.server_info == {"name": "fake", "version": "0.1"}

    @pytest.mark.asyncio
    async def test_initialize_params(self):
        client, transport = make_client()

        await client.connect()

        params = transport.sent[0]["params"]
        assert params["protocolVersion"] == "2025-03-26"
        assert params["clientInfo"] == {"name": "AgentForge Framework", "version": "1.0.0"}
        assert "id" not in transport.sent[1]

    @pytest.mark.asyncio
    async def test_only_advertised_capabilities_are_listed(self):
        client, transport = make_client(FakeServer(tools=()))

        await client.connect()

        assert transport.methods == ["initialize", "notifications/initialized"]
        assert client.tools == {}

    @pytest.mark.asyncio
    async def test_connected_event(self):
        client, _ = make_client(FakeServer(tools=("bar", "baz")))
        events = []
        client.on("connected", events.append)

        await client.connect()

        assert events[0]["server_name"] == "fake"
        assert events[0]["tools"] == ["bar", "baz"]

    @pytest.mark.asyncio
    async def test_failed_discovery_leaves_other_maps(self):
        server = FakeServer(tools=("bar",), resources=("file:///a",), prompts=("p",), fail={"resources/list"})
        client, _ = make_client(server)

        await client.connect()

        assert client.connected
        assert list(client.tools) == ["bar"]
        assert client.resources == {}
        assert list(client.prompts) == ["p"]

    @pytest.mark.asyncio
    async def test_protocol_mismatch_only_warns(self, caplog):
        client, _ = make_client(FakeServer(protocol_version="2024-11-05"))

        with caplog.at_level(logging.WARNING):
            await client.connect()

        assert client.connected
        assert "Protocol version mismatch" in caplog.text

    @pytest.mark.asyncio
    async def test_initialize_error_fails_connect(self):
        client, _ = make_client(FakeServer(fail={"initialize"}))

        with pytest.raises(MCPRequestError, match="initialize exploded"):
            await client.connect()
        assert not client.connected
        await client.cleanup()

    @pytest.mark.asyncio
    async def test_non_object_initialize_result(self):
        def server(message):
            if "id" not in message:
                return []
            return [{"jsonrpc": "2.0", "id": message["id"], "result": "nope"}]

        client, _ = make_client(server)

        with pytest.raises(MCPConnectionError, match="Invalid initialize result"):
            await client.connect()

    @pytest.mark.asyncio
    async def test_process_dead_after_spawn(self):
        client, _ = make_client(transport=DeadOnArrival())

        with pytest.raises(MCPConnectionError, match="Failed to start MCP server process"):
            await client.connect()


class TestRequests:
    """Request/response correlation"""

    @pytest.mark.asyncio
    async def test_out_of_order_responses(self):
        server = FakeServer(hold={"ping"})
        client, transport = make_client(server)
        await client.connect()

        tasks = [asyncio.create_task(client.send_request("ping", {"n": n})) for n in range(5)]
        await wait_until(lambda: len(server.held) == 5)

        ids = [m["id"] for m in server.held]
        assert len(set(ids)) == 5
        assert ids == sorted(ids)

        for message in reversed(server.held):
            transport.feed({"jsonrpc": "2.0", "id": message["id"], "result": {"n": message["params"]["n"]}})

        results = await asyncio.gather(*tasks)
        assert [r["n"] for r in results] == [0, 1, 2, 3, 4]
        assert client.pending_requests == {}

    @pytest.mark.asyncio
    async def test_timeout_evicts_and_late_response_is_dropped(self):
        server = FakeServer(hold={"ping"})
        client, transport = make_client(server, settings=ClientSettings(startup_grace=0, request_timeout=0.05))
        await client.connect()

        with pytest.raises(MCPTimeoutError, match="ping"):
            await client.send_request("ping")

        assert client.pending_requests == {}
        assert client._timers == {}

        late_id = server.held[0]["id"]
        transport.feed({"jsonrpc": "2.0", "id": late_id, "result": {}})

        assert client.pending_requests == {}
        assert await client.send_request("tools/list") == {"tools": list(server.tools.values())}

    @pytest.mark.asyncio
    async def test_error_response_raises_request_error(self):
        client, _ = make_client(FakeServer(fail={"tools/call"}))
        await client.connect()

        with pytest.raises(MCPRequestError) as excinfo:
            await client.call_tool("bar", {"x": 1})

        assert excinfo.value.code == -32603
        assert "tools/call exploded" in str(excinfo.value)

    @pytest.mark.asyncio
    async def test_noise_and_malformed_lines_are_skipped(self):
        server = FakeServer(hold={"ping"})
        client, transport = make_client(server)
        await client.connect()

        task = asyncio.create_task(client.send_request("ping"))
        await wait_until(lambda: server.held)

        transport.feed("Server starting on stdio...")
        transport.feed("{not json")
        transport.feed("[1, 2]")
        transport.feed({"jsonrpc": "2.0", "method": "notifications/message", "params": {"data": "hi"}})
        transport.feed({"jsonrpc": "2.0", "method": "notifications/tools/list_changed"})
        transport.feed({"jsonrpc": "2.0", "id": 9999, "result": {}})
        transport.feed({"jsonrpc": "2.0", "id": server.held[0]["id"], "result": {"pong": True}})

        assert await task == {"pong": True}
        assert client.connected

    @pytest.mark.asyncio
    async def test_server_request_with_colliding_id_is_not_a_response(self):
        server = FakeServer(hold={"ping"})
        client, transport = make_client(server)
        await client.connect()

        task = asyncio.create_task(client.send_request("ping"))
        await wait_until(lambda: server.held)
        pending_id = server.held[0]["id"]

        transport.feed({"jsonrpc": "2.0", "id": pending_id, "method": "roots/list"})
        await asyncio.sleep(0)

        assert not task.done()
        assert pending_id in client.pending_requests

        transport.feed({"jsonrpc": "2.0", "id": pending_id, "result": {"pong": True}})
        assert await task == {"pong": True}

    @pytest.mark.asyncio
    async def test_batch_response(self):
        server = FakeServer(hold={"ping"})
        client, transport = make_client(server)
        await client.connect()

        first = asyncio.create_task(client.send_request("ping", {"n": 1}))
        second = asyncio.create_task(client.send_request("ping", {"n": 2}))
        await wait_until(lambda: len(server.held) == 2)

        transport.feed([
            {"jsonrpc": "2.0", "id": m["id"], "result": m["params"]} for m in server.held
        ])

        assert await first == {"n": 1}
        assert await second == {"n": 2}

    @pytest.mark.asyncio
    async def test_list_changed_does_not_rediscover(self):
        client, transport = make_client()
        await client.connect()
        sent_before = len(transport.sent)

        transport.feed({"jsonrpc": "2.0", "method": "notifications/tools/list_changed"})
        await asyncio.sleep(0)

        assert len(transport.sent) == sent_before

    @pytest.mark.asyncio
    async def test_refresh_capabilities(self):
        server = FakeServer(tools=("bar",))
        client, _ = make_client(server)
        await client.connect()

        server.tools["baz"] = {"name": "baz"}
        await client.refresh_capabilities()

        assert set(client.tools) == {"bar", "baz"}


class TestCapabilityCalls:
    """Tool, resource and prompt calls"""

    @pytest.mark.asyncio
    async def test_call_tool(self):
        server = FakeServer()
        client, _ = make_client(server)
        await client.connect()

        result = await client.call_tool("bar", {"x": 4})

        assert result["echo"] == {"name": "bar", "arguments": {"x": 4}}
        assert server.calls == [{"name": "bar", "arguments": {"x": 4}}]

    @pytest.mark.asyncio
    async def test_unknown_tool_sends_nothing(self):
        client, transport = make_client()
        await client.connect()

        with pytest.raises(ToolNotFoundError, match="nope"):
            await client.call_tool("nope")
        assert "tools/call" not in transport.methods

    @pytest.mark.asyncio
    async def test_read_resource_and_get_prompt(self):
        client, _ = make_client(FakeServer(resources=("file:///a",), prompts=("p",)))
        await client.connect()

        resource = await client.read_resource("file:///a")
        prompt = await client.get_prompt("p", {"topic": "x"})

        assert resource["contents"][0]["text"] == "resource body"
        assert prompt["messages"][0]["role"] == "user"

        with pytest.raises(ResourceNotFoundError):
            await client.read_resource("file:///missing")
        with pytest.raises(PromptNotFoundError):
            await client.get_prompt("missing")

    @pytest.mark.asyncio
    async def test_tools_for_llm_defaults(self):
        client, _ = make_client(FakeServer(tools=(), extra_tools={"bare": {"name": "bare"}}))
        await client.connect()

        assert client.get_tools_for_llm() == [{
            "name": "bare",
            "description": "MCP tool: bare",
            "inputSchema": {"type": "object", "properties": {}, "additionalProperties": True},
        }]

    @pytest.mark.asyncio
    async def test_server_info(self):
        client, _ = make_client(FakeServer(resources=("file:///a",)))
        await client.connect()

        info = client.get_server_info()

        assert info["name"] == "fake"
        assert info["connected"] is True
        assert info["webview_supported"] is False
        assert [t["name"] for t in info["tools"]] == ["bar"]
        assert info["resources"][0]["uri"] == "file:///a"


class TestWebview:
    """get_embeddable_url support"""

    @pytest.mark.asyncio
    async def test_embeddable_url_from_text(self):
        client, _ = make_client(EmbedServer())
        await client.connect()

        assert client.supports_webview_embedding()
        config = client.get_webview_config()
        assert config["features"] == ["iframe", "postMessage"]
        assert config["post_message_supported"] is True
        assert config["version"] == "2.0.0"

        embed = await client.get_embeddable_url()
        assert embed == {"url": "http://localhost:9000/ui", "title": "Console"}

    @pytest.mark.asyncio
    async def test_structured_content_wins(self):
        client, _ = make_client(EmbedServer(text="no url here", structured={"url": "http://x/embed"}))
        await client.connect()

        embed = await client.get_embeddable_url()

        assert embed["url"] == "http://x/embed"

    @pytest.mark.asyncio
    async def test_no_webview_without_tool(self):
        client, _ = make_client()
        await client.connect()

        assert client.get_webview_config() is None
        with pytest.raises(ToolNotFoundError):
            await client.get_embeddable_url()


class TestShutdown:
    """disconnect() and unexpected exit"""

    @pytest.mark.asyncio
    async def test_disconnect_rejects_pending(self):
        server = FakeServer(hold={"ping"})
        client, transport = make_client(server)
        await client.connect()
        events = []
        client.on("disconnected", events.append)

        task = asyncio.create_task(client.send_request("ping"))
        await wait_until(lambda: server.held)
        await client.disconnect()

        with pytest.raises(MCPConnectionError, match="Connection closed"):
            await task
        assert client.pending_requests == {}
        assert client.tools == {}
        assert not transport.alive
        assert events == [{"server_name": "fake", "code": 0, "signal": None, "requested": True}]

    @pytest.mark.asyncio
    async def test_disconnect_is_idempotent(self):
        client, _ = make_client()
        await client.connect()
        events = []
        client.on("disconnected", events.append)

        await client.disconnect()
        await client.disconnect()

        assert len(events) == 1
        assert client.state == "closed"

    @pytest.mark.asyncio
    async def test_disconnect_before_connect(self):
        client, _ = make_client()
        events = []
        client.on("disconnected", events.append)

        await client.disconnect()

        assert events == []

    @pytest.mark.asyncio
    async def test_crash_emits_disconnected(self):
        server = FakeServer(hold={"ping"})
        client, transport = make_client(server)
        await client.connect()
        events = []
        client.on("disconnected", events.append)

        task = asyncio.create_task(client.send_request("ping"))
        await wait_until(lambda: server.held)
        transport.crash(-9)

        with pytest.raises(MCPConnectionError, match="exited"):
            await task
        assert client.state == "crashed"
        assert not client.connected and not client.initialized
        assert events == [{"server_name": "fake", "code": -9, "signal": "SIGKILL", "requested": False}]

    @pytest.mark.asyncio
    async def test_cleanup_removes_listeners(self):
        client, _ = make_client()
        await client.connect()
        client.on("disconnected", lambda payload: None)

        await client.cleanup()

        assert client.listener_count("disconnected") == 0
