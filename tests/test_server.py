import io
import json

import pytest

from forge_mcp.server import (
    INTERNAL_ERROR,
    INVALID_PARAMS,
    METHOD_NOT_FOUND,
    PARSE_ERROR,
    StdioToolServer,
    ToolHandler,
)
from forge_mcp.servers.calculator import build_server as build_calculator
from forge_mcp.servers.echo import build_server as build_echo


class UpperTool(ToolHandler):
    name = "upper"
    description = "Uppercase a string"
    parameters = {"text": {"type": "string", "description": "Text"}}
    required = ["text"]

    def handle(self, params):
        return params["text"].upper()


def run_lines(server: StdioToolServer, *messages) -> list[dict]:
    for message in messages:
        server.handle_line(message if isinstance(message, str) else json.dumps(message))
    return [json.loads(line) for line in server.stdout.getvalue().splitlines()]


@pytest.fixture
def server() -> StdioToolServer:
    server = StdioToolServer("test-server", stdin=io.StringIO(), stdout=io.StringIO())
    server.register(UpperTool())
    return server


class TestStdioToolServer:
    """In-process dispatch of the reference server"""

    def test_initialize(self, server):
        [response] = run_lines(server, {"jsonrpc": "2.0", "id": 1, "method": "initialize", "params": {}})

        assert response["id"] == 1
        assert response["result"]["protocolVersion"] == "2025-03-26"
        assert response["result"]["serverInfo"] == {"name": "test-server", "version": "1.0.0"}
        assert response["result"]["capabilities"] == {"tools": {"listChanged": False}}

    def test_initialized_notification_gets_no_response(self, server):
        output = run_lines(server, {"jsonrpc": "2.0", "method": "notifications/initialized"})

        assert server.initialized is True
        assert [m.get("id") for m in output] == [None]
        assert output[0]["method"] == "notifications/message"

    def test_tools_list_and_call(self, server):
        listed, called = run_lines(
            server,
            {"jsonrpc": "2.0", "id": 1, "method": "tools/list"},
            {"jsonrpc": "2.0", "id": 2, "method": "tools/call",
             "params": {"name": "upper", "arguments": {"text": "abc"}}},
        )

        assert listed["result"]["tools"][0]["inputSchema"]["required"] == ["text"]
        assert called["result"]["content"] == [{"type": "text", "text": "ABC"}]
        assert "structuredContent" not in called["result"]

    @pytest.mark.parametrize("message,code", [
        ({"jsonrpc": "2.0", "id": 1, "method": "nope"}, METHOD_NOT_FOUND),
        ({"jsonrpc": "2.0", "id": 1, "method": "tools/call", "params": {"name": "missing"}}, INVALID_PARAMS),
        ({"jsonrpc": "2.0", "id": 1, "method": "tools/call", "params": {"name": "upper"}}, INTERNAL_ERROR),
        ("{broken", PARSE_ERROR),
    ])
    def test_errors(self, server, message, code):
        [response] = run_lines(server, message)

        assert response["error"]["code"] == code

    def test_fail_methods(self):
        server = StdioToolServer("flaky", fail_methods={"tools/list"}, stdout=io.StringIO())
        server.register(UpperTool())

        [response] = run_lines(server, {"jsonrpc": "2.0", "id": 5, "method": "tools/list"})

        assert response["error"]["message"] == "tools/list is unavailable on flaky"

    def test_register_requires_name(self, server):
        class Nameless(UpperTool):
            name = ""

        with pytest.raises(ValueError):
            server.register(Nameless())

    def test_run_prints_banner_first(self):
        stdin = io.StringIO(json.dumps({"jsonrpc": "2.0", "id": 1, "method": "ping"}) + "\n")
        stdout = io.StringIO()
        server = StdioToolServer("banner", banner="starting up", stdin=stdin, stdout=stdout)

        server.run()

        lines = stdout.getvalue().splitlines()
        assert lines[0] == "starting up"
        assert json.loads(lines[1]) == {"jsonrpc": "2.0", "id": 1, "result": {}}


class TestBundledServers:
    """Calculator and echo definitions"""

    def test_calculator_add(self):
        server = build_calculator()
        server.stdout = io.StringIO()

        [response] = run_lines(server, {"jsonrpc": "2.0", "id": 1, "method": "tools/call",
                                        "params": {"name": "add", "arguments": {"a": 2, "b": 3}}})

        assert response["result"]["structuredContent"] == {"a": 2, "b": 3, "result": 5}

    def test_echo_switches(self):
        server = build_echo({
            "ECHO_SERVER_FAIL": "resources/list, prompts/list",
            "ECHO_SERVER_EMBED_URL": "http://localhost:1/",
            "ECHO_SERVER_PROTOCOL": "2024-11-05",
        })
        server.stdout = io.StringIO()

        init, resources, call = run_lines(
            server,
            {"jsonrpc": "2.0", "id": 1, "method": "initialize"},
            {"jsonrpc": "2.0", "id": 2, "method": "resources/list"},
            {"jsonrpc": "2.0", "id": 3, "method": "tools/call",
             "params": {"name": "get_embeddable_url", "arguments": {}}},
        )

        assert init["result"]["protocolVersion"] == "2024-11-05"
        assert init["result"]["capabilities"]["experimental"]["embedding"]["features"] == ["iframe", "postMessage"]
        assert "error" in resources
        assert call["result"]["content"][0]["text"] == "Embed URL:\nhttp://localhost:1/\nTitle: Echo Console"

    @pytest.mark.parametrize("expression,expected", [
        ("2 ** 10", 1024),
        ("-(3 + 4) * 2", -14),
        ("abs(-2.5)", 2.5),
        ("round(pi, 2)", 3.14),
    ])
    def test_calculate(self, expression, expected):
        server = build_calculator()
        server.stdout = io.StringIO()

        [response] = run_lines(server, {"jsonrpc": "2.0", "id": 1, "method": "tools/call",
                                        "params": {"name": "calculate", "arguments": {"expression": expression}}})

        assert response["result"]["structuredContent"]["result"] == expected

    @pytest.mark.parametrize("expression", ["__import__('os')", "1 / 0", "(1).real"])
    def test_calculate_rejects(self, expression):
        server = build_calculator()
        server.stdout = io.StringIO()

        [response] = run_lines(server, {"jsonrpc": "2.0", "id": 1, "method": "tools/call",
                                        "params": {"name": "calculate", "arguments": {"expression": expression}}})

        assert "error" in response["result"]["structuredContent"]

    def test_convert_units(self):
        server = build_calculator()
        server.stdout = io.StringIO()

        km, temp, bad = run_lines(
            server,
            {"jsonrpc": "2.0", "id": 1, "method": "tools/call",
             "params": {"name": "convert_units", "arguments": {"value": 5, "from_unit": "km", "to_unit": "m"}}},
            {"jsonrpc": "2.0", "id": 2, "method": "tools/call",
             "params": {"name": "convert_units",
                        "arguments": {"value": 100, "from_unit": "celsius", "to_unit": "fahrenheit"}}},
            {"jsonrpc": "2.0", "id": 3, "method": "tools/call",
             "params": {"name": "convert_units", "arguments": {"value": 1, "from_unit": "kg", "to_unit": "km"}}},
        )

        assert km["result"]["structuredContent"]["result"] == 5000.0
        assert temp["result"]["structuredContent"]["result"] == 212.0
        assert bad["error"]["code"] == INTERNAL_ERROR
