"""
Echo MCP Tool Server — minimal reference implementation.

Use this as a template for building new tool servers. It echoes its
input, exposes one resource and one prompt, and can be made to
misbehave through environment variables, which makes it the fixture
for exercising the client:

    ECHO_SERVER_BANNER     line of non-JSON noise printed at startup
    ECHO_SERVER_FAIL       comma-separated methods that always error
                           (e.g. "resources/list")
    ECHO_SERVER_EMBED_URL  adds a get_embeddable_url tool returning this URL
    ECHO_SERVER_PROTOCOL   protocol version to answer initialize with

Launch:
    python -m forge_mcp.servers.echo
"""

import os
import sys
import time

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

from forge_mcp.config import PROTOCOL_VERSION
from forge_mcp.server import Prompt, Resource, StdioToolServer, ToolHandler, configure_server_logging


class EchoTool(ToolHandler):
    name = "echo"
    description = "Echoes back the input message. Useful for testing."
    parameters = {
        "message": {
            "type": "string",
            "description": "The message to echo back",
        },
    }

    def handle(self, params: dict) -> dict:
        message = params.get("message", "")
        return {"echoed": message, "length": len(message)}


class SleepTool(ToolHandler):
    name = "sleep"
    description = "Waits for the given number of seconds before answering."
    parameters = {
        "seconds": {"type": "number", "description": "How long to wait"},
    }

    def handle(self, params: dict) -> dict:
        seconds = float(params.get("seconds", 0))
        time.sleep(seconds)
        return {"slept": seconds}


class EmbeddableUrlTool(ToolHandler):
    name = "get_embeddable_url"
    description = "Returns a URL the host application can embed in a webview."
    parameters = {}

    def __init__(self, url: str):
        self.url = url

    def handle(self, params: dict) -> str:
        return f"Embed URL:\n{self.url}\nTitle: Echo Console"


def build_server(environ=os.environ) -> StdioToolServer:
    fail = {m.strip() for m in environ.get("ECHO_SERVER_FAIL", "").split(",") if m.strip()}
    server = StdioToolServer(
        "echo",
        protocol_version=environ.get("ECHO_SERVER_PROTOCOL", PROTOCOL_VERSION),
        banner=environ.get("ECHO_SERVER_BANNER"),
        fail_methods=fail,
    )
    server.register(EchoTool())
    server.register(SleepTool())

    embed_url = environ.get("ECHO_SERVER_EMBED_URL")
    if embed_url:
        server.register(EmbeddableUrlTool(embed_url))
        server.experimental = {"embedding": {"features": ["iframe", "postMessage"], "version": "1.0.0"}}

    server.register_resource(Resource(
        uri="echo://status",
        name="status",
        description="Server status line",
        reader=lambda: f"echo server pid {os.getpid()}",
    ))
    server.register_prompt(Prompt(
        name="repeat",
        description="Ask the model to repeat a phrase",
        arguments=[{"name": "phrase", "description": "Phrase to repeat", "required": True}],
        render=lambda args: f"Please repeat: {args.get('phrase', '')}",
    ))
    return server


if __name__ == "__main__":
    configure_server_logging()
    build_server().run()
