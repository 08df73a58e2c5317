"""
Transport layer for MCP tool communication.

Implements JSON-RPC 2.0 over newline-delimited stdio:

  - JsonRpcRequest / JsonRpcNotification / JsonRpcResponse: wire messages
  - LineDecoder: turns arbitrary stdout chunks into complete lines
  - StdioTransport: owns the tool server subprocess and its three pipes

The transport knows nothing about MCP semantics. It hands every complete
stdout line to a callback and reports process exit; MCPClient does the
protocol work on top.
"""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable

from forge_mcp.errors import MCPConnectionError

logger = logging.getLogger(__name__)

JSONRPC_VERSION = "2.0"

LineHandler = Callable[[str], None]
ExitHandler = Callable[[int | None], None]


@dataclass
class JsonRpcRequest:
    """JSON-RPC 2.0 request."""
    method: str
    params: dict[str, Any]
    id: int | str

    def to_json(self) -> str:
        return json.dumps({
            "jsonrpc": JSONRPC_VERSION,
            "id": self.id,
            "method": self.method,
            "params": self.params,
        })


@dataclass
class JsonRpcNotification:
    """JSON-RPC 2.0 notification (no id, no response)."""
    method: str
    params: dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> str:
        return json.dumps({
            "jsonrpc": JSONRPC_VERSION,
            "method": self.method,
            "params": self.params,
        })


@dataclass
class JsonRpcResponse:
    """JSON-RPC 2.0 response."""
    id: int | str | None
    result: Any = None
    error: dict | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "JsonRpcResponse":
        return cls(
            id=data.get("id"),
            result=data.get("result"),
            error=data.get("error"),
        )

    @classmethod
    def from_json(cls, data: str) -> "JsonRpcResponse":
        return cls.from_dict(json.loads(data))

    @property
    def is_error(self) -> bool:
        return self.error is not None

    @property
    def error_message(self) -> str:
        if not self.error:
            return ""
        if isinstance(self.error, dict):
            return self.error.get("message") or "MCP request failed"
        return str(self.error)


def is_protocol_line(line: str) -> bool:
    """Only lines that look like a JSON object or batch are parsed."""
    return line.startswith("{") or line.startswith("[")


class LineDecoder:
    """
    Incremental newline splitter for a byte stream.

    Partial trailing data stays buffered until the next chunk completes it.
    """

    def __init__(self, encoding: str = "utf-8"):
        self.encoding = encoding
        self._buffer = b""

    def feed(self, chunk: bytes) -> list[str]:
        self._buffer += chunk
        *complete, self._buffer = self._buffer.split(b"\n")
        return [
            raw.decode(self.encoding, errors="replace").strip()
            for raw in complete
            if raw.strip()
        ]

    def flush(self) -> str | None:
        """Return whatever is left once the stream has ended."""
        rest, self._buffer = self._buffer, b""
        text = rest.decode(self.encoding, errors="replace").strip()
        return text or None

    @property
    def pending(self) -> int:
        return len(self._buffer)


class Transport(ABC):
    """Abstract line-oriented transport to a tool server."""

    @abstractmethod
    async def start(self, on_line: LineHandler, on_exit: ExitHandler) -> None:
        """Open the transport and begin delivering inbound lines."""
        ...

    @abstractmethod
    async def write(self, line: str) -> None:
        """Write one framed message (without trailing newline)."""
        ...

    @abstractmethod
    async def stop(self) -> int | None:
        """Close the transport. Returns the process exit code if known."""
        ...

    @abstractmethod
    def is_alive(self) -> bool:
        """Check if the transport is active."""
        ...


class StdioTransport(Transport):
    """
    JSON-RPC over stdin/stdout pipes to a subprocess.

    This is MCP's native local transport. The tool server runs as a child
    process; we write requests to its stdin and read messages from its
    stdout, one line per message. stderr is relayed to the debug log.
    """

    READ_CHUNK = 64 * 1024
    STDERR_LOG_LIMIT = 2000

    def __init__(
        self,
        command: str,
        args: list[str] | None = None,
        env: dict[str, str] | None = None,
        name: str | None = None,
        shutdown_timeout: float = 5.0,
        logger: logging.Logger | None = None,
    ):
        """
        Args:
            command: Executable that launches the tool server.
            args: Arguments for the executable.
            env: Full environment for the child (already merged with the host's).
            name: Label used in log messages.
            shutdown_timeout: Seconds to wait after terminate() before kill().
        """
        self.command = command
        self.args = list(args or [])
        self.env = env
        self.name = name or command
        self.shutdown_timeout = shutdown_timeout
        self.logger = logger or logging.getLogger(__name__)
        self._process: asyncio.subprocess.Process | None = None
        self._reader_tasks: list[asyncio.Task] = []
        self._exit_task: asyncio.Task | None = None
        self._write_lock = asyncio.Lock()

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    @property
    def returncode(self) -> int | None:
        return self._process.returncode if self._process else None

    async def start(self, on_line: LineHandler, on_exit: ExitHandler) -> None:
        """Launch the tool server subprocess and start the pipe readers."""
        if self.is_alive():
            self.logger.warning(f"Transport for {self.name} already running, stopping first")
            await self.stop()

        self.logger.debug(f"Starting stdio transport: {self.command} {' '.join(self.args)}")
        try:
            self._process = await asyncio.create_subprocess_exec(
                self.command,
                *self.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.env,
            )
        except OSError as e:
            raise MCPConnectionError(
                f"Failed to start MCP server process '{self.name}' ({self.command}): {e}"
            ) from e

        self._reader_tasks = [
            asyncio.create_task(self._read_stdout(on_line)),
            asyncio.create_task(self._read_stderr()),
        ]
        self._exit_task = asyncio.create_task(self._watch_exit(on_exit))

    async def _read_stdout(self, on_line: LineHandler) -> None:
        stream = self._process.stdout
        decoder = LineDecoder()
        while True:
            chunk = await stream.read(self.READ_CHUNK)
            if not chunk:
                break
            for line in decoder.feed(chunk):
                self._deliver(on_line, line)

        tail = decoder.flush()
        if tail:
            self._deliver(on_line, tail)

    def _deliver(self, on_line: LineHandler, line: str) -> None:
        try:
            on_line(line)
        except Exception as e:
            # One bad message must never stop the read loop
            self.logger.error(f"Error handling line from {self.name}: {e}")

    async def _read_stderr(self) -> None:
        # Chunked reads: readline() would give up on lines over the stream limit
        # and leave the pipe undrained
        stream = self._process.stderr
        decoder = LineDecoder()
        while True:
            chunk = await stream.read(self.READ_CHUNK)
            if not chunk:
                break
            for text in decoder.feed(chunk):
                self.logger.debug(f"MCP server {self.name} stderr: {text[:self.STDERR_LOG_LIMIT]}")

        tail = decoder.flush()
        if tail:
            self.logger.debug(f"MCP server {self.name} stderr: {tail[:self.STDERR_LOG_LIMIT]}")

    async def _watch_exit(self, on_exit: ExitHandler) -> None:
        code = await self._process.wait()
        # Let stdout drain so responses written just before exit are still delivered
        if self._reader_tasks:
            await asyncio.wait(self._reader_tasks, timeout=self.shutdown_timeout)
        on_exit(code)

    def is_alive(self) -> bool:
        """Check if the subprocess is running."""
        return self._process is not None and self._process.returncode is None

    async def write(self, line: str) -> None:
        process = self._process
        if not self.is_alive() or process.stdin is None or process.stdin.is_closing():
            raise MCPConnectionError(f"MCP server process not available: {self.name}")

        async with self._write_lock:
            process.stdin.write((line + "\n").encode("utf-8"))
            try:
                await process.stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as e:
                raise MCPConnectionError(
                    f"Failed to write to MCP server {self.name}: {e}"
                ) from e

    async def stop(self) -> int | None:
        """Terminate the tool server subprocess, killing it if it will not exit."""
        process = self._process
        if process is None:
            return None

        if process.returncode is None:
            if process.stdin is not None and not process.stdin.is_closing():
                process.stdin.close()
            try:
                process.terminate()
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(process.wait(), timeout=self.shutdown_timeout)
            except asyncio.TimeoutError:
                self.logger.warning(f"MCP server {self.name} did not exit, killing")
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
                await process.wait()

        if self._exit_task is not None:
            await asyncio.gather(self._exit_task, return_exceptions=True)
        self._exit_task = None
        for task in self._reader_tasks:
            if not task.done():
                task.cancel()
        self._reader_tasks = []
        self.logger.debug(f"Stdio transport for {self.name} stopped (code {process.returncode})")
        return process.returncode


def build_stdio_transport(config, settings, logger: logging.Logger | None = None) -> StdioTransport:
    """StdioTransport for a ServerConfig, with the host environment merged in."""
    return StdioTransport(
        command=config.command,
        args=config.args,
        env=config.merged_env(),
        name=config.name,
        shutdown_timeout=settings.shutdown_timeout,
        logger=logger,
    )
