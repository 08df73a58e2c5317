"""
Exception hierarchy for MCP connections and action dispatch.

Every error carries a human-readable message that callers are expected
to surface verbatim (logs, dialogs, ``{"success": False, "error": ...}``
payloads). Lower layers raise; the executor and manager wrap with
server/tool context using exception chaining.
"""

from __future__ import annotations

from typing import Any


class MCPError(Exception):
    """Base class for all forge_mcp errors."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class MCPConnectionError(MCPError):
    """Process could not be spawned, died, or the connection was closed."""


class MCPTimeoutError(MCPError):
    """A request got no response within the timeout window."""


class MCPRequestError(MCPError):
    """The server answered a request with a JSON-RPC error object."""

    def __init__(self, message: str, code: int | None = None, data: Any = None):
        super().__init__(message)
        self.code = code
        self.data = data


class ToolNotFoundError(MCPError):
    pass


class ResourceNotFoundError(MCPError):
    pass


class PromptNotFoundError(MCPError):
    pass


class UnknownActionError(MCPError):
    pass


class PermissionDeniedError(MCPError):
    def __init__(self, role: str, action_name: str):
        super().__init__(f"Role {role} does not have permission for action: {action_name}")
        self.role = role
        self.action_name = action_name


class ParameterValidationError(MCPError):
    pass


def with_context(error: MCPError, context: str) -> MCPError:
    """
    Copy of ``error`` (same type, same code/data) with ``context`` prefixed
    to its message. Use as ``raise with_context(e, "...") from e``.
    """
    wrapped = type(error).__new__(type(error))
    wrapped.__dict__.update(error.__dict__)
    wrapped.message = f"{context}: {error.message}"
    wrapped.args = (wrapped.message,)
    return wrapped
