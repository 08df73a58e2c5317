"""
Bridge between MCPExecutor actions and LangChain.

This module converts executor actions (local or MCP proxies) into
LangChain tools an agent can bind. Every call goes through
MCPExecutor.execute(), so permission checks, lazy connection and
action events apply exactly as for any other caller.

Usage:
    from forge_mcp.bridge import action_to_langchain_tool, executor_langchain_tools

    # Single action
    lc_tool = action_to_langchain_tool(executor, "mcp_calc_add")

    # Everything the prompt section advertises
    tools = executor_langchain_tools(executor)
"""

from __future__ import annotations

import json
from typing import Any

from langchain_core.tools import StructuredTool

from forge_mcp.executor import MCPExecutor


def action_to_langchain_tool(
    executor: MCPExecutor,
    action_name: str,
    role: str = "Agent",
    description_override: str | None = None,
    input_schema: dict[str, Any] | None = None,
) -> StructuredTool:
    """
    Create a LangChain StructuredTool that runs an executor action.

    Args:
        executor: The executor that owns the action
        action_name: Registered name (or ``mcp_<server>_<tool>`` to connect lazily)
        role: Role passed to execute() for permission checks
        description_override: Optional override for the tool description
        input_schema: JSON schema for the arguments (defaults to the registered one)

    Returns:
        A LangChain StructuredTool whose coroutine proxies to execute().
    """
    entry = executor.registered_actions.get(action_name)
    description = description_override or (entry.description if entry else None) \
        or f"MCP action: {action_name}"
    schema = input_schema or (entry.input_schema if entry else None) \
        or {"type": "object", "properties": {}}

    async def _call_action(**kwargs: Any) -> str:
        """Proxy call through the executor."""
        try:
            result = await executor.execute(action_name, kwargs, role)
        except Exception as e:
            # The agent sees the failure as tool output and can react to it
            return f"Error calling {action_name}: {e}"
        if isinstance(result, str):
            return result
        return json.dumps(result, indent=2, default=str)

    return StructuredTool.from_function(
        coroutine=_call_action,
        name=action_name,
        description=description,
        args_schema=schema,
    )


def executor_langchain_tools(executor: MCPExecutor, role: str = "Agent") -> list[StructuredTool]:
    """LangChain tools for every built-in action and every connected server's tools."""
    return [
        action_to_langchain_tool(
            executor,
            tool["name"],
            role=role,
            description_override=tool["description"],
            input_schema=tool["inputSchema"],
        )
        for tool in executor.get_mcp_tools_for_prompt()
    ]
