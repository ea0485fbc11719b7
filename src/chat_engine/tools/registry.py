"""
Tool registry: the default ToolExecutor, keyed by (server id, tool name).
"""

from typing import Any

import structlog

from .base import Tool, ToolResult

logger = structlog.get_logger()


class ToolRegistry:
    """Registry for managing tools across tool servers."""

    def __init__(self):
        self._tools: dict[tuple[str, str], Tool] = {}

    def register(self, tool: Tool) -> None:
        """Register a tool."""
        self._tools[(tool.server_id, tool.name)] = tool
        logger.info("Tool registered", server_id=tool.server_id, tool_name=tool.name)

    def unregister(self, server_id: str, name: str) -> None:
        """Unregister a tool."""
        if (server_id, name) in self._tools:
            del self._tools[(server_id, name)]
            logger.info("Tool unregistered", server_id=server_id, tool_name=name)

    def get_tool(self, server_id: str, tool_name: str) -> Tool | None:
        """Get a tool by server and name."""
        return self._tools.get((server_id, tool_name))

    def find_servers(self, tool_name: str) -> list[str]:
        """Servers exposing a tool with this name."""
        return [server for (server, name) in self._tools if name == tool_name]

    def list_tools(self) -> list[Tool]:
        """List all registered tools."""
        return list(self._tools.values())

    def describe(self) -> str:
        """Render the tool catalog and call grammar for the system prompt."""
        if not self._tools:
            return ""

        lines = ["## Available Tools", ""]
        for tool in self._tools.values():
            params = ", ".join(
                f"{p.name}: {p.param_type}{'' if p.required else '?'}" for p in tool.parameters
            )
            lines.append(f"- **{tool.name}** (server `{tool.server_id}`): {tool.description} [{params}]")

        lines.extend([
            "",
            "To call a tool, reply with:",
            '<tool_call name="TOOL_NAME" server="SERVER_ID">{"param": "value"}</tool_call>',
            "or a JSON block:",
            '```json\n{"tool_calls": [{"name": "TOOL_NAME", "server": "SERVER_ID", "parameters": {}}]}\n```',
            "Tool results are returned to you in the next turn.",
        ])
        return "\n".join(lines)

    async def execute(self, server_id: str, tool_name: str, params: dict[str, Any]) -> ToolResult:
        """Execute a tool by server and name."""
        tool = self.get_tool(server_id, tool_name)
        if tool is None:
            return ToolResult(
                success=False,
                output="",
                error=f"Tool '{tool_name}' not found on server '{server_id}'",
            )

        try:
            logger.info("Executing tool", server_id=server_id, tool_name=tool_name, arguments=params)
            result = await tool.execute(**params)
            logger.info("Tool executed", tool_name=tool_name, success=result.success)
            return result
        except Exception as e:
            logger.error("Tool execution error", tool_name=tool_name, error=str(e))
            return ToolResult(
                success=False,
                output="",
                error=str(e),
            )
