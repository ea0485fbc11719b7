"""
Tools module: tool definitions, the registry, and the tool call loop.
"""

from .base import (
    Tool,
    ToolCallRequest,
    ToolCallStatus,
    ToolExecutor,
    ToolParameter,
    ToolResult,
    validate_parameters,
)
from .interpreter import InterpreterState, ToolCallInterpreter, TurnOutcome
from .parser import parse_tool_calls
from .registry import ToolRegistry

__all__ = [
    "Tool",
    "ToolCallRequest",
    "ToolCallStatus",
    "ToolExecutor",
    "ToolParameter",
    "ToolResult",
    "validate_parameters",
    "InterpreterState",
    "ToolCallInterpreter",
    "TurnOutcome",
    "parse_tool_calls",
    "ToolRegistry",
]
