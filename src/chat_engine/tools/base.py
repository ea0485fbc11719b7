"""
Base classes for tools and tool calls.
"""

import json
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Coroutine, Protocol


@dataclass
class ToolResult:
    """Result from a tool execution."""

    success: bool
    output: str = ""
    data: Any = None
    error: str | None = None


@dataclass
class ToolParameter:
    """Definition of a tool parameter."""

    name: str
    param_type: str  # string, integer, number, boolean, array, object
    description: str
    required: bool = True
    default: Any = None
    enum: list[str] | None = None


@dataclass
class Tool:
    """
    A tool exposed by a tool server, wrapping an async handler.
    """

    name: str
    description: str
    parameters: list[ToolParameter]
    handler: Callable[..., Coroutine[Any, Any, ToolResult]]
    server_id: str = "local"

    def get_parameters_schema(self) -> dict[str, Any]:
        """Convert parameters to JSON Schema format."""
        properties = {}
        required = []

        for param in self.parameters:
            prop = {
                "type": param.param_type,
                "description": param.description,
            }
            if param.enum:
                prop["enum"] = param.enum
            if param.default is not None:
                prop["default"] = param.default

            properties[param.name] = prop

            if param.required:
                required.append(param.name)

        return {
            "type": "object",
            "properties": properties,
            "required": required,
        }

    async def execute(self, **kwargs: Any) -> ToolResult:
        """Execute the tool handler."""
        return await self.handler(**kwargs)


class ToolCallStatus(str, Enum):
    """Lifecycle of a tool call request."""
    PENDING = "pending"
    EXECUTING = "executing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


def _new_call_id() -> str:
    return f"tc-{uuid.uuid4().hex[:12]}"


@dataclass
class ToolCallRequest:
    """A tool invocation parsed from model output."""

    server_id: str
    tool_name: str
    parameters: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=_new_call_id)
    status: ToolCallStatus = ToolCallStatus.PENDING
    error: str | None = None
    result: ToolResult | None = None
    # Set when the markup could not be turned into a parameter object
    parse_error: str | None = None
    # Assistant message the call was parsed from
    message_id: str | None = None

    def to_wire(self) -> dict[str, Any]:
        """OpenAI-compatible tool_calls entry announcing this call."""
        return {
            "id": self.id,
            "type": "function",
            "function": {
                "name": self.tool_name,
                "arguments": json.dumps(self.parameters),
            },
        }


class ToolExecutor(Protocol):
    """Executes named tools on tool servers."""

    def get_tool(self, server_id: str, tool_name: str) -> Tool | None:
        ...

    def find_servers(self, tool_name: str) -> list[str]:
        ...

    def describe(self) -> str:
        """Tool catalog for the system prompt."""
        ...

    async def execute(self, server_id: str, tool_name: str, params: dict[str, Any]) -> ToolResult:
        ...


_JSON_TYPE_CHECKS: dict[str, Callable[[Any], bool]] = {
    "string": lambda v: isinstance(v, str),
    "integer": lambda v: isinstance(v, int) and not isinstance(v, bool),
    "number": lambda v: isinstance(v, (int, float)) and not isinstance(v, bool),
    "boolean": lambda v: isinstance(v, bool),
    "array": lambda v: isinstance(v, list),
    "object": lambda v: isinstance(v, dict),
    "null": lambda v: v is None,
}


def _json_type_name(value: Any) -> str:
    for name in ("boolean", "integer", "number", "string", "array", "object", "null"):
        if _JSON_TYPE_CHECKS[name](value):
            return name
    return type(value).__name__


def validate_parameters(schema: dict[str, Any], parameters: dict[str, Any]) -> list[str]:
    """Check parameters against a JSON Schema object definition.

    Returns a list of problems; empty means valid.
    """
    errors: list[str] = []
    properties: dict[str, Any] = schema.get("properties", {})

    for name in schema.get("required", []):
        if name not in parameters:
            errors.append(f"Missing required parameter: {name}")

    for name, value in parameters.items():
        prop = properties.get(name)
        if prop is None:
            errors.append(f"Unknown parameter: {name}")
            continue

        expected = prop.get("type")
        check = _JSON_TYPE_CHECKS.get(expected) if expected else None
        if check is not None and not check(value):
            errors.append(
                f"Invalid type for {name}: expected {expected}, got {_json_type_name(value)}"
            )
            continue

        allowed = prop.get("enum")
        if allowed and value not in allowed:
            errors.append(f"Invalid value for {name}: must be one of {', '.join(map(str, allowed))}")

    return errors
