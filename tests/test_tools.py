"""
Tests for tools module: definitions, registry, call parsing and validation.
"""

import pytest

from chat_engine.tools import Tool, ToolParameter, ToolRegistry, ToolResult, parse_tool_calls, validate_parameters
from chat_engine.tools.parser import parse_json_calls, parse_tagged_calls


def test_tool_result_success():
    """Test successful tool result."""
    result = ToolResult(success=True, output="Test output", data={"key": "value"})

    assert result.success is True
    assert result.output == "Test output"
    assert result.data == {"key": "value"}
    assert result.error is None


def test_tool_parameters_schema(registry):
    """Test JSON Schema generation."""
    schema = registry.get_tool("local", "echo").get_parameters_schema()

    assert schema["type"] == "object"
    assert schema["properties"]["text"]["type"] == "string"
    assert schema["required"] == ["text"]


def test_registry_lookup(registry):
    """Test lookups by server and name."""
    assert registry.get_tool("math", "add") is not None
    assert registry.get_tool("local", "add") is None
    assert registry.find_servers("add") == ["math"]
    assert len(registry.list_tools()) == 3

    registry.unregister("math", "add")
    assert registry.find_servers("add") == []


def test_registry_describe(registry):
    """Test the catalog names every tool and both grammars."""
    catalog = registry.describe()

    assert "## Available Tools" in catalog
    assert "**echo**" in catalog
    assert "server `math`" in catalog
    assert "<tool_call" in catalog
    assert '"tool_calls"' in catalog
    assert ToolRegistry().describe() == ""


@pytest.mark.asyncio
async def test_registry_execute(registry):
    """Test executing a tool through the registry."""
    result = await registry.execute("math", "add", {"a": 2, "b": 3})

    assert result.success is True
    assert result.output == "5"


@pytest.mark.asyncio
async def test_registry_execute_exception_becomes_failed_result(registry):
    """Test that handler exceptions are converted, not propagated."""
    result = await registry.execute("local", "explode", {})

    assert result.success is False
    assert "tool blew up" in result.error


@pytest.mark.asyncio
async def test_registry_execute_unknown_tool(registry):
    """Test executing a missing tool."""
    result = await registry.execute("local", "missing", {})

    assert result.success is False
    assert "not found" in result.error


def test_validate_parameters():
    """Test schema validation rules."""
    tool = Tool(
        name="t",
        description="",
        parameters=[
            ToolParameter(name="count", param_type="integer", description=""),
            ToolParameter(name="ratio", param_type="number", description="", required=False),
            ToolParameter(name="mode", param_type="string", description="", required=False, enum=["fast", "slow"]),
        ],
        handler=None,
    )
    schema = tool.get_parameters_schema()

    assert validate_parameters(schema, {"count": 1, "ratio": 0.5, "mode": "fast"}) == []
    assert validate_parameters(schema, {"count": 1, "ratio": 2}) == []
    assert validate_parameters(schema, {}) == ["Missing required parameter: count"]
    assert validate_parameters(schema, {"count": True}) == [
        "Invalid type for count: expected integer, got boolean"
    ]
    assert validate_parameters(schema, {"count": 1, "ratio": False}) == [
        "Invalid type for ratio: expected number, got boolean"
    ]
    assert validate_parameters(schema, {"count": 1, "extra": 1}) == ["Unknown parameter: extra"]
    assert validate_parameters(schema, {"count": 1, "mode": "medium"}) == [
        "Invalid value for mode: must be one of fast, slow"
    ]


def test_parse_tagged_call_attribute_order_and_quotes():
    """Test tagged calls with attributes in any order and either quote style."""
    text = (
        "Let me check.\n"
        "<tool_call server='mcp-1' name=\"web_search\">{\"query\": \"weather\"}</tool_call>\n"
        '<tool_call name="echo" server="local" id="call-7">{"text": "hi"}</tool_call>'
    )
    calls = parse_tagged_calls(text)

    assert [(c.server_id, c.tool_name, c.parameters) for c in calls] == [
        ("mcp-1", "web_search", {"query": "weather"}),
        ("local", "echo", {"text": "hi"}),
    ]
    assert calls[1].id == "call-7"


def test_parse_tagged_call_invalid_json():
    """Test malformed bodies are kept as calls with a parse error."""
    calls = parse_tagged_calls('<tool_call name="echo" server="local">{not json}</tool_call>')

    assert len(calls) == 1
    assert calls[0].parameters == {}
    assert "not valid JSON" in calls[0].parse_error

    calls = parse_tagged_calls('<tool_call name="echo" server="local">[1, 2]</tool_call>')
    assert calls[0].parse_error == "Parameters must be a JSON object"


def test_parse_fenced_json_calls():
    """Test the fenced JSON grammar with parameters or arguments."""
    text = (
        "Calling tools:\n"
        "```json\n"
        '{"tool_calls": [\n'
        '  {"name": "echo", "server": "local", "parameters": {"text": "a"}},\n'
        '  {"name": "add", "server_id": "math", "arguments": "{\\"a\\": 1, \\"b\\": 2}", "id": "x1"}\n'
        "]}\n"
        "```"
    )
    calls = parse_json_calls(text)

    assert [(c.server_id, c.tool_name, c.parameters) for c in calls] == [
        ("local", "echo", {"text": "a"}),
        ("math", "add", {"a": 1, "b": 2}),
    ]
    assert calls[1].id == "x1"


def test_parse_bare_json_calls():
    """Test an unfenced tool_calls object."""
    text = 'Sure. {"tool_calls": [{"name": "echo", "server": "local", "parameters": {"text": "b"}}]} Done.'
    calls = parse_json_calls(text)

    assert len(calls) == 1
    assert calls[0].parameters == {"text": "b"}


def test_tagged_calls_take_precedence():
    """Test JSON is ignored when a tagged call is present."""
    text = (
        '<tool_call name="echo" server="local">{"text": "tagged"}</tool_call>\n'
        '```json\n{"tool_calls": [{"name": "echo", "server": "local", "parameters": {"text": "json"}}]}\n```'
    )
    calls = parse_tool_calls(text)

    assert len(calls) == 1
    assert calls[0].parameters == {"text": "tagged"}


def test_missing_server_resolved_from_catalog(registry):
    """Test a unique tool name fills in the server."""
    calls = parse_tool_calls('<tool_call name="add">{"a": 1, "b": 2}</tool_call>', registry.find_servers)

    assert calls[0].server_id == "math"


def test_plain_text_has_no_calls():
    """Test ordinary replies parse to nothing."""
    assert parse_tool_calls("The answer is {42}.") == []
    assert parse_tool_calls("") == []
