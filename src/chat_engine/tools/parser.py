"""
Parsing of tool invocations from model output.

Two equivalent grammars:

    <tool_call name="web_search" server="mcp-1">{"query": "weather"}</tool_call>

    ```json
    {"tool_calls": [{"name": "web_search", "server": "mcp-1", "parameters": {"query": "weather"}}]}
    ```

Tagged calls take precedence; the JSON form is only consulted when no tagged
call is present.
"""

import json
import re
from typing import Any, Callable

import structlog

from .base import ToolCallRequest

logger = structlog.get_logger()

TAGGED_PATTERN = re.compile(r"<tool_call\b([^>]*)>(.*?)</tool_call>", re.DOTALL | re.IGNORECASE)
ATTRIBUTE_PATTERN = re.compile(r"""(\w+)\s*=\s*(?:"([^"]*)"|'([^']*)'|([^\s"'>]+))""")
FENCED_JSON_PATTERN = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL)
BARE_JSON_PATTERN = re.compile(r"\{\s*\"tool_calls\"\s*:", re.DOTALL)

# Resolves a tool name to its server when the markup omits one
ServerLookup = Callable[[str], list[str]]


def _parse_attributes(raw: str) -> dict[str, str]:
    attributes = {}
    for match in ATTRIBUTE_PATTERN.finditer(raw):
        key, double, single, bare = match.groups()
        attributes[key.lower()] = next(v for v in (double, single, bare) if v is not None)
    return attributes


def _resolve_server(tool_name: str, server: str | None, lookup: ServerLookup | None) -> str:
    if server:
        return server
    if lookup is not None:
        servers = lookup(tool_name)
        if len(servers) == 1:
            return servers[0]
    return ""


def parse_tagged_calls(text: str, lookup: ServerLookup | None = None) -> list[ToolCallRequest]:
    """Parse <tool_call ...>{json}</tool_call> blocks."""
    calls = []
    for match in TAGGED_PATTERN.finditer(text):
        attributes = _parse_attributes(match.group(1))
        name = attributes.get("name", "")
        server = _resolve_server(name, attributes.get("server"), lookup)
        body = match.group(2).strip()

        parameters: Any = {}
        parse_error = None
        if body:
            try:
                parameters = json.loads(body)
            except ValueError as e:
                parse_error = f"Parameters are not valid JSON: {e}"
                parameters = {}

        if parse_error is None and not isinstance(parameters, dict):
            parse_error = "Parameters must be a JSON object"
            parameters = {}

        request = ToolCallRequest(
            server_id=server,
            tool_name=name,
            parameters=parameters,
            parse_error=parse_error,
        )
        if attributes.get("id"):
            request.id = attributes["id"]
        calls.append(request)
    return calls


def _json_candidates(text: str) -> list[str]:
    candidates = [m.group(1) for m in FENCED_JSON_PATTERN.finditer(text)]

    # Bare object outside any fence: let the decoder find where it ends
    unfenced = FENCED_JSON_PATTERN.sub("", text)
    decoder = json.JSONDecoder()
    for match in BARE_JSON_PATTERN.finditer(unfenced):
        try:
            _, end = decoder.raw_decode(unfenced, match.start())
        except ValueError:
            continue
        candidates.append(unfenced[match.start():end])
    return candidates


def parse_json_calls(text: str, lookup: ServerLookup | None = None) -> list[ToolCallRequest]:
    """Parse {"tool_calls": [...]} blocks, fenced or bare."""
    calls: list[ToolCallRequest] = []

    for candidate in _json_candidates(text):
        try:
            parsed = json.loads(candidate)
        except ValueError:
            continue
        if not isinstance(parsed, dict) or not isinstance(parsed.get("tool_calls"), list):
            continue

        for entry in parsed["tool_calls"]:
            if not isinstance(entry, dict) or not entry.get("name"):
                logger.warning("Skipping malformed tool_calls entry", entry=entry)
                continue

            name = str(entry["name"])
            server = _resolve_server(name, entry.get("server") or entry.get("server_id"), lookup)
            parameters = entry.get("parameters", entry.get("arguments", {}))
            parse_error = None
            if isinstance(parameters, str):
                try:
                    parameters = json.loads(parameters)
                except ValueError as e:
                    parse_error = f"Parameters are not valid JSON: {e}"
                    parameters = {}
            if parse_error is None and not isinstance(parameters, dict):
                parse_error = "Parameters must be a JSON object"
                parameters = {}

            request = ToolCallRequest(
                server_id=server,
                tool_name=name,
                parameters=parameters,
                parse_error=parse_error,
            )
            if entry.get("id"):
                request.id = str(entry["id"])
            calls.append(request)
    return calls


def parse_tool_calls(text: str, lookup: ServerLookup | None = None) -> list[ToolCallRequest]:
    """Parse tool calls in either grammar."""
    if not text:
        return []
    calls = parse_tagged_calls(text, lookup)
    if calls:
        return calls
    return parse_json_calls(text, lookup)
