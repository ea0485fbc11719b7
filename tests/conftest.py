"""
Shared fixtures: scripted transports and a small tool registry.
"""

import asyncio
import json
from typing import AsyncIterator, Callable

import pytest

from chat_engine.llm.base import CancelToken, ChatRequest, Mode, Transport
from chat_engine.llm.offline import content_chunk, sse_line
from chat_engine.tools import Tool, ToolParameter, ToolRegistry, ToolResult


def sse_stream(*texts: str, finish: str | None = "stop") -> list[bytes]:
    """One content chunk per text, the last carrying the finish reason, then [DONE]."""
    chunks = []
    for index, text in enumerate(texts):
        reason = finish if index == len(texts) - 1 else None
        chunks.append(sse_line(content_chunk(text, reason)))
    chunks.append(sse_line("[DONE]"))
    return chunks


def tool_call_markup(name: str, server: str = "local", **params) -> str:
    return f'<tool_call name="{name}" server="{server}">{json.dumps(params)}</tool_call>'


class ScriptedTransport(Transport):
    """Plays back one scripted chunk list per opened stream.

    A script entry may also be a callable taking the cancel token and
    returning the chunk list, or an exception instance to raise on open.
    """

    def __init__(
        self,
        turns=None,
        summary: str | Exception = "Summary of earlier turns",
        honor_cancel: bool = False,
    ):
        self.turns = list(turns or [])
        self.summary = summary
        self.requests: list[ChatRequest] = []
        self.modes: list[Mode] = []
        self.completions: list[ChatRequest] = []
        self.closed_streams = 0
        self.on_chunk: Callable[[int], None] | None = None
        # When set, the stream pauses after its first chunk until the event fires
        self.gate: asyncio.Event | None = None
        # Stop before the next chunk once the cancel token fires, like the HTTP transport
        self.honor_cancel = honor_cancel

    def add_turn(self, chunks) -> None:
        self.turns.append(chunks)

    async def open(
        self,
        mode: Mode,
        request: ChatRequest,
        cancel_token: CancelToken | None = None,
    ) -> AsyncIterator[bytes]:
        self.requests.append(request)
        self.modes.append(mode)
        script = self.turns.pop(0) if self.turns else sse_stream("ok")
        if isinstance(script, Exception):
            raise script
        if callable(script):
            script = script(cancel_token)
        try:
            for index, chunk in enumerate(script):
                if self.honor_cancel and cancel_token is not None and cancel_token.cancelled:
                    break
                yield chunk
                if self.on_chunk is not None:
                    self.on_chunk(index)
                if index == 0 and self.gate is not None:
                    await self.gate.wait()
        finally:
            self.closed_streams += 1

    async def complete(self, mode: Mode, request: ChatRequest) -> str:
        self.completions.append(request)
        if isinstance(self.summary, Exception):
            raise self.summary
        return self.summary


@pytest.fixture
def transport():
    return ScriptedTransport()


@pytest.fixture
def registry():
    """Registry with an echo tool, a failing tool and an adder."""
    registry = ToolRegistry()

    async def echo(text: str) -> ToolResult:
        return ToolResult(success=True, output=f"echo: {text}")

    async def explode() -> ToolResult:
        raise RuntimeError("tool blew up")

    async def add(a: int, b: int) -> ToolResult:
        return ToolResult(success=True, output=str(a + b), data=a + b)

    registry.register(Tool(
        name="echo",
        description="Echo text back",
        parameters=[ToolParameter(name="text", param_type="string", description="Text to echo")],
        handler=echo,
    ))
    registry.register(Tool(
        name="explode",
        description="Always fails",
        parameters=[],
        handler=explode,
    ))
    registry.register(Tool(
        name="add",
        description="Add two integers",
        parameters=[
            ToolParameter(name="a", param_type="integer", description="First"),
            ToolParameter(name="b", param_type="integer", description="Second"),
        ],
        handler=add,
        server_id="math",
    ))
    return registry
