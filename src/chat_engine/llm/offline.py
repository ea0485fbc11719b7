"""
Offline transport: a local stand-in that streams a canned reply in SSE form.
"""

import asyncio
import json
from typing import AsyncIterator

from ..errors import TransportError
from .base import CancelToken, ChatRequest, Mode, ModeKind, Transport

OFFLINE_REPLY = (
    "No LM server connection configured. Add a connection in settings to enable AI chat."
)


def sse_line(payload: dict | str) -> bytes:
    """Encode one SSE data event."""
    data = payload if isinstance(payload, str) else json.dumps(payload)
    return f"data: {data}\n\n".encode("utf-8")


def content_chunk(text: str, finish_reason: str | None = None) -> dict:
    choice: dict = {"delta": {"content": text}}
    if finish_reason is not None:
        choice["finish_reason"] = finish_reason
    return {"choices": [choice]}


class OfflineTransport(Transport):
    """Serves OFFLINE mode without any network I/O."""

    def __init__(self, reply: str = OFFLINE_REPLY, delay: float = 0.0):
        self.reply = reply
        self.delay = delay

    def _compose_reply(self, request: ChatRequest) -> str:
        last_user = next(
            (m.get("content", "") for m in reversed(request.messages) if m.get("role") == "user"),
            "",
        )
        if last_user:
            return f'{self.reply}\n\nYou said: "{last_user}"'
        return self.reply

    async def open(
        self,
        mode: Mode,
        request: ChatRequest,
        cancel_token: CancelToken | None = None,
    ) -> AsyncIterator[bytes]:
        if mode.kind is not ModeKind.OFFLINE:
            raise TransportError(f"Offline transport cannot serve mode '{mode}'")

        words = self._compose_reply(request).split(" ")
        for index, word in enumerate(words):
            if cancel_token is not None and cancel_token.cancelled:
                return
            text = word if index == 0 else f" {word}"
            finish = "stop" if index == len(words) - 1 else None
            yield sse_line(content_chunk(text, finish))
            if self.delay:
                await asyncio.sleep(self.delay)
        yield sse_line("[DONE]")

    async def complete(self, mode: Mode, request: ChatRequest) -> str:
        raise TransportError("Completions are not available offline")
