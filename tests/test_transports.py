"""
Tests for the transports: HTTP streaming, offline replies and mode routing.
"""

import json
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from chat_engine.errors import ConnectionUnavailable, TransportError
from chat_engine.llm import (
    CancelToken,
    ChatRequest,
    ConnectionDescriptor,
    Mode,
    ModeRoutingTransport,
    OfflineTransport,
    OpenAICompatibleTransport,
)
from chat_engine.llm.offline import OFFLINE_REPLY
from chat_engine.streaming import StreamDecoder

from conftest import sse_stream


def _request(content: str = "Hi") -> ChatRequest:
    return ChatRequest(model="gpt-4o", messages=[{"role": "user", "content": content}])


async def _collect(stream) -> list[bytes]:
    return [chunk async for chunk in stream]


def _http_transport(handler, **kwargs) -> OpenAICompatibleTransport:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return OpenAICompatibleTransport(client=client, **kwargs)


@pytest.mark.asyncio
async def test_direct_stream_posts_to_connection():
    """Test the request goes to the connection URL with its key and model."""
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("Authorization")
        seen["payload"] = json.loads(request.content)
        return httpx.Response(200, content=b"".join(sse_stream("Hel", "lo")))

    connection = ConnectionDescriptor(id="lm", url="http://lm.local/v1/", api_key="secret", model="qwen2.5")
    transport = _http_transport(handler)

    chunks = await _collect(transport.open(Mode.direct(connection), _request()))

    assert seen["url"] == "http://lm.local/v1/chat/completions"
    assert seen["auth"] == "Bearer secret"
    assert seen["payload"]["model"] == "qwen2.5"
    assert seen["payload"]["stream"] is True
    events = StreamDecoder().decode_all(chunks)
    assert "".join(e.delta_content for e in events if e.delta_content) == "Hello"


@pytest.mark.asyncio
async def test_backend_stream_uses_backend_url():
    """Test backend mode and its missing configuration."""
    urls = []

    def handler(request: httpx.Request) -> httpx.Response:
        urls.append(str(request.url))
        return httpx.Response(200, content=b"".join(sse_stream("ok")))

    transport = _http_transport(handler, backend_url="https://backend.example/api")
    await _collect(transport.open(Mode.backend(), _request()))
    assert urls == ["https://backend.example/api/chat/completions"]

    with pytest.raises(TransportError):
        await _collect(_http_transport(handler).open(Mode.backend(), _request()))


@pytest.mark.asyncio
async def test_http_error_status_raises():
    """Test error statuses become TransportError with the status code."""
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text="model crashed")

    connection = ConnectionDescriptor(id="lm", url="http://lm.local/v1")
    transport = _http_transport(handler)

    with pytest.raises(TransportError) as exc_info:
        await _collect(transport.open(Mode.direct(connection), _request()))
    assert exc_info.value.status_code == 500
    assert "model crashed" in exc_info.value.message


@pytest.mark.asyncio
async def test_connect_error_raises():
    """Test network failures become TransportError."""
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    connection = ConnectionDescriptor(id="lm", url="http://lm.local/v1")

    with pytest.raises(TransportError):
        await _collect(_http_transport(handler).open(Mode.direct(connection), _request()))


@pytest.mark.asyncio
async def test_offline_reply_echoes_user():
    """Test the canned offline stream."""
    chunks = await _collect(OfflineTransport().open(Mode.offline(), _request("ping")))

    events = StreamDecoder().decode_all(chunks)
    text = "".join(e.delta_content for e in events if e.delta_content)
    assert text == f'{OFFLINE_REPLY}\n\nYou said: "ping"'
    assert events[-1].finish_reason == "stop"


@pytest.mark.asyncio
async def test_offline_transport_stops_on_cancel():
    """Test cancellation ends the offline stream early."""
    token = CancelToken()
    token.cancel()

    assert await _collect(OfflineTransport().open(Mode.offline(), _request(), token)) == []


@pytest.mark.asyncio
async def test_offline_transport_rejects_other_modes():
    """Test offline transport only serves offline mode."""
    with pytest.raises(TransportError):
        await _collect(OfflineTransport().open(Mode.backend(), _request()))
    with pytest.raises(TransportError):
        await OfflineTransport().complete(Mode.offline(), _request())


@pytest.mark.asyncio
async def test_routing_transport_dispatch():
    """Test each mode reaches the right transport."""
    http = MagicMock()
    http.complete = AsyncMock(return_value="summary")
    http.aclose = AsyncMock()
    offline = OfflineTransport()
    router = ModeRoutingTransport(http=http, offline=offline)

    chunks = await _collect(router.open(Mode.offline(), _request()))
    assert chunks
    http.open.assert_not_called()

    connection = ConnectionDescriptor(id="lm", url="http://lm.local/v1")
    assert await router.complete(Mode.direct(connection), _request()) == "summary"

    with pytest.raises(ConnectionUnavailable):
        router.open(Mode.unavailable(), _request())

    await router.aclose()
    http.aclose.assert_awaited_once()
