"""
OpenAI-compatible HTTP transport (direct LM servers and the application backend).

Streaming goes through httpx so the raw SSE bytes reach the StreamDecoder
untouched. The non-streaming summary request uses the OpenAI SDK.
"""

from typing import Any, AsyncIterator

import httpx
import openai
import structlog

from ..errors import TransportError
from .base import CancelToken, ChatRequest, Mode, ModeKind, Transport

logger = structlog.get_logger()


class OpenAICompatibleTransport(Transport):
    """Serves DIRECT and BACKEND modes over an OpenAI-compatible API."""

    def __init__(
        self,
        backend_url: str = "",
        backend_api_key: str | None = None,
        timeout: float = 60.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.backend_url = backend_url
        self.backend_api_key = backend_api_key
        self.timeout = timeout
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout, connect=10.0))
        self._sdk_clients: dict[tuple[str, str], openai.AsyncOpenAI] = {}

    def _endpoint(self, mode: Mode) -> tuple[str, str | None]:
        """Base URL and API key for a mode."""
        if mode.kind is ModeKind.DIRECT and mode.connection is not None:
            return mode.connection.url, mode.connection.api_key
        if mode.kind is ModeKind.BACKEND:
            if not self.backend_url:
                raise TransportError("Backend URL is not configured")
            return self.backend_url, self.backend_api_key
        raise TransportError(f"Mode '{mode}' is not served over HTTP")

    def _build_payload(self, mode: Mode, request: ChatRequest, stream: bool) -> dict[str, Any]:
        payload = request.to_payload()
        payload["stream"] = stream
        if mode.connection is not None and mode.connection.model:
            payload["model"] = mode.connection.model
        return payload

    async def open(
        self,
        mode: Mode,
        request: ChatRequest,
        cancel_token: CancelToken | None = None,
    ) -> AsyncIterator[bytes]:
        base_url, api_key = self._endpoint(mode)
        url = base_url.rstrip("/") + "/chat/completions"

        headers = {
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
        }
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"

        payload = self._build_payload(mode, request, stream=True)

        logger.info("Opening stream", mode=str(mode), url=url, model=payload["model"])

        try:
            async with self._client.stream("POST", url, json=payload, headers=headers) as response:
                if response.status_code >= 400:
                    body = await response.aread()
                    raise TransportError(
                        f"HTTP {response.status_code}: {body.decode('utf-8', errors='replace')[:500]}",
                        status_code=response.status_code,
                    )

                async for chunk in response.aiter_bytes():
                    if cancel_token is not None and cancel_token.cancelled:
                        logger.info("Stream cancelled, closing response", url=url)
                        break
                    yield chunk
        except httpx.HTTPError as e:
            logger.error("Streaming transport error", url=url, error=str(e))
            raise TransportError(f"Failed to reach {url}: {e}") from e

    def _sdk_client(self, base_url: str, api_key: str | None) -> openai.AsyncOpenAI:
        key = (base_url, api_key or "")
        client = self._sdk_clients.get(key)
        if client is None:
            client = openai.AsyncOpenAI(
                base_url=base_url,
                # Local LM servers accept any key; the SDK insists on one
                api_key=api_key or "not-needed",
                timeout=self.timeout,
            )
            self._sdk_clients[key] = client
        return client

    async def complete(self, mode: Mode, request: ChatRequest) -> str:
        base_url, api_key = self._endpoint(mode)
        payload = self._build_payload(mode, request, stream=False)
        client = self._sdk_client(base_url, api_key)

        try:
            response = await client.chat.completions.create(
                model=payload["model"],
                messages=payload["messages"],
                temperature=payload["temperature"],
                max_tokens=payload["max_tokens"],
                stream=False,
            )
        except openai.APIError as e:
            logger.error("OpenAI-compatible API error", base_url=base_url, error=str(e))
            raise TransportError(f"Completion request failed: {e}") from e

        if not response.choices:
            return ""
        return response.choices[0].message.content or ""

    async def aclose(self) -> None:
        await self._client.aclose()
        for client in self._sdk_clients.values():
            await client.close()
        self._sdk_clients.clear()
