"""
Transport factory.

Routing by mode:
- direct -> OpenAICompatibleTransport (connection URL)
- backend -> OpenAICompatibleTransport (configured backend URL)
- offline -> OfflineTransport
"""

from typing import TYPE_CHECKING, AsyncIterator

from ..errors import ConnectionUnavailable
from .base import CancelToken, ChatRequest, Mode, ModeKind, Transport
from .offline import OfflineTransport
from .openai import OpenAICompatibleTransport

if TYPE_CHECKING:
    from ..config import Settings


class ModeRoutingTransport(Transport):
    """Dispatches each request to the transport that serves its mode."""

    def __init__(self, http: Transport, offline: Transport):
        self.http = http
        self.offline = offline

    def _select(self, mode: Mode) -> Transport:
        if mode.kind is ModeKind.OFFLINE:
            return self.offline
        if mode.kind is ModeKind.UNAVAILABLE:
            raise ConnectionUnavailable()
        return self.http

    def open(
        self,
        mode: Mode,
        request: ChatRequest,
        cancel_token: CancelToken | None = None,
    ) -> AsyncIterator[bytes]:
        return self._select(mode).open(mode, request, cancel_token)

    async def complete(self, mode: Mode, request: ChatRequest) -> str:
        return await self._select(mode).complete(mode, request)

    async def aclose(self) -> None:
        await self.http.aclose()
        await self.offline.aclose()


def create_transport(settings: "Settings | None" = None) -> Transport:
    """Create the transport stack from settings."""
    if settings is None:
        from ..config import get_settings
        settings = get_settings()

    return ModeRoutingTransport(
        http=OpenAICompatibleTransport(
            backend_url=settings.backend_url,
            backend_api_key=settings.backend_api_key or None,
            timeout=settings.request_timeout,
        ),
        offline=OfflineTransport(),
    )
