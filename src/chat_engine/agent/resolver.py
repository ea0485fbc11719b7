"""
Connection resolution - picks the mode that serves a send.
"""

from typing import Awaitable, Callable, Sequence

import httpx
import structlog

from ..llm.base import ConnectionDescriptor, Mode, ModeKind

logger = structlog.get_logger()

# Returns True when the backend answers
BackendProbe = Callable[[], Awaitable[bool]]


def select_connection(connections: Sequence[ConnectionDescriptor]) -> ConnectionDescriptor | None:
    """Highest-priority usable connection; ties keep list order."""
    best = None
    for connection in connections:
        if not connection.is_usable:
            continue
        if best is None or connection.priority > best.priority:
            best = connection
    return best


def resolve_mode(
    connections: Sequence[ConnectionDescriptor],
    offline_mode: bool = False,
    backend_available: bool = True,
) -> Mode:
    """Decide the mode for a send.

    Direct beats offline beats backend. Unavailable only when nothing else
    applies and the backend is known to be unreachable.
    """
    connection = select_connection(connections)
    if connection is not None:
        return Mode.direct(connection)
    if offline_mode:
        return Mode.offline()
    if backend_available:
        return Mode.backend()
    return Mode.unavailable()


class ConnectionResolver:
    """Resolves modes, probing the backend only when it would be chosen."""

    def __init__(self, backend_probe: BackendProbe | None = None):
        self.backend_probe = backend_probe

    async def resolve(self, connections: Sequence[ConnectionDescriptor], offline_mode: bool = False) -> Mode:
        mode = resolve_mode(connections, offline_mode)
        if mode.kind is not ModeKind.BACKEND or self.backend_probe is None:
            return mode

        try:
            available = await self.backend_probe()
        except Exception as e:
            logger.warning("Backend probe failed", error=str(e))
            available = False

        if not available:
            logger.warning("Backend unreachable, no mode available")
        return resolve_mode(connections, offline_mode, backend_available=available)


def http_backend_probe(backend_url: str, api_key: str | None = None, timeout: float = 5.0) -> BackendProbe:
    """Probe that treats any non-5xx answer from GET {backend}/models as reachable."""

    async def probe() -> bool:
        if not backend_url:
            return False
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        try:
            async with httpx.AsyncClient(timeout=timeout) as client:
                response = await client.get(f"{backend_url.rstrip('/')}/models", headers=headers)
        except httpx.HTTPError as e:
            logger.debug("Backend probe error", url=backend_url, error=str(e))
            return False
        return response.status_code < 500

    return probe
