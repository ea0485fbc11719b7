"""
Tests for connection resolution.
"""

import pytest
from unittest.mock import AsyncMock

from chat_engine.agent.resolver import ConnectionResolver, resolve_mode, select_connection
from chat_engine.llm.base import ConnectionDescriptor, Mode, ModeKind


def _conn(id: str, url: str = "http://localhost:1234/v1", enabled: bool = True, priority: int = 0):
    return ConnectionDescriptor(id=id, url=url, enabled=enabled, priority=priority)


def test_direct_when_connection_enabled():
    """Test an enabled connection with a url gives direct mode."""
    conn = _conn("lm")
    mode = resolve_mode([conn], offline_mode=True)

    assert mode == Mode.direct(conn)
    assert mode.connection is conn
    assert str(mode) == "direct(lm)"


def test_disabled_and_blank_connections_are_skipped():
    """Test unusable descriptors are ignored."""
    connections = [_conn("off", enabled=False), _conn("blank", url="   "), _conn("empty", url="")]
    assert select_connection(connections) is None
    assert resolve_mode(connections).kind is ModeKind.BACKEND


def test_highest_priority_wins():
    """Test priority ordering."""
    low = _conn("low", priority=1)
    high = _conn("high", priority=5)
    disabled_top = _conn("top", priority=10, enabled=False)

    assert resolve_mode([low, disabled_top, high]).connection is high


def test_priority_ties_keep_list_order():
    """Test that equal priorities resolve to the first listed."""
    first = _conn("first", priority=2)
    second = _conn("second", priority=2)

    assert resolve_mode([first, second]).connection is first


def test_offline_when_no_connection():
    """Test offline flag without usable connections."""
    assert resolve_mode([], offline_mode=True) == Mode.offline()


def test_backend_or_unavailable():
    """Test the last-resort modes."""
    assert resolve_mode([], backend_available=True) == Mode.backend()
    assert resolve_mode([], backend_available=False) == Mode.unavailable()


@pytest.mark.asyncio
async def test_resolver_probes_only_for_backend():
    """Test the probe is not consulted when a connection or offline mode applies."""
    probe = AsyncMock(return_value=False)
    resolver = ConnectionResolver(probe)

    assert (await resolver.resolve([_conn("lm")])).kind is ModeKind.DIRECT
    assert (await resolver.resolve([], offline_mode=True)).kind is ModeKind.OFFLINE
    probe.assert_not_called()

    assert (await resolver.resolve([])).kind is ModeKind.UNAVAILABLE
    probe.assert_awaited_once()


@pytest.mark.asyncio
async def test_resolver_probe_failure_means_unavailable():
    """Test a raising probe is treated as unreachable."""
    resolver = ConnectionResolver(AsyncMock(side_effect=OSError("refused")))

    assert (await resolver.resolve([])).kind is ModeKind.UNAVAILABLE


@pytest.mark.asyncio
async def test_resolver_without_probe_assumes_backend():
    """Test the default resolver."""
    assert (await ConnectionResolver().resolve([])).kind is ModeKind.BACKEND
