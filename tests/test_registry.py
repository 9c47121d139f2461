"""Tests for the server-side connection registry."""

import asyncio
import json
import re

import pytest

from resilience.app.realtime.registry import ConnectionRegistry, generate_connection_id


class FakeWebSocket:
    def __init__(self, fail_on_send=False):
        self.sent = []
        self.closed_with = None
        self.fail_on_send = fail_on_send

    async def send_text(self, data):
        if self.fail_on_send:
            raise RuntimeError("socket is gone")
        self.sent.append(json.loads(data))

    async def close(self, code=1000, reason=None):
        self.closed_with = (code, reason)


@pytest.fixture
def registry():
    return ConnectionRegistry(sweep_interval=0.02, inactivity_timeout=60.0)


def test_connection_id_format():
    assert re.fullmatch(r"conn_\d+_[a-z0-9]{13}", generate_connection_id())
    assert generate_connection_id() != generate_connection_id()


class TestTracking:
    """Connections, users and statistics."""

    def test_open_and_authenticate(self, registry):
        info = registry.open(FakeWebSocket())
        assert registry.stats()["active_connections"] == 1
        assert registry.is_user_connected(7) is False

        registry.authenticate(info, 7)
        assert info.user_id == 7
        assert registry.is_user_connected(7) is True
        assert registry.connected_users_count() == 1

    def test_reauthenticate_moves_connection(self, registry):
        info = registry.open(FakeWebSocket())
        registry.authenticate(info, 1)
        registry.authenticate(info, 2)
        assert registry.is_user_connected(1) is False
        assert registry.is_user_connected(2) is True

    def test_close_detaches_user(self, registry):
        first = registry.open(FakeWebSocket())
        second = registry.open(FakeWebSocket())
        registry.authenticate(first, 1)
        registry.authenticate(second, 1)

        registry.close(first)
        assert registry.is_user_connected(1) is True
        registry.close(second)
        assert registry.is_user_connected(1) is False

        stats = registry.stats()
        assert stats["total_connections"] == 2
        assert stats["active_connections"] == 0
        assert stats["connected_users"] == 0

    def test_close_twice_counts_once(self, registry):
        info = registry.open(FakeWebSocket())
        registry.close(info)
        registry.close(info)
        assert registry.stats()["active_connections"] == 0

    def test_record_error(self, registry):
        info = registry.open(FakeWebSocket())
        registry.record_error(info, RuntimeError("x" * 500))
        stats = registry.stats()
        assert stats["connection_errors"] == 1
        assert len(stats["last_connection_error"]) == 200


class TestDelivery:
    """Pushing notifications to users."""

    @pytest.mark.asyncio
    async def test_send_to_user_reaches_every_connection(self, registry):
        sockets = [FakeWebSocket(), FakeWebSocket()]
        for ws in sockets:
            registry.authenticate(registry.open(ws), 3)

        delivered = await registry.send_to_user(3, {"title": "New assignment"})

        assert delivered == 2
        for ws in sockets:
            assert ws.sent == [{"type": "notification", "data": {"title": "New assignment"}}]

    @pytest.mark.asyncio
    async def test_send_to_offline_user(self, registry):
        assert await registry.send_to_user(99, {"title": "hi"}) == 0

    @pytest.mark.asyncio
    async def test_unauthenticated_connection_gets_nothing(self, registry):
        ws = FakeWebSocket()
        registry.open(ws)
        await registry.send_to_user(1, {"title": "hi"})
        assert ws.sent == []

    @pytest.mark.asyncio
    async def test_failed_send_drops_connection(self, registry):
        broken = registry.open(FakeWebSocket(fail_on_send=True))
        healthy = registry.open(FakeWebSocket())
        registry.authenticate(broken, 5)
        registry.authenticate(healthy, 5)

        delivered = await registry.send_to_user(5, {"title": "hi"})

        assert delivered == 1
        stats = registry.stats()
        assert stats["active_connections"] == 1
        assert stats["connection_errors"] == 1

    @pytest.mark.asyncio
    async def test_send_to_users_deduplicates(self, registry):
        ws = FakeWebSocket()
        registry.authenticate(registry.open(ws), 1)
        delivered = await registry.send_to_users([1, 1, 2], {"title": "hi"})
        assert delivered == 1
        assert len(ws.sent) == 1


class TestSweep:
    """Inactive connections are terminated."""

    @pytest.mark.asyncio
    async def test_sweep_closes_silent_connections(self, registry):
        quiet = registry.open(FakeWebSocket())
        active = registry.open(FakeWebSocket())
        registry.authenticate(quiet, 1)
        quiet.last_activity -= 120.0

        assert await registry.sweep() == 1
        assert quiet.websocket.closed_with == (1001, "Inactive")
        assert active.websocket.closed_with is None
        assert registry.is_user_connected(1) is False

    @pytest.mark.asyncio
    async def test_touch_keeps_connection(self, registry):
        info = registry.open(FakeWebSocket())
        info.last_activity -= 120.0
        info.touch()
        assert await registry.sweep() == 0

    @pytest.mark.asyncio
    async def test_background_sweeper(self, registry):
        info = registry.open(FakeWebSocket())
        info.last_activity -= 120.0

        await registry.start()
        try:
            for _ in range(100):
                if registry.stats()["active_connections"] == 0:
                    break
                await asyncio.sleep(0.01)
            assert info.websocket.closed_with == (1001, "Inactive")
        finally:
            await registry.stop()

    @pytest.mark.asyncio
    async def test_start_stop_idempotent(self, registry):
        await registry.start()
        await registry.start()
        await registry.stop()
        await registry.stop()
