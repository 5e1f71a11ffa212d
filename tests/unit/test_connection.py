"""Tests for the feed connection lifecycle."""

import asyncio

import pytest
from websockets.protocol import State

from clob_relay.config.settings import FeedConfig
from clob_relay.connection import ConnectionManager, ConnectionStatus
from clob_relay.exceptions import ReconnectLimitExceeded


def fast_config(**overrides) -> FeedConfig:
    options = {
        "ws_url": "wss://feed.test/ws/market",
        "heartbeat_interval_seconds": 0.01,
        "reconnect_delay_seconds": 0,
    }
    options.update(overrides)
    return FeedConfig(**options)


class TestConnect:
    """Test opening the socket and resubscribing."""

    @pytest.mark.asyncio
    async def test_resubscribes_all_tokens_on_open(self, metrics, make_websocket, make_connector, wait_until):
        ws = make_websocket(hold_open=True)
        connector = make_connector([ws])
        manager = ConnectionManager(fast_config(), metrics=metrics, connector=connector)
        manager.subscriptions.update({"B", "A"})
        manager.state.reconnect_attempts = 4

        task = asyncio.create_task(manager.run())
        await wait_until(lambda: len(ws.sent) == 2)

        assert ws.sent_frames == [
            {"type": "market", "assets_ids": ["A"]},
            {"type": "market", "assets_ids": ["B"]},
        ]
        assert manager.state.reconnect_attempts == 0
        assert manager.state.status is ConnectionStatus.CONNECTED
        assert manager.is_open
        assert metrics.registry.get_sample_value("relay_connection_status") == 1

        await manager.stop()
        await task

        assert manager.state.status is ConnectionStatus.STOPPED
        assert len(connector.calls) == 1

    @pytest.mark.asyncio
    async def test_connect_options(self, metrics, make_websocket, make_connector, wait_until):
        ws = make_websocket(hold_open=True)
        connector = make_connector([ws])
        manager = ConnectionManager(fast_config(), metrics=metrics, connector=connector)

        task = asyncio.create_task(manager.run())
        await wait_until(lambda: manager.is_open)
        await manager.stop()
        await task

        call = connector.calls[0]
        assert call["url"] == "wss://feed.test/ws/market"
        assert call["ping_interval"] is None

    @pytest.mark.asyncio
    async def test_frames_routed_in_order(self, metrics, make_websocket, make_connector):
        received = []

        async def on_message(raw):
            await asyncio.sleep(0)
            received.append(raw)

        ws = make_websocket(['{"n": 1}', '{"n": 2}', '{"n": 3}'])
        manager = ConnectionManager(
            fast_config(max_reconnect_attempts=0),
            on_message=on_message,
            metrics=metrics,
            connector=make_connector([ws])
        )

        with pytest.raises(ReconnectLimitExceeded):
            await manager.run()

        assert received == ['{"n": 1}', '{"n": 2}', '{"n": 3}']
        assert manager.stats["messages_received"] == 3

    @pytest.mark.asyncio
    async def test_handler_error_does_not_stop_feed(self, metrics, make_websocket, make_connector):
        received = []

        async def on_message(raw):
            if raw == "bad":
                raise ArithmeticError("cannot translate frame")
            received.append(raw)

        ws = make_websocket(["bad", "good"])
        manager = ConnectionManager(
            fast_config(max_reconnect_attempts=0),
            on_message=on_message,
            metrics=metrics,
            connector=make_connector([ws])
        )

        with pytest.raises(ReconnectLimitExceeded):
            await manager.run()

        assert received == ["good"]
        assert manager.stats["handler_errors"] == 1
        assert manager.stats["messages_received"] == 2


class TestSend:
    """Test sends on open and closed sockets."""

    @pytest.mark.asyncio
    async def test_send_without_socket_is_noop(self, metrics):
        manager = ConnectionManager(fast_config(), metrics=metrics)

        assert await manager.send({"type": "market", "assets_ids": ["A"]}) is False
        assert await manager.subscribe("A") is False
        assert manager.stats["subscribe_frames_sent"] == 0

    @pytest.mark.asyncio
    async def test_send_on_closed_socket_is_noop(self, metrics, make_websocket):
        ws = make_websocket(hold_open=True)
        await ws.close()
        manager = ConnectionManager(fast_config(), metrics=metrics)
        manager.state.websocket = ws

        assert await manager.subscribe("A") is False
        assert ws.sent == []

    @pytest.mark.asyncio
    async def test_subscribe_frame(self, metrics, make_websocket):
        ws = make_websocket(hold_open=True)
        manager = ConnectionManager(fast_config(), metrics=metrics)
        manager.state.websocket = ws

        assert await manager.subscribe("token-123") is True
        assert ws.sent_frames == [{"type": "market", "assets_ids": ["token-123"]}]


class TestReconnect:
    """Test the bounded reconnect policy."""

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, metrics, make_connector):
        connector = make_connector()
        manager = ConnectionManager(
            fast_config(max_reconnect_attempts=10), metrics=metrics, connector=connector
        )

        with pytest.raises(ReconnectLimitExceeded) as exc_info:
            await manager.run()

        # Initial connect plus exactly ten reconnects
        assert len(connector.calls) == 11
        assert exc_info.value.attempts == 10
        assert manager.state.status is ConnectionStatus.TERMINATED
        assert metrics.registry.get_sample_value("relay_reconnect_attempts_total") == 10

    @pytest.mark.asyncio
    async def test_counter_resets_after_successful_open(self, metrics, make_websocket, make_connector):
        connector = make_connector([
            OSError("refused"),
            OSError("refused"),
            make_websocket(),  # opens, then closes straight away
        ])
        manager = ConnectionManager(
            fast_config(max_reconnect_attempts=3), metrics=metrics, connector=connector
        )

        with pytest.raises(ReconnectLimitExceeded):
            await manager.run()

        # 2 failures, 1 open (reset), then 3 more reconnects that fail
        assert len(connector.calls) == 6

    @pytest.mark.asyncio
    async def test_resubscribes_after_reconnect(self, metrics, make_websocket, make_connector, wait_until):
        first = make_websocket()
        second = make_websocket(hold_open=True)
        manager = ConnectionManager(
            fast_config(), metrics=metrics, connector=make_connector([first, second])
        )
        manager.subscriptions.add("A")

        task = asyncio.create_task(manager.run())
        await wait_until(lambda: len(second.sent) == 1)
        await manager.stop()
        await task

        expected = [{"type": "market", "assets_ids": ["A"]}]
        assert first.sent_frames == expected
        assert second.sent_frames == expected
        assert manager.stats["connection_count"] == 2
        assert manager.state.reconnect_attempts == 0

    @pytest.mark.asyncio
    async def test_waits_reconnect_delay(self, metrics, make_connector, monkeypatch):
        delays = []
        real_sleep = asyncio.sleep

        async def fake_sleep(seconds):
            delays.append(seconds)
            await real_sleep(0)

        monkeypatch.setattr("clob_relay.connection.asyncio.sleep", fake_sleep)
        manager = ConnectionManager(
            fast_config(reconnect_delay_seconds=5, max_reconnect_attempts=3),
            metrics=metrics,
            connector=make_connector()
        )

        with pytest.raises(ReconnectLimitExceeded):
            await manager.run()

        assert delays == [5, 5, 5]


class TestHeartbeat:
    """Test pings while connected."""

    @pytest.mark.asyncio
    async def test_pings_while_connected(self, metrics, make_websocket, make_connector, wait_until):
        ws = make_websocket(hold_open=True)
        manager = ConnectionManager(fast_config(), metrics=metrics, connector=make_connector([ws]))

        task = asyncio.create_task(manager.run())
        await wait_until(lambda: ws.pings >= 3)
        await manager.stop()
        await task

        assert manager.stats["pings_sent"] >= 3

    @pytest.mark.asyncio
    async def test_missing_pong_ignored_by_default(self, metrics, make_websocket, make_connector, wait_until):
        ws = make_websocket(hold_open=True, auto_pong=False)
        manager = ConnectionManager(fast_config(), metrics=metrics, connector=make_connector([ws]))

        task = asyncio.create_task(manager.run())
        await wait_until(lambda: ws.pings >= 3)

        assert ws.state is State.OPEN
        assert manager.stats["pong_timeouts"] == 0

        await manager.stop()
        await task

    @pytest.mark.asyncio
    async def test_pong_timeout_closes_socket(self, metrics, make_websocket, make_connector):
        ws = make_websocket(hold_open=True, auto_pong=False)
        manager = ConnectionManager(
            fast_config(pong_timeout_seconds=0.01, max_reconnect_attempts=0),
            metrics=metrics,
            connector=make_connector([ws])
        )

        with pytest.raises(ReconnectLimitExceeded):
            await asyncio.wait_for(manager.run(), timeout=2)

        assert ws.state is State.CLOSED
        assert manager.stats["pong_timeouts"] == 1


class TestHealth:
    """Test health reporting."""

    @pytest.mark.asyncio
    async def test_health_when_disconnected(self, metrics):
        manager = ConnectionManager(fast_config(), metrics=metrics)
        manager.subscriptions.add("A")

        health = await manager.health_check()

        assert health["status"] == "unhealthy"
        assert health["connection_status"] == "disconnected"
        assert health["subscriptions"] == 1
