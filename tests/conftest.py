"""Pytest configuration and shared fixtures."""

import asyncio
import json
from typing import Any, Dict, List, Optional, Set

import pytest
from websockets.exceptions import ConnectionClosedOK
from websockets.protocol import State

from clob_relay.config.settings import (
    CacheConfig,
    FeedConfig,
    HealthConfig,
    MetricsConfig,
    RedisConfig,
    RelaySettings,
)
from clob_relay.exceptions import StoreError
from clob_relay.metrics import RelayMetrics


class FakeStore:
    """In-memory stand-in for RedisStore that records every call."""

    def __init__(self, members: Optional[Set[str]] = None):
        self.hashes: Dict[str, Dict[str, str]] = {}
        self.lists: Dict[str, List[str]] = {}
        self.expiries: Dict[str, int] = {}
        self.sets: Dict[str, Set[str]] = {"ws-subscriptions": set(members or ())}
        self.calls: List[tuple] = []
        self.fail_reads = False
        self.initialized = False
        self.closed = False

    @property
    def write_calls(self) -> List[tuple]:
        return [call for call in self.calls if call[0] != "smembers"]

    async def initialize(self):
        self.initialized = True

    async def close(self):
        self.closed = True

    async def upsert_fields(self, key, fields):
        self.calls.append(("hset", key, dict(fields)))
        self.hashes.setdefault(key, {}).update(fields)
        return True

    async def push_capped(self, key, value, max_len):
        self.calls.append(("push_capped", key, value, max_len))
        items = self.lists.setdefault(key, [])
        items.insert(0, value)
        del items[max_len:]
        return True

    async def set_expiry(self, key, seconds):
        self.calls.append(("expire", key, seconds))
        self.expiries[key] = seconds
        return True

    async def read_set_members(self, key):
        self.calls.append(("smembers", key))
        if self.fail_reads:
            raise StoreError(f"Failed to read set {key}: connection refused")
        return set(self.sets.get(key, set()))

    async def health_check(self):
        return {"status": "healthy", "stats": self.get_stats()}

    def get_stats(self):
        return {"writes": len(self.write_calls)}


class FakeWebSocket:
    """Minimal client connection: frames are fed in, sends and pings are recorded."""

    def __init__(self, frames: Optional[List[Any]] = None, auto_pong: bool = True, hold_open: bool = False):
        self.state = State.OPEN
        self.sent: List[str] = []
        self.pings = 0
        self.auto_pong = auto_pong
        self._queue: asyncio.Queue = asyncio.Queue()
        for frame in frames or []:
            self.feed(frame)
        if not hold_open:
            self._queue.put_nowait(None)

    @property
    def sent_frames(self) -> List[Dict[str, Any]]:
        return [json.loads(frame) for frame in self.sent]

    def feed(self, frame: Any):
        if isinstance(frame, dict):
            frame = json.dumps(frame)
        self._queue.put_nowait(frame)

    async def send(self, data: str):
        if self.state is not State.OPEN:
            raise ConnectionClosedOK(None, None)
        self.sent.append(data)

    async def ping(self):
        self.pings += 1
        waiter = asyncio.get_running_loop().create_future()
        if self.auto_pong:
            waiter.set_result(0.0)
        return waiter

    async def close(self, code: int = 1000, reason: str = ""):
        if self.state is State.OPEN:
            self.state = State.CLOSED
            self._queue.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self):
        frame = await self._queue.get()
        if frame is None:
            self.state = State.CLOSED
            raise StopAsyncIteration
        return frame


class FakeConnector:
    """Replays a scripted list of connections or errors; extra calls fail."""

    def __init__(self, outcomes: Optional[List[Any]] = None):
        self.outcomes = list(outcomes or [])
        self.calls: List[Dict[str, Any]] = []

    async def __call__(self, url, **kwargs):
        self.calls.append({"url": url, **kwargs})
        if not self.outcomes:
            raise OSError("Connection refused")
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


@pytest.fixture
def metrics() -> RelayMetrics:
    return RelayMetrics()


@pytest.fixture
def cache_config() -> CacheConfig:
    return CacheConfig()


@pytest.fixture
def feed_config() -> FeedConfig:
    """Feed config with no reconnect delay and a fast heartbeat."""
    return FeedConfig(
        ws_url="wss://feed.test/ws/market",
        heartbeat_interval_seconds=0.01,
        reconnect_delay_seconds=0,
        max_reconnect_attempts=10
    )


@pytest.fixture
def redis_config() -> RedisConfig:
    return RedisConfig(url="redis://localhost:6379/0", token="test-token")


@pytest.fixture
def test_settings(redis_config, feed_config) -> RelaySettings:
    return RelaySettings(
        service_name="test-relay",
        environment="local",
        feed=feed_config,
        redis=redis_config,
        health=HealthConfig(enabled=False),
        metrics=MetricsConfig(enable_prometheus=False)
    )


@pytest.fixture
def fake_store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def make_websocket():
    return FakeWebSocket


@pytest.fixture
def make_connector():
    return FakeConnector


@pytest.fixture
def sample_book_event() -> Dict[str, Any]:
    return {
        "event_type": "book",
        "asset_id": "A",
        "bids": [{"price": "0.40", "size": "10"}],
        "asks": [{"price": "0.42", "size": "5"}]
    }


@pytest.fixture
def sample_trade_event() -> Dict[str, Any]:
    return {
        "event_type": "last_trade_price",
        "asset_id": "A",
        "side": "BUY",
        "price": "0.41",
        "size": "25"
    }


@pytest.fixture
def sample_price_change_event() -> Dict[str, Any]:
    return {
        "event_type": "price_change",
        "asset_id": "A",
        "price": "0.43"
    }


@pytest.fixture
def wait_until():
    """Poll a predicate on the running loop until it holds."""

    async def _wait(predicate, timeout: float = 2.0):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(0.005)

    return _wait
