"""Polymarket CLOB WebSocket connection with heartbeat and bounded reconnects."""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Set

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException
from websockets.protocol import State

from .config.settings import FeedConfig
from .exceptions import ReconnectLimitExceeded
from .metrics import RelayMetrics
from .utils.logging import short_token

logger = logging.getLogger(__name__)

MessageHandler = Callable[[Any], Awaitable[Any]]
Connector = Callable[..., Awaitable[Any]]


class ConnectionStatus(Enum):
    """Lifecycle of the feed connection."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    TERMINATED = "terminated"
    STOPPED = "stopped"


@dataclass
class ConnectionState:
    """Mutable state owned by a single ConnectionManager."""
    websocket: Optional[Any] = None
    reconnect_attempts: int = 0
    status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    subscriptions: Set[str] = field(default_factory=set)


class ConnectionManager:
    """
    Owns the single market channel socket.

    On every open the reconnect counter is reset and a subscribe frame is
    sent for each token in the subscription set (the feed does not remember
    subscriptions across connections). When the socket closes or a connect
    fails the manager waits a constant delay and reconnects, giving up with
    ``ReconnectLimitExceeded`` once the attempt limit is reached.

    Frames are passed to ``on_message`` one at a time, in receive order.
    """

    def __init__(
        self,
        config: FeedConfig,
        on_message: Optional[MessageHandler] = None,
        state: Optional[ConnectionState] = None,
        metrics: Optional[RelayMetrics] = None,
        connector: Connector = websockets.connect
    ):
        self.config = config
        self.on_message = on_message
        self.state = state or ConnectionState()
        self.metrics = metrics or RelayMetrics()
        self._connector = connector

        self._running = False
        self._heartbeat_task: Optional[asyncio.Task] = None

        self.stats = {
            "connection_count": 0,
            "messages_received": 0,
            "pings_sent": 0,
            "pong_timeouts": 0,
            "handler_errors": 0,
            "subscribe_frames_sent": 0,
            "last_message_time": None
        }

    @property
    def subscriptions(self) -> Set[str]:
        return self.state.subscriptions

    @property
    def is_open(self) -> bool:
        ws = self.state.websocket
        return ws is not None and ws.state is State.OPEN

    def _set_status(self, status: ConnectionStatus):
        self.state.status = status
        self.metrics.connection_status.set(1 if status is ConnectionStatus.CONNECTED else 0)

    async def run(self):
        """
        Connect and keep reconnecting until stopped.

        Raises:
            ReconnectLimitExceeded: when the socket closed or failed to open
                after ``max_reconnect_attempts`` consecutive reconnects.
        """
        self._running = True

        while self._running:
            try:
                await self._connect_and_listen()
            except (OSError, WebSocketException, asyncio.TimeoutError) as e:
                logger.error(f"WebSocket error: {e}")

            if not self._running:
                break

            logger.warning("❌ WebSocket disconnected")
            await self._wait_for_reconnect()

        self._set_status(ConnectionStatus.STOPPED)

    async def stop(self):
        """Close the socket without reconnecting."""
        self._running = False
        self._set_status(ConnectionStatus.STOPPED)

        ws = self.state.websocket
        if ws is not None:
            await ws.close()
            logger.info("Disconnected from Polymarket WebSocket")

    async def _connect_and_listen(self):
        self._set_status(ConnectionStatus.CONNECTING)
        logger.info(f"🔌 Connecting to Polymarket WebSocket: {self.config.ws_url}")

        ws = await self._connector(
            self.config.ws_url,
            ping_interval=None,  # heartbeat is ours, see _heartbeat_loop
            open_timeout=self.config.open_timeout_seconds,
            close_timeout=self.config.close_timeout_seconds,
            max_size=self.config.max_message_size
        )

        self.state.websocket = ws
        self.state.reconnect_attempts = 0
        self.stats["connection_count"] += 1
        self._set_status(ConnectionStatus.CONNECTED)
        logger.info("✅ Connected to Polymarket WebSocket")

        try:
            await self._resubscribe_all()
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(ws))

            async for raw in ws:
                self.stats["messages_received"] += 1
                self.stats["last_message_time"] = time.time()
                if self.on_message is not None:
                    await self._dispatch(raw)

        except ConnectionClosed as e:
            logger.warning(f"WebSocket connection closed: {e}")
        finally:
            await self._stop_heartbeat()
            self.state.websocket = None
            if self._running:
                self._set_status(ConnectionStatus.DISCONNECTED)

    async def _dispatch(self, raw):
        try:
            await self.on_message(raw)
        except Exception as e:
            # One bad frame must not take the feed down
            self.stats["handler_errors"] += 1
            logger.error(f"Message handler error: {e!r}")

    async def _wait_for_reconnect(self):
        self._set_status(ConnectionStatus.RECONNECTING)

        if self.state.reconnect_attempts >= self.config.max_reconnect_attempts:
            self._running = False
            self._set_status(ConnectionStatus.TERMINATED)
            logger.error("Max reconnection attempts reached. Exiting.")
            raise ReconnectLimitExceeded(self.state.reconnect_attempts)

        self.state.reconnect_attempts += 1
        self.metrics.reconnect_attempts.inc()
        logger.info(
            f"🔄 Reconnecting in {self.config.reconnect_delay_seconds}s "
            f"(attempt {self.state.reconnect_attempts}/{self.config.max_reconnect_attempts})..."
        )
        await asyncio.sleep(self.config.reconnect_delay_seconds)

    async def _resubscribe_all(self):
        # Snapshot: the reconciler may change the set while we await sends
        for token in sorted(self.state.subscriptions):
            await self.subscribe(token)

    async def send(self, frame: Dict[str, Any]) -> bool:
        """Send a JSON frame if the socket is open. Never queues."""
        if not self.is_open:
            return False

        try:
            await self.state.websocket.send(json.dumps(frame))
        except ConnectionClosed:
            return False
        return True

    async def subscribe(self, token: str) -> bool:
        """Ask the feed to push market events for ``token``."""
        sent = await self.send({"type": "market", "assets_ids": [token]})
        if sent:
            self.stats["subscribe_frames_sent"] += 1
            logger.info(f"📡 Subscribed to {short_token(token)}")
        return sent

    async def _heartbeat_loop(self, ws):
        """
        Ping on a fixed interval while the socket is open.

        Without ``pong_timeout_seconds`` no pong is awaited, so a stalled but
        open socket is not detected. With it, a missing pong closes the socket
        and the normal reconnect path takes over.
        """
        while True:
            await asyncio.sleep(self.config.heartbeat_interval_seconds)

            if ws.state is not State.OPEN:
                return

            try:
                pong_waiter = await ws.ping()
            except ConnectionClosed:
                return
            self.stats["pings_sent"] += 1

            if self.config.pong_timeout_seconds is None:
                continue

            try:
                await asyncio.wait_for(pong_waiter, self.config.pong_timeout_seconds)
            except asyncio.TimeoutError:
                self.stats["pong_timeouts"] += 1
                logger.warning(
                    f"No pong within {self.config.pong_timeout_seconds}s, closing connection"
                )
                await ws.close()
                return
            except ConnectionClosed:
                return

    async def _stop_heartbeat(self):
        task = self._heartbeat_task
        self._heartbeat_task = None
        if task is None or task.done():
            return

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def health_check(self) -> Dict[str, Any]:
        """Report connection health."""
        status = self.state.status
        health_status = {
            "status": "healthy" if status is ConnectionStatus.CONNECTED else "unhealthy",
            "connection_status": status.value,
            "reconnect_attempts": self.state.reconnect_attempts,
            "subscriptions": len(self.state.subscriptions),
            "stats": self.get_stats()
        }

        if status in (ConnectionStatus.RECONNECTING, ConnectionStatus.CONNECTING):
            health_status["status"] = "degraded"

        return health_status

    def get_stats(self) -> Dict[str, Any]:
        """Get connection statistics."""
        stats = self.stats.copy()
        if stats["last_message_time"]:
            stats["last_message_age_seconds"] = time.time() - stats["last_message_time"]
        return stats
