"""Translate market channel frames into Redis writes."""

import json
import logging
from datetime import datetime, timezone
from decimal import DecimalException
from typing import Any, Callable, Dict, Optional, Set, Union

from .clients.redis_store import RedisStore
from .config.settings import CacheConfig
from .metrics import RelayMetrics
from .models import EventType, OrderbookSnapshot, PriceQuote, TradeRecord
from .utils.logging import short_token


logger = logging.getLogger(__name__)


class DropReason:
    """Why a frame produced no write."""
    MALFORMED = "malformed"
    UNKNOWN_EVENT = "unknown_event"
    MISSING_TOKEN = "missing_token"
    INACTIVE_TOKEN = "inactive_token"


class MessageTranslator:
    """
    Classifies inbound frames by ``event_type`` and persists them.

    ``book`` and ``last_trade_price`` events are written only for tokens in
    the active subscription set. ``price_change`` events are written for any
    token. Frames that are not JSON objects or carry an unknown event type
    are dropped; drops never raise, they are only counted and logged.
    """

    def __init__(
        self,
        store: RedisStore,
        subscriptions: Set[str],
        config: CacheConfig,
        metrics: Optional[RelayMetrics] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)
    ):
        self.store = store
        self.subscriptions = subscriptions
        self.config = config
        self.metrics = metrics or RelayMetrics()
        self._clock = clock

        self._handlers = {
            EventType.BOOK.value: self._handle_book,
            EventType.LAST_TRADE_PRICE.value: self._handle_trade,
            EventType.PRICE_CHANGE.value: self._handle_price_change,
        }

        self.stats = {
            "frames_received": 0,
            "events_persisted": {event.value: 0 for event in EventType},
            "dropped": {
                DropReason.MALFORMED: 0,
                DropReason.UNKNOWN_EVENT: 0,
                DropReason.MISSING_TOKEN: 0,
                DropReason.INACTIVE_TOKEN: 0,
            },
            "last_message_time": None
        }

    async def handle(self, raw: Union[str, bytes]) -> Optional[str]:
        """
        Process one raw frame.

        Returns the event type that was persisted, or ``None`` if the frame
        was dropped.
        """
        self.stats["frames_received"] += 1
        self.stats["last_message_time"] = self._clock()
        self.metrics.frames_received.inc()

        message = self._parse(raw)
        if message is None:
            self._drop(DropReason.MALFORMED)
            return None

        event_type = message.get("event_type")
        handler = self._handlers.get(event_type) if isinstance(event_type, str) else None
        if handler is None:
            self._drop(DropReason.UNKNOWN_EVENT, event_type)
            return None

        token = message.get("asset_id")
        if not token or not isinstance(token, str):
            self._drop(DropReason.MISSING_TOKEN, event_type)
            return None

        if not await handler(token, message):
            return None

        self.stats["events_persisted"][event_type] += 1
        self.metrics.events_persisted.labels(event_type=event_type).inc()
        return event_type

    def _parse(self, raw: Union[str, bytes]) -> Optional[Dict[str, Any]]:
        try:
            message = json.loads(raw)
        except (TypeError, ValueError, RecursionError):
            return None
        return message if isinstance(message, dict) else None

    def _drop(self, reason: str, event_type: Any = None):
        self.stats["dropped"][reason] += 1
        self.metrics.frames_dropped.labels(reason=reason).inc()
        logger.debug(f"Dropped frame ({reason}), event_type={event_type!r}")

    def _is_active(self, token: str, event_type: str) -> bool:
        if token in self.subscriptions:
            return True
        self._drop(DropReason.INACTIVE_TOKEN, event_type)
        return False

    async def _handle_book(self, token: str, message: Dict[str, Any]) -> bool:
        if not self._is_active(token, EventType.BOOK.value):
            return False

        try:
            snapshot = OrderbookSnapshot.from_event(
                token,
                message.get("bids"),
                message.get("asks"),
                depth=self.config.max_depth_levels,
                now=self._clock()
            )
            fields = snapshot.to_fields()
            quote = snapshot.to_price_quote()
        except DecimalException:
            # Prices too large to hold mid/spread at four places
            self._drop(DropReason.MALFORMED, EventType.BOOK.value)
            return False

        if not await self.save_orderbook(token, fields, quote):
            return False
        logger.info(f"📊 Orderbook: {short_token(token)}")
        return True

    async def _handle_trade(self, token: str, message: Dict[str, Any]) -> bool:
        if not self._is_active(token, EventType.LAST_TRADE_PRICE.value):
            return False

        trade = TradeRecord.from_event(message, now=self._clock())
        if not await self.save_trade(token, trade):
            return False
        logger.info(f"💱 Trade: {short_token(token)}")
        return True

    async def _handle_price_change(self, token: str, message: Dict[str, Any]) -> bool:
        # Not gated on the subscription set: price changes for any token are kept
        quote = PriceQuote.from_price(token, message.get("price"), now=self._clock())
        return await self.save_price(quote)

    async def save_orderbook(self, token: str, fields: Dict[str, str], quote: PriceQuote) -> bool:
        """Write the snapshot fields and the price quote derived from them. False if any write failed."""
        key = f"{self.config.orderbook_key_prefix}:{token}"
        written = await self.store.upsert_fields(key, fields)
        expired = await self.store.set_expiry(key, self.config.orderbook_ttl_seconds)

        priced = await self.save_price(quote)
        return written and expired and priced

    async def save_price(self, quote: PriceQuote) -> bool:
        key = f"{self.config.price_key_prefix}:{quote.token}"
        written = await self.store.upsert_fields(key, quote.to_fields())
        expired = await self.store.set_expiry(key, self.config.price_ttl_seconds)
        return written and expired

    async def save_trade(self, token: str, trade: TradeRecord) -> bool:
        key = f"{self.config.trades_key_prefix}:{token}"
        return await self.store.push_capped(key, trade.to_json(), self.config.max_trades)

    async def health_check(self) -> Dict[str, Any]:
        """Degraded when more than 5% of frames fail to parse."""
        health_status = {
            "status": "healthy",
            "stats": self.get_stats()
        }

        received = self.stats["frames_received"]
        if received > 0:
            malformed_rate = self.stats["dropped"][DropReason.MALFORMED] / received
            if malformed_rate > 0.05:
                health_status["status"] = "degraded"
                health_status["warning"] = f"High malformed frame rate: {malformed_rate:.2%}"

        return health_status

    def get_stats(self) -> Dict[str, Any]:
        """Get translator statistics."""
        stats = {
            "frames_received": self.stats["frames_received"],
            "events_persisted": dict(self.stats["events_persisted"]),
            "dropped": dict(self.stats["dropped"]),
            "last_message_time": None
        }
        if self.stats["last_message_time"]:
            stats["last_message_time"] = self.stats["last_message_time"].isoformat()
        return stats
