"""Records written to Redis for each feed event."""

import json
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from enum import Enum
from typing import Any, Dict, List, Optional


ZERO = Decimal("0")
FOUR_PLACES = Decimal("0.0001")


class EventType(str, Enum):
    """Event types published on the market channel."""
    BOOK = "book"
    LAST_TRADE_PRICE = "last_trade_price"
    PRICE_CHANGE = "price_change"


def parse_decimal(value: Any) -> Decimal:
    """Parse a feed price; anything missing, unparseable or non-finite is 0."""
    if value is None or isinstance(value, bool):
        return ZERO
    try:
        result = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return ZERO
    return result if result.is_finite() else ZERO


def parse_float(value: Any) -> Optional[float]:
    """Parse a feed number as float, ``None`` when it is not a finite number."""
    if value is None or isinstance(value, bool):
        return None
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    return result if math.isfinite(result) else None


def format_fixed(value: Decimal) -> str:
    """Format to exactly four decimal places."""
    return format(value.quantize(FOUR_PLACES, rounding=ROUND_HALF_UP), 'f')


def format_plain(value: Decimal) -> str:
    """Format without exponent or trailing zeros ("0.40" -> "0.4", 0 -> "0")."""
    if value == ZERO:
        return "0"
    return format(value.normalize(), 'f')


def utc_timestamp(now: Optional[datetime] = None) -> str:
    """ISO-8601 UTC timestamp with millisecond precision and a ``Z`` suffix."""
    now = now or datetime.now(timezone.utc)
    return now.astimezone(timezone.utc).isoformat(timespec='milliseconds').replace('+00:00', 'Z')


def _levels(raw: Any, depth: int) -> List[Any]:
    if not isinstance(raw, list):
        return []
    return raw[:depth]


def _best_price(levels: List[Any]) -> Decimal:
    if not levels or not isinstance(levels[0], dict):
        return ZERO
    return parse_decimal(levels[0].get('price'))


@dataclass
class PriceQuote:
    """Latest bid/ask/mid/last for a token, stored at ``price:{token}``."""
    token: str
    bid: str
    ask: str
    mid: str
    last: str
    last_update: str

    @classmethod
    def from_price(cls, token: str, price: Any, now: Optional[datetime] = None) -> "PriceQuote":
        """Quote from a ``price_change`` event: every field is the event price."""
        value = "0" if price is None or price == "" else str(price)
        return cls(
            token=token,
            bid=value,
            ask=value,
            mid=value,
            last=value,
            last_update=utc_timestamp(now)
        )

    def to_fields(self) -> Dict[str, str]:
        return {
            "bid": self.bid,
            "ask": self.ask,
            "mid": self.mid,
            "last": self.last,
            "lastUpdate": self.last_update
        }


@dataclass
class OrderbookSnapshot:
    """
    Top of book for a token, stored at ``orderbook:{token}``.

    Levels are kept exactly as received (``{"price": ..., "size": ...}``)
    and truncated to ``depth`` per side. An empty side counts as a best
    price of 0, and mid/spread are computed from that 0.
    """
    token: str
    bids: List[Any] = field(default_factory=list)
    asks: List[Any] = field(default_factory=list)
    last_update: str = field(default_factory=utc_timestamp)

    @classmethod
    def from_event(
        cls,
        token: str,
        bids: Any,
        asks: Any,
        depth: int = 10,
        now: Optional[datetime] = None
    ) -> "OrderbookSnapshot":
        return cls(
            token=token,
            bids=_levels(bids, depth),
            asks=_levels(asks, depth),
            last_update=utc_timestamp(now)
        )

    @property
    def best_bid(self) -> Decimal:
        return _best_price(self.bids)

    @property
    def best_ask(self) -> Decimal:
        return _best_price(self.asks)

    @property
    def mid(self) -> Decimal:
        return (self.best_bid + self.best_ask) / 2

    @property
    def spread(self) -> Decimal:
        return self.best_ask - self.best_bid

    def to_fields(self) -> Dict[str, str]:
        return {
            "bids": json.dumps(self.bids, separators=(',', ':')),
            "asks": json.dumps(self.asks, separators=(',', ':')),
            "mid": format_fixed(self.mid),
            "spread": format_fixed(self.spread),
            "lastUpdate": self.last_update
        }

    def to_price_quote(self) -> PriceQuote:
        mid = format_fixed(self.mid)
        return PriceQuote(
            token=self.token,
            bid=format_plain(self.best_bid),
            ask=format_plain(self.best_ask),
            mid=mid,
            last=mid,
            last_update=self.last_update
        )


@dataclass
class TradeRecord:
    """One entry of the ``trades:{token}`` list."""
    side: Optional[str]
    price: Optional[float]
    size: Optional[float]
    timestamp: int  # receipt time, epoch millis

    @classmethod
    def from_event(cls, message: Dict[str, Any], now: Optional[datetime] = None) -> "TradeRecord":
        now = now or datetime.now(timezone.utc)
        return cls(
            side=message.get('side'),
            price=parse_float(message.get('price')),
            size=parse_float(message.get('size')),
            timestamp=int(now.timestamp() * 1000)
        )

    def to_json(self) -> str:
        return json.dumps({
            "side": self.side,
            "price": self.price,
            "size": self.size,
            "timestamp": self.timestamp
        }, separators=(',', ':'))
