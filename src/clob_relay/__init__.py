"""
CLOB Relay - Real-time Polymarket market data relay.

This package streams order book, trade and price events from the Polymarket
CLOB WebSocket into Redis, keeping the set of watched tokens in sync with the
``ws-subscriptions`` control set.
"""

__version__ = "1.0.0"
__author__ = "CLOB Relay Team"
