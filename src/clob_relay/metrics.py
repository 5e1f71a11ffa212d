"""Prometheus metrics for the relay service."""

import logging
from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, start_http_server

from .config.settings import MetricsConfig

logger = logging.getLogger(__name__)


class RelayMetrics:
    """
    Counters and gauges for the relay.

    Each instance owns its registry so several services (or tests) can live
    in one process without clashing on metric names.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()

        self.frames_received = Counter(
            'relay_frames_received_total',
            'Frames received from the feed',
            registry=self.registry
        )

        self.events_persisted = Counter(
            'relay_events_persisted_total',
            'Feed events written to Redis',
            ['event_type'],
            registry=self.registry
        )

        self.frames_dropped = Counter(
            'relay_frames_dropped_total',
            'Feed frames discarded without a write',
            ['reason'],
            registry=self.registry
        )

        self.store_errors = Counter(
            'relay_store_errors_total',
            'Failed Redis operations',
            ['operation'],
            registry=self.registry
        )

        self.reconnect_attempts = Counter(
            'relay_reconnect_attempts_total',
            'Feed reconnection attempts',
            registry=self.registry
        )

        self.connection_status = Gauge(
            'relay_connection_status',
            'Feed connection status (1=connected, 0=disconnected)',
            registry=self.registry
        )

        self.active_subscriptions = Gauge(
            'relay_active_subscriptions',
            'Tokens currently tracked as subscribed',
            registry=self.registry
        )

    def start_server(self, config: MetricsConfig):
        """Expose the registry over HTTP if enabled."""
        if not config.enable_prometheus:
            return

        start_http_server(config.prometheus_port, registry=self.registry)
        logger.info(f"Prometheus metrics server started on port {config.prometheus_port}")
