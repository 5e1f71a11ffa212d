"""Keep the active subscription set in sync with the Redis control set."""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Set

from .clients.redis_store import RedisStore
from .config.settings import CacheConfig
from .connection import ConnectionManager
from .exceptions import StoreError
from .metrics import RelayMetrics


logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    """Tokens added to and removed from the active set in one pass."""
    added: Set[str] = field(default_factory=set)
    removed: Set[str] = field(default_factory=set)

    @property
    def changed(self) -> bool:
        return bool(self.added or self.removed)


class SubscriptionReconciler:
    """
    Periodically diffs the desired token set against the active one.

    New tokens are added and subscribed on the feed. Removed tokens are only
    dropped from the active set; the feed is never told to unsubscribe, so
    late frames for them are filtered by the translator.
    """

    def __init__(
        self,
        store: RedisStore,
        connection: ConnectionManager,
        config: CacheConfig,
        metrics: Optional[RelayMetrics] = None
    ):
        self.store = store
        self.connection = connection
        self.config = config
        self.metrics = metrics or RelayMetrics()
        self._running = False

        self.stats = {
            "reconcile_runs": 0,
            "reconcile_errors": 0,
            "tokens_added": 0,
            "tokens_removed": 0
        }

    @property
    def active(self) -> Set[str]:
        # Same set object the connection resubscribes from and the translator filters on
        return self.connection.subscriptions

    async def load(self) -> int:
        """Initial load of the control set. Subscribing happens when the socket opens."""
        try:
            desired = await self._read_desired()
        except StoreError as e:
            logger.error(f"Failed to load subscriptions: {e}")
            return 0

        self.active.clear()
        self.active.update(desired)
        self.metrics.active_subscriptions.set(len(self.active))
        logger.info(f"📋 Loaded {len(self.active)} subscriptions from Redis")
        return len(self.active)

    async def _read_desired(self) -> Set[str]:
        members = await self.store.read_set_members(self.config.subscriptions_key)
        # Empty members are not tokens
        return {token for token in members if token}

    async def reconcile(self) -> ReconcileResult:
        """Apply one diff pass. Running it twice on an unchanged set does nothing."""
        result = ReconcileResult()
        self.stats["reconcile_runs"] += 1

        try:
            desired = await self._read_desired()
        except StoreError as e:
            self.stats["reconcile_errors"] += 1
            logger.error(f"Failed to check subscriptions: {e}")
            return result

        for token in sorted(desired - self.active):
            self.active.add(token)
            result.added.add(token)
            await self.connection.subscribe(token)

        for token in self.active - desired:
            self.active.discard(token)
            result.removed.add(token)

        if result.changed:
            self.stats["tokens_added"] += len(result.added)
            self.stats["tokens_removed"] += len(result.removed)
            logger.info(
                f"Subscriptions reconciled: +{len(result.added)} -{len(result.removed)} "
                f"({len(self.active)} active)"
            )

        self.metrics.active_subscriptions.set(len(self.active))
        return result

    async def run(self):
        """Reconcile every ``reconcile_interval_seconds`` until stopped."""
        self._running = True
        logger.info(
            f"Starting subscription reconciliation every {self.config.reconcile_interval_seconds}s"
        )

        while self._running:
            await asyncio.sleep(self.config.reconcile_interval_seconds)
            if not self._running:
                break
            try:
                await self.reconcile()
            except Exception as e:
                self.stats["reconcile_errors"] += 1
                logger.error(f"Subscription reconciliation error: {e}", exc_info=True)

        logger.info("Subscription reconciliation stopped")

    def stop(self):
        self._running = False

    def get_stats(self) -> Dict[str, Any]:
        stats = self.stats.copy()
        stats["active"] = len(self.active)
        return stats
