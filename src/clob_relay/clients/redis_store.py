"""Redis store client for relayed market data."""

import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Set

import redis.asyncio as redis
from redis.asyncio.retry import Retry
from redis.backoff import NoBackoff
from redis.exceptions import RedisError

from ..config.settings import RedisConfig
from ..exceptions import StoreError
from ..metrics import RelayMetrics


logger = logging.getLogger(__name__)


class RedisStore:
    """
    Thin async wrapper over the four Redis primitives the relay needs.

    Every call is a single round trip with no client-side retry. Write
    failures are logged and counted, never raised; writes return False
    instead. Reads raise ``StoreError`` so the caller can keep its previous
    state.
    """

    def __init__(
        self,
        config: RedisConfig,
        metrics: Optional[RelayMetrics] = None,
        client: Optional[redis.Redis] = None
    ):
        self.config = config
        self.metrics = metrics or RelayMetrics()
        self.redis_client: Optional[redis.Redis] = client

        self.stats = {
            "writes": 0,
            "write_errors": 0,
            "reads": 0,
            "read_errors": 0,
            "last_write_time": None
        }

    async def initialize(self):
        """Create the Redis connection pool. No network I/O happens here."""
        if self.redis_client is not None:
            return

        self.redis_client = redis.from_url(
            self.config.url,
            password=self.config.token,
            socket_timeout=self.config.socket_timeout,
            socket_connect_timeout=self.config.socket_connect_timeout,
            health_check_interval=self.config.health_check_interval,
            retry=Retry(NoBackoff(), 0),
            decode_responses=True
        )
        logger.info("Redis client initialized")

    async def close(self):
        """Close Redis connection."""
        if self.redis_client:
            logger.info("Closing Redis connection")
            await self.redis_client.aclose()
            self.redis_client = None

    async def upsert_fields(self, key: str, fields: Mapping[str, str]) -> bool:
        """Merge string fields into the hash at ``key``."""
        return await self._write(
            "hset", key,
            lambda: self.redis_client.hset(key, mapping=dict(fields))
        )

    async def push_capped(self, key: str, value: str, max_len: int) -> bool:
        """Prepend ``value`` to the list at ``key`` and keep the newest ``max_len`` entries."""

        async def command():
            # LPUSH and LTRIM in one MULTI/EXEC so readers never see the list over the cap
            pipe = self.redis_client.pipeline(transaction=True)
            pipe.lpush(key, value)
            pipe.ltrim(key, 0, max_len - 1)
            await pipe.execute()

        return await self._write("push_capped", key, command)

    async def set_expiry(self, key: str, seconds: int) -> bool:
        """Set or refresh the TTL on ``key``."""
        return await self._write(
            "expire", key,
            lambda: self.redis_client.expire(key, seconds)
        )

    async def read_set_members(self, key: str) -> Set[str]:
        """Return all members of the set at ``key``."""
        if not self.redis_client:
            raise StoreError("Redis client not initialized")

        try:
            members = await self.redis_client.smembers(key)
        except (RedisError, OSError) as e:
            self.stats["read_errors"] += 1
            self.metrics.store_errors.labels(operation="smembers").inc()
            raise StoreError(f"Failed to read set {key}: {e}") from e

        self.stats["reads"] += 1
        return set(members or ())

    async def _write(self, operation: str, key: str, command: Callable[[], Awaitable[Any]]) -> bool:
        if not self.redis_client:
            logger.error("Redis client not initialized")
            self._record_write_error(operation)
            return False

        try:
            await command()
        except (RedisError, OSError) as e:
            logger.error(f"Redis {operation} failed for {key}: {e}")
            self._record_write_error(operation)
            return False

        self.stats["writes"] += 1
        self.stats["last_write_time"] = datetime.now()
        return True

    def _record_write_error(self, operation: str):
        self.stats["write_errors"] += 1
        self.metrics.store_errors.labels(operation=operation).inc()

    async def health_check(self) -> Dict[str, Any]:
        """Perform health check on Redis connection."""

        health_status = {
            "status": "healthy",
            "timestamp": datetime.now().isoformat(),
            "stats": self.get_stats()
        }

        if not self.redis_client:
            health_status["status"] = "unhealthy"
            health_status["error"] = "Redis client not initialized"
            return health_status

        try:
            if not await self.redis_client.ping():
                health_status["status"] = "unhealthy"
                health_status["error"] = "Redis ping failed"
                return health_status
        except (RedisError, OSError) as e:
            health_status["status"] = "unhealthy"
            health_status["error"] = str(e)
            return health_status

        total_writes = self.stats["writes"] + self.stats["write_errors"]
        if total_writes > 0:
            error_rate = self.stats["write_errors"] / total_writes
            if error_rate > 0.05:  # >5% error rate
                health_status["status"] = "degraded"
                health_status["warning"] = f"High error rate: {error_rate:.2%}"

        return health_status

    def get_stats(self) -> Dict[str, Any]:
        """Get Redis store statistics."""
        stats = self.stats.copy()
        if stats["last_write_time"]:
            stats["last_write_time"] = stats["last_write_time"].isoformat()
        return stats
