"""Clients for external systems."""

from .redis_store import RedisStore

__all__ = ["RedisStore"]
