"""
Redis caching for tenant-scoped read views (booking lists, business summary).
Writes invalidate; nothing is ever locked through the cache.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Optional

import redis

logger = logging.getLogger(__name__)


def business_key(tenant_id: int) -> str:
    return f"business:{tenant_id}"


def bookings_key(tenant_id: int, suffix: str) -> str:
    return f"bookings:{tenant_id}:{suffix}"


class CacheError(Exception):
    """Raised by ``invalidate_tenant`` when Redis rejects the deletes."""


class Cache:
    """Redis cache wrapper with JSON serialization.

    Without a Redis URL every read misses and every write is dropped.
    """

    def __init__(self, client: Optional[redis.Redis] = None, default_ttl: int = 300):
        self.client = client
        self.default_ttl = default_ttl

    @classmethod
    def from_url(cls, url: Optional[str], default_ttl: int = 300) -> "Cache":
        if not url:
            logger.info("REDIS_URL not set; caching disabled")
            return cls(None, default_ttl)
        return cls(redis.Redis.from_url(url, socket_timeout=2, socket_connect_timeout=2), default_ttl)

    @property
    def enabled(self) -> bool:
        return self.client is not None

    def get(self, key: str) -> Optional[Any]:
        if not self.client:
            return None
        try:
            value = self.client.get(key)
        except redis.RedisError as e:
            logger.error("Cache get error for %s: %s", key, e)
            return None
        if value is None:
            logger.debug("Cache MISS: %s", key)
            return None
        logger.debug("Cache HIT: %s", key)
        try:
            return json.loads(value)
        except ValueError:
            logger.warning("Discarding undecodable cache entry %s", key)
            return None

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        if not self.client:
            return False
        try:
            self.client.setex(key, ttl or self.default_ttl, json.dumps(value))
        except (redis.RedisError, TypeError, ValueError) as e:
            logger.error("Cache set error for %s: %s", key, e)
            return False
        logger.debug("Cache SET: %s", key)
        return True

    def delete(self, key: str) -> bool:
        if not self.client:
            return False
        try:
            self.client.delete(key)
        except redis.RedisError as e:
            logger.error("Cache delete error for %s: %s", key, e)
            return False
        return True

    def delete_pattern(self, pattern: str) -> int:
        """Delete all keys matching pattern (e.g. 'bookings:12:*')."""
        if not self.client:
            return 0
        try:
            keys = list(self.client.scan_iter(match=pattern, count=500))
            deleted = self.client.delete(*keys) if keys else 0
        except redis.RedisError as e:
            logger.error("Cache delete pattern error for %s: %s", pattern, e)
            return 0
        logger.debug("Cache DELETE pattern: %s (%s keys)", pattern, deleted)
        return deleted

    def invalidate_tenant(self, tenant_id: int) -> int:
        """Drop the business summary and every cached booking list for a tenant.

        Unlike the other helpers this raises CacheError, so the caller can
        count the failure.
        """
        if not self.client:
            return 0
        try:
            self.client.delete(business_key(tenant_id))
            keys = list(self.client.scan_iter(match=bookings_key(tenant_id, "*"), count=500))
            deleted = self.client.delete(*keys) if keys else 0
        except redis.RedisError as e:
            raise CacheError(f"Failed to invalidate cache for business {tenant_id}: {e}") from e
        logger.debug("Invalidated %s booking list keys for business %s", deleted, tenant_id)
        return deleted
