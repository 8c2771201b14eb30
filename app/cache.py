"""
Redis cache utilities
Used to de-duplicate webhook deliveries. Every operation fails open: with
Redis down or unconfigured, callers behave as if the key were absent.
"""
import json
import logging
from typing import Any, Optional

import redis

from .config import REDIS_URL

logger = logging.getLogger(__name__)

redis_client: Optional[redis.Redis] = None


def get_redis_client() -> Optional[redis.Redis]:
    """Get or create the Redis client, None when REDIS_URL is not configured"""
    global redis_client

    if redis_client is None:
        if not REDIS_URL:
            return None

        logger.info("🔄 Initializing Redis connection for cache...")
        client = redis.from_url(
            REDIS_URL,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
            retry_on_timeout=True,
        )
        client.ping()
        redis_client = client
        logger.info("✅ Redis cache connected")

    return redis_client


class Cache:
    """Redis set-if-absent keys with TTL, failing open"""

    def __init__(self):
        self.redis_client = None

    def _get_client(self):
        """Lazy load Redis client"""
        if self.redis_client is None:
            try:
                self.redis_client = get_redis_client()
            except Exception as e:
                logger.warning(f"⚠️ Redis cache unavailable: {e}")
                return None
        return self.redis_client

    def add(self, key: str, value: Any, ttl: int = 3600) -> bool:
        """
        Set only if the key does not exist yet (SET NX)

        Returns True when this caller stored the key, or when the cache is
        unavailable. Two concurrent deliveries cannot both claim the same key.
        """
        client = self._get_client()
        if not client:
            return True

        try:
            stored = client.set(key, json.dumps(value), ex=ttl, nx=True)
            logger.debug(f"{'✅' if stored else '⚠️'} Cache ADD: {key} (stored={bool(stored)})")
            return bool(stored)
        except Exception as e:
            logger.error(f"❌ Cache add error for {key}: {e}")
            return True

    def delete(self, key: str) -> bool:
        """Delete value from cache"""
        client = self._get_client()
        if not client:
            return False

        try:
            client.delete(key)
            logger.debug(f"✅ Cache DELETE: {key}")
            return True
        except Exception as e:
            logger.error(f"❌ Cache delete error for {key}: {e}")
            return False


# Global cache instance
cache = Cache()
