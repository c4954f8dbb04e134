"""
Redis caching for directory lookups (working hours, active flag).
Every failure degrades to a cache miss.
"""

import json
import logging
from typing import Any, Optional

import redis

from .config import CACHE_ENABLED
from .rate_limiter import get_redis_client

logger = logging.getLogger(__name__)


class Cache:
    """Redis cache wrapper with JSON serialization"""

    def __init__(self, enabled: bool = CACHE_ENABLED):
        self.enabled = enabled
        self.redis_client: Optional[redis.Redis] = None

    def _get_client(self) -> Optional[redis.Redis]:
        """Lazy load Redis client"""
        if not self.enabled:
            return None
        if self.redis_client is None:
            try:
                self.redis_client = get_redis_client()
            except redis.RedisError as e:
                logger.warning(f"⚠️ Redis cache unavailable: {e}")
                return None
        return self.redis_client

    def get(self, key: str) -> Optional[Any]:
        client = self._get_client()
        if not client:
            return None

        try:
            value = client.get(key)
        except redis.RedisError as e:
            logger.error(f"❌ Cache get error for {key}: {e}")
            return None

        if value is None:
            logger.debug(f"Cache MISS: {key}")
            return None
        logger.debug(f"Cache HIT: {key}")
        return json.loads(value)

    def set(self, key: str, value: Any, ttl: int = 300) -> bool:
        client = self._get_client()
        if not client:
            return False

        try:
            client.setex(key, ttl, json.dumps(value))
            return True
        except redis.RedisError as e:
            logger.error(f"❌ Cache set error for {key}: {e}")
            return False

    def delete(self, key: str) -> bool:
        client = self._get_client()
        if not client:
            return False

        try:
            client.delete(key)
            return True
        except redis.RedisError as e:
            logger.error(f"❌ Cache delete error for {key}: {e}")
            return False


def dentist_profile_key(dentist_code: str) -> str:
    return f"directory:dentist:{dentist_code}"


# Global cache instance
cache = Cache()
