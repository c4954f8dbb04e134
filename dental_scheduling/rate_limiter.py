"""
Redis-backed fixed-window rate limiting for public booking endpoints.
Fails open: a redis outage must never block patients from booking.
"""

import logging
import os
import time
from typing import Optional

import redis
from fastapi import HTTPException, Request

from .config import RATE_LIMIT_ENABLED

logger = logging.getLogger(__name__)

redis_client: Optional[redis.Redis] = None


def get_redis_client() -> redis.Redis:
    """
    Get or create the shared Redis client.
    REDIS_URL is preferred; individual REDIS_* settings are the fallback.
    """
    global redis_client

    if redis_client is None:
        redis_url = os.getenv("REDIS_URL")
        if redis_url:
            client = redis.from_url(
                redis_url,
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                retry_on_timeout=True,
                health_check_interval=30,
            )
        else:
            client = redis.Redis(
                host=os.getenv("REDIS_HOST", "localhost"),
                port=int(os.getenv("REDIS_PORT", "6379")),
                password=os.getenv("REDIS_PASSWORD"),
                db=int(os.getenv("REDIS_DB", "0")),
                ssl=os.getenv("REDIS_SSL", "false").lower() == "true",
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                retry_on_timeout=True,
                health_check_interval=30,
            )

        try:
            client.ping()
        except redis.RedisError as e:
            logger.error(f"❌ Failed to connect to Redis: {e}")
            raise
        logger.info("Redis connected successfully")
        redis_client = client

    return redis_client


def check_rate_limit(client: redis.Redis, key: str, limit: int, window_seconds: int) -> tuple[bool, int, int]:
    """
    Count one request against key in the current window.

    Returns:
        Tuple of (is_allowed, current_count, ttl_seconds)
    """
    window = int(time.time()) // window_seconds
    window_key = f"{key}:{window}"

    pipe = client.pipeline()
    pipe.incr(window_key)
    pipe.expire(window_key, window_seconds)
    count, _ = pipe.execute()

    ttl = window_seconds - int(time.time()) % window_seconds
    return count <= limit, count, ttl


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def create_rate_limiter(limit: int, window_seconds: int, key_prefix: str = "rate_limit"):
    """
    Create a per-IP rate limiter dependency

    Example usage:
        rate_limit_bookings = create_rate_limiter(limit=30, window_seconds=60, key_prefix="booking")

        @router.post("/appointments")
        async def create_appointment(data: AppointmentCreate, _: None = Depends(rate_limit_bookings)):
            ...
    """

    async def rate_limiter(request: Request):
        if not RATE_LIMIT_ENABLED:
            return

        key = f"{key_prefix}:{client_ip(request)}"
        try:
            client = get_redis_client()
            is_allowed, current_count, ttl = check_rate_limit(client, key, limit, window_seconds)
        except redis.RedisError as e:
            logger.warning(f"⚠️ Rate limiting unavailable, allowing request ({key}): {e}")
            return

        if not is_allowed:
            logger.warning(f"🚫 Rate limit EXCEEDED for {key} - {current_count}/{limit} requests used")
            raise HTTPException(
                status_code=429,
                detail={
                    "message": f"Rate limit exceeded. Maximum {limit} requests per {window_seconds} seconds.",
                    "retry_after": ttl,
                },
                headers={"Retry-After": str(ttl)},
            )

    return rate_limiter
