"""
Redis fixed-window rate limiting for public endpoints

Fails open: when Redis is not configured or unreachable, requests are allowed and the
failure is logged.
"""

import logging
import time
from typing import Optional

import redis
from fastapi import Depends, HTTPException, Request

from .config import Settings, get_settings

logger = logging.getLogger(__name__)


def create_redis_client(redis_url: str) -> redis.Redis:
    """Build the rate limiter's Redis client; the app lifespan keeps it on app.state"""
    masked_url = redis_url.split("@")[-1] if "@" in redis_url else redis_url
    logger.info(f"📡 Connecting rate limiter to Redis at {masked_url}")
    return redis.from_url(
        redis_url,
        decode_responses=True,
        socket_connect_timeout=5,
        socket_timeout=5,
        retry_on_timeout=True,
        health_check_interval=30,
        max_connections=20,
    )


def get_rate_limit_redis(request: Request) -> Optional[redis.Redis]:
    return getattr(request.app.state, "rate_limit_redis", None)


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def check_rate_limit(
    key: str, limit: int, window_seconds: int, client: redis.Redis
) -> tuple[bool, int, int]:
    """
    Count a request in the current window.

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
    return int(count) <= limit, int(count), ttl


def create_rate_limiter(limit: Optional[int] = None, window_seconds: int = 60, key_prefix: str = "rate_limit"):
    """
    Create a per-IP rate limiter dependency; limit defaults to PUBLIC_RATE_LIMIT

    Example usage:
        @router.post("/appointments", dependencies=[Depends(create_rate_limiter(key_prefix="booking"))])
    """

    async def rate_limiter(
        request: Request,
        settings: Settings = Depends(get_settings),
        client: Optional[redis.Redis] = Depends(get_rate_limit_redis),
    ):
        if not settings.rate_limit_enabled:
            return
        if client is None:
            logger.debug("Rate limiting enabled but no Redis client available, allowing request")
            return

        max_requests = limit or settings.public_rate_limit
        key = f"{key_prefix}:{client_ip(request)}"

        try:
            is_allowed, current_count, ttl = check_rate_limit(
                key, max_requests, window_seconds, client
            )
        except redis.RedisError as e:
            logger.warning(f"⚠️ Rate limiter unavailable, allowing request (fail-open): {e}")
            return

        if not is_allowed:
            logger.warning(f"🚫 Rate limit exceeded for {key} - {current_count}/{max_requests}")
            raise HTTPException(
                status_code=429,
                detail=f"Rate limit exceeded. Maximum {max_requests} requests per {window_seconds} seconds.",
                headers={"Retry-After": str(ttl)},
            )

    return rate_limiter
