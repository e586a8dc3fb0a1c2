"""
Rate Limiting
=============

Redis-based per-API-key rate limiting using fixed one-minute windows.
"""

import logging
import time
from typing import Optional

from app.config import settings
from app.core.errors import AppException, ErrorCodes
from app.services.cache import CacheKeys, get_redis

logger = logging.getLogger(__name__)


class RateLimiter:
    """
    Fixed window rate limiter using Redis.

    Limits are applied per API key:
        - Public keys: RATE_LIMIT_PUBLIC_PER_MINUTE (default 100/minute)
        - Secret keys: RATE_LIMIT_SECRET_PER_MINUTE (default 1000/minute)

    Fails open when Redis is unavailable.
    """

    WINDOW_SECONDS = 60

    @staticmethod
    def limit_for(key_type: str) -> int:
        if key_type == "secret":
            return settings.RATE_LIMIT_SECRET_PER_MINUTE
        return settings.RATE_LIMIT_PUBLIC_PER_MINUTE

    @staticmethod
    async def check_rate_limit(
        identifier: str,
        key_type: str,
        max_requests: Optional[int] = None,
        window_seconds: Optional[int] = None,
    ) -> dict:
        """
        Count a request against the identifier's current window.

        Args:
            identifier: Stable id of the API key (app id + key type)
            key_type: "public" or "secret"
            max_requests: Override max requests (optional)
            window_seconds: Override window size (optional)

        Returns:
            Dict with 'allowed', 'limit', 'remaining', 'reset_in' keys
        """
        max_req = max_requests or RateLimiter.limit_for(key_type)
        window = window_seconds or RateLimiter.WINDOW_SECONDS

        now = int(time.time())
        window_start = now - (now % window)
        reset_in = window_start + window - now
        key = CacheKeys.rate_limit(identifier, window_start)

        try:
            client = await get_redis()

            count = await client.incr(key)
            if count == 1:
                await client.expire(key, window)

            return {
                "allowed": count <= max_req,
                "limit": max_req,
                "remaining": max(max_req - count, 0),
                "reset_in": reset_in,
            }

        except Exception as e:
            logger.warning("Rate limit check error, allowing request: %s", e)
            return {
                "allowed": True,
                "limit": max_req,
                "remaining": max_req,
                "reset_in": reset_in,
            }


async def enforce_rate_limit(identifier: str, key_type: str) -> None:
    """
    Raise 429 when the key is over its limit.

    Usage:
        await enforce_rate_limit(f"{app.id}:{key_type}", key_type)
    """
    result = await RateLimiter.check_rate_limit(identifier, key_type)

    if not result["allowed"]:
        logger.warning("Rate limit exceeded for key %s (%s)", identifier, key_type)
        raise AppException(
            status_code=429,
            code=ErrorCodes.RATE_LIMIT_EXCEEDED,
            message=f"Rate limit exceeded. Try again in {result['reset_in']} seconds.",
            headers={
                "X-RateLimit-Limit": str(result["limit"]),
                "X-RateLimit-Remaining": str(result["remaining"]),
                "X-RateLimit-Reset": str(result["reset_in"]),
                "Retry-After": str(result["reset_in"]),
            },
        )
