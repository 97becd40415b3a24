"""Rate limiting using Redis.

Session creation and ad generation are the two expensive entry points;
each gets a sliding-window limit per user (or per IP for anonymous
callers).  Redis failures fail open.
"""

import logging
import time

from fastapi import HTTPException, Request, status

from app.auth.jwt import decode_token
from app.config import settings
from app.utils.cache import get_redis

logger = logging.getLogger(__name__)


class RateLimiter:
    """Sliding-window counter in a Redis sorted set."""

    @staticmethod
    async def hit(
        key: str,
        limit: int = 10,
        window: int = 60,
    ) -> tuple[bool, int, float]:
        """Record one request under `key`.

        Returns:
            (allowed, remaining, reset_time)
        """
        current_time = time.time()
        window_start = current_time - window
        redis_key = f"ratelimit:{key}"

        try:
            redis_client = await get_redis()
            # Remove old entries outside the window
            await redis_client.zremrangebyscore(redis_key, 0, window_start)
            count = await redis_client.zcard(redis_key)

            if count >= limit:
                oldest = await redis_client.zrange(redis_key, 0, 0, withscores=True)
                reset_time = oldest[0][1] + window if oldest else current_time + window
                return False, 0, reset_time

            await redis_client.zadd(redis_key, {str(current_time): current_time})
            await redis_client.expire(redis_key, window)
            return True, limit - count - 1, current_time + window

        except Exception as e:
            # If Redis fails, allow request (fail open)
            logger.error(f"Rate limit check failed: {e}")
            return True, limit, current_time + window

    @classmethod
    async def check(cls, key: str, limit: int = 10, window: int = 60) -> bool:
        allowed, _, _ = await cls.hit(key, limit, window)
        return allowed


def rate_limit_key(request: Request) -> str:
    """Get rate limit key (user ID or IP address)."""
    auth_header = request.headers.get("authorization", "")
    if auth_header.startswith("Bearer "):
        user_id = decode_token(auth_header[7:]).get("sub")
        if user_id:
            return f"user:{user_id}"

    # Check for X-Forwarded-For (load balancer)
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        ip = forwarded.split(",")[0].strip()
    else:
        ip = request.client.host if request.client else "unknown"
    return f"ip:{ip}"


def rate_limited(scope: str, limit: int, window: int):
    """Dependency factory: reject with 429 once `limit` requests per `window` are used.

    Usage:
        @router.post("/session", dependencies=[Depends(rate_limited("session", 20, 300))])
    """
    async def _check(request: Request) -> None:
        if not settings.rate_limit_enabled:
            return
        key = f"{scope}:{rate_limit_key(request)}"
        allowed, _, reset_time = await RateLimiter.hit(key, limit, window)
        if not allowed:
            retry_after = max(int(reset_time - time.time()), 1)
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail=f"Rate limit exceeded. Try again in {retry_after} seconds.",
                headers={
                    "X-RateLimit-Limit": str(limit),
                    "X-RateLimit-Remaining": "0",
                    "Retry-After": str(retry_after),
                },
            )

    return _check
