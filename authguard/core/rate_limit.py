"""
Sliding-window rate limiting over Redis sorted sets.

Each hit is a member scored by its timestamp; members older than the
window are trimmed and the rest counted in one pipeline.
"""

import logging
import time
import uuid
from typing import Optional

import redis
from fastapi import HTTPException, Request, status

from authguard.core.config import RateLimitConfig, RateLimitTier
from authguard.db.redis_client import get_redis
from authguard.utils.ip_utils import get_client_ip

logger = logging.getLogger(__name__)


class RateLimiter:
    def __init__(self, name: str, tier: RateLimitTier, client: Optional[redis.Redis] = None):
        self.name = name
        self.tier = tier
        self._client = client

    @property
    def client(self) -> Optional[redis.Redis]:
        return self._client if self._client is not None else get_redis()

    def hit(self, identifier: str) -> bool:
        """Record a hit; False when the identifier is over the limit."""
        client = self.client
        if client is None:
            return True

        key = f"ratelimit:{self.name}:{identifier}"
        now = time.time()
        window_start = now - self.tier.window_seconds

        try:
            pipe = client.pipeline()
            pipe.zremrangebyscore(key, 0, window_start)
            pipe.zadd(key, {f"{now}:{uuid.uuid4().hex}": now})
            pipe.zcard(key)
            pipe.expire(key, self.tier.window_seconds)
            _, _, count, _ = pipe.execute()
        except redis.RedisError as e:
            # Counter store down: let the request through
            logger.warning("Rate limit check failed for %s: %s", key, e)
            return True

        return count <= self.tier.limit


def _rate_limits(request: Request) -> RateLimitConfig:
    return request.app.state.auth_config.rate_limits


def enforce(request: Request, tier_name: str, identifier: str) -> None:
    config = _rate_limits(request)
    if not config.enabled:
        return

    limiter = RateLimiter(tier_name, getattr(config, tier_name))
    if not limiter.hit(identifier):
        logger.info("Rate limit hit: tier=%s id=%s", tier_name, identifier)
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many requests. Please try again later.",
            headers={"Retry-After": str(limiter.tier.window_seconds)},
        )


def limit_by_ip(tier_name: str):
    """Dependency factory keyed by client IP."""

    async def dependency(request: Request):
        enforce(request, tier_name, get_client_ip(request))

    return dependency
