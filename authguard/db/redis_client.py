# authguard/db/redis_client.py
import logging
from typing import Optional

import redis

from authguard.core.config import settings

logger = logging.getLogger(__name__)

_client: Optional[redis.Redis] = None
_connected = False


def get_redis() -> Optional[redis.Redis]:
    """Lazily connect; None when Redis is unreachable (rate limiting is then off)."""
    global _client, _connected

    if _connected:
        return _client

    _connected = True
    try:
        _client = redis.from_url(settings.REDIS_URL, decode_responses=True, socket_connect_timeout=1)
        _client.ping()
        logger.info("Redis connected")
    except redis.RedisError as e:
        logger.warning("Redis connection failed, rate limiting disabled: %s", e)
        _client = None

    return _client


def is_redis_available() -> bool:
    """Check if Redis is available"""
    client = get_redis()
    if not client:
        return False

    try:
        client.ping()
        return True
    except redis.RedisError:
        return False
