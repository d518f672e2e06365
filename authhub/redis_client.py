from __future__ import annotations

import logging

from redis import Redis
from redis.exceptions import RedisError

from .config import settings

logger = logging.getLogger(__name__)


def create_redis_client(url: str | None = None) -> Redis:
    return Redis.from_url(url or settings.redis_url, decode_responses=True)


def close_redis_client(client: Redis) -> None:
    try:
        client.close()
    except RedisError:
        logger.warning("Redis client did not close cleanly", exc_info=True)


def ping_redis(client: Redis | None) -> bool:
    if client is None:
        return False
    try:
        return bool(client.ping())
    except RedisError:
        return False
