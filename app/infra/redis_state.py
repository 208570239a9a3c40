from __future__ import annotations

import os

from redis import Redis
from redis.exceptions import RedisError

REDIS_URL = os.getenv("REDIS_URL", "redis://redis:6379/0")


def build_redis(url: str = REDIS_URL) -> Redis:
    return Redis.from_url(url, decode_responses=True)


def check_redis_ready(client: Redis) -> bool:
    try:
        return bool(client.ping())
    except RedisError:
        return False
