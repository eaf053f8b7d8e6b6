import json
import logging
from functools import lru_cache
from typing import Any, Optional, Protocol

import redis

from app.core.settings import config_settings

logger = logging.getLogger(__name__)


class Cache(Protocol):
    """The narrow cache surface the services depend on."""

    def get(self, key: str) -> Optional[Any]: ...

    def set(self, key: str, value: Any, ttl_seconds: int) -> None: ...

    def delete(self, key: str) -> None: ...


class RedisCache:
    """Cache backed by Redis. Values are stored as JSON strings."""

    def __init__(self, client: redis.Redis):
        self.client = client

    def get(self, key: str) -> Optional[Any]:
        raw = self.client.get(key)
        if raw is None:
            return None
        return json.loads(raw)

    def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        self.client.setex(key, ttl_seconds, json.dumps(value, default=str))

    def delete(self, key: str) -> None:
        self.client.delete(key)


@lru_cache(maxsize=1)
def _redis_client() -> redis.Redis:
    logger.info("Connecting to Redis at %s", config_settings.REDIS_URL)
    return redis.from_url(config_settings.REDIS_URL, decode_responses=True)


def get_cache() -> Cache:
    """FastAPI dependency returning the shared Redis-backed cache."""
    return RedisCache(_redis_client())


def assignment_cache_key(experiment_id: str, user_id: str) -> str:
    return f"assignment:{experiment_id}:{user_id}"


def experiment_cache_key(experiment_id: str) -> str:
    return f"experiment:{experiment_id}"
