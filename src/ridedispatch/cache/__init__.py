from .coordination import CoordinationCache, InMemoryCoordinationCache
from .redis_cache import RedisCoordinationCache, create_redis_client

__all__ = [
    "CoordinationCache",
    "InMemoryCoordinationCache",
    "RedisCoordinationCache",
    "create_redis_client",
]
