"""Redis async connection pool and error translation for Redis adapters."""

import functools

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from ridedispatch.config import settings
from ridedispatch.domain.errors import DependencyFailure

_pool = aioredis.ConnectionPool.from_url(
    settings.redis_url, decode_responses=True
)


async def get_redis() -> aioredis.Redis:
    """Return a Redis client backed by the shared connection pool."""
    return aioredis.Redis(connection_pool=_pool)


def redis_call(component: str):
    """Decorate an adapter coroutine so Redis outages surface as ``DependencyFailure``."""

    def decorator(fn):
        @functools.wraps(fn)
        async def wrapper(*args, **kwargs):
            try:
                return await fn(*args, **kwargs)
            except RedisError as exc:
                raise DependencyFailure(
                    f"{component} unavailable: {exc.__class__.__name__}"
                ) from exc

        return wrapper

    return decorator
