"""Redis connection pool for community event publishing."""

import redis.asyncio as redis

_pool: redis.Redis | None = None


async def init_redis(url: str) -> None:
    """Initialize the Redis connection pool."""
    global _pool  # noqa: PLW0603
    _pool = redis.from_url(  # type: ignore[no-untyped-call]
        url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=20,
    )


async def close_redis() -> None:
    """Close the Redis connection pool."""
    global _pool  # noqa: PLW0603
    if _pool:
        await _pool.aclose()
        _pool = None


async def get_redis_dep() -> redis.Redis | None:
    """Redis client as a FastAPI dependency.

    None when the pool was never initialised; publishers treat that as
    "notifications off" and the readiness probe reports it as disabled.
    """
    return _pool
