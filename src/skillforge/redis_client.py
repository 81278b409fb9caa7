"""Redis connection pool."""

import redis.asyncio as redis

_pool: redis.Redis | None = None


async def init_redis(url: str) -> None:
    """Initialize the Redis connection pool."""
    global _pool  # noqa: PLW0603
    _pool = redis.from_url(  # type: ignore[no-untyped-call]
        url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=50,
    )


async def close_redis() -> None:
    """Close the Redis connection pool."""
    global _pool  # noqa: PLW0603
    if _pool:
        await _pool.aclose()
        _pool = None


def get_redis() -> redis.Redis | None:
    """Get the Redis client, or None when Redis is not configured.

    Redis only carries best-effort progression broadcasts, so callers must
    tolerate a missing client.
    """
    return _pool


async def redis_status() -> str:
    """Readiness value for Redis: "disabled", "ok" or the connection error."""
    if _pool is None:
        return "disabled"
    try:
        await _pool.ping()
    except redis.RedisError as exc:
        return f"error: {exc}"
    return "ok"
