"""
Redis connection pool shared by the API (rate limiting) and the bot (signup sessions).

Every key the service writes goes through ``redis_key`` so the portal can share
a Redis database with other applications.
"""

import redis.asyncio as redis

KEY_NAMESPACE = "eventportal"

_pool: redis.Redis | None = None


def redis_key(*parts: object) -> str:
    """Build a namespaced key: ``redis_key("ratelimit", "1.2.3.4")`` -> ``eventportal:ratelimit:1.2.3.4``."""
    return ":".join((KEY_NAMESPACE, *(str(p) for p in parts)))


async def init_redis(url: str, max_connections: int = 20) -> None:
    """Open the pool. Responses are decoded so callers always see ``str``."""
    global _pool  # noqa: PLW0603
    _pool = redis.from_url(  # type: ignore[no-untyped-call]
        url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=max_connections,
        health_check_interval=30,
    )


async def close_redis() -> None:
    global _pool  # noqa: PLW0603
    if _pool:
        await _pool.aclose()
        _pool = None


def get_redis() -> redis.Redis:
    """Raises RuntimeError when Redis is not configured for this process."""
    if _pool is None:
        msg = "Redis not initialized. Call init_redis() first."
        raise RuntimeError(msg)
    return _pool
