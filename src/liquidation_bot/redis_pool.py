"""
Redis Connection Pool Manager.

Single source of truth for the Redis connection backing the durable store.
One shared pool per process: the HTTP app opens it in its lifespan, the CLI
opens it around a run.

Redis is optional. Without ``REDIS_URL`` the pool stays None and callers fall
back to in-memory operation.
"""
import logging
import os

import redis.asyncio as aioredis

logger = logging.getLogger("redis")

# Singleton instance - starts as None
global_redis_pool: aioredis.Redis | None = None


async def init_redis_pool(redis_url: str | None = None) -> aioredis.Redis | None:
    """Open the shared pool.

    Returns None (and logs) when no URL is configured or Redis does not answer
    a ping: the bot then degrades to in-memory tracking instead of crashing.
    """
    global global_redis_pool
    redis_url = redis_url or os.environ.get("REDIS_URL")
    if not redis_url:
        logger.info("No REDIS_URL configured, durable store disabled.")
        return None

    logger.info("Connecting to Redis at %s...", redis_url)

    # decode_responses=True means we get strings back, not bytes
    pool = aioredis.from_url(
        redis_url,
        decode_responses=True,
        max_connections=20,
        socket_timeout=5.0,
    )

    try:
        await pool.ping()
    except Exception as exc:
        logger.critical("Redis connection failed, continuing in-memory only: %s", exc)
        await pool.aclose()
        return None

    global_redis_pool = pool
    logger.info("Redis pool active.")
    return global_redis_pool


async def close_redis_pool() -> None:
    global global_redis_pool
    if global_redis_pool is not None:
        await global_redis_pool.aclose()
        global_redis_pool = None
        logger.info("Redis pool closed.")


def get_redis() -> aioredis.Redis | None:
    """Return the shared pool, or None when the durable store is disabled."""
    return global_redis_pool
