import asyncio
import logging

import redis.asyncio as redis

from config.conf import settings

logger = logging.getLogger(__name__)


def create_redis_client(url: str | None = None) -> redis.Redis:
    # Example: redis://:your_strong_password@redis:6379/0
    pool = redis.ConnectionPool.from_url(
        url or settings.resolved_redis_url(),
        decode_responses=True,
        socket_connect_timeout=5,
        socket_timeout=5,
        retry_on_timeout=True,
        health_check_interval=30,
    )
    return redis.Redis(connection_pool=pool)


async def check_redis_connection(client: redis.Redis) -> None:
    """Ping Redis and re-raise on failure so the app fails fast instead of silently continuing."""
    try:
        if await client.ping():
            logger.info("Connected to Redis successfully.")
    except redis.RedisError:
        logger.exception("Failed to connect to Redis")
        raise


if __name__ == "__main__":
    asyncio.run(check_redis_connection(create_redis_client()))
