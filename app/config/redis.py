"""Redis connectivity (Celery broker host), used by the detailed health check"""
import redis.asyncio as redis

from app.config.settings import get_settings

settings = get_settings()

HEALTH_CHECK_TIMEOUT_SECONDS = 2


async def ping_broker() -> bool:
    """Round-trip PING against the broker's Redis; raises RedisError/OSError when unreachable"""
    client = redis.Redis.from_url(
        settings.CELERY_BROKER_URL,
        socket_connect_timeout=HEALTH_CHECK_TIMEOUT_SECONDS,
        socket_timeout=HEALTH_CHECK_TIMEOUT_SECONDS,
    )
    try:
        return bool(await client.ping())
    finally:
        await client.aclose()
