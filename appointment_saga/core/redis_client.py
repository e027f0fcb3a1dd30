"""Redis client configuration."""

from redis.asyncio import Redis

from appointment_saga.config import Settings


def create_redis_client(settings: Settings) -> Redis:
    """
    Create a Redis client for the primary store and message streams.

    The client is owned by the service context, one per process.

    Args:
        settings: Application settings

    Returns:
        Redis client instance
    """
    return Redis(
        host=settings.redis_host,
        port=settings.redis_port,
        username=settings.redis_username,
        password=settings.redis_password or None,
        decode_responses=True,
        socket_connect_timeout=5,
        socket_keepalive=True,
        health_check_interval=30,
    )
