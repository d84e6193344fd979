"""Redis connection pool and the real-time event channels.

Redis backs nonce replay checks, rate-limit buckets and the pub/sub fan-out
that pushes notifications to connected clients. Subscribers listen on
``user:<user_id>`` for their own events and admins also on ``admins``.
"""

import json
import uuid
from collections.abc import AsyncGenerator

import redis.asyncio as aioredis

from visaflow.config import settings

redis_pool = aioredis.ConnectionPool.from_url(settings.redis_url)


async def get_redis() -> AsyncGenerator[aioredis.Redis, None]:
    client = aioredis.Redis(connection_pool=redis_pool)
    try:
        yield client
    finally:
        await client.aclose()


def user_channel(user_id: uuid.UUID) -> str:
    return f"{settings.realtime_channel_prefix}{user_id}"


def admin_channel() -> str:
    return settings.realtime_admin_channel


async def publish_event(redis: aioredis.Redis, channel: str, event: str, data: dict) -> int:
    """Publish ``{"event", "data"}`` as JSON. Returns the number of subscribers reached."""
    message = json.dumps({"event": event, "data": data}, default=str)
    return await redis.publish(channel, message)
