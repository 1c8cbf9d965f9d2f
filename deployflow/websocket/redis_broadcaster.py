"""Redis pub/sub channel for realtime deployment events.

Deployment runs publish log and status events per project; realtime
gateways subscribe to a project's channel and forward the events to
connected clients.
"""
import json
from typing import Any, AsyncIterator, Dict, Optional

import redis.asyncio as aioredis

from deployflow.config import settings
from deployflow.utils.logging import get_logger

logger = get_logger(__name__)

CHANNEL_PREFIX = "deployflow:project"


def project_channel(project_id: int) -> str:
    """Redis channel carrying one project's events."""
    return f"{CHANNEL_PREFIX}:{project_id}"


class RedisBroadcaster:
    """Publishes and subscribes to per-project event channels."""

    def __init__(self, redis: Optional[aioredis.Redis] = None, url: Optional[str] = None) -> None:
        self._redis = redis
        self._url = url or settings.redis_url

    async def connect(self) -> aioredis.Redis:
        """Connect to Redis."""
        if self._redis is None:
            self._redis = aioredis.from_url(
                self._url,
                encoding="utf-8",
                decode_responses=True,
            )
            logger.info("Connected to Redis for broadcasting")
        return self._redis

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    async def publish(self, project_id: int, event: Dict[str, Any]) -> bool:
        """Publish an event on a project's channel.

        Best-effort: failures are logged and reported as False.
        """
        payload = json.dumps(event, default=str)
        try:
            redis = await self.connect()
            await redis.publish(project_channel(project_id), payload)
        except Exception as e:
            logger.error(f"Failed to publish to Redis: {e}", project_id=project_id)
            return False
        logger.debug(f"Published event to Redis: project={project_id}, type={event.get('type')}")
        return True

    async def subscribe(self, project_id: int) -> AsyncIterator[Dict[str, Any]]:
        """Yield events published on a project's channel until cancelled."""
        redis = await self.connect()
        pubsub = redis.pubsub()
        channel = project_channel(project_id)
        await pubsub.subscribe(channel)
        logger.info(f"Subscribed to Redis channel: {channel}")

        try:
            async for message in pubsub.listen():
                if message["type"] != "message":
                    continue
                try:
                    yield json.loads(message["data"])
                except json.JSONDecodeError as e:
                    logger.error(f"Error processing Redis message: {e}")
        finally:
            await pubsub.unsubscribe(channel)
            await pubsub.aclose()
