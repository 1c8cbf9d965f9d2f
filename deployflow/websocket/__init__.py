"""Realtime event channel."""
from deployflow.websocket.redis_broadcaster import RedisBroadcaster, project_channel

__all__ = ["RedisBroadcaster", "project_channel"]
