"""Redis pub/sub notification sink for real-time dashboard subscribers."""

import json
from typing import Any, Dict

import redis.asyncio as redis
from redis.exceptions import RedisError

from core.logging import get_logger

logger = get_logger(__name__, component="redis")


class RedisNotificationSink:
    """Publishes ``{"event", "payload"}`` JSON on one channel.

    At-most-once and best-effort: a Redis failure is logged and the trading
    operation that triggered it carries on.
    """

    def __init__(self, redis_client: redis.Redis, channel: str = "gateway.notifications"):
        self.redis_client = redis_client
        self.channel = channel

    async def emit(self, event: str, payload: Dict[str, Any]) -> None:
        message = json.dumps({"event": event, "payload": payload}, default=str)
        try:
            receivers = await self.redis_client.publish(self.channel, message)
        except RedisError as e:
            logger.warning("Notification publish failed", notification_event=event, redis_channel=self.channel,
                           error=str(e))
            return
        logger.debug("Notification published", notification_event=event, redis_channel=self.channel,
                     receivers=receivers)
