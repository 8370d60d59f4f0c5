"""
Redis pub/sub notifier.

Lets separate worker processes publish events that the web process
relays to connected clients.
"""

from typing import Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError
from pydantic import ValidationError

from printcraft.notify.base import Notifier, Subscription, JobEvent
from printcraft.utils.logging import notify_logger as logger

CHANNEL_PREFIX = "printcraft:"


class RedisSubscription(Subscription):

    def __init__(self, pubsub, channel: str):
        super().__init__(channel)
        self._pubsub = pubsub

    async def get(self, timeout: Optional[float] = None) -> Optional[JobEvent]:
        if self.closed:
            return None

        message = await self._pubsub.get_message(
            ignore_subscribe_messages=True,
            timeout=timeout
        )
        if message is None or message.get("type") != "message":
            return None

        try:
            return JobEvent.model_validate_json(message["data"])
        except ValidationError as e:
            logger.warning("Dropping malformed event", channel=self.channel, error=str(e))
            return None

    async def close(self):
        if self.closed:
            return
        self.closed = True
        await self._pubsub.unsubscribe(CHANNEL_PREFIX + self.channel)
        await self._pubsub.aclose()


class RedisNotifier(Notifier):

    def __init__(self, redis_url: str):
        # Upstash uses rediss:// (TLS), local Redis uses redis://
        self.redis = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=10,
            socket_connect_timeout=10,
            retry_on_timeout=True,
            health_check_interval=30,
        )

    async def publish(self, channel: str, event: JobEvent):
        await self.redis.publish(CHANNEL_PREFIX + channel, event.model_dump_json())

    async def subscribe(self, channel: str) -> Subscription:
        pubsub = self.redis.pubsub()
        await pubsub.subscribe(CHANNEL_PREFIX + channel)
        return RedisSubscription(pubsub, channel)

    async def ping(self) -> bool:
        try:
            return bool(await self.redis.ping())
        except RedisError as e:
            logger.error("Redis ping failed", error=str(e))
            return False

    async def close(self):
        await self.redis.aclose()
