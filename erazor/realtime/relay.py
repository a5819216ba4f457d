"""
Cross-Process Realtime Relay

Celery workers cannot reach the API's in-process hub, so they publish to
Redis pub/sub on `realtime:{identity}`. Every API instance runs one relay
that pattern-subscribes to `realtime:*` and forwards each message into its
local RealtimeHub. Pub/sub keeps the hub's semantics: no listener, no
delivery, nothing stored.
"""

import asyncio
from typing import Optional, Union

from pydantic import ValidationError as PydanticValidationError
from redis.exceptions import RedisError

from erazor.core.config import settings
from erazor.core.logging import get_logger
from erazor.core.metrics import record_realtime_event
from erazor.realtime.hub import RealtimeHub, UpdateEvent

logger = get_logger(__name__)


def _text(value: Union[bytes, str]) -> str:
    return value.decode() if isinstance(value, bytes) else value


class RedisRealtimePublisher:
    """Publisher used by workers. Same `publish` contract as RealtimeHub."""

    def __init__(self, redis_client, prefix: str = settings.REALTIME_CHANNEL_PREFIX):
        self.redis = redis_client
        self.prefix = prefix

    def channel(self, identity: str) -> str:
        return f"{self.prefix}:{identity}"

    async def publish(self, identity: str, event: UpdateEvent) -> int:
        receivers = await self.redis.publish(self.channel(identity), event.model_dump_json())
        record_realtime_event(receivers)
        return receivers


class RedisRealtimeRelay:
    """Forwards Redis pub/sub messages into the local hub."""

    def __init__(
        self,
        redis_client,
        hub: RealtimeHub,
        prefix: str = settings.REALTIME_CHANNEL_PREFIX,
        reconnect_delay: float = 1.0,
    ):
        self.redis = redis_client
        self.hub = hub
        self.prefix = prefix
        self.reconnect_delay = reconnect_delay
        self._task: Optional[asyncio.Task] = None

    async def handle_message(self, message: dict) -> int:
        """Forward one pub/sub message; returns local deliveries."""
        if message.get("type") != "pmessage":
            return 0

        channel = _text(message["channel"])
        identity = channel[len(self.prefix) + 1:]
        try:
            event = UpdateEvent.model_validate_json(message["data"])
        except PydanticValidationError as e:
            logger.warning("realtime_relay_bad_message", channel=channel, error=str(e))
            return 0
        return await self.hub.publish(identity, event)

    async def _run(self):
        while True:
            pubsub = self.redis.pubsub()
            try:
                await pubsub.psubscribe(f"{self.prefix}:*")
                logger.info("realtime_relay_subscribed", pattern=f"{self.prefix}:*")
                async for message in pubsub.listen():
                    await self.handle_message(message)
            except RedisError as e:
                logger.error("realtime_relay_disconnected", error=str(e))
                await asyncio.sleep(self.reconnect_delay)
            finally:
                await pubsub.aclose()

    def start(self):
        if self._task is None:
            self._task = asyncio.create_task(self._run())

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("realtime_relay_stopped")
