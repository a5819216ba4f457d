"""
Realtime Fanout Hub

In-process publish/subscribe keyed by identity. Each subscriber gets its own
bounded asyncio.Queue; publishing with nobody listening is a silent no-op and
nothing is buffered for late subscribers. SSE streams and WebSocket rooms are
both thin views over `subscribe`.
"""

import asyncio
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Set

from pydantic import BaseModel, Field

from erazor.core.config import settings
from erazor.core.logging import get_logger
from erazor.core.metrics import record_realtime_event

logger = get_logger(__name__)


class UpdateEvent(BaseModel):
    """A message pushed to one identity's channel."""
    event: str = "image-status-update"
    data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def to_sse(self) -> str:
        return f"event: {self.event}\ndata: {self.model_dump_json()}\n\n"


class Subscription:
    """Async iterator over one identity's events.

    Usage:
        subscription = hub.subscribe("user_123")
        try:
            async for event in subscription:
                ...
        finally:
            subscription.cancel()
    """

    def __init__(self, hub: "RealtimeHub", identity: str, maxsize: int):
        self.hub = hub
        self.identity = identity
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.cancelled = False

    def __aiter__(self):
        return self

    async def __anext__(self) -> UpdateEvent:
        if self.cancelled:
            raise StopAsyncIteration
        event = await self.queue.get()
        if event is None:
            raise StopAsyncIteration
        return event

    async def get(self, timeout: Optional[float] = None) -> Optional[UpdateEvent]:
        """Next event, or None on timeout or cancellation."""
        if self.cancelled:
            return None
        try:
            return await asyncio.wait_for(self.queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    def deliver(self, event: UpdateEvent) -> bool:
        if self.cancelled:
            return False
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("realtime_subscriber_lagging", identity=self.identity)
            return False
        return True

    def cancel(self):
        if self.cancelled:
            return
        self.cancelled = True
        self.hub._remove(self)
        # wake a consumer blocked in __anext__
        try:
            self.queue.put_nowait(None)
        except asyncio.QueueFull:
            pass


class RealtimeHub:
    """Identity-scoped fanout for the local process."""

    def __init__(self, queue_size: int = settings.REALTIME_SUBSCRIBER_QUEUE_SIZE):
        self.queue_size = queue_size
        self._subscribers: Dict[str, Set[Subscription]] = defaultdict(set)

    def subscribe(self, identity: str) -> Subscription:
        subscription = Subscription(self, identity, self.queue_size)
        self._subscribers[identity].add(subscription)
        logger.debug("realtime_subscribed", identity=identity, subscribers=len(self._subscribers[identity]))
        return subscription

    def _remove(self, subscription: Subscription):
        subscribers = self._subscribers.get(subscription.identity)
        if not subscribers:
            return
        subscribers.discard(subscription)
        if not subscribers:
            del self._subscribers[subscription.identity]

    def subscriber_count(self, identity: str) -> int:
        return len(self._subscribers.get(identity, ()))

    async def publish(self, identity: str, event: UpdateEvent) -> int:
        """Deliver to every current subscriber of `identity`; returns the delivery count."""
        subscribers = list(self._subscribers.get(identity, ()))
        delivered = sum(1 for subscription in subscribers if subscription.deliver(event))
        record_realtime_event(delivered)
        return delivered


_hub: Optional[RealtimeHub] = None


def get_hub() -> RealtimeHub:
    """Process-wide hub used by the API."""
    global _hub
    if _hub is None:
        _hub = RealtimeHub()
    return _hub
