"""Redis cache of processor status lookups."""

import json
from typing import Optional

from erazor.core.config import settings
from erazor.integrations.processor import ProcessorStatus


class StatusCacheRepository:
    """Short-lived cache of non-terminal processor statuses.

    Terminal statuses are never stored: a "ready" must always come from a
    fresh processor call.
    """

    def __init__(self, redis_client, ttl: int = settings.STATUS_CACHE_TTL_SECONDS):
        self.redis = redis_client
        self.ttl = ttl
        self.prefix = "processor:status"

    def _key(self, process_id: str) -> str:
        return f"{self.prefix}:{process_id}"

    async def get(self, process_id: str) -> Optional[ProcessorStatus]:
        cached = await self.redis.get(self._key(process_id))
        if not cached:
            return None
        status = ProcessorStatus.model_validate(json.loads(cached))
        if status.is_terminal:
            return None
        return status

    async def set(self, process_id: str, status: ProcessorStatus) -> bool:
        if status.is_terminal:
            return False
        await self.redis.set(self._key(process_id), status.model_dump_json(), ex=self.ttl)
        return True

    async def delete(self, process_id: str):
        await self.redis.delete(self._key(process_id))
