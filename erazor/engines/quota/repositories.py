"""
Quota Repositories

Redis-backed state shared by every API instance:
- QuotaStore: atomic counters whose TTL is set exactly once per window
- SubscriptionCache: short-lived "is paid" / "has credit" flags derived
  from the billing API
"""

import hashlib
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from erazor.core.config import settings
from erazor.core.logging import get_logger
from erazor.core.metrics import record_cache_lookup
from erazor.engines.quota.schemas import SubscriptionSnapshot
from erazor.integrations.billing import BillingClient

logger = get_logger(__name__)


def _flag(value) -> Optional[bool]:
    if value is None:
        return None
    if isinstance(value, bytes):
        value = value.decode()
    return value == "true"


class QuotaStore:
    """Atomic, TTL-bounded counters."""

    def __init__(self, redis_client, prefix: str = "quota"):
        self.redis = redis_client
        self.prefix = prefix

    @staticmethod
    def today() -> str:
        return datetime.now(timezone.utc).strftime("%Y-%m-%d")

    @staticmethod
    def composite_key(*parts: str) -> str:
        """Stable short hash of several request attributes (IP, fingerprint)."""
        raw = "|".join(parts)
        return hashlib.sha256(raw.encode()).hexdigest()[:32]

    def key(self, *parts: str) -> str:
        return ":".join([self.prefix, *parts])

    async def increment(self, key: str, ttl_seconds: int) -> int:
        """Increment a counter, creating it with `ttl_seconds` on first use."""
        counts = await self.increment_many([(key, ttl_seconds)])
        return counts[0]

    async def increment_many(self, keys: List[Tuple[str, int]]) -> List[int]:
        """Increment several counters in one MULTI/EXEC.

        `SET NX EX` only succeeds when the window's key does not exist yet,
        so the expiry is attached once and never extended by later hits.
        """
        async with self.redis.pipeline(transaction=True) as pipe:
            for key, ttl_seconds in keys:
                pipe.set(key, 0, ex=ttl_seconds, nx=True)
                pipe.incr(key)
            results = await pipe.execute()
        return [int(results[i]) for i in range(1, len(results), 2)]

    async def get(self, key: str) -> int:
        value = await self.redis.get(key)
        return int(value) if value is not None else 0


class SubscriptionCache:
    """Cache-first view of a customer's billing state."""

    def __init__(
        self,
        redis_client,
        billing: BillingClient,
        ttl: int = settings.SUBSCRIPTION_CACHE_TTL_SECONDS,
    ):
        self.redis = redis_client
        self.billing = billing
        self.ttl = ttl

    @staticmethod
    def _keys(identity: str) -> Dict[str, str]:
        return {
            "is_paid": f"user:{identity}:is_paid",
            "has_credit": f"user:{identity}:has_credit",
        }

    async def snapshot(self, identity: str) -> SubscriptionSnapshot:
        keys = self._keys(identity)
        is_paid, has_credit = await self.redis.mget([keys["is_paid"], keys["has_credit"]])
        is_paid, has_credit = _flag(is_paid), _flag(has_credit)

        if is_paid is not None and has_credit is not None:
            record_cache_lookup("subscription", hit=True)
            return SubscriptionSnapshot(identity=identity, is_paid=is_paid, has_credit=has_credit)

        record_cache_lookup("subscription", hit=False)
        state = await self.billing.get_subscription_state(identity)
        snapshot = SubscriptionSnapshot(
            identity=identity,
            is_paid=state.is_paid,
            has_credit=state.has_credit
        )

        # Concurrent fills write the same derived value, last write wins
        async with self.redis.pipeline(transaction=False) as pipe:
            pipe.set(keys["is_paid"], "true" if snapshot.is_paid else "false", ex=self.ttl)
            pipe.set(keys["has_credit"], "true" if snapshot.has_credit else "false", ex=self.ttl)
            await pipe.execute()

        logger.info(
            "subscription_snapshot_refreshed",
            identity=identity,
            is_paid=snapshot.is_paid,
            has_credit=snapshot.has_credit
        )
        return snapshot

    async def is_paid(self, identity: str) -> bool:
        return (await self.snapshot(identity)).is_paid

    async def has_credit(self, identity: str) -> bool:
        return (await self.snapshot(identity)).has_credit
