"""
Quota Enforcement Services

Policy chain run on the upload path before anything is enqueued:

1. Tier resolution: anonymous, free or paid (cached billing flag)
2. Quota check:
   - anonymous: daily cap per IP + browser fingerprint
   - free: per-identity AND per-IP daily counters; the IP cap is a
     multiple of the identity cap so shared networks still work
   - paid: requests-per-minute throttle per identity and route
3. Credit gate: paid callers need a positive meter balance
"""

from dataclasses import dataclass

from redis.exceptions import RedisError

from erazor.core.config import settings
from erazor.core.exceptions import (
    BillingError,
    InsufficientCreditError,
    QuotaExceededError,
    TransientInfraError,
)
from erazor.core.logging import get_logger
from erazor.core.metrics import record_quota_decision
from erazor.engines.quota.repositories import QuotaStore, SubscriptionCache
from erazor.engines.quota.schemas import CallerIdentity, QuotaDecision, TierClass

logger = get_logger(__name__)


@dataclass
class QuotaLimits:
    anon_daily: int = settings.ANON_DAILY_LIMIT
    free_daily: int = settings.FREE_DAILY_LIMIT
    free_ip_multiplier: int = settings.FREE_IP_LIMIT_MULTIPLIER
    paid_per_window: int = settings.PAID_RATE_LIMIT_PER_MINUTE
    rate_window_seconds: int = settings.RATE_LIMIT_WINDOW_SECONDS
    daily_ttl_seconds: int = settings.DAILY_QUOTA_TTL_SECONDS

    @property
    def free_ip_daily(self) -> int:
        return self.free_daily * self.free_ip_multiplier


class QuotaPolicy:
    """Decides allow/deny for a caller in a given tier."""

    def __init__(self, store: QuotaStore, limits: QuotaLimits = None):
        self.store = store
        self.limits = limits or QuotaLimits()

    async def check(self, caller: CallerIdentity, tier: TierClass, route: str = "") -> QuotaDecision:
        if tier == TierClass.ANONYMOUS:
            decision = await self._check_anonymous(caller)
        elif tier == TierClass.FREE:
            decision = await self._check_free(caller)
        else:
            decision = await self._check_paid(caller, route)

        record_quota_decision(tier.value, decision.allowed)
        if not decision.allowed:
            logger.warning(
                "quota_denied",
                tier=tier.value,
                identity=caller.identity,
                count=decision.count,
                limit=decision.limit
            )
        return decision

    async def _check_anonymous(self, caller: CallerIdentity) -> QuotaDecision:
        bucket = QuotaStore.composite_key(caller.ip, caller.fingerprint)
        key = self.store.key("anon", bucket, QuotaStore.today())
        count = await self.store.increment(key, self.limits.daily_ttl_seconds)
        limit = self.limits.anon_daily

        if count > limit:
            return QuotaDecision.deny(
                TierClass.ANONYMOUS,
                f"Free limit reached ({limit} images/day). Please sign up to continue.",
                count=count,
                limit=limit
            )
        return QuotaDecision.allow(TierClass.ANONYMOUS, count=count, limit=limit)

    async def _check_free(self, caller: CallerIdentity) -> QuotaDecision:
        today = QuotaStore.today()
        ttl = self.limits.daily_ttl_seconds
        identity_count, ip_count = await self.store.increment_many([
            (self.store.key("free", "user", caller.identity, today), ttl),
            (self.store.key("free", "ip", caller.ip, today), ttl),
        ])

        if identity_count > self.limits.free_daily:
            return QuotaDecision.deny(
                TierClass.FREE,
                f"Daily limit reached ({self.limits.free_daily} images/day). Upgrade your plan to continue.",
                count=identity_count,
                limit=self.limits.free_daily
            )
        if ip_count > self.limits.free_ip_daily:
            return QuotaDecision.deny(
                TierClass.FREE,
                "Daily limit reached for your network. Upgrade your plan to continue.",
                count=ip_count,
                limit=self.limits.free_ip_daily
            )
        return QuotaDecision.allow(
            TierClass.FREE,
            count=max(identity_count, ip_count),
            limit=self.limits.free_daily
        )

    async def _check_paid(self, caller: CallerIdentity, route: str) -> QuotaDecision:
        key = ":".join(["ratelimit", caller.identity, route])
        count = await self.store.increment(key, self.limits.rate_window_seconds)
        limit = self.limits.paid_per_window

        if count > limit:
            return QuotaDecision.deny(
                TierClass.PAID,
                f"Too many requests ({limit} per {self.limits.rate_window_seconds}s). Please slow down.",
                count=count,
                limit=limit
            )
        return QuotaDecision.allow(TierClass.PAID, count=count, limit=limit)


class CreditGate:
    """Paid callers must have remaining meter balance. Other tiers are exempt."""

    def __init__(self, subscriptions: SubscriptionCache):
        self.subscriptions = subscriptions

    async def check(self, caller: CallerIdentity, tier: TierClass) -> bool:
        if tier != TierClass.PAID:
            return True
        return await self.subscriptions.has_credit(caller.identity)


class UsagePolicy:
    """The full enforcement chain for one upload request."""

    def __init__(self, subscriptions: SubscriptionCache, quota: QuotaPolicy, credit_gate: CreditGate):
        self.subscriptions = subscriptions
        self.quota = quota
        self.credit_gate = credit_gate

    async def resolve_tier(self, caller: CallerIdentity) -> TierClass:
        if caller.is_anonymous:
            return TierClass.ANONYMOUS
        try:
            is_paid = await self.subscriptions.is_paid(caller.identity)
        except BillingError as e:
            logger.warning("tier_resolution_failed", identity=caller.identity, error=str(e))
            return TierClass.FREE
        except RedisError as e:
            raise TransientInfraError() from e
        return TierClass.PAID if is_paid else TierClass.FREE

    async def enforce(self, caller: CallerIdentity, tier: TierClass, route: str):
        """Raise if the caller may not submit another image right now."""
        try:
            decision = await self.quota.check(caller, tier, route)
            if not decision.allowed:
                raise QuotaExceededError(decision.reason, tier=tier.value)

            if not await self.credit_gate.check(caller, tier):
                logger.warning("credit_gate_denied", identity=caller.identity)
                raise InsufficientCreditError()
        except RedisError as e:
            logger.error("quota_store_unavailable", error=str(e))
            raise TransientInfraError() from e
        except BillingError as e:
            logger.error("credit_check_failed", identity=caller.identity, error=str(e))
            raise TransientInfraError("Could not verify your credit balance, please retry") from e
