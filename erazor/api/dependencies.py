"""
FastAPI Dependencies

Provides dependency injection for:
- Redis client and billing client (owned by the app lifespan)
- Quota enforcement chain (per-request)
- Task repository, job queue, storage and realtime hub
- Caller identity (bearer token or anonymous cookie)
"""

from fastapi import Depends, Request

from erazor.core.database import async_session_maker
from erazor.engines.quota.repositories import QuotaStore, SubscriptionCache
from erazor.engines.quota.schemas import CallerIdentity
from erazor.engines.quota.services import CreditGate, QuotaPolicy, UsagePolicy
from erazor.integrations.billing import BillingClient
from erazor.integrations.identity import IdentityResolver
from erazor.modules.imagery.repositories import ImageTaskRepository
from erazor.pipeline.queue import CeleryJobQueue, JobQueue
from erazor.realtime.hub import RealtimeHub, get_hub


# =============================================================================
# Global Singletons
# =============================================================================

_job_queue = CeleryJobQueue()
_identity_resolver = IdentityResolver()


# =============================================================================
# Infrastructure
# =============================================================================

def get_redis(request: Request):
    """Returns the Redis client from app state."""
    return request.app.state.redis


def get_billing_client(request: Request) -> BillingClient:
    """Returns the billing client from app state."""
    return request.app.state.billing


def get_job_queue() -> JobQueue:
    return _job_queue


def get_realtime_hub() -> RealtimeHub:
    return get_hub()


def get_task_repository() -> ImageTaskRepository:
    return ImageTaskRepository(async_session_maker)


# =============================================================================
# Identity
# =============================================================================

def get_identity_resolver() -> IdentityResolver:
    return _identity_resolver


def get_caller(
    request: Request,
    resolver: IdentityResolver = Depends(get_identity_resolver),
) -> CallerIdentity:
    """Resolved caller; mints an anonymous id if the request has none."""
    return resolver.resolve(request, mint=True)


# =============================================================================
# Quota Enforcement
# =============================================================================

def get_subscription_cache(
    redis_client=Depends(get_redis),
    billing: BillingClient = Depends(get_billing_client),
) -> SubscriptionCache:
    return SubscriptionCache(redis_client, billing)


def get_usage_policy(
    redis_client=Depends(get_redis),
    subscriptions: SubscriptionCache = Depends(get_subscription_cache),
) -> UsagePolicy:
    """Returns the full upload policy chain."""
    return UsagePolicy(
        subscriptions=subscriptions,
        quota=QuotaPolicy(QuotaStore(redis_client)),
        credit_gate=CreditGate(subscriptions),
    )
