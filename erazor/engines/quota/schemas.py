from pydantic import BaseModel, Field
from typing import Optional
from enum import Enum


class TierClass(str, Enum):
    ANONYMOUS = "anonymous"
    FREE = "free"
    PAID = "paid"


class CallerIdentity(BaseModel):
    """Who is calling, as resolved from the bearer token or the anon cookie."""
    identity: str
    is_anonymous: bool = False
    ip: str = "unknown-ip"
    fingerprint: str = "unknown-device"
    minted: bool = Field(default=False, description="True when the anonymous id was created on this request")


class QuotaDecision(BaseModel):
    """Outcome of a quota check."""
    allowed: bool
    tier: TierClass
    reason: Optional[str] = None
    count: int = 0
    limit: int = 0

    @classmethod
    def allow(cls, tier: TierClass, count: int = 0, limit: int = 0) -> "QuotaDecision":
        return cls(allowed=True, tier=tier, count=count, limit=limit)

    @classmethod
    def deny(cls, tier: TierClass, reason: str, count: int = 0, limit: int = 0) -> "QuotaDecision":
        return cls(allowed=False, tier=tier, reason=reason, count=count, limit=limit)


class SubscriptionSnapshot(BaseModel):
    """Billing state reduced to the two flags the service cares about."""
    identity: str
    is_paid: bool = False
    has_credit: bool = False
