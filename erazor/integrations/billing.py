"""
Billing API Client (Polar)

Two calls are used:
- customer state lookup, reduced to "is paid" and "has credit"
- usage event ingestion, one event per completed background removal
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx
from pydantic import BaseModel, Field, ValidationError

from erazor.core.config import settings
from erazor.core.exceptions import BillingError
from erazor.core.logging import get_logger

logger = get_logger(__name__)


class ActiveSubscription(BaseModel):
    id: Optional[str] = None
    status: str = "active"
    amount: int = 0
    product_id: Optional[str] = None


class MeterBalance(BaseModel):
    meter_id: Optional[str] = None
    balance: float = 0
    credited_units: float = 0
    consumed_units: float = 0


class CustomerState(BaseModel):
    """Subset of the billing customer state the service reads."""
    active_subscriptions: List[ActiveSubscription] = Field(default_factory=list)
    active_meters: List[MeterBalance] = Field(default_factory=list)

    @property
    def is_paid(self) -> bool:
        return any(sub.status == "active" and sub.amount > 0 for sub in self.active_subscriptions)

    @property
    def has_credit(self) -> bool:
        return any(
            meter.balance > 0 or meter.credited_units > meter.consumed_units
            for meter in self.active_meters
        )


class BillingClient:
    """Async client for the billing API."""

    def __init__(
        self,
        base_url: str = settings.BILLING_API_URL,
        access_token: Optional[str] = settings.BILLING_ACCESS_TOKEN,
        timeout: float = settings.BILLING_TIMEOUT_SECONDS,
        event_name: str = settings.BILLING_EVENT_NAME,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.event_name = event_name
        headers = {"Content-Type": "application/json"}
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=timeout, headers=headers)

    async def aclose(self):
        if self._owns_client:
            await self._client.aclose()

    async def get_subscription_state(self, identity: str) -> CustomerState:
        """Fetch the customer's subscriptions and meter balances.

        Unknown customers have no subscription and no credit.
        """
        url = f"{self.base_url}/v1/customers/external/{identity}/state"
        try:
            response = await self._client.get(url)
        except httpx.HTTPError as e:
            raise BillingError(f"Billing API unreachable: {e}") from e

        if response.status_code == 404:
            logger.info("billing_customer_not_found", identity=identity)
            return CustomerState()
        if response.status_code != 200:
            raise BillingError(
                f"Billing API error: {response.text[:200]}",
                http_status=response.status_code
            )

        try:
            return CustomerState.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            logger.warning("billing_state_unreadable", identity=identity, error=str(e))
            raise BillingError("Billing API returned an unexpected body", http_status=response.status_code) from e

    async def ingest_usage_event(
        self,
        identity: str,
        units: int = 1,
        metadata: Optional[Dict[str, Any]] = None,
    ):
        """Record metered usage for an identity."""
        event_metadata = {
            "operations": units,
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        }
        if metadata:
            event_metadata.update(metadata)

        payload = {
            "events": [{
                "name": self.event_name,
                "external_customer_id": identity,
                "metadata": event_metadata,
            }]
        }

        try:
            response = await self._client.post(f"{self.base_url}/v1/events/ingest", json=payload)
        except httpx.HTTPError as e:
            raise BillingError(f"Billing API unreachable: {e}") from e

        if response.status_code >= 300:
            raise BillingError(
                f"Usage event rejected: {response.text[:200]}",
                http_status=response.status_code
            )
