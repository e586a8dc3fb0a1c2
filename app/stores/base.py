"""
Store Adapter Types
===================

Normalized records produced by the Apple and Google adapters, and the
capability interface both adapters satisfy.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Protocol

import httpx

from app.core.errors import StoreApiError
from app.models.catalog import ProductType
from app.models.subscription import SubscriptionStatus


ENVIRONMENT_PRODUCTION = "production"
ENVIRONMENT_SANDBOX = "sandbox"


@dataclass
class StoreTransaction:
    """One store transaction, decoded and normalized."""

    transaction_id: str
    original_transaction_id: str
    product_id: str
    purchase_date: datetime
    expires_date: Optional[datetime] = None
    original_purchase_date: Optional[datetime] = None
    is_trial_period: bool = False
    is_in_intro_offer_period: bool = False
    offer_type: Optional[int] = None
    environment: str = ENVIRONMENT_PRODUCTION
    product_type: Optional[ProductType] = None
    auto_renew_enabled: Optional[bool] = None
    revocation_date: Optional[datetime] = None
    revocation_reason: Optional[str] = None
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def is_sandbox(self) -> bool:
        return self.environment == ENVIRONMENT_SANDBOX


@dataclass
class RenewalInfo:
    """Apple renewal info (``JWSRenewalInfoDecodedPayload``)."""

    auto_renew_status: bool
    original_transaction_id: Optional[str] = None
    auto_renew_product_id: Optional[str] = None
    grace_period_expires_date: Optional[datetime] = None
    expiration_intent: Optional[int] = None
    is_in_billing_retry: bool = False
    price_increase_pending: bool = False
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class LastTransaction:
    """Entry of a subscription status response."""

    status: SubscriptionStatus
    original_transaction_id: str
    transaction: Optional[StoreTransaction] = None
    renewal_info: Optional[RenewalInfo] = None


@dataclass
class SubscriptionStatusInfo:
    """Store-reported status of one subscription."""

    status: SubscriptionStatus
    last_transactions: list[LastTransaction] = field(default_factory=list)

    @property
    def latest(self) -> Optional[LastTransaction]:
        return self.last_transactions[0] if self.last_transactions else None


class StoreAdapter(Protocol):
    """Capability interface shared by the Apple and Google adapters."""

    def decode_transaction(self, raw: Any) -> StoreTransaction: ...

    async def fetch_latest_transaction_info(self, transaction_id: str) -> StoreTransaction: ...

    async def fetch_subscription_status(
        self, original_transaction_id: str
    ) -> SubscriptionStatusInfo: ...


def raise_for_store_response(response: httpx.Response) -> None:
    """Raise ``StoreApiError`` for any non-2xx store API response."""
    if response.is_success:
        return
    raise StoreApiError(response.status_code, response.text)


async def store_get(
    url: str,
    headers: dict[str, str],
    timeout: float,
    client: Optional[httpx.AsyncClient] = None,
) -> dict[str, Any]:
    """
    GET a store API URL and return its JSON body.

    Timeouts and connection failures surface as transient
    ``StoreApiError`` with no status code.
    """
    try:
        if client is not None:
            response = await client.get(url, headers=headers, timeout=timeout)
        else:
            async with httpx.AsyncClient() as http:
                response = await http.get(url, headers=headers, timeout=timeout)
    except httpx.TimeoutException as e:
        raise StoreApiError(None, f"timeout: {e}", transient=True) from e
    except httpx.HTTPError as e:
        raise StoreApiError(None, f"network error: {e}", transient=True) from e

    raise_for_store_response(response)
    try:
        return response.json()
    except ValueError as e:
        raise StoreApiError(response.status_code, "invalid JSON body", transient=True) from e
