"""
Subscriber Schemas
==================

Pydantic schemas for subscriber endpoints and the entitlement snapshot.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field


class EntitlementInfo(BaseModel):
    """One active entitlement in a snapshot."""

    is_active: bool
    is_at_risk: bool = False
    expires_date: Optional[datetime] = None
    product_identifier: Optional[str] = None
    purchase_date: Optional[datetime] = None
    will_renew: bool = False
    period_type: str = "normal"
    source: str
    is_sandbox: bool = False


class NonSubscriptionPurchase(BaseModel):
    product_identifier: str
    purchase_date: Optional[datetime] = None
    transaction_id: str


class SubscriberSnapshot(BaseModel):
    """What a client needs to gate features for one app user."""

    id: str
    app_user_id: str
    original_app_user_id: Optional[str] = None
    aliases: list[str] = Field(default_factory=list)
    attributes: dict[str, Any] = Field(default_factory=dict)
    first_seen_at: Optional[datetime] = None
    last_seen_at: Optional[datetime] = None
    entitlements: dict[str, EntitlementInfo] = Field(default_factory=dict)
    active_subscriptions: list[str] = Field(default_factory=list)
    non_subscription_purchases: list[NonSubscriptionPurchase] = Field(default_factory=list)


class SubscriberData(BaseModel):
    subscriber: SubscriberSnapshot


class SubscriberResponse(BaseModel):
    """Response envelope carrying a snapshot."""

    success: bool = True
    data: SubscriberData


class SubscriberCreateRequest(BaseModel):
    """Get-or-create a subscriber, optionally merging attributes and an alias."""

    app_user_id: str = Field(min_length=1, max_length=255)
    attributes: dict[str, Any] = Field(default_factory=dict)
    alias: Optional[str] = Field(default=None, min_length=1, max_length=255)


class AttributesUpdateRequest(BaseModel):
    """Attributes to merge; a null value removes the key."""

    attributes: dict[str, Any]
