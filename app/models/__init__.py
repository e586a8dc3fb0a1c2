"""
Database Models
===============

SQLAlchemy ORM models for all database entities.

All models are imported here to ensure they are registered
with SQLAlchemy's metadata for migrations and relationships.
"""

from app.models.app import App
from app.models.subscription import (
    ENTITLING_STATUSES,
    Platform,
    Purchase,
    PurchaseStatus,
    Subscription,
    SubscriptionHistory,
    SubscriptionStatus,
)
from app.models.catalog import Entitlement, Product, ProductEntitlement, ProductType
from app.models.subscriber import Subscriber
from app.models.entitlement import (
    EntitlementSource,
    ManualOverride,
    OverrideAction,
    SubscriberEntitlement,
)
from app.models.webhook_event import WebhookEvent

__all__ = [
    # App
    "App",
    # Catalog
    "Product",
    "ProductType",
    "Entitlement",
    "ProductEntitlement",
    # Subscriber
    "Subscriber",
    # Subscription
    "Subscription",
    "SubscriptionHistory",
    "SubscriptionStatus",
    "Purchase",
    "PurchaseStatus",
    "Platform",
    "ENTITLING_STATUSES",
    # Entitlements
    "SubscriberEntitlement",
    "ManualOverride",
    "EntitlementSource",
    "OverrideAction",
    # Ledger
    "WebhookEvent",
]
