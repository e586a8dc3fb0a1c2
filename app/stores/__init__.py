"""
Store Adapters
==============

Apple App Store and Google Play integrations behind one factory so the
HTTP layer (and tests) can swap the adapters per request.
"""

from typing import Optional

from app.models.app import App
from app.stores.apple import AppleNotification, AppleStoreAdapter
from app.stores.base import (
    LastTransaction,
    RenewalInfo,
    StoreAdapter,
    StoreTransaction,
    SubscriptionStatusInfo,
)
from app.stores.google import GoogleNotification, GooglePlayAdapter


class StoreAdapterFactory:
    """Builds per-app store adapters."""

    def apple(self, app: Optional[App] = None, sandbox: bool = False) -> AppleStoreAdapter:
        return AppleStoreAdapter.from_app(app, sandbox=sandbox)

    def google(self, app: App) -> GooglePlayAdapter:
        return GooglePlayAdapter.from_app(app)


_factory = StoreAdapterFactory()


def get_store_factory() -> StoreAdapterFactory:
    """FastAPI dependency; overridden in tests."""
    return _factory


__all__ = [
    "AppleNotification",
    "AppleStoreAdapter",
    "GoogleNotification",
    "GooglePlayAdapter",
    "LastTransaction",
    "RenewalInfo",
    "StoreAdapter",
    "StoreAdapterFactory",
    "StoreTransaction",
    "SubscriptionStatusInfo",
    "get_store_factory",
]
