"""
Subscriber Service
==================

Subscriber lookup and creation, attribute and alias management, and the
entitlement snapshot returned to clients.
"""

import logging
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import String, cast, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models.app import App
from app.models.entitlement import EntitlementSource, SubscriberEntitlement
from app.models.subscriber import Subscriber
from app.models.subscription import (
    ENTITLING_STATUSES,
    Purchase,
    PurchaseStatus,
    Subscription,
    SubscriptionStatus,
)
from app.services.cache import CacheInvalidator, CacheKeys, CacheManager
from app.services.entitlements import subscription_access_until
from app.stores.base import ENVIRONMENT_SANDBOX
from app.utils.helpers import format_datetime, parse_datetime, utc_now

logger = logging.getLogger(__name__)


class SubscriberService:
    """Service for subscriber operations."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # -------------------------------------------------------------------------
    # Lookup
    # -------------------------------------------------------------------------

    async def get(self, app_id, app_user_id: str) -> Optional[Subscriber]:
        """Find a subscriber by app user id, falling back to its aliases."""
        result = await self.db.execute(
            select(Subscriber).where(
                Subscriber.app_id == app_id,
                Subscriber.app_user_id == app_user_id,
            )
        )
        subscriber = result.scalar_one_or_none()
        if subscriber is not None:
            return subscriber

        # Aliases are a JSON list; match the quoted element in its text form
        candidates = await self.db.execute(
            select(Subscriber).where(
                Subscriber.app_id == app_id,
                cast(Subscriber.aliases, String).like(f'%"{app_user_id}"%'),
            )
        )
        for candidate in candidates.scalars():
            if app_user_id in (candidate.aliases or []):
                return candidate
        return None

    async def get_or_create(
        self,
        app: App,
        app_user_id: str,
        attributes: Optional[dict[str, Any]] = None,
    ) -> tuple[Subscriber, bool]:
        """
        Get or lazily create a subscriber.

        Concurrent creation is resolved by the (app_id, app_user_id)
        unique constraint.

        Returns:
            (subscriber, created)
        """
        subscriber = await self.get(app.id, app_user_id)
        if subscriber is not None:
            subscriber.last_seen_at = utc_now()
            if attributes:
                self.merge_attributes(subscriber, attributes)
            return subscriber, False

        now = utc_now()
        subscriber = Subscriber(
            app_id=app.id,
            app_user_id=app_user_id,
            original_app_user_id=app_user_id,
            aliases=[],
            attributes={},
            first_seen_at=now,
            last_seen_at=now,
        )
        if attributes:
            self.merge_attributes(subscriber, attributes)

        try:
            async with self.db.begin_nested():
                self.db.add(subscriber)
                await self.db.flush()
        except IntegrityError:
            existing = await self.get(app.id, app_user_id)
            if existing is None:
                raise
            if attributes:
                self.merge_attributes(existing, attributes)
            return existing, False

        logger.info("Created subscriber %s for app %s", app_user_id, app.id)
        return subscriber, True

    # -------------------------------------------------------------------------
    # Attributes / Aliases
    # -------------------------------------------------------------------------

    @staticmethod
    def merge_attributes(subscriber: Subscriber, attributes: dict[str, Any]) -> dict[str, Any]:
        """
        Merge attributes into the subscriber; a ``None`` value removes the key.

        The JSON column is reassigned so the change is detected.
        """
        merged = dict(subscriber.attributes or {})
        for key, value in attributes.items():
            if value is None:
                merged.pop(key, None)
            else:
                merged[key] = value
        subscriber.attributes = merged
        return merged

    async def update_attributes(
        self, subscriber: Subscriber, attributes: dict[str, Any]
    ) -> dict[str, Any]:
        merged = self.merge_attributes(subscriber, attributes)
        subscriber.last_seen_at = utc_now()
        await self.db.flush()
        return merged

    async def add_alias(self, subscriber: Subscriber, alias: str) -> list[str]:
        """Make ``alias`` resolve to this subscriber."""
        if alias == subscriber.app_user_id or alias in (subscriber.aliases or []):
            return list(subscriber.aliases or [])
        subscriber.aliases = [*(subscriber.aliases or []), alias]
        await self.db.flush()
        logger.info("Aliased %s to subscriber %s", alias, subscriber.app_user_id)
        return subscriber.aliases

    # -------------------------------------------------------------------------
    # Snapshot
    # -------------------------------------------------------------------------

    async def build_snapshot(self, subscriber: Subscriber) -> dict[str, Any]:
        """Build the JSON-safe entitlement snapshot for a subscriber."""
        now = utc_now()

        entitlement_rows = (
            await self.db.execute(
                select(SubscriberEntitlement).where(
                    SubscriberEntitlement.subscriber_id == subscriber.id
                ).execution_options(populate_existing=True)
            )
        ).unique().scalars().all()

        subscriptions = (
            await self.db.execute(
                select(Subscription)
                .where(
                    Subscription.subscriber_id == subscriber.id,
                    Subscription.status.in_(ENTITLING_STATUSES),
                )
                .order_by(Subscription.expires_date.desc())
                .execution_options(populate_existing=True)
            )
        ).unique().scalars().all()

        purchases = (
            await self.db.execute(
                select(Purchase)
                .where(
                    Purchase.subscriber_id == subscriber.id,
                    Purchase.status == PurchaseStatus.COMPLETED,
                )
                .order_by(Purchase.purchase_date)
                .execution_options(populate_existing=True)
            )
        ).unique().scalars().all()
        purchases_by_id = {p.id: p for p in purchases}

        entitlements: dict[str, dict[str, Any]] = {}
        for row in entitlement_rows:
            entitlements[row.entitlement.identifier] = self._entitlement_entry(
                row, purchases_by_id.get(row.purchase_id), now
            )

        active_subscriptions = sorted(
            {
                s.product.identifier
                for s in subscriptions
                if subscription_access_until(s, now)[0]
            }
        )

        return {
            "id": str(subscriber.id),
            "app_user_id": subscriber.app_user_id,
            "original_app_user_id": subscriber.original_app_user_id,
            "aliases": list(subscriber.aliases or []),
            "attributes": dict(subscriber.attributes or {}),
            "first_seen_at": format_datetime(subscriber.first_seen_at),
            "last_seen_at": format_datetime(subscriber.last_seen_at),
            "entitlements": entitlements,
            "active_subscriptions": active_subscriptions,
            "non_subscription_purchases": [
                {
                    "product_identifier": p.product.identifier,
                    "purchase_date": format_datetime(p.purchase_date),
                    "transaction_id": p.store_transaction_id,
                }
                for p in purchases
            ],
        }

    @staticmethod
    def _entitlement_entry(
        row: SubscriberEntitlement,
        purchase: Optional[Purchase],
        now: datetime,
    ) -> dict[str, Any]:
        subscription = row.subscription
        # Stored rows are only refreshed by events, so expiry is checked on read
        is_active = row.is_active and (row.expires_date is None or row.expires_date > now)
        purchase_date = None
        will_renew = False
        period_type = "normal"
        is_sandbox = False

        if row.source == EntitlementSource.SUBSCRIPTION and subscription is not None:
            purchase_date = subscription.purchase_date
            will_renew = (
                subscription.auto_renew_enabled
                and subscription.status != SubscriptionStatus.IN_BILLING_RETRY
            )
            period_type = subscription.period_type
            is_sandbox = subscription.environment == ENVIRONMENT_SANDBOX
        elif row.source == EntitlementSource.PURCHASE and purchase is not None:
            purchase_date = purchase.purchase_date
            is_sandbox = purchase.environment == ENVIRONMENT_SANDBOX
        else:
            purchase_date = row.created_at

        return {
            "is_active": is_active,
            "is_at_risk": is_active and row.is_at_risk,
            "expires_date": format_datetime(row.expires_date),
            "product_identifier": row.product.identifier if row.product else None,
            "purchase_date": format_datetime(purchase_date),
            "will_renew": will_renew,
            "period_type": period_type,
            "source": row.source.value,
            "is_sandbox": is_sandbox,
        }

    # -------------------------------------------------------------------------
    # Cache
    # -------------------------------------------------------------------------

    async def get_snapshot_cached(self, app: App, app_user_id: str) -> Optional[dict[str, Any]]:
        """Snapshot from Redis, or built from the database and cached."""
        key = CacheKeys.subscriber_snapshot(str(app.id), app_user_id)
        cached = await CacheManager.get(key)
        if cached is not None:
            return cached

        subscriber = await self.get(app.id, app_user_id)
        if subscriber is None:
            return None

        snapshot = await self.build_snapshot(subscriber)
        ttl = self.snapshot_ttl(snapshot, utc_now())
        if ttl > 0:
            await CacheManager.set(key, snapshot, ttl=ttl)
        return snapshot

    @staticmethod
    def snapshot_ttl(snapshot: dict[str, Any], now: datetime) -> int:
        """Cache lifetime that ends no later than the first active entitlement expiry."""
        ttl = settings.SNAPSHOT_CACHE_TTL_SECONDS
        for entry in snapshot["entitlements"].values():
            expires = parse_datetime(entry["expires_date"])
            if entry["is_active"] and expires is not None:
                ttl = min(ttl, int((expires - now).total_seconds()))
        return ttl

    @staticmethod
    async def invalidate(app_id, app_user_id: str, aliases: Optional[list[str]] = None) -> None:
        await CacheInvalidator.on_subscriber_change(str(app_id), app_user_id, aliases)
