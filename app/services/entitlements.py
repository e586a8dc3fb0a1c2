"""
Entitlement Service
===================

Derives a subscriber's entitlement set from subscriptions, non-consumable
purchases and manual overrides, and exposes the manual grant/revoke
operations.

The derivation itself (``derive_entitlements``) is a pure function; the
recomputer only loads its inputs and swaps the stored rows.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional
import uuid

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import ErrorCodes, NotFoundError
from app.models.catalog import Entitlement, ProductEntitlement, ProductType
from app.models.entitlement import (
    EntitlementSource,
    ManualOverride,
    OverrideAction,
    SubscriberEntitlement,
)
from app.models.subscriber import Subscriber
from app.models.subscription import (
    ENTITLING_STATUSES,
    Purchase,
    PurchaseStatus,
    Subscription,
    SubscriptionStatus,
)
from app.utils.helpers import utc_now

logger = logging.getLogger(__name__)


SOURCE_PRIORITY = {
    EntitlementSource.SUBSCRIPTION: 0,
    EntitlementSource.PURCHASE: 1,
    EntitlementSource.MANUAL: 2,
}


@dataclass
class EntitlementGrant:
    """One source granting one entitlement."""

    entitlement_id: uuid.UUID
    source: EntitlementSource
    expires_date: Optional[datetime] = None
    is_at_risk: bool = False
    product_id: Optional[uuid.UUID] = None
    subscription_id: Optional[uuid.UUID] = None
    purchase_id: Optional[uuid.UUID] = None


@dataclass
class RecomputeResult:
    """Entitlement set after a recompute, with the diff against the old set."""

    entitlements: list[SubscriberEntitlement] = field(default_factory=list)
    granted: set[uuid.UUID] = field(default_factory=set)
    revoked: set[uuid.UUID] = field(default_factory=set)

    @property
    def changed(self) -> bool:
        return bool(self.granted or self.revoked)


# =============================================================================
# Derivation
# =============================================================================

def subscription_access_until(
    subscription: Subscription,
    now: datetime,
) -> tuple[bool, Optional[datetime]]:
    """
    Whether a subscription entitles at ``now``, and until when.

    A grace period with a future end date entitles even after
    ``expires_date`` has passed.
    """
    if subscription.status not in ENTITLING_STATUSES:
        return False, None

    if (
        subscription.status == SubscriptionStatus.IN_GRACE_PERIOD
        and subscription.grace_period_expires_date is not None
        and subscription.grace_period_expires_date > now
    ):
        expires = subscription.expires_date
        if expires is None or subscription.grace_period_expires_date > expires:
            expires = subscription.grace_period_expires_date
        return True, expires

    if subscription.expires_date is None or subscription.expires_date > now:
        return True, subscription.expires_date

    return False, None


def _later(a: Optional[datetime], b: Optional[datetime]) -> Optional[datetime]:
    """Latest of two expiries; None means never."""
    if a is None or b is None:
        return None
    return max(a, b)


def _merge(grants: list[EntitlementGrant]) -> EntitlementGrant:
    # Provenance: preferred source, then the longest-lived grant of that source
    top = min(SOURCE_PRIORITY[g.source] for g in grants)
    candidates = [g for g in grants if SOURCE_PRIORITY[g.source] == top]
    best = next((g for g in candidates if g.expires_date is None), None)
    if best is None:
        best = max(candidates, key=lambda g: g.expires_date)

    expires = grants[0].expires_date
    for g in grants[1:]:
        expires = _later(expires, g.expires_date)

    at_risk = all(g.source == EntitlementSource.SUBSCRIPTION and g.is_at_risk for g in grants)

    return EntitlementGrant(
        entitlement_id=best.entitlement_id,
        source=best.source,
        expires_date=expires,
        is_at_risk=at_risk,
        product_id=best.product_id,
        subscription_id=best.subscription_id,
        purchase_id=best.purchase_id,
    )


def derive_entitlements(
    subscriptions: Iterable[Subscription],
    purchases: Iterable[Purchase],
    overrides: Iterable[ManualOverride],
    product_entitlements: dict[uuid.UUID, list[uuid.UUID]],
    now: Optional[datetime] = None,
) -> dict[uuid.UUID, EntitlementGrant]:
    """
    Compute the active entitlement set, keyed by entitlement id.

    Args:
        subscriptions: The subscriber's subscriptions (any status).
        purchases: The subscriber's non-subscription purchases.
        overrides: The subscriber's manual overrides.
        product_entitlements: product id -> entitlement ids it unlocks.
        now: Evaluation time.
    """
    now = now or utc_now()
    grants: dict[uuid.UUID, list[EntitlementGrant]] = {}

    for subscription in subscriptions:
        entitles, expires = subscription_access_until(subscription, now)
        if not entitles:
            continue
        for entitlement_id in product_entitlements.get(subscription.product_id, []):
            grants.setdefault(entitlement_id, []).append(
                EntitlementGrant(
                    entitlement_id=entitlement_id,
                    source=EntitlementSource.SUBSCRIPTION,
                    expires_date=expires,
                    is_at_risk=subscription.status == SubscriptionStatus.IN_BILLING_RETRY,
                    product_id=subscription.product_id,
                    subscription_id=subscription.id,
                )
            )

    for purchase in purchases:
        if purchase.status != PurchaseStatus.COMPLETED:
            continue
        if purchase.product.type != ProductType.NON_CONSUMABLE:
            continue
        for entitlement_id in product_entitlements.get(purchase.product_id, []):
            grants.setdefault(entitlement_id, []).append(
                EntitlementGrant(
                    entitlement_id=entitlement_id,
                    source=EntitlementSource.PURCHASE,
                    product_id=purchase.product_id,
                    purchase_id=purchase.id,
                )
            )

    revoked: set[uuid.UUID] = set()
    for override in overrides:
        if override.action == OverrideAction.REVOKE:
            revoked.add(override.entitlement_id)
            continue
        if override.expires_date is not None and override.expires_date <= now:
            continue
        grants.setdefault(override.entitlement_id, []).append(
            EntitlementGrant(
                entitlement_id=override.entitlement_id,
                source=EntitlementSource.MANUAL,
                expires_date=override.expires_date,
            )
        )

    return {
        entitlement_id: _merge(items)
        for entitlement_id, items in grants.items()
        if entitlement_id not in revoked
    }


# =============================================================================
# Recomputer
# =============================================================================

class EntitlementRecomputer:
    """Rebuilds stored ``SubscriberEntitlement`` rows for one subscriber."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _load_product_entitlements(
        self, product_ids: set[uuid.UUID]
    ) -> dict[uuid.UUID, list[uuid.UUID]]:
        if not product_ids:
            return {}
        result = await self.db.execute(
            select(ProductEntitlement).where(ProductEntitlement.product_id.in_(product_ids))
        )
        mapping: dict[uuid.UUID, list[uuid.UUID]] = {}
        for row in result.scalars():
            mapping.setdefault(row.product_id, []).append(row.entitlement_id)
        return mapping

    async def recompute(
        self,
        subscriber_id: uuid.UUID,
        now: Optional[datetime] = None,
    ) -> RecomputeResult:
        """
        Replace the subscriber's entitlement rows with a freshly derived set.

        Runs inside the caller's transaction; nothing is committed here.
        """
        now = now or utc_now()

        # Serializes writers of this subscriber's entitlement rows
        await self.db.execute(
            select(Subscriber.id).where(Subscriber.id == subscriber_id).with_for_update()
        )

        subscriptions = (
            await self.db.execute(
                select(Subscription).where(
                    Subscription.subscriber_id == subscriber_id,
                    Subscription.status.in_(ENTITLING_STATUSES),
                )
            )
        ).unique().scalars().all()

        purchases = (
            await self.db.execute(
                select(Purchase).where(
                    Purchase.subscriber_id == subscriber_id,
                    Purchase.status == PurchaseStatus.COMPLETED,
                )
            )
        ).unique().scalars().all()

        overrides = (
            await self.db.execute(
                select(ManualOverride).where(ManualOverride.subscriber_id == subscriber_id)
            )
        ).unique().scalars().all()

        product_ids = {s.product_id for s in subscriptions} | {p.product_id for p in purchases}
        product_entitlements = await self._load_product_entitlements(product_ids)

        previous = set(
            (
                await self.db.execute(
                    select(SubscriberEntitlement.entitlement_id).where(
                        SubscriberEntitlement.subscriber_id == subscriber_id
                    )
                )
            ).scalars().all()
        )

        derived = derive_entitlements(
            subscriptions, purchases, overrides, product_entitlements, now=now
        )

        await self.db.execute(
            delete(SubscriberEntitlement).where(
                SubscriberEntitlement.subscriber_id == subscriber_id
            )
        )
        rows = [
            SubscriberEntitlement(
                subscriber_id=subscriber_id,
                entitlement_id=grant.entitlement_id,
                source=grant.source,
                product_id=grant.product_id,
                subscription_id=grant.subscription_id,
                purchase_id=grant.purchase_id,
                is_active=True,
                is_at_risk=grant.is_at_risk,
                expires_date=grant.expires_date,
            )
            for grant in derived.values()
        ]
        self.db.add_all(rows)
        await self.db.flush()

        current = set(derived)
        result = RecomputeResult(
            entitlements=rows,
            granted=current - previous,
            revoked=previous - current,
        )
        if result.changed:
            logger.info(
                "Entitlements recomputed for subscriber %s: +%d -%d (total %d)",
                subscriber_id,
                len(result.granted),
                len(result.revoked),
                len(rows),
            )
        return result


# =============================================================================
# Manual Overrides
# =============================================================================

class EntitlementService:
    """Manual grant and revoke of entitlements."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.recomputer = EntitlementRecomputer(db)

    async def get_entitlement(self, app_id: uuid.UUID, identifier: str) -> Entitlement:
        result = await self.db.execute(
            select(Entitlement).where(
                Entitlement.app_id == app_id,
                Entitlement.identifier == identifier,
            )
        )
        entitlement = result.scalar_one_or_none()
        if entitlement is None:
            raise NotFoundError(
                code=ErrorCodes.ENTITLEMENT_NOT_FOUND,
                message=f"Entitlement '{identifier}' not found",
            )
        return entitlement

    async def identifiers_for(self, entitlement_ids: Iterable[uuid.UUID]) -> list[str]:
        ids = list(entitlement_ids)
        if not ids:
            return []
        result = await self.db.execute(
            select(Entitlement.identifier).where(Entitlement.id.in_(ids))
        )
        return sorted(result.scalars().all())

    async def _upsert_override(
        self,
        subscriber: Subscriber,
        entitlement: Entitlement,
        action: OverrideAction,
        expires_date: Optional[datetime],
        reason: Optional[str],
        granted_by: str,
    ) -> ManualOverride:
        result = await self.db.execute(
            select(ManualOverride)
            .where(
                ManualOverride.subscriber_id == subscriber.id,
                ManualOverride.entitlement_id == entitlement.id,
            )
            .with_for_update(of=ManualOverride)
        )
        override = result.unique().scalar_one_or_none()

        if override is None:
            override = ManualOverride(
                subscriber_id=subscriber.id,
                entitlement_id=entitlement.id,
                entitlement=entitlement,
            )
            self.db.add(override)

        override.action = action
        override.expires_date = expires_date if action == OverrideAction.GRANT else None
        override.reason = reason
        override.granted_by = granted_by
        await self.db.flush()
        return override

    async def grant(
        self,
        subscriber: Subscriber,
        entitlement_identifier: str,
        expires_date: Optional[datetime] = None,
        reason: Optional[str] = None,
        granted_by: str = "api",
    ) -> RecomputeResult:
        """Grant an entitlement manually, optionally until ``expires_date``."""
        entitlement = await self.get_entitlement(subscriber.app_id, entitlement_identifier)
        await self._upsert_override(
            subscriber, entitlement, OverrideAction.GRANT, expires_date, reason, granted_by
        )
        logger.info(
            "Manual grant of %s to subscriber %s by %s (expires=%s)",
            entitlement_identifier,
            subscriber.id,
            granted_by,
            expires_date,
        )
        return await self.recomputer.recompute(subscriber.id)

    async def revoke(
        self,
        subscriber: Subscriber,
        entitlement_identifier: str,
        reason: Optional[str] = None,
        granted_by: str = "api",
    ) -> RecomputeResult:
        """Revoke an entitlement; wins over every other source until re-granted."""
        entitlement = await self.get_entitlement(subscriber.app_id, entitlement_identifier)
        await self._upsert_override(
            subscriber, entitlement, OverrideAction.REVOKE, None, reason, granted_by
        )
        logger.info(
            "Manual revoke of %s from subscriber %s by %s",
            entitlement_identifier,
            subscriber.id,
            granted_by,
        )
        return await self.recomputer.recompute(subscriber.id)
