"""
Subscription Reconciler Tests
=============================

Tests for SubscriptionReconciler against the database:
- activate() creates or renews by (platform, original transaction id)
- Every applied event writes one history row and recomputes entitlements
- Ownership moves to the latest subscriber on restore
- Unknown subscriptions raise SubscriptionNotFound
"""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from app.core.errors import SubscriptionNotFound
from app.models.entitlement import SubscriberEntitlement
from app.models.subscription import Platform, SubscriptionHistory, SubscriptionStatus
from app.services.events import CanonicalEvent, EventSource, SubscriptionFact
from app.services.reconciler import SubscriptionReconciler
from app.services.subscribers import SubscriberService
from factories import store_transaction


def _renewed(tx) -> SubscriptionFact:
    return SubscriptionFact(event=CanonicalEvent.RENEWED, transaction=tx, source=EventSource.RECEIPT)


async def _history_count(db) -> int:
    return (await db.execute(select(func.count()).select_from(SubscriptionHistory))).scalar_one()


class TestActivate:
    """Tests for the receipt entry point."""

    @pytest.mark.asyncio
    async def test_new_row_is_activated(self, db, catalog):
        subscriber, _ = await SubscriberService(db).get_or_create(catalog["app"], "reader_1")
        expires = datetime.now(timezone.utc) + timedelta(days=30)

        outcome = await SubscriptionReconciler(db).activate(
            subscriber.id,
            catalog["ios_monthly"],
            Platform.IOS,
            _renewed(store_transaction("1000000900000001", expires_date=expires)),
        )

        assert outcome.created is True
        assert outcome.transition.event == CanonicalEvent.ACTIVATED
        assert outcome.transition.previous_status is None
        assert outcome.subscription.status == SubscriptionStatus.ACTIVE
        assert outcome.subscription.expires_date == expires
        assert outcome.entitlements.granted == {catalog["pro"].id}

        history = (await db.execute(select(SubscriptionHistory))).scalars().all()
        assert [(h.event, h.new_status, h.source) for h in history] == [
            ("Activated", "active", "receipt")
        ]

    @pytest.mark.asyncio
    async def test_existing_row_is_renewed(self, db, catalog):
        subscriber, _ = await SubscriberService(db).get_or_create(catalog["app"], "reader_1")
        reconciler = SubscriptionReconciler(db)
        now = datetime.now(timezone.utc)

        await reconciler.activate(
            subscriber.id,
            catalog["ios_monthly"],
            Platform.IOS,
            _renewed(store_transaction("1000000900000001", expires_date=now + timedelta(days=1))),
        )
        outcome = await reconciler.activate(
            subscriber.id,
            catalog["ios_monthly"],
            Platform.IOS,
            _renewed(
                store_transaction(
                    "1000000900000001",
                    expires_date=now + timedelta(days=31),
                    transaction_id="1000000900000002",
                )
            ),
        )

        assert outcome.created is False
        assert outcome.transition.event == CanonicalEvent.RENEWED
        assert outcome.subscription.expires_date == now + timedelta(days=31)
        assert outcome.subscription.latest_transaction_id == "1000000900000002"
        assert await _history_count(db) == 2

    @pytest.mark.asyncio
    async def test_restore_moves_ownership(self, db, catalog):
        service = SubscriberService(db)
        first, _ = await service.get_or_create(catalog["app"], "device_a")
        second, _ = await service.get_or_create(catalog["app"], "device_b")
        reconciler = SubscriptionReconciler(db)
        tx = store_transaction(
            "1000000900000001", expires_date=datetime.now(timezone.utc) + timedelta(days=30)
        )

        await reconciler.activate(first.id, catalog["ios_monthly"], Platform.IOS, _renewed(tx))
        outcome = await reconciler.activate(
            second.id, catalog["ios_monthly"], Platform.IOS, _renewed(tx)
        )

        assert outcome.subscription.subscriber_id == second.id
        owners = (
            await db.execute(select(SubscriberEntitlement.subscriber_id))
        ).scalars().all()
        assert owners == [second.id]


class TestApply:
    """Tests for applying store events to existing rows."""

    @pytest.mark.asyncio
    async def test_unknown_subscription_raises(self, db, catalog):
        with pytest.raises(SubscriptionNotFound):
            await SubscriptionReconciler(db).apply(
                Platform.IOS,
                "does-not-exist",
                SubscriptionFact(event=CanonicalEvent.EXPIRED),
            )

        assert await _history_count(db) == 0

    @pytest.mark.asyncio
    async def test_billing_path_keeps_entitlement(self, db, catalog):
        subscriber, _ = await SubscriberService(db).get_or_create(catalog["app"], "reader_1")
        reconciler = SubscriptionReconciler(db)
        now = datetime.now(timezone.utc)
        original_id = "1000000900000001"

        await reconciler.activate(
            subscriber.id,
            catalog["ios_monthly"],
            Platform.IOS,
            _renewed(store_transaction(original_id, expires_date=now + timedelta(days=2))),
        )

        grace = await reconciler.apply(
            Platform.IOS,
            original_id,
            SubscriptionFact(
                event=CanonicalEvent.ENTERED_GRACE_PERIOD,
                grace_period_expires_date=now + timedelta(days=8),
            ),
        )
        assert grace.subscription.status == SubscriptionStatus.IN_GRACE_PERIOD
        assert len(grace.entitlements.entitlements) == 1
        assert grace.entitlements.entitlements[0].is_at_risk is False

        retry = await reconciler.apply(
            Platform.IOS, original_id, SubscriptionFact(event=CanonicalEvent.GRACE_PERIOD_EXPIRED)
        )
        assert retry.subscription.status == SubscriptionStatus.IN_BILLING_RETRY
        assert len(retry.entitlements.entitlements) == 1
        assert retry.entitlements.entitlements[0].is_at_risk is True
        assert retry.entitlements.changed is False

        renewed = await reconciler.apply(
            Platform.IOS,
            original_id,
            SubscriptionFact(
                event=CanonicalEvent.RENEWED,
                transaction=store_transaction(
                    original_id,
                    expires_date=now + timedelta(days=32),
                    transaction_id="1000000900000002",
                ),
            ),
        )
        assert renewed.subscription.status == SubscriptionStatus.ACTIVE
        assert renewed.entitlements.entitlements[0].is_at_risk is False
        assert renewed.entitlements.revoked == set()
        assert await _history_count(db) == 4
