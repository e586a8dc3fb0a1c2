"""
Subscription Reconciler
=======================

Applies canonical events to subscription rows.

Every mutation happens under a row lock on the subscription, writes one
history row and rebuilds the owner's entitlements in the same
transaction. Transitions are last-write-wins in the order events are
processed; an event arriving from an unexpected state is still applied
and logged.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional
import uuid

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import SubscriptionNotFound
from app.models.catalog import Product
from app.models.subscription import (
    Platform,
    Subscription,
    SubscriptionHistory,
    SubscriptionStatus,
)
from app.services.entitlements import EntitlementRecomputer, RecomputeResult
from app.services.events import CanonicalEvent, SubscriptionFact
from app.stores.base import ENVIRONMENT_PRODUCTION
from app.utils.helpers import utc_now

logger = logging.getLogger(__name__)


_ACTIVE_LIKE = frozenset(
    {
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.IN_GRACE_PERIOD,
        SubscriptionStatus.IN_BILLING_RETRY,
    }
)

# From-states each event is normally seen in. Events not listed are
# valid from any state.
EXPECTED_FROM = {
    CanonicalEvent.RENEWED: _ACTIVE_LIKE,
    CanonicalEvent.ENTERED_BILLING_RETRY: frozenset({SubscriptionStatus.ACTIVE}),
    CanonicalEvent.ENTERED_GRACE_PERIOD: frozenset({SubscriptionStatus.ACTIVE}),
    CanonicalEvent.GRACE_PERIOD_EXPIRED: frozenset({SubscriptionStatus.IN_GRACE_PERIOD}),
}

TARGET_STATUS = {
    CanonicalEvent.ACTIVATED: SubscriptionStatus.ACTIVE,
    CanonicalEvent.RENEWED: SubscriptionStatus.ACTIVE,
    CanonicalEvent.ENTERED_BILLING_RETRY: SubscriptionStatus.IN_BILLING_RETRY,
    CanonicalEvent.ENTERED_GRACE_PERIOD: SubscriptionStatus.IN_GRACE_PERIOD,
    CanonicalEvent.GRACE_PERIOD_EXPIRED: SubscriptionStatus.IN_BILLING_RETRY,
    CanonicalEvent.EXPIRED: SubscriptionStatus.EXPIRED,
    CanonicalEvent.REFUNDED: SubscriptionStatus.REVOKED,
    CanonicalEvent.REVOKED: SubscriptionStatus.REVOKED,
    CanonicalEvent.OFFER_REDEEMED: SubscriptionStatus.ACTIVE,
}

# Events whose transaction replaces the current period
_PERIOD_EVENTS = frozenset(
    {
        CanonicalEvent.ACTIVATED,
        CanonicalEvent.RENEWED,
        CanonicalEvent.OFFER_REDEEMED,
    }
)

# Canonical event that moves a row to a store-reported status
STATUS_EVENTS = {
    SubscriptionStatus.IN_GRACE_PERIOD: CanonicalEvent.ENTERED_GRACE_PERIOD,
    SubscriptionStatus.IN_BILLING_RETRY: CanonicalEvent.ENTERED_BILLING_RETRY,
    SubscriptionStatus.EXPIRED: CanonicalEvent.EXPIRED,
    SubscriptionStatus.REVOKED: CanonicalEvent.REVOKED,
}


@dataclass
class TransitionResult:
    """Outcome of applying one fact to one subscription."""

    event: CanonicalEvent
    previous_status: Optional[SubscriptionStatus]
    new_status: SubscriptionStatus
    previous_expires_date: Optional[datetime]
    new_expires_date: Optional[datetime]
    unexpected_from: bool = False

    @property
    def status_changed(self) -> bool:
        return self.previous_status != self.new_status

    @property
    def changed(self) -> bool:
        return self.status_changed or self.previous_expires_date != self.new_expires_date


def _resolve_auto_renew(fact: SubscriptionFact) -> Optional[bool]:
    if fact.auto_renew_enabled is not None:
        return fact.auto_renew_enabled
    if fact.renewal_info is not None:
        return fact.renewal_info.auto_renew_status
    if fact.transaction is not None:
        return fact.transaction.auto_renew_enabled
    return None


def apply_transition(
    subscription: Subscription,
    fact: SubscriptionFact,
    now: Optional[datetime] = None,
) -> TransitionResult:
    """
    Mutate ``subscription`` in memory according to ``fact``.

    No I/O. The caller is responsible for locking, history and
    entitlement recomputation.
    """
    now = now or utc_now()
    event = fact.event
    previous_status = subscription.status
    previous_expires = subscription.expires_date
    tx = fact.transaction

    expected = EXPECTED_FROM.get(event)
    unexpected = expected is not None and previous_status not in expected
    if unexpected:
        logger.warning(
            "Applying %s to subscription %s from unexpected state %s",
            event.value,
            subscription.original_transaction_id,
            previous_status.value if previous_status else None,
        )

    if tx is not None:
        subscription.latest_transaction_id = tx.transaction_id
        subscription.store_response = tx.raw or subscription.store_response

    if event in _PERIOD_EVENTS and tx is not None:
        subscription.purchase_date = tx.purchase_date
        subscription.expires_date = tx.expires_date
        subscription.environment = tx.environment
        if subscription.original_purchase_date is None:
            subscription.original_purchase_date = tx.original_purchase_date or tx.purchase_date

    if event == CanonicalEvent.ACTIVATED:
        if previous_status is not None:
            logger.info(
                "Re-activating subscription %s from %s",
                subscription.original_transaction_id,
                previous_status.value,
            )
        if tx is not None:
            subscription.is_trial_period = tx.is_trial_period
            subscription.is_in_intro_offer_period = tx.is_in_intro_offer_period
        subscription.grace_period_expires_date = None
        subscription.canceled_at = None
        subscription.cancellation_reason = None

    elif event == CanonicalEvent.RENEWED:
        subscription.is_trial_period = False
        subscription.is_in_intro_offer_period = False
        subscription.grace_period_expires_date = None

    elif event == CanonicalEvent.OFFER_REDEEMED:
        if tx is not None:
            subscription.is_trial_period = tx.is_trial_period
            subscription.is_in_intro_offer_period = tx.is_in_intro_offer_period

    elif event == CanonicalEvent.RENEWAL_STATUS_CHANGED:
        enabled = _resolve_auto_renew(fact)
        if enabled is None:
            enabled = subscription.auto_renew_enabled
        subscription.auto_renew_enabled = enabled
        if enabled:
            subscription.canceled_at = None
            subscription.cancellation_reason = None
        else:
            subscription.canceled_at = now
            subscription.cancellation_reason = fact.cancellation_reason

    elif event == CanonicalEvent.ENTERED_GRACE_PERIOD:
        grace_expires = fact.grace_period_expires_date
        if grace_expires is None and fact.renewal_info is not None:
            grace_expires = fact.renewal_info.grace_period_expires_date
        subscription.grace_period_expires_date = grace_expires

    elif event in (CanonicalEvent.GRACE_PERIOD_EXPIRED, CanonicalEvent.ENTERED_BILLING_RETRY):
        subscription.grace_period_expires_date = None

    elif event == CanonicalEvent.REFUNDED:
        subscription.canceled_at = (tx.revocation_date if tx else None) or now
        subscription.cancellation_reason = fact.cancellation_reason or "refund"

    elif event == CanonicalEvent.REVOKED:
        subscription.canceled_at = (tx.revocation_date if tx else None) or now
        subscription.cancellation_reason = (
            fact.cancellation_reason or fact.subtype or "revoked"
        )

    if event != CanonicalEvent.RENEWAL_STATUS_CHANGED:
        auto_renew = _resolve_auto_renew(fact)
        if auto_renew is not None:
            subscription.auto_renew_enabled = auto_renew

    new_status = TARGET_STATUS.get(event, previous_status)
    subscription.status = new_status

    return TransitionResult(
        event=event,
        previous_status=previous_status,
        new_status=new_status,
        previous_expires_date=previous_expires,
        new_expires_date=subscription.expires_date,
        unexpected_from=unexpected,
    )


@dataclass
class ReconcileOutcome:
    subscription: Subscription
    transition: TransitionResult
    entitlements: RecomputeResult
    created: bool = False
    fact: Optional[SubscriptionFact] = None


class SubscriptionReconciler:
    """Locks, mutates and audits subscription rows."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.recomputer = EntitlementRecomputer(db)

    # -------------------------------------------------------------------------
    # Lookup
    # -------------------------------------------------------------------------

    def _locked_select(self, platform: Platform, original_transaction_id: str):
        return (
            select(Subscription)
            .where(
                Subscription.platform == platform,
                Subscription.original_transaction_id == original_transaction_id,
            )
            .with_for_update(of=Subscription)
            .execution_options(populate_existing=True)
        )

    async def get_for_update(
        self,
        platform: Platform,
        original_transaction_id: str,
    ) -> Optional[Subscription]:
        """Load a subscription with ``SELECT ... FOR UPDATE``."""
        result = await self.db.execute(self._locked_select(platform, original_transaction_id))
        return result.unique().scalar_one_or_none()

    # -------------------------------------------------------------------------
    # Mutation
    # -------------------------------------------------------------------------

    async def reconcile(
        self,
        subscription: Subscription,
        fact: SubscriptionFact,
        now: Optional[datetime] = None,
    ) -> ReconcileOutcome:
        """Apply ``fact`` to an already-locked subscription."""
        now = now or utc_now()
        transition = apply_transition(subscription, fact, now=now)
        return await self._record(subscription, fact, transition, now)

    async def _record(
        self,
        subscription: Subscription,
        fact: SubscriptionFact,
        transition: TransitionResult,
        now: datetime,
    ) -> ReconcileOutcome:
        self.db.add(
            SubscriptionHistory(
                subscription_id=subscription.id,
                subscriber_id=subscription.subscriber_id,
                event=transition.event.value,
                previous_status=(
                    transition.previous_status.value if transition.previous_status else None
                ),
                new_status=transition.new_status.value,
                transaction_id=fact.transaction.transaction_id if fact.transaction else None,
                source=fact.source.value,
                provider_event_id=fact.provider_event_id,
            )
        )
        await self.db.flush()

        entitlements = await self.recomputer.recompute(subscription.subscriber_id, now=now)

        logger.info(
            "Subscription %s %s: %s -> %s (expires=%s)",
            subscription.original_transaction_id,
            transition.event.value,
            transition.previous_status.value if transition.previous_status else None,
            transition.new_status.value,
            subscription.expires_date,
        )
        return ReconcileOutcome(
            subscription=subscription,
            transition=transition,
            entitlements=entitlements,
            fact=fact,
        )

    async def apply(
        self,
        platform: Platform,
        original_transaction_id: str,
        fact: SubscriptionFact,
        now: Optional[datetime] = None,
    ) -> ReconcileOutcome:
        """
        Lock the subscription and apply ``fact``.

        Raises:
            SubscriptionNotFound: no row for (platform, original_transaction_id).
        """
        subscription = await self.get_for_update(platform, original_transaction_id)
        if subscription is None:
            raise SubscriptionNotFound(platform.value, original_transaction_id)
        return await self.reconcile(subscription, fact, now=now)

    async def activate(
        self,
        subscriber_id: uuid.UUID,
        product: Product,
        platform: Platform,
        fact: SubscriptionFact,
        now: Optional[datetime] = None,
    ) -> ReconcileOutcome:
        """
        Create-or-update entry point for a validated receipt.

        A new row gets ``Activated``; an existing row gets ``fact`` as
        given (normally ``Renewed``). Concurrent creation of the same
        subscription is resolved by the unique constraint.
        """
        now = now or utc_now()
        tx = fact.transaction
        if tx is None:
            raise ValueError("activate() requires a transaction")

        subscription = await self.get_for_update(platform, tx.original_transaction_id)
        if subscription is not None:
            return await self._update_existing(subscription, subscriber_id, product, fact, now)

        subscription = Subscription(
            id=uuid.uuid4(),
            subscriber_id=subscriber_id,
            product_id=product.id,
            product=product,
            platform=platform,
            original_transaction_id=tx.original_transaction_id,
            auto_renew_enabled=True,
            is_trial_period=False,
            is_in_intro_offer_period=False,
            environment=tx.environment or ENVIRONMENT_PRODUCTION,
        )
        activated = SubscriptionFact(
            event=CanonicalEvent.ACTIVATED,
            transaction=tx,
            renewal_info=fact.renewal_info,
            auto_renew_enabled=fact.auto_renew_enabled,
            source=fact.source,
            provider_event_id=fact.provider_event_id,
        )
        transition = apply_transition(subscription, activated, now=now)

        try:
            async with self.db.begin_nested():
                self.db.add(subscription)
                await self.db.flush()
        except IntegrityError:
            # Lost the insert race; the winner's row is authoritative
            logger.info(
                "Concurrent create of subscription %s, reconciling existing row",
                tx.original_transaction_id,
            )
            existing = await self.get_for_update(platform, tx.original_transaction_id)
            if existing is None:
                raise
            return await self._update_existing(existing, subscriber_id, product, fact, now)

        outcome = await self._record(subscription, activated, transition, now)
        outcome.created = True
        return outcome

    async def _update_existing(
        self,
        subscription: Subscription,
        subscriber_id: uuid.UUID,
        product: Product,
        fact: SubscriptionFact,
        now: datetime,
    ) -> ReconcileOutcome:
        previous_owner = subscription.subscriber_id
        if previous_owner != subscriber_id:
            # Restored on a different app user id; the latest owner wins
            logger.info(
                "Subscription %s moved from subscriber %s to %s",
                subscription.original_transaction_id,
                previous_owner,
                subscriber_id,
            )
            subscription.subscriber_id = subscriber_id
        if subscription.product_id != product.id:
            subscription.product_id = product.id
            subscription.product = product

        outcome = await self.reconcile(subscription, fact, now=now)

        if previous_owner != subscriber_id:
            await self.recomputer.recompute(previous_owner, now=now)
        return outcome
