"""
Subscription State Machine Tests
================================

Tests for apply_transition (pure, no database):
- Renewal moves the period forward and clears trial flags
- Last event processed wins, in either order
- Grace period and billing retry transitions
- Auto-renew changes leave the status alone
"""

from datetime import datetime, timedelta, timezone

from app.models.subscription import Platform, Subscription, SubscriptionStatus
from app.services.entitlements import subscription_access_until
from app.services.events import CanonicalEvent, SubscriptionFact
from app.services.reconciler import apply_transition
from app.stores.base import RenewalInfo
from factories import store_transaction

T = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)


def _subscription(**overrides) -> Subscription:
    values = dict(
        platform=Platform.IOS,
        original_transaction_id="2000000100000001",
        status=SubscriptionStatus.ACTIVE,
        purchase_date=T - timedelta(days=7),
        expires_date=T,
        auto_renew_enabled=True,
        is_trial_period=False,
        is_in_intro_offer_period=False,
        environment="production",
    )
    values.update(overrides)
    return Subscription(**values)


class TestRenewal:
    """Renewed moves the subscription to the new period."""

    def test_renewal_extends_expiry_and_clears_trial(self):
        subscription = _subscription(is_trial_period=True)
        tx = store_transaction(
            "2000000100000001",
            expires_date=T + timedelta(days=30),
            transaction_id="2000000100000002",
            purchase_date=T,
        )

        result = apply_transition(
            subscription, SubscriptionFact(event=CanonicalEvent.RENEWED, transaction=tx), now=T
        )

        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.expires_date == T + timedelta(days=30)
        assert subscription.purchase_date == T
        assert subscription.is_trial_period is False
        assert subscription.latest_transaction_id == "2000000100000002"
        assert result.changed is True
        assert result.status_changed is False
        assert result.unexpected_from is False

    def test_renewal_from_expired_is_applied_and_flagged(self):
        subscription = _subscription(status=SubscriptionStatus.EXPIRED)
        tx = store_transaction("2000000100000001", expires_date=T + timedelta(days=30))

        result = apply_transition(
            subscription, SubscriptionFact(event=CanonicalEvent.RENEWED, transaction=tx), now=T
        )

        assert result.unexpected_from is True
        assert subscription.status == SubscriptionStatus.ACTIVE


class TestOrderDependence:
    """Transitions are last-write-wins in processing order."""

    def test_activated_then_refunded_ends_revoked(self):
        subscription = _subscription(status=None, expires_date=None, purchase_date=None)
        tx = store_transaction("2000000100000001", expires_date=T + timedelta(days=30))

        apply_transition(
            subscription, SubscriptionFact(event=CanonicalEvent.ACTIVATED, transaction=tx), now=T
        )
        assert subscription.status == SubscriptionStatus.ACTIVE

        apply_transition(subscription, SubscriptionFact(event=CanonicalEvent.REFUNDED), now=T)

        assert subscription.status == SubscriptionStatus.REVOKED
        assert subscription.canceled_at == T
        assert subscription.cancellation_reason == "refund"

    def test_refunded_then_stale_activated_ends_active(self):
        subscription = _subscription()
        tx = store_transaction("2000000100000001", expires_date=T + timedelta(days=30))

        apply_transition(subscription, SubscriptionFact(event=CanonicalEvent.REFUNDED), now=T)
        assert subscription.status == SubscriptionStatus.REVOKED

        apply_transition(
            subscription, SubscriptionFact(event=CanonicalEvent.ACTIVATED, transaction=tx), now=T
        )

        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.canceled_at is None
        assert subscription.cancellation_reason is None

    def test_voided_reason_overrides_refund(self):
        subscription = _subscription()

        apply_transition(
            subscription,
            SubscriptionFact(event=CanonicalEvent.REFUNDED, cancellation_reason="voided"),
            now=T,
        )

        assert subscription.cancellation_reason == "voided"

    def test_revoked_uses_subtype_as_reason(self):
        subscription = _subscription()

        apply_transition(
            subscription,
            SubscriptionFact(event=CanonicalEvent.REVOKED, subtype="FAMILY_SHARING_REVOKED"),
            now=T,
        )

        assert subscription.status == SubscriptionStatus.REVOKED
        assert subscription.cancellation_reason == "FAMILY_SHARING_REVOKED"


class TestBillingPath:
    """active -> grace period -> billing retry -> active keeps access throughout."""

    def test_billing_path_keeps_access(self):
        now = T
        subscription = _subscription(expires_date=now + timedelta(days=2))
        grace_end = now + timedelta(days=6)

        apply_transition(
            subscription,
            SubscriptionFact(
                event=CanonicalEvent.ENTERED_GRACE_PERIOD, grace_period_expires_date=grace_end
            ),
            now=now,
        )
        assert subscription.status == SubscriptionStatus.IN_GRACE_PERIOD
        assert subscription.grace_period_expires_date == grace_end
        assert subscription_access_until(subscription, now) == (True, grace_end)

        apply_transition(
            subscription, SubscriptionFact(event=CanonicalEvent.GRACE_PERIOD_EXPIRED), now=now
        )
        assert subscription.status == SubscriptionStatus.IN_BILLING_RETRY
        assert subscription.grace_period_expires_date is None
        assert subscription_access_until(subscription, now)[0] is True

        tx = store_transaction(
            "2000000100000001", expires_date=now + timedelta(days=30), purchase_date=now
        )
        apply_transition(
            subscription, SubscriptionFact(event=CanonicalEvent.RENEWED, transaction=tx), now=now
        )
        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription_access_until(subscription, now) == (True, now + timedelta(days=30))

    def test_grace_expiry_taken_from_renewal_info(self):
        subscription = _subscription()
        grace_end = T + timedelta(days=16)
        renewal = RenewalInfo(auto_renew_status=True, grace_period_expires_date=grace_end)

        apply_transition(
            subscription,
            SubscriptionFact(event=CanonicalEvent.ENTERED_GRACE_PERIOD, renewal_info=renewal),
            now=T,
        )

        assert subscription.grace_period_expires_date == grace_end

    def test_expired_grace_period_does_not_entitle(self):
        subscription = _subscription(
            status=SubscriptionStatus.IN_GRACE_PERIOD,
            expires_date=T - timedelta(days=3),
            grace_period_expires_date=T - timedelta(hours=1),
        )

        assert subscription_access_until(subscription, T) == (False, None)


class TestRenewalStatusChanged:
    """Auto-renew toggles never change the status."""

    def test_disable_sets_canceled_at(self):
        subscription = _subscription(status=SubscriptionStatus.IN_GRACE_PERIOD)

        result = apply_transition(
            subscription,
            SubscriptionFact(
                event=CanonicalEvent.RENEWAL_STATUS_CHANGED,
                auto_renew_enabled=False,
                cancellation_reason="user_canceled",
            ),
            now=T,
        )

        assert subscription.status == SubscriptionStatus.IN_GRACE_PERIOD
        assert subscription.auto_renew_enabled is False
        assert subscription.canceled_at == T
        assert subscription.cancellation_reason == "user_canceled"
        assert result.status_changed is False

    def test_reenable_clears_cancellation(self):
        subscription = _subscription(
            auto_renew_enabled=False, canceled_at=T - timedelta(days=1), cancellation_reason="x"
        )

        apply_transition(
            subscription,
            SubscriptionFact(
                event=CanonicalEvent.RENEWAL_STATUS_CHANGED,
                renewal_info=RenewalInfo(auto_renew_status=True),
            ),
            now=T,
        )

        assert subscription.auto_renew_enabled is True
        assert subscription.canceled_at is None

    def test_offer_redeemed_sets_intro_flag(self):
        subscription = _subscription(status=SubscriptionStatus.EXPIRED)
        tx = store_transaction(
            "2000000100000001",
            expires_date=T + timedelta(days=7),
            is_in_intro_offer_period=True,
        )

        apply_transition(
            subscription,
            SubscriptionFact(event=CanonicalEvent.OFFER_REDEEMED, transaction=tx),
            now=T,
        )

        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.is_in_intro_offer_period is True
        assert subscription.period_type == "intro"
