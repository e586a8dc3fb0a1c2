"""
Canonical Subscription Events
=============================

Store-agnostic event vocabulary shared by the receipt validator, the
webhook normalizer and the reconciler, plus the Apple and Google
notification mappings onto it.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from app.stores.base import RenewalInfo, StoreTransaction


class CanonicalEvent(str, Enum):
    """Canonical subscription lifecycle events."""
    ACTIVATED = "Activated"
    RENEWED = "Renewed"
    RENEWAL_STATUS_CHANGED = "RenewalStatusChanged"
    ENTERED_BILLING_RETRY = "EnteredBillingRetry"
    ENTERED_GRACE_PERIOD = "EnteredGracePeriod"
    GRACE_PERIOD_EXPIRED = "GracePeriodExpired"
    EXPIRED = "Expired"
    REFUNDED = "Refunded"
    REVOKED = "Revoked"
    OFFER_REDEEMED = "OfferRedeemed"


class EventSource(str, Enum):
    RECEIPT = "receipt"
    WEBHOOK = "webhook"


@dataclass
class SubscriptionFact:
    """
    One normalized observation about a subscription.

    ``transaction`` and ``renewal_info`` are whatever the store supplied
    alongside the event; explicit fields override them.
    """

    event: CanonicalEvent
    transaction: Optional[StoreTransaction] = None
    renewal_info: Optional[RenewalInfo] = None
    auto_renew_enabled: Optional[bool] = None
    grace_period_expires_date: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    source: EventSource = EventSource.WEBHOOK
    provider_event_id: Optional[str] = None
    subtype: Optional[str] = None


# =============================================================================
# Apple
# =============================================================================

APPLE_EVENT_MAP = {
    "SUBSCRIBED": CanonicalEvent.ACTIVATED,
    "DID_RENEW": CanonicalEvent.RENEWED,
    "DID_CHANGE_RENEWAL_STATUS": CanonicalEvent.RENEWAL_STATUS_CHANGED,
    "GRACE_PERIOD_EXPIRED": CanonicalEvent.GRACE_PERIOD_EXPIRED,
    "EXPIRED": CanonicalEvent.EXPIRED,
    "REFUND": CanonicalEvent.REFUNDED,
    "REVOKE": CanonicalEvent.REVOKED,
    "OFFER_REDEEMED": CanonicalEvent.OFFER_REDEEMED,
}


def map_apple_notification(
    notification_type: str, subtype: Optional[str]
) -> Optional[CanonicalEvent]:
    """Canonical event for an App Store notification, or None to only record it."""
    if notification_type == "DID_FAIL_TO_RENEW":
        if subtype == "GRACE_PERIOD":
            return CanonicalEvent.ENTERED_GRACE_PERIOD
        return CanonicalEvent.ENTERED_BILLING_RETRY
    return APPLE_EVENT_MAP.get(notification_type)


# =============================================================================
# Google
# =============================================================================

class GoogleNotificationType:
    """``subscriptionNotification.notificationType`` codes."""
    RECOVERED = 1
    RENEWED = 2
    CANCELED = 3
    PURCHASED = 4
    ON_HOLD = 5
    IN_GRACE_PERIOD = 6
    RESTARTED = 7
    PRICE_CHANGE_CONFIRMED = 8
    DEFERRED = 9
    PAUSED = 10
    PAUSE_SCHEDULE_CHANGED = 11
    REVOKED = 12
    EXPIRED = 13


GOOGLE_EVENT_MAP = {
    GoogleNotificationType.RECOVERED: CanonicalEvent.RENEWED,
    GoogleNotificationType.RENEWED: CanonicalEvent.RENEWED,
    GoogleNotificationType.CANCELED: CanonicalEvent.RENEWAL_STATUS_CHANGED,
    GoogleNotificationType.PURCHASED: CanonicalEvent.ACTIVATED,
    GoogleNotificationType.ON_HOLD: CanonicalEvent.ENTERED_BILLING_RETRY,
    GoogleNotificationType.IN_GRACE_PERIOD: CanonicalEvent.ENTERED_GRACE_PERIOD,
    GoogleNotificationType.RESTARTED: CanonicalEvent.RENEWAL_STATUS_CHANGED,
    GoogleNotificationType.DEFERRED: CanonicalEvent.RENEWED,
    GoogleNotificationType.PAUSED: CanonicalEvent.EXPIRED,
    GoogleNotificationType.REVOKED: CanonicalEvent.REVOKED,
    GoogleNotificationType.EXPIRED: CanonicalEvent.EXPIRED,
}


def map_google_notification(notification_type: Optional[int]) -> Optional[CanonicalEvent]:
    """Canonical event for an RTDN subscription code, or None to only record it."""
    return GOOGLE_EVENT_MAP.get(notification_type)


# =============================================================================
# Customer webhook event names
# =============================================================================

CUSTOMER_EVENT_TYPES = {
    CanonicalEvent.ACTIVATED: "subscription.created",
    CanonicalEvent.RENEWED: "subscription.renewed",
    CanonicalEvent.OFFER_REDEEMED: "subscription.renewed",
    CanonicalEvent.ENTERED_BILLING_RETRY: "subscription.billing_issue",
    CanonicalEvent.ENTERED_GRACE_PERIOD: "subscription.billing_issue",
    CanonicalEvent.GRACE_PERIOD_EXPIRED: "subscription.billing_issue",
    CanonicalEvent.EXPIRED: "subscription.expired",
    CanonicalEvent.REFUNDED: "subscription.refunded",
    CanonicalEvent.REVOKED: "subscription.refunded",
}


def customer_event_type(fact: SubscriptionFact) -> Optional[str]:
    """Customer webhook event name for an applied fact."""
    if fact.event == CanonicalEvent.RENEWAL_STATUS_CHANGED:
        return "subscription.canceled" if _auto_renew_disabled(fact) else None
    return CUSTOMER_EVENT_TYPES.get(fact.event)


def _auto_renew_disabled(fact: SubscriptionFact) -> bool:
    if fact.auto_renew_enabled is not None:
        return not fact.auto_renew_enabled
    if fact.renewal_info is not None:
        return not fact.renewal_info.auto_renew_status
    return False
