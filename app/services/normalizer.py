"""
Webhook Normalizer
==================

Turns Apple App Store Server Notifications and Google Play RTDN pushes
into canonical subscription facts and hands them to the reconciler.

Each notification is claimed in the event ledger before any mutation and
marked processed in the same transaction as the mutation it caused.
Outcomes the store should not redeliver (duplicates, unknown apps or
subscriptions, malformed or unsigned payloads, permanent store errors)
are returned as results; transient failures propagate to the caller.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional
import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import (
    DuplicateEvent,
    InvalidSignature,
    MalformedPayload,
    StoreApiError,
    SubscriptionNotFound,
)
from app.models.app import App
from app.models.catalog import ProductType
from app.models.subscription import Platform, Purchase, PurchaseStatus
from app.models.webhook_event import WebhookEvent
from app.services.entitlements import EntitlementRecomputer
from app.services.events import (
    CanonicalEvent,
    EventSource,
    GoogleNotificationType,
    SubscriptionFact,
    map_apple_notification,
    map_google_notification,
)
from app.services.ledger import EventLedger
from app.services.reconciler import ReconcileOutcome, SubscriptionReconciler
from app.stores import StoreAdapterFactory
from app.stores.apple import AppleNotification
from app.stores.google import (
    RTDN_SUBSCRIPTION,
    RTDN_VOIDED,
    GoogleNotification,
    GooglePlayAdapter,
)

logger = logging.getLogger(__name__)


class WebhookStatus:
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    NOT_FOUND = "not_found"
    UNKNOWN_APP = "unknown_app"
    MALFORMED = "malformed"
    INVALID_SIGNATURE = "invalid_signature"
    STORE_ERROR = "store_error"


@dataclass
class EventContext:
    """What is known about the notification currently being handled."""

    platform: Platform
    provider_event_id: Optional[str] = None
    event_type: str = "unknown"
    payload: Optional[dict[str, Any]] = None
    app_id: Optional[uuid.UUID] = None


@dataclass
class WebhookResult:
    status: str
    platform: Platform
    provider_event_id: Optional[str] = None
    event_type: Optional[str] = None
    app: Optional[App] = None
    fact: Optional[SubscriptionFact] = None
    outcome: Optional[ReconcileOutcome] = None
    subscriber_id: Optional[uuid.UUID] = None
    error: Optional[str] = None

    @property
    def is_duplicate(self) -> bool:
        return self.status == WebhookStatus.DUPLICATE


class WebhookNormalizer:
    """Normalizes store notifications and dispatches them to the reconciler."""

    def __init__(self, db: AsyncSession, stores: StoreAdapterFactory):
        self.db = db
        self.stores = stores
        self.ledger = EventLedger(db)
        self.reconciler = SubscriptionReconciler(db)
        self.context: Optional[EventContext] = None

    # -------------------------------------------------------------------------
    # Shared
    # -------------------------------------------------------------------------

    async def _find_app(self, **criteria) -> Optional[App]:
        column, value = next(iter(criteria.items()))
        if not value:
            return None
        result = await self.db.execute(select(App).where(getattr(App, column) == value))
        return result.scalar_one_or_none()

    async def _claim(self, ctx: EventContext) -> Optional[WebhookEvent]:
        try:
            return await self.ledger.claim(
                ctx.platform,
                ctx.provider_event_id,
                ctx.event_type,
                payload=ctx.payload,
                app_id=ctx.app_id,
            )
        except DuplicateEvent:
            return None

    async def _reconcile(
        self,
        event: WebhookEvent,
        result: WebhookResult,
        original_transaction_id: str,
        fact: SubscriptionFact,
    ) -> WebhookResult:
        result.fact = fact
        try:
            outcome = await self.reconciler.apply(
                result.platform, original_transaction_id, fact
            )
        except SubscriptionNotFound as e:
            logger.info("%s; event %s acknowledged", e, result.provider_event_id)
            await self.ledger.mark_processed(event)
            result.status = WebhookStatus.NOT_FOUND
            return result

        await self.ledger.mark_processed(event)
        result.status = WebhookStatus.PROCESSED
        result.outcome = outcome
        result.subscriber_id = outcome.subscription.subscriber_id
        return result

    async def _refund_purchase(
        self,
        event: WebhookEvent,
        result: WebhookResult,
        platform: Platform,
        **criteria,
    ) -> WebhookResult:
        """Mark a one-time purchase refunded and drop what it granted."""
        column, value = next(iter(criteria.items()))
        rows = await self.db.execute(
            select(Purchase)
            .where(Purchase.platform == platform, getattr(Purchase, column) == value)
            .with_for_update(of=Purchase)
        )
        purchase = rows.unique().scalar_one_or_none()
        if purchase is None:
            logger.info(
                "No %s purchase with %s=%s; event %s acknowledged",
                platform.value,
                column,
                value,
                result.provider_event_id,
            )
            await self.ledger.mark_processed(event)
            result.status = WebhookStatus.NOT_FOUND
            return result

        purchase.status = PurchaseStatus.REFUNDED
        await self.db.flush()
        await EntitlementRecomputer(self.db).recompute(purchase.subscriber_id)
        await self.ledger.mark_processed(event)

        logger.info("Purchase %s refunded", purchase.store_transaction_id)
        result.status = WebhookStatus.PROCESSED
        result.subscriber_id = purchase.subscriber_id
        return result

    # -------------------------------------------------------------------------
    # Apple
    # -------------------------------------------------------------------------

    async def handle_apple(self, signed_payload: str) -> WebhookResult:
        """Process an App Store Server Notification V2 ``signedPayload``."""
        self.context = EventContext(platform=Platform.IOS)

        try:
            notification = self.stores.apple().decode_notification(signed_payload)
        except InvalidSignature as e:
            logger.warning("SECURITY: rejected Apple notification with invalid signature: %s", e)
            return WebhookResult(
                status=WebhookStatus.INVALID_SIGNATURE, platform=Platform.IOS, error=str(e)
            )
        except MalformedPayload as e:
            logger.warning("Malformed Apple notification: %s", e)
            return WebhookResult(status=WebhookStatus.MALFORMED, platform=Platform.IOS, error=str(e))

        event_type = notification.notification_type
        if notification.subtype:
            event_type = f"{event_type}.{notification.subtype}"
        self.context.provider_event_id = notification.notification_uuid
        self.context.event_type = event_type
        self.context.payload = notification.raw

        result = WebhookResult(
            status=WebhookStatus.IGNORED,
            platform=Platform.IOS,
            provider_event_id=notification.notification_uuid,
            event_type=event_type,
        )

        app = await self._find_app(bundle_id=notification.bundle_id)
        if app is None:
            logger.warning(
                "Apple notification %s for unknown bundle id %s",
                notification.notification_uuid,
                notification.bundle_id,
            )
            result.status = WebhookStatus.UNKNOWN_APP
            return result
        result.app = app
        self.context.app_id = app.id

        event = await self._claim(self.context)
        if event is None:
            result.status = WebhookStatus.DUPLICATE
            return result

        canonical = map_apple_notification(
            notification.notification_type, notification.subtype
        )
        if canonical is None:
            logger.info("Apple notification %s recorded without reconciliation", event_type)
            await self.ledger.mark_processed(event)
            return result

        tx = notification.transaction
        if tx is None:
            logger.warning(
                "Apple notification %s (%s) has no transaction",
                notification.notification_uuid,
                event_type,
            )
            await self.ledger.mark_processed(event, error="missing signedTransactionInfo")
            result.error = "missing signedTransactionInfo"
            return result

        if tx.product_type in (ProductType.CONSUMABLE, ProductType.NON_CONSUMABLE):
            if canonical in (CanonicalEvent.REFUNDED, CanonicalEvent.REVOKED):
                return await self._refund_purchase(
                    event, result, Platform.IOS, store_transaction_id=tx.transaction_id
                )
            await self.ledger.mark_processed(event)
            return result

        fact = self.apple_fact(canonical, notification)
        return await self._reconcile(event, result, tx.original_transaction_id, fact)

    @staticmethod
    def apple_fact(canonical: CanonicalEvent, notification: AppleNotification) -> SubscriptionFact:
        """Build the canonical fact for a decoded Apple notification."""
        fact = SubscriptionFact(
            event=canonical,
            transaction=notification.transaction,
            renewal_info=notification.renewal_info,
            source=EventSource.WEBHOOK,
            provider_event_id=notification.notification_uuid,
            subtype=notification.subtype,
        )

        if canonical == CanonicalEvent.RENEWAL_STATUS_CHANGED:
            fact.auto_renew_enabled = notification.subtype != "AUTO_RENEW_DISABLED"
            if not fact.auto_renew_enabled:
                fact.cancellation_reason = "user_canceled"
        elif canonical == CanonicalEvent.ENTERED_GRACE_PERIOD and notification.renewal_info:
            fact.grace_period_expires_date = notification.renewal_info.grace_period_expires_date
        elif canonical == CanonicalEvent.REFUNDED:
            fact.cancellation_reason = "refund"

        return fact

    # -------------------------------------------------------------------------
    # Google
    # -------------------------------------------------------------------------

    async def handle_google(self, envelope: dict[str, Any]) -> WebhookResult:
        """Process a Pub/Sub push envelope carrying an RTDN."""
        self.context = EventContext(platform=Platform.ANDROID)

        try:
            notification = GooglePlayAdapter.decode_rtdn(envelope)
        except MalformedPayload as e:
            logger.warning("Malformed Google RTDN: %s", e)
            return WebhookResult(
                status=WebhookStatus.MALFORMED, platform=Platform.ANDROID, error=str(e)
            )

        self.context.provider_event_id = notification.message_id
        self.context.event_type = notification.event_type
        self.context.payload = notification.raw

        result = WebhookResult(
            status=WebhookStatus.IGNORED,
            platform=Platform.ANDROID,
            provider_event_id=notification.message_id,
            event_type=notification.event_type,
        )

        app = await self._find_app(package_name=notification.package_name)
        if app is None:
            logger.warning(
                "Google RTDN %s for unknown package %s",
                notification.message_id,
                notification.package_name,
            )
            result.status = WebhookStatus.UNKNOWN_APP
            return result
        result.app = app
        self.context.app_id = app.id

        event = await self._claim(self.context)
        if event is None:
            result.status = WebhookStatus.DUPLICATE
            return result

        if notification.kind == RTDN_VOIDED:
            return await self._handle_google_voided(event, result, notification)

        if notification.kind != RTDN_SUBSCRIPTION or not notification.purchase_token:
            logger.info("Google RTDN %s recorded without reconciliation", notification.event_type)
            await self.ledger.mark_processed(event)
            return result

        canonical = map_google_notification(notification.notification_type)
        if canonical is None:
            logger.info(
                "Google notification type %s recorded without reconciliation",
                notification.notification_type,
            )
            await self.ledger.mark_processed(event)
            return result

        # Unknown tokens are acknowledged without a Play API round trip
        subscription = await self.reconciler.get_for_update(
            Platform.ANDROID, notification.purchase_token
        )
        if subscription is None:
            logger.info(
                "No android subscription for token in event %s; acknowledged",
                notification.message_id,
            )
            await self.ledger.mark_processed(event)
            result.status = WebhookStatus.NOT_FOUND
            return result

        adapter = self.stores.google(app)
        try:
            data = await adapter.fetch_subscription(notification.purchase_token)
            tx = adapter.decode_transaction(data, purchase_token=notification.purchase_token)
        except StoreApiError as e:
            if e.transient:
                raise
            return await self._permanent_store_error(event, result, e)
        except MalformedPayload as e:
            return await self._permanent_store_error(event, result, e)

        fact = SubscriptionFact(
            event=canonical,
            transaction=tx,
            auto_renew_enabled=tx.auto_renew_enabled,
            source=EventSource.WEBHOOK,
            provider_event_id=notification.message_id,
        )
        if notification.notification_type == GoogleNotificationType.CANCELED:
            fact.auto_renew_enabled = False
            fact.cancellation_reason = adapter.cancellation_reason(data) or "user_canceled"
        elif notification.notification_type == GoogleNotificationType.RESTARTED:
            fact.auto_renew_enabled = True
        elif canonical == CanonicalEvent.ENTERED_GRACE_PERIOD:
            fact.grace_period_expires_date = tx.expires_date
        elif canonical == CanonicalEvent.REVOKED:
            fact.cancellation_reason = "revoked"

        return await self._reconcile(event, result, notification.purchase_token, fact)

    async def _handle_google_voided(
        self,
        event: WebhookEvent,
        result: WebhookResult,
        notification: GoogleNotification,
    ) -> WebhookResult:
        token = notification.purchase_token
        if not token:
            await self.ledger.mark_processed(event, error="voided notification without token")
            return result

        subscription = await self.reconciler.get_for_update(Platform.ANDROID, token)
        if subscription is None:
            return await self._refund_purchase(
                event, result, Platform.ANDROID, original_transaction_id=token
            )

        fact = SubscriptionFact(
            event=CanonicalEvent.REFUNDED,
            cancellation_reason="voided",
            source=EventSource.WEBHOOK,
            provider_event_id=notification.message_id,
        )
        result.fact = fact
        outcome = await self.reconciler.reconcile(subscription, fact)
        await self.ledger.mark_processed(event)
        result.status = WebhookStatus.PROCESSED
        result.outcome = outcome
        result.subscriber_id = subscription.subscriber_id
        return result

    async def _permanent_store_error(
        self,
        event: WebhookEvent,
        result: WebhookResult,
        error: Exception,
    ) -> WebhookResult:
        logger.error(
            "Permanent store error for %s event %s: %s",
            result.platform.value,
            result.provider_event_id,
            error,
        )
        await self.ledger.mark_processed(event, error=str(error)[:2000])
        result.status = WebhookStatus.STORE_ERROR
        result.error = str(error)
        return result
