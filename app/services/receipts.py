"""
Receipt Validation Service
==========================

Client-initiated entry point: verify a purchase with the store, then feed
it through the same reconciler the webhooks use.

Everything the store has to say is fetched before the first write, so a
rejected or unreachable store leaves the database untouched.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import (
    ErrorCodes,
    InvalidSignature,
    MalformedPayload,
    ReceiptInvalid,
    StoreApiError,
)
from app.models.app import App
from app.models.catalog import Product
from app.models.subscriber import Subscriber
from app.models.subscription import (
    Platform,
    Purchase,
    PurchaseStatus,
    SubscriptionStatus,
)
from app.services.entitlements import EntitlementRecomputer, RecomputeResult
from app.services.events import CanonicalEvent, EventSource, SubscriptionFact
from app.services.reconciler import STATUS_EVENTS, ReconcileOutcome, SubscriptionReconciler
from app.services.subscribers import SubscriberService
from app.stores import StoreAdapterFactory
from app.stores.base import RenewalInfo, StoreTransaction
from app.utils.helpers import utc_now

logger = logging.getLogger(__name__)


@dataclass
class VerifiedReceipt:
    """Store-side view of a receipt, gathered before any mutation."""

    transaction: StoreTransaction
    product: Product
    store_status: Optional[SubscriptionStatus] = None
    renewal_info: Optional[RenewalInfo] = None


@dataclass
class ReceiptResult:
    subscriber: Subscriber
    product: Product
    outcomes: list[ReconcileOutcome] = field(default_factory=list)
    purchase: Optional[Purchase] = None
    purchase_created: bool = False
    entitlements: Optional[RecomputeResult] = None


class ReceiptValidator:
    """Validates receipts and reconciles the result."""

    def __init__(self, db: AsyncSession, stores: StoreAdapterFactory):
        self.db = db
        self.stores = stores
        self.reconciler = SubscriptionReconciler(db)
        self.subscribers = SubscriberService(db)

    async def validate(
        self,
        app: App,
        app_user_id: str,
        platform: Platform,
        receipt_data: Optional[str],
        product_id: Optional[str] = None,
        transaction_id: Optional[str] = None,
        subscription_id: Optional[str] = None,
    ) -> ReceiptResult:
        """
        Verify a receipt and apply it to the subscriber.

        Raises:
            ReceiptInvalid: the store rejected the receipt, it could not be
                decoded, or it names a product the app does not sell.
            StoreApiError: transient store failure (retry later).
        """
        now = utc_now()

        try:
            if platform == Platform.IOS:
                verified = await self._verify_apple(
                    app, receipt_data, transaction_id, product_id, now
                )
            else:
                verified = await self._verify_google(
                    app, receipt_data, product_id or subscription_id
                )
        except StoreApiError as e:
            if e.transient:
                raise
            code = (
                ErrorCodes.RECEIPT_STORE_NOT_CONFIGURED
                if e.status_code is None
                else ErrorCodes.RECEIPT_INVALID
            )
            logger.info("Store rejected %s receipt for app %s: %s", platform.value, app.id, e)
            raise ReceiptInvalid(f"Store rejected receipt: {e.body or e}", code=code) from e
        except (MalformedPayload, InvalidSignature) as e:
            logger.warning("Undecodable %s receipt for app %s: %s", platform.value, app.id, e)
            raise ReceiptInvalid(str(e)) from e

        subscriber, _ = await self.subscribers.get_or_create(app, app_user_id)
        result = ReceiptResult(subscriber=subscriber, product=verified.product)

        if verified.product.is_subscription:
            await self._apply_subscription(result, platform, verified, now)
        else:
            await self._record_purchase(result, platform, verified, now)

        return result

    # -------------------------------------------------------------------------
    # Store verification
    # -------------------------------------------------------------------------

    async def _find_product(self, app: App, store_product_id: str, platform: Platform) -> Product:
        result = await self.db.execute(
            select(Product).where(
                Product.app_id == app.id,
                Product.store_product_id == store_product_id,
                Product.platform == platform,
            )
        )
        product = result.scalar_one_or_none()
        if product is None:
            raise ReceiptInvalid(
                f"Unknown {platform.value} product {store_product_id}",
                code=ErrorCodes.RECEIPT_PRODUCT_NOT_FOUND,
            )
        return product

    async def _verify_apple(
        self,
        app: App,
        receipt_data: Optional[str],
        transaction_id: Optional[str],
        product_id: Optional[str],
        now: datetime,
    ) -> VerifiedReceipt:
        adapter = self.stores.apple(app)

        if adapter.has_credentials:
            if not transaction_id:
                if not receipt_data:
                    raise ReceiptInvalid("transaction_id or receipt_data is required")
                # StoreKit 2 signed transaction; only its id is trusted
                transaction_id = adapter.decode_transaction(receipt_data).transaction_id
            tx = await adapter.fetch_latest_transaction_info(transaction_id)
        else:
            if not receipt_data:
                raise ReceiptInvalid(
                    "App Store Server API not configured; a signed transaction is required",
                    code=ErrorCodes.RECEIPT_STORE_NOT_CONFIGURED,
                )
            logger.info("App %s has no App Store Server API credentials, decoding client JWS", app.id)
            tx = adapter.decode_transaction(receipt_data)

        if product_id and product_id != tx.product_id:
            raise ReceiptInvalid(
                f"Receipt is for product {tx.product_id}, not {product_id}"
            )
        product = await self._find_product(app, tx.product_id, Platform.IOS)
        verified = VerifiedReceipt(transaction=tx, product=product)

        if not product.is_subscription:
            return verified

        if adapter.has_credentials:
            info = await adapter.fetch_subscription_status(tx.original_transaction_id)
            verified.store_status = info.status
            latest = info.latest
            if latest is not None:
                verified.renewal_info = latest.renewal_info
                # The status endpoint reflects renewals the client may not have seen
                if (
                    latest.transaction is not None
                    and latest.original_transaction_id == tx.original_transaction_id
                ):
                    verified.transaction = latest.transaction
        else:
            verified.store_status = self._inferred_status(tx, now)
        return verified

    async def _verify_google(
        self,
        app: App,
        purchase_token: Optional[str],
        product_id: Optional[str],
    ) -> VerifiedReceipt:
        if not product_id:
            raise ReceiptInvalid("product_id is required for Android receipts")
        if not purchase_token:
            raise ReceiptInvalid("receipt_data must be the purchase token")

        product = await self._find_product(app, product_id, Platform.ANDROID)
        adapter = self.stores.google(app)

        if not product.is_subscription:
            tx = await adapter.fetch_product_purchase(product_id, purchase_token)
            return VerifiedReceipt(transaction=tx, product=product)

        tx = await adapter.fetch_latest_transaction_info(purchase_token)
        if tx.product_id and tx.product_id != product_id:
            raise ReceiptInvalid(f"Token is for product {tx.product_id}, not {product_id}")
        return VerifiedReceipt(
            transaction=tx,
            product=product,
            store_status=adapter.map_subscription_state((tx.raw or {}).get("subscriptionState")),
        )

    @staticmethod
    def _inferred_status(tx: StoreTransaction, now: datetime) -> SubscriptionStatus:
        """Status from a bare transaction when the store cannot be asked."""
        if tx.revocation_date is not None:
            return SubscriptionStatus.REVOKED
        if tx.expires_date is not None and tx.expires_date <= now:
            return SubscriptionStatus.EXPIRED
        return SubscriptionStatus.ACTIVE

    # -------------------------------------------------------------------------
    # Mutation
    # -------------------------------------------------------------------------

    async def _apply_subscription(
        self,
        result: ReceiptResult,
        platform: Platform,
        verified: VerifiedReceipt,
        now: datetime,
    ) -> None:
        tx = verified.transaction
        fact = SubscriptionFact(
            event=CanonicalEvent.RENEWED,
            transaction=tx,
            renewal_info=verified.renewal_info,
            source=EventSource.RECEIPT,
        )
        outcome = await self.reconciler.activate(
            result.subscriber.id, verified.product, platform, fact, now=now
        )
        result.outcomes.append(outcome)

        status_event = STATUS_EVENTS.get(verified.store_status)
        if status_event is not None:
            grace_expires = None
            if status_event == CanonicalEvent.ENTERED_GRACE_PERIOD:
                grace_expires = (
                    verified.renewal_info.grace_period_expires_date
                    if verified.renewal_info
                    else None
                ) or tx.expires_date
            status_fact = SubscriptionFact(
                event=status_event,
                transaction=tx,
                renewal_info=verified.renewal_info,
                grace_period_expires_date=grace_expires,
                cancellation_reason=tx.revocation_reason,
                source=EventSource.RECEIPT,
            )
            result.outcomes.append(
                await self.reconciler.reconcile(outcome.subscription, status_fact, now=now)
            )

        result.entitlements = result.outcomes[-1].entitlements

    async def _record_purchase(
        self,
        result: ReceiptResult,
        platform: Platform,
        verified: VerifiedReceipt,
        now: datetime,
    ) -> None:
        tx = verified.transaction
        subscriber_id = result.subscriber.id
        previous_owner = None

        purchase = await self._get_purchase_for_update(platform, tx.transaction_id)
        if purchase is None:
            purchase = Purchase(
                subscriber_id=subscriber_id,
                product_id=verified.product.id,
                product=verified.product,
                platform=platform,
                store_transaction_id=tx.transaction_id,
                original_transaction_id=tx.original_transaction_id,
                purchase_date=tx.purchase_date,
                status=(
                    PurchaseStatus.REFUNDED
                    if tx.revocation_date is not None
                    else PurchaseStatus.COMPLETED
                ),
                environment=tx.environment,
                store_response=tx.raw,
            )
            try:
                async with self.db.begin_nested():
                    self.db.add(purchase)
                    await self.db.flush()
                result.purchase_created = True
            except IntegrityError:
                purchase = await self._get_purchase_for_update(platform, tx.transaction_id)
                if purchase is None:
                    raise

        if not result.purchase_created:
            if purchase.subscriber_id != subscriber_id:
                logger.info(
                    "Purchase %s moved from subscriber %s to %s",
                    purchase.store_transaction_id,
                    purchase.subscriber_id,
                    subscriber_id,
                )
                previous_owner = purchase.subscriber_id
                purchase.subscriber_id = subscriber_id
            if tx.revocation_date is not None:
                purchase.status = PurchaseStatus.REFUNDED
            purchase.store_response = tx.raw or purchase.store_response
            await self.db.flush()

        result.purchase = purchase
        recomputer = EntitlementRecomputer(self.db)
        result.entitlements = await recomputer.recompute(subscriber_id, now=now)
        if previous_owner is not None:
            await recomputer.recompute(previous_owner, now=now)

        logger.info(
            "Recorded %s purchase %s of %s for subscriber %s (new=%s)",
            platform.value,
            purchase.store_transaction_id,
            verified.product.identifier,
            result.subscriber.app_user_id,
            result.purchase_created,
        )

    async def _get_purchase_for_update(
        self, platform: Platform, store_transaction_id: str
    ) -> Optional[Purchase]:
        rows = await self.db.execute(
            select(Purchase)
            .where(
                Purchase.platform == platform,
                Purchase.store_transaction_id == store_transaction_id,
            )
            .with_for_update(of=Purchase)
            .execution_options(populate_existing=True)
        )
        return rows.unique().scalar_one_or_none()
