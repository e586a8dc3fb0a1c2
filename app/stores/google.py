"""
Google Play Adapter
===================

Google Play Developer API integration and Real-Time Developer
Notification (RTDN) decoding.

The purchase token is the stable subscription key on Android, so it is
used as the original transaction id throughout.
"""

import asyncio
import base64
import binascii
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx
from google.auth.transport.requests import Request
from google.oauth2 import service_account

from app.config import settings
from app.core.errors import MalformedPayload, StoreApiError
from app.models.catalog import ProductType
from app.models.subscription import SubscriptionStatus
from app.stores.base import (
    ENVIRONMENT_PRODUCTION,
    ENVIRONMENT_SANDBOX,
    LastTransaction,
    StoreTransaction,
    SubscriptionStatusInfo,
    store_get,
)
from app.utils.helpers import from_millis, parse_datetime, utc_now

logger = logging.getLogger(__name__)


GOOGLE_PLAY_API_BASE = "https://androidpublisher.googleapis.com/androidpublisher/v3"
GOOGLE_PLAY_SCOPES = ["https://www.googleapis.com/auth/androidpublisher"]

# RTDN payload kinds
RTDN_SUBSCRIPTION = "subscription"
RTDN_VOIDED = "voided"
RTDN_ONE_TIME = "one_time"
RTDN_TEST = "test"


@dataclass
class GoogleNotification:
    """Decoded Pub/Sub push of a Real-Time Developer Notification."""

    message_id: str
    kind: str
    package_name: Optional[str]
    notification_type: Optional[int] = None
    purchase_token: Optional[str] = None
    subscription_id: Optional[str] = None
    order_id: Optional[str] = None
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def event_type(self) -> str:
        if self.kind == RTDN_SUBSCRIPTION:
            return f"SUBSCRIPTION_{self.notification_type}"
        return self.kind.upper()


class GooglePlayAdapter:
    """Adapter for the Google Play Developer API."""

    STATE_MAP = {
        "ACTIVE": SubscriptionStatus.ACTIVE,
        "CANCELED": SubscriptionStatus.ACTIVE,
        "IN_GRACE_PERIOD": SubscriptionStatus.IN_GRACE_PERIOD,
        "ON_HOLD": SubscriptionStatus.IN_BILLING_RETRY,
        "PAUSED": SubscriptionStatus.EXPIRED,
        "EXPIRED": SubscriptionStatus.EXPIRED,
    }

    CANCELLATION_REASONS = {
        "userInitiatedCancellation": "user_canceled",
        "systemInitiatedCancellation": "system_canceled",
        "developerInitiatedCancellation": "developer_canceled",
        "replacementCancellation": "replaced",
    }

    def __init__(
        self,
        package_name: Optional[str] = None,
        service_account_json: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.package_name = package_name
        self.service_account_json = (
            service_account_json or settings.GOOGLE_APPLICATION_CREDENTIALS
        )
        self.client = client
        self.timeout = settings.STORE_API_TIMEOUT_SECONDS
        self._credentials = None

    @classmethod
    def from_app(cls, app, **kwargs) -> "GooglePlayAdapter":
        return cls(
            package_name=app.package_name,
            service_account_json=app.google_service_account,
            **kwargs,
        )

    # -------------------------------------------------------------------------
    # Authentication
    # -------------------------------------------------------------------------

    def _get_credentials(self):
        """Load service account credentials (inline JSON or a file path)."""
        if self._credentials:
            return self._credentials

        if not self.service_account_json:
            raise StoreApiError(
                None, "Google service account not configured", transient=False
            )

        try:
            creds_data = json.loads(self.service_account_json)
            self._credentials = service_account.Credentials.from_service_account_info(
                creds_data,
                scopes=GOOGLE_PLAY_SCOPES,
            )
        except json.JSONDecodeError:
            self._credentials = service_account.Credentials.from_service_account_file(
                self.service_account_json,
                scopes=GOOGLE_PLAY_SCOPES,
            )

        return self._credentials

    async def _get_access_token(self) -> str:
        credentials = self._get_credentials()
        if not credentials.valid:
            try:
                # google-auth refresh is blocking
                await asyncio.to_thread(credentials.refresh, Request())
            except Exception as e:
                logger.error("Google credential refresh failed: %s", e)
                raise StoreApiError(None, f"token refresh failed: {e}", transient=True) from e
        return credentials.token

    async def _get(self, path: str) -> dict[str, Any]:
        if not self.package_name:
            raise StoreApiError(None, "Google package name not configured", transient=False)

        token = await self._get_access_token()
        url = f"{GOOGLE_PLAY_API_BASE}/applications/{self.package_name}{path}"
        return await store_get(
            url,
            {"Authorization": f"Bearer {token}"},
            self.timeout,
            self.client,
        )

    # -------------------------------------------------------------------------
    # Developer API
    # -------------------------------------------------------------------------

    async def fetch_subscription(self, purchase_token: str) -> dict[str, Any]:
        """GET purchases/subscriptionsv2/tokens/{token}."""
        return await self._get(f"/purchases/subscriptionsv2/tokens/{purchase_token}")

    async def fetch_latest_transaction_info(self, transaction_id: str) -> StoreTransaction:
        """Fetch a subscription by purchase token and normalize it."""
        data = await self.fetch_subscription(transaction_id)
        return self.decode_transaction(data, purchase_token=transaction_id)

    async def fetch_subscription_status(
        self, original_transaction_id: str
    ) -> SubscriptionStatusInfo:
        data = await self.fetch_subscription(original_transaction_id)
        transaction = self.decode_transaction(data, purchase_token=original_transaction_id)
        status = self.map_subscription_state(data.get("subscriptionState"))
        return SubscriptionStatusInfo(
            status=status,
            last_transactions=[
                LastTransaction(
                    status=status,
                    original_transaction_id=original_transaction_id,
                    transaction=transaction,
                )
            ],
        )

    async def fetch_product_purchase(
        self, product_id: str, purchase_token: str
    ) -> StoreTransaction:
        """
        Fetch a one-time product purchase.

        GET purchases/products/{productId}/tokens/{token}
        """
        data = await self._get(f"/purchases/products/{product_id}/tokens/{purchase_token}")

        # purchaseState: 0 purchased, 1 canceled, 2 pending
        if data.get("purchaseState", 0) != 0:
            raise StoreApiError(
                400,
                f"purchaseState={data.get('purchaseState')}",
                transient=False,
            )

        purchase_date = from_millis(data.get("purchaseTimeMillis"))
        if purchase_date is None:
            raise MalformedPayload("Product purchase missing purchaseTimeMillis")

        return StoreTransaction(
            transaction_id=data.get("orderId") or purchase_token,
            original_transaction_id=purchase_token,
            product_id=product_id,
            purchase_date=purchase_date,
            # purchaseType 0 = test (license testing)
            environment=(
                ENVIRONMENT_SANDBOX if data.get("purchaseType") == 0 else ENVIRONMENT_PRODUCTION
            ),
            raw=data,
        )

    # -------------------------------------------------------------------------
    # Mapping
    # -------------------------------------------------------------------------

    @classmethod
    def map_subscription_state(cls, state: Optional[str]) -> SubscriptionStatus:
        """
        Map ``subscriptionState``.

        CANCELED still entitles until expiry; pending and unknown states are
        treated as active.
        """
        if not state:
            return SubscriptionStatus.ACTIVE
        key = state.removeprefix("SUBSCRIPTION_STATE_")
        return cls.STATE_MAP.get(key, SubscriptionStatus.ACTIVE)

    @classmethod
    def cancellation_reason(cls, data: dict[str, Any]) -> Optional[str]:
        context = data.get("canceledStateContext") or {}
        for key, reason in cls.CANCELLATION_REASONS.items():
            if key in context:
                return reason
        return None

    def decode_transaction(
        self,
        raw: dict[str, Any],
        purchase_token: Optional[str] = None,
    ) -> StoreTransaction:
        """Normalize a subscriptionsv2 resource using its first line item."""
        if not isinstance(raw, dict):
            raise MalformedPayload("Google subscription resource must be an object")

        line_items = raw.get("lineItems") or []
        if not line_items:
            raise MalformedPayload("Google subscription has no lineItems")
        line_item = line_items[0]

        token = purchase_token or raw.get("purchaseToken")
        if not token:
            raise MalformedPayload("Google subscription has no purchase token")

        start_time = parse_datetime(raw.get("startTime"))
        auto_renewing_plan = line_item.get("autoRenewingPlan")
        auto_renew_enabled = None
        if auto_renewing_plan is not None:
            auto_renew_enabled = bool(auto_renewing_plan.get("autoRenewEnabled", False))

        return StoreTransaction(
            transaction_id=raw.get("latestOrderId") or token,
            original_transaction_id=token,
            product_id=line_item.get("productId", ""),
            purchase_date=start_time or utc_now(),
            expires_date=parse_datetime(line_item.get("expiryTime")),
            original_purchase_date=start_time,
            environment=(
                ENVIRONMENT_SANDBOX if "testPurchase" in raw else ENVIRONMENT_PRODUCTION
            ),
            product_type=ProductType.AUTO_RENEWABLE_SUBSCRIPTION,
            auto_renew_enabled=auto_renew_enabled,
            revocation_reason=self.cancellation_reason(raw),
            raw=raw,
        )

    # -------------------------------------------------------------------------
    # RTDN
    # -------------------------------------------------------------------------

    @staticmethod
    def decode_rtdn(envelope: dict[str, Any]) -> GoogleNotification:
        """
        Decode a Pub/Sub push envelope.

        ``{"message": {"data": <base64 JSON>, "messageId": ...}, "subscription": ...}``

        Raises:
            MalformedPayload: missing message, bad base64 or bad JSON.
        """
        message = envelope.get("message") if isinstance(envelope, dict) else None
        if not isinstance(message, dict):
            raise MalformedPayload("Pub/Sub envelope has no message")

        message_id = message.get("messageId") or message.get("message_id")
        encoded = message.get("data")
        if not message_id or not encoded:
            raise MalformedPayload("Pub/Sub message missing messageId or data")

        try:
            payload = json.loads(base64.b64decode(encoded))
        except (binascii.Error, UnicodeDecodeError, ValueError) as e:
            raise MalformedPayload(f"Invalid RTDN data: {e}") from e
        if not isinstance(payload, dict):
            raise MalformedPayload("RTDN data is not a JSON object")

        package_name = payload.get("packageName")

        if "subscriptionNotification" in payload:
            sub = payload["subscriptionNotification"] or {}
            return GoogleNotification(
                message_id=str(message_id),
                kind=RTDN_SUBSCRIPTION,
                package_name=package_name,
                notification_type=sub.get("notificationType"),
                purchase_token=sub.get("purchaseToken"),
                subscription_id=sub.get("subscriptionId"),
                raw=payload,
            )

        if "voidedPurchaseNotification" in payload:
            voided = payload["voidedPurchaseNotification"] or {}
            return GoogleNotification(
                message_id=str(message_id),
                kind=RTDN_VOIDED,
                package_name=package_name,
                purchase_token=voided.get("purchaseToken"),
                order_id=voided.get("orderId"),
                raw=payload,
            )

        if "oneTimeProductNotification" in payload:
            one_time = payload["oneTimeProductNotification"] or {}
            return GoogleNotification(
                message_id=str(message_id),
                kind=RTDN_ONE_TIME,
                package_name=package_name,
                notification_type=one_time.get("notificationType"),
                purchase_token=one_time.get("purchaseToken"),
                subscription_id=one_time.get("sku"),
                raw=payload,
            )

        return GoogleNotification(
            message_id=str(message_id),
            kind=RTDN_TEST,
            package_name=package_name,
            raw=payload,
        )
