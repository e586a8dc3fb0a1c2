"""
Apple App Store Adapter
=======================

StoreKit 2 / App Store Server API integration.

Handles:
- ES256 bearer tokens for the App Store Server API
- JWS verification of notifications, transactions and renewal info
- Transaction and subscription status lookups
- Mapping Apple payloads onto normalized store records
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Optional, Union

import httpx
from cryptography import x509
from jose import jwt

from app.config import settings
from app.core.errors import InvalidSignature, MalformedPayload, StoreApiError
from app.models.catalog import ProductType
from app.models.subscription import SubscriptionStatus
from app.stores.base import (
    ENVIRONMENT_PRODUCTION,
    ENVIRONMENT_SANDBOX,
    LastTransaction,
    RenewalInfo,
    StoreTransaction,
    SubscriptionStatusInfo,
    store_get,
)
from app.stores.jws import decode_jws
from app.utils.helpers import from_millis

logger = logging.getLogger(__name__)


# Apple offerType values
OFFER_TYPE_INTRODUCTORY = 1
OFFER_TYPE_PROMOTIONAL = 2
OFFER_TYPE_SUBSCRIPTION_OFFER_CODE = 3


@dataclass
class AppleNotification:
    """Decoded App Store Server Notification V2."""

    notification_type: str
    subtype: Optional[str]
    notification_uuid: str
    bundle_id: Optional[str]
    environment: str
    transaction: Optional[StoreTransaction] = None
    renewal_info: Optional[RenewalInfo] = None
    raw: dict[str, Any] = field(default_factory=dict)


class AppleStoreAdapter:
    """Adapter for the App Store Server API and Apple-signed payloads."""

    PRODUCTION_URL = "https://api.storekit.itunes.apple.com"
    SANDBOX_URL = "https://api.storekit-sandbox.itunes.apple.com"
    AUDIENCE = "appstoreconnect-v1"
    TOKEN_TTL_SECONDS = 3600

    STATUS_MAP = {
        1: SubscriptionStatus.ACTIVE,
        2: SubscriptionStatus.EXPIRED,
        3: SubscriptionStatus.IN_BILLING_RETRY,
        4: SubscriptionStatus.IN_GRACE_PERIOD,
        5: SubscriptionStatus.REVOKED,
    }

    PRODUCT_TYPE_MAP = {
        "Auto-Renewable Subscription": ProductType.AUTO_RENEWABLE_SUBSCRIPTION,
        "Non-Renewing Subscription": ProductType.NON_RENEWING_SUBSCRIPTION,
        "Non-Consumable": ProductType.NON_CONSUMABLE,
        "Consumable": ProductType.CONSUMABLE,
    }

    def __init__(
        self,
        issuer_id: Optional[str] = None,
        key_id: Optional[str] = None,
        private_key: Optional[str] = None,
        bundle_id: Optional[str] = None,
        sandbox: bool = False,
        root_certificates: Optional[list[x509.Certificate]] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.issuer_id = issuer_id
        self.key_id = key_id
        self.private_key = private_key
        self.bundle_id = bundle_id
        self.sandbox = sandbox
        self.root_certificates = root_certificates
        self.client = client
        self.timeout = settings.STORE_API_TIMEOUT_SECONDS

    @classmethod
    def from_app(cls, app, sandbox: bool = False, **kwargs) -> "AppleStoreAdapter":
        """Build an adapter from an ``App`` row (credentials may be absent)."""
        if app is None:
            return cls(sandbox=sandbox, **kwargs)
        return cls(
            issuer_id=app.apple_issuer_id,
            key_id=app.apple_key_id,
            private_key=app.apple_private_key,
            bundle_id=app.bundle_id,
            sandbox=sandbox,
            **kwargs,
        )

    @property
    def has_credentials(self) -> bool:
        return bool(self.issuer_id and self.key_id and self.private_key and self.bundle_id)

    # -------------------------------------------------------------------------
    # App Store Server API
    # -------------------------------------------------------------------------

    def generate_token(self) -> str:
        """Sign a short-lived ES256 bearer token for the App Store Server API."""
        if not self.has_credentials:
            raise StoreApiError(
                None, "App Store Server API credentials not configured", transient=False
            )

        now = int(time.time())
        claims = {
            "iss": self.issuer_id,
            "iat": now,
            "exp": now + self.TOKEN_TTL_SECONDS,
            "aud": self.AUDIENCE,
            "bid": self.bundle_id,
        }
        return jwt.encode(
            claims,
            self.private_key,
            algorithm="ES256",
            headers={"kid": self.key_id, "typ": "JWT"},
        )

    def _get_headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.generate_token()}",
            "Content-Type": "application/json",
        }

    async def _get(self, path: str) -> dict[str, Any]:
        base_url = self.SANDBOX_URL if self.sandbox else self.PRODUCTION_URL
        headers = self._get_headers()
        try:
            return await store_get(f"{base_url}{path}", headers, self.timeout, self.client)
        except StoreApiError as e:
            # Sandbox transactions are unknown to production
            if e.status_code == 404 and not self.sandbox:
                logger.info("Apple production lookup 404 for %s, retrying sandbox", path)
                return await store_get(
                    f"{self.SANDBOX_URL}{path}", headers, self.timeout, self.client
                )
            raise

    async def fetch_latest_transaction_info(self, transaction_id: str) -> StoreTransaction:
        """
        Look up a transaction by id.

        GET /inApps/v1/transactions/{transactionId}
        """
        data = await self._get(f"/inApps/v1/transactions/{transaction_id}")
        signed = data.get("signedTransactionInfo")
        if not signed:
            raise MalformedPayload("Transaction response has no signedTransactionInfo")
        return self.decode_transaction(signed)

    async def fetch_subscription_status(
        self, original_transaction_id: str
    ) -> SubscriptionStatusInfo:
        """
        Get all subscription statuses for an original transaction.

        GET /inApps/v1/subscriptions/{originalTransactionId}
        """
        data = await self._get(f"/inApps/v1/subscriptions/{original_transaction_id}")

        last_transactions: list[LastTransaction] = []
        for group in data.get("data") or []:
            for item in group.get("lastTransactions") or []:
                transaction = None
                renewal_info = None
                if item.get("signedTransactionInfo"):
                    transaction = self.decode_transaction(item["signedTransactionInfo"])
                if item.get("signedRenewalInfo"):
                    renewal_info = self.decode_renewal_info(item["signedRenewalInfo"])
                last_transactions.append(
                    LastTransaction(
                        status=self.map_subscription_status(item.get("status")),
                        original_transaction_id=str(
                            item.get("originalTransactionId") or original_transaction_id
                        ),
                        transaction=transaction,
                        renewal_info=renewal_info,
                    )
                )

        # Prefer the entry for the requested subscription
        last_transactions.sort(
            key=lambda t: t.original_transaction_id != original_transaction_id
        )
        status = (
            last_transactions[0].status if last_transactions else SubscriptionStatus.EXPIRED
        )
        return SubscriptionStatusInfo(status=status, last_transactions=last_transactions)

    # -------------------------------------------------------------------------
    # Signed Payloads
    # -------------------------------------------------------------------------

    def verify_signature(self, signed_payload: str) -> dict[str, Any]:
        """
        Verify an Apple JWS and return its payload.

        Falls back to decode-only when ``allow_unverified_jws`` is set
        (never in production).
        """
        try:
            return decode_jws(signed_payload, root_certificates=self.root_certificates)
        except InvalidSignature as e:
            if not settings.allow_unverified_jws:
                raise
            logger.warning(
                "INSECURE: accepting unverified Apple JWS (%s); "
                "APPLE_ALLOW_UNVERIFIED_JWS is enabled",
                e,
            )
            return decode_jws(signed_payload, verify=False)

    def decode_transaction(self, raw: Union[str, dict[str, Any]]) -> StoreTransaction:
        """Decode a ``signedTransactionInfo`` JWS (or an already-decoded dict)."""
        payload = self.verify_signature(raw) if isinstance(raw, str) else raw
        return self.transaction_from_payload(payload)

    def decode_renewal_info(self, raw: Union[str, dict[str, Any]]) -> RenewalInfo:
        """Decode a ``signedRenewalInfo`` JWS (or an already-decoded dict)."""
        payload = self.verify_signature(raw) if isinstance(raw, str) else raw
        return self.renewal_info_from_payload(payload)

    def decode_notification(self, signed_payload: str) -> AppleNotification:
        """Verify a notification and decode its nested transaction and renewal info."""
        payload = self.verify_signature(signed_payload)

        notification_type = payload.get("notificationType")
        notification_uuid = payload.get("notificationUUID")
        if not notification_type or not notification_uuid:
            raise MalformedPayload("Notification missing notificationType or notificationUUID")

        data = payload.get("data") or {}
        transaction = None
        renewal_info = None
        if data.get("signedTransactionInfo"):
            transaction = self.decode_transaction(data["signedTransactionInfo"])
        if data.get("signedRenewalInfo"):
            renewal_info = self.decode_renewal_info(data["signedRenewalInfo"])

        return AppleNotification(
            notification_type=notification_type,
            subtype=payload.get("subtype"),
            notification_uuid=notification_uuid,
            bundle_id=data.get("bundleId"),
            environment=self._map_environment(data.get("environment")),
            transaction=transaction,
            renewal_info=renewal_info,
            raw=payload,
        )

    # -------------------------------------------------------------------------
    # Mapping
    # -------------------------------------------------------------------------

    @staticmethod
    def _map_environment(value: Optional[str]) -> str:
        if value and value.lower() in ("sandbox", "xcode", "localtesting"):
            return ENVIRONMENT_SANDBOX
        return ENVIRONMENT_PRODUCTION

    @classmethod
    def map_subscription_status(cls, code: Any) -> SubscriptionStatus:
        """Map Apple's numeric subscription status; unknown codes are expired."""
        try:
            return cls.STATUS_MAP.get(int(code), SubscriptionStatus.EXPIRED)
        except (TypeError, ValueError):
            return SubscriptionStatus.EXPIRED

    @classmethod
    def map_product_type(cls, value: Optional[str]) -> Optional[ProductType]:
        if not value:
            return None
        return cls.PRODUCT_TYPE_MAP.get(value)

    def transaction_from_payload(self, payload: dict[str, Any]) -> StoreTransaction:
        """Build a ``StoreTransaction`` from a decoded transaction payload."""
        transaction_id = payload.get("transactionId")
        purchase_date = from_millis(payload.get("purchaseDate"))
        if not transaction_id or not payload.get("productId") or purchase_date is None:
            raise MalformedPayload("Transaction missing transactionId, productId or purchaseDate")

        offer_type = payload.get("offerType")
        revocation_reason = payload.get("revocationReason")
        return StoreTransaction(
            transaction_id=str(transaction_id),
            original_transaction_id=str(payload.get("originalTransactionId") or transaction_id),
            product_id=payload["productId"],
            purchase_date=purchase_date,
            expires_date=from_millis(payload.get("expiresDate")),
            original_purchase_date=from_millis(payload.get("originalPurchaseDate")),
            is_trial_period=offer_type == OFFER_TYPE_INTRODUCTORY,
            is_in_intro_offer_period=offer_type == OFFER_TYPE_PROMOTIONAL,
            offer_type=offer_type,
            environment=self._map_environment(payload.get("environment")),
            product_type=self.map_product_type(payload.get("type")),
            revocation_date=from_millis(payload.get("revocationDate")),
            revocation_reason=str(revocation_reason) if revocation_reason is not None else None,
            raw=payload,
        )

    @staticmethod
    def renewal_info_from_payload(payload: dict[str, Any]) -> RenewalInfo:
        return RenewalInfo(
            auto_renew_status=payload.get("autoRenewStatus") == 1,
            original_transaction_id=payload.get("originalTransactionId"),
            auto_renew_product_id=payload.get("autoRenewProductId"),
            grace_period_expires_date=from_millis(payload.get("gracePeriodExpiresDate")),
            expiration_intent=payload.get("expirationIntent"),
            is_in_billing_retry=bool(payload.get("isInBillingRetryPeriod")),
            # 0 = customer has not yet responded to a price increase
            price_increase_pending=payload.get("priceIncreaseStatus") == 0,
            raw=payload,
        )
