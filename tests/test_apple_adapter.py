"""
Apple Adapter Tests
===================

Tests for Apple JWS verification and the App Store adapter:
- x5c chain and ES256 signature verification
- The gated decode-only fallback
- Notification, transaction and renewal info decoding
- App Store Server API calls (production 404 falls back to sandbox)
"""

import base64
import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

from app.config import settings
from app.core.errors import InvalidSignature, MalformedPayload, StoreApiError
from app.models.catalog import ProductType
from app.models.subscription import SubscriptionStatus
from app.stores.apple import AppleStoreAdapter
from app.stores.jws import decode_jws
from factories import (
    BUNDLE_ID,
    IOS_LIFETIME,
    AppleSigner,
    apple_notification,
    apple_transaction,
    millis,
)

PRODUCTION_HOST = "api.storekit.itunes.apple.com"
SANDBOX_HOST = "api.storekit-sandbox.itunes.apple.com"


def _private_key_pem() -> str:
    key = ec.generate_private_key(ec.SECP256R1())
    return key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode()


def _api_adapter(signer: AppleSigner, handler) -> AppleStoreAdapter:
    return AppleStoreAdapter(
        issuer_id="57246542-96fe-1a63-e053-0824d011072a",
        key_id="2X9R4HXF34",
        private_key=_private_key_pem(),
        bundle_id=BUNDLE_ID,
        root_certificates=[signer.root],
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


# ---------------------------------------------------------------------------
# JWS verification
# ---------------------------------------------------------------------------

class TestDecodeJws:
    """Tests for decode_jws"""

    def test_valid_chain_returns_payload(self, apple_signer):
        token = apple_signer.sign({"hello": "world"})

        assert decode_jws(token, root_certificates=[apple_signer.root]) == {"hello": "world"}

    def test_tampered_payload_is_rejected(self, apple_signer):
        header, _, signature = apple_signer.sign({"amount": 1}).split(".")
        forged = base64.urlsafe_b64encode(json.dumps({"amount": 100}).encode()).rstrip(b"=")

        with pytest.raises(InvalidSignature):
            decode_jws(
                f"{header}.{forged.decode()}.{signature}", root_certificates=[apple_signer.root]
            )

    def test_untrusted_root_is_rejected(self, apple_signer):
        impostor = AppleSigner(name="Impostor")

        with pytest.raises(InvalidSignature):
            decode_jws(impostor.sign({"a": 1}), root_certificates=[apple_signer.root])

    def test_non_es256_algorithm_is_rejected(self, apple_signer):
        with pytest.raises(InvalidSignature):
            decode_jws(apple_signer.sign({"a": 1}, alg="none"), root_certificates=[apple_signer.root])

    def test_no_configured_roots_is_rejected(self, apple_signer):
        with pytest.raises(InvalidSignature):
            decode_jws(apple_signer.sign({"a": 1}), root_certificates=[])

    @pytest.mark.parametrize("token", ["only.two", "a.b.c.d", "!!!.@@@.###", 42])
    def test_malformed_tokens(self, token):
        with pytest.raises(MalformedPayload):
            decode_jws(token, verify=False)


class TestUnverifiedFallback:
    """APPLE_ALLOW_UNVERIFIED_JWS decodes without trust, never in production."""

    def test_fallback_in_development(self, apple_signer, monkeypatch):
        monkeypatch.setattr(settings, "APPLE_ALLOW_UNVERIFIED_JWS", True)
        monkeypatch.setattr(settings, "ENVIRONMENT", "development")
        adapter = AppleStoreAdapter(root_certificates=[apple_signer.root])

        payload = adapter.verify_signature(AppleSigner(name="Xcode").sign({"a": 1}))

        assert payload == {"a": 1}

    def test_no_fallback_in_production(self, apple_signer, monkeypatch):
        monkeypatch.setattr(settings, "APPLE_ALLOW_UNVERIFIED_JWS", True)
        monkeypatch.setattr(settings, "ENVIRONMENT", "production")
        adapter = AppleStoreAdapter(root_certificates=[apple_signer.root])

        with pytest.raises(InvalidSignature):
            adapter.verify_signature(AppleSigner(name="Xcode").sign({"a": 1}))


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------

class TestDecodeNotification:
    """Tests for AppleStoreAdapter.decode_notification"""

    def test_decodes_nested_payloads(self, apple_signer):
        expires = datetime(2026, 11, 19, 9, 0, tzinfo=timezone.utc)
        signed = apple_notification(
            apple_signer,
            "DID_CHANGE_RENEWAL_STATUS",
            transaction=apple_transaction("3001", "3000", expires_date=expires, offerType=1),
            subtype="AUTO_RENEW_DISABLED",
            renewal_info={"autoRenewStatus": 0, "originalTransactionId": "3000"},
        )
        adapter = AppleStoreAdapter(root_certificates=[apple_signer.root])

        notification = adapter.decode_notification(signed)

        assert notification.notification_type == "DID_CHANGE_RENEWAL_STATUS"
        assert notification.subtype == "AUTO_RENEW_DISABLED"
        assert notification.bundle_id == BUNDLE_ID
        assert notification.environment == "sandbox"
        assert notification.transaction.original_transaction_id == "3000"
        assert notification.transaction.expires_date == expires
        assert notification.transaction.is_trial_period is True
        assert notification.transaction.is_sandbox is True
        assert notification.renewal_info.auto_renew_status is False

    def test_missing_uuid_is_malformed(self, apple_signer):
        signed = apple_signer.sign({"notificationType": "TEST", "data": {}})
        adapter = AppleStoreAdapter(root_certificates=[apple_signer.root])

        with pytest.raises(MalformedPayload):
            adapter.decode_notification(signed)

    def test_transaction_without_product_is_malformed(self, apple_signer):
        adapter = AppleStoreAdapter(root_certificates=[apple_signer.root])

        with pytest.raises(MalformedPayload):
            adapter.transaction_from_payload({"transactionId": "1", "purchaseDate": 1})

    def test_non_consumable_with_revocation(self, apple_signer):
        adapter = AppleStoreAdapter(root_certificates=[apple_signer.root])
        revoked_at = datetime(2026, 10, 18, tzinfo=timezone.utc)
        payload = apple_transaction(
            "4001",
            "4001",
            product_id=IOS_LIFETIME,
            product_type="Non-Consumable",
            revocationDate=millis(revoked_at),
            revocationReason=1,
        )

        tx = adapter.decode_transaction(apple_signer.sign(payload))

        assert tx.product_type == ProductType.NON_CONSUMABLE
        assert tx.expires_date is None
        assert tx.revocation_date == revoked_at
        assert tx.revocation_reason == "1"

    @pytest.mark.parametrize(
        "code, expected",
        [
            (1, SubscriptionStatus.ACTIVE),
            (3, SubscriptionStatus.IN_BILLING_RETRY),
            (4, SubscriptionStatus.IN_GRACE_PERIOD),
            ("5", SubscriptionStatus.REVOKED),
            (None, SubscriptionStatus.EXPIRED),
            (99, SubscriptionStatus.EXPIRED),
        ],
    )
    def test_status_mapping(self, code, expected):
        assert AppleStoreAdapter.map_subscription_status(code) == expected


# ---------------------------------------------------------------------------
# App Store Server API
# ---------------------------------------------------------------------------

class TestServerApi:
    """Tests for App Store Server API lookups."""

    @pytest.mark.asyncio
    async def test_production_404_retries_sandbox(self, apple_signer):
        calls = []
        signed_tx = apple_signer.sign(apple_transaction("5001", "5000"))

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request.url.host)
            assert request.headers["Authorization"].startswith("Bearer ")
            if request.url.host == PRODUCTION_HOST:
                return httpx.Response(404, json={"errorCode": 4040010})
            return httpx.Response(200, json={"signedTransactionInfo": signed_tx})

        adapter = _api_adapter(apple_signer, handler)

        tx = await adapter.fetch_latest_transaction_info("5001")

        assert calls == [PRODUCTION_HOST, SANDBOX_HOST]
        assert tx.transaction_id == "5001"
        assert tx.original_transaction_id == "5000"

    @pytest.mark.asyncio
    async def test_subscription_status_prefers_requested_subscription(self, apple_signer):
        grace_end = datetime.now(timezone.utc).replace(microsecond=0) + timedelta(days=6)

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/inApps/v1/subscriptions/6000"
            return httpx.Response(
                200,
                json={
                    "data": [
                        {
                            "subscriptionGroupIdentifier": "21000000",
                            "lastTransactions": [
                                {"originalTransactionId": "7000", "status": 2},
                                {
                                    "originalTransactionId": "6000",
                                    "status": 4,
                                    "signedTransactionInfo": apple_signer.sign(
                                        apple_transaction("6002", "6000")
                                    ),
                                    "signedRenewalInfo": apple_signer.sign(
                                        {
                                            "autoRenewStatus": 1,
                                            "gracePeriodExpiresDate": millis(grace_end),
                                        }
                                    ),
                                },
                            ],
                        }
                    ]
                },
            )

        adapter = _api_adapter(apple_signer, handler)

        info = await adapter.fetch_subscription_status("6000")

        assert info.status == SubscriptionStatus.IN_GRACE_PERIOD
        assert info.latest.transaction.transaction_id == "6002"
        assert info.latest.renewal_info.grace_period_expires_date == grace_end

    @pytest.mark.asyncio
    async def test_server_error_is_transient(self, apple_signer):
        adapter = _api_adapter(apple_signer, lambda request: httpx.Response(503, text="busy"))

        with pytest.raises(StoreApiError) as exc_info:
            await adapter.fetch_latest_transaction_info("5001")

        assert exc_info.value.transient is True
        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_timeout_is_transient(self, apple_signer):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectTimeout("timed out", request=request)

        adapter = _api_adapter(apple_signer, handler)

        with pytest.raises(StoreApiError) as exc_info:
            await adapter.fetch_latest_transaction_info("5001")

        assert exc_info.value.transient is True
        assert exc_info.value.status_code is None

    @pytest.mark.asyncio
    async def test_missing_credentials_is_permanent(self):
        adapter = AppleStoreAdapter(bundle_id=BUNDLE_ID)

        with pytest.raises(StoreApiError) as exc_info:
            await adapter.fetch_latest_transaction_info("5001")

        assert exc_info.value.transient is False
