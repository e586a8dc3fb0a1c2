"""
Customer Webhook Tests
======================

Tests for outbound developer notifications:
- HMAC-signed delivery
- Retry with exponential backoff on 5xx and network errors
- 4xx rejections are final
- Events emitted by receipts and manual grants
"""

import json
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from app.core.security import verify_payload_signature
from app.services.customer_webhooks import (
    EVENT_HEADER,
    SIGNATURE_HEADER,
    CustomerEvent,
    CustomerWebhookDispatcher,
)
from factories import apple_transaction

HOOK_URL = "https://hooks.example.com/iap"
SECRET = "whsec_test"


def _dispatcher(handler, max_attempts: int = 3) -> CustomerWebhookDispatcher:
    return CustomerWebhookDispatcher(
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        max_attempts=max_attempts,
        timeout=1,
    )


def _payload(event_type: str = "subscription.renewed") -> dict:
    return CustomerWebhookDispatcher.build_payload(
        "app-1", CustomerEvent(event_type, {"app_user_id": "reader_1"})
    )


async def _enable_webhooks(db, catalog) -> None:
    catalog["app"].webhook_url = HOOK_URL
    await db.commit()


# ---------------------------------------------------------------------------
# Delivery
# ---------------------------------------------------------------------------

class TestDeliver:
    """Tests for CustomerWebhookDispatcher.deliver"""

    @pytest.mark.asyncio
    async def test_signed_delivery(self):
        received = []

        def handler(request: httpx.Request) -> httpx.Response:
            received.append(request)
            return httpx.Response(204)

        payload = _payload()

        delivered = await _dispatcher(handler).deliver(HOOK_URL, SECRET, payload)

        assert delivered is True
        assert len(received) == 1
        request = received[0]
        assert request.headers[EVENT_HEADER] == "subscription.renewed"
        assert verify_payload_signature(SECRET, request.content, request.headers[SIGNATURE_HEADER])

        body = json.loads(request.content)
        assert body["id"].startswith("evt_")
        assert body["app_id"] == "app-1"
        assert body["data"] == {"app_user_id": "reader_1"}

    @pytest.mark.asyncio
    async def test_server_error_is_retried(self):
        statuses = iter([500, 200])

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(next(statuses))

        with patch(
            "app.services.customer_webhooks.asyncio.sleep", new_callable=AsyncMock
        ) as sleep:
            delivered = await _dispatcher(handler).deliver(HOOK_URL, SECRET, _payload())

        assert delivered is True
        sleep.assert_awaited_once_with(1)

    @pytest.mark.asyncio
    async def test_client_error_is_final(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(400, text="unknown event")

        with patch(
            "app.services.customer_webhooks.asyncio.sleep", new_callable=AsyncMock
        ) as sleep:
            delivered = await _dispatcher(handler).deliver(HOOK_URL, SECRET, _payload())

        assert delivered is False
        assert len(calls) == 1
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_network_errors_exhaust_attempts(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            raise httpx.ConnectError("connection refused", request=request)

        with patch(
            "app.services.customer_webhooks.asyncio.sleep", new_callable=AsyncMock
        ) as sleep:
            delivered = await _dispatcher(handler).deliver(HOOK_URL, SECRET, _payload())

        assert delivered is False
        assert len(calls) == 3
        assert [c.args[0] for c in sleep.await_args_list] == [1, 2]


class TestDispatch:
    """Tests for the background task entry point"""

    @pytest.mark.asyncio
    async def test_dispatch_never_raises(self):
        dispatcher = CustomerWebhookDispatcher(max_attempts=1)
        events = [CustomerEvent("entitlement.granted"), CustomerEvent("entitlement.revoked")]

        with patch.object(
            dispatcher, "deliver", AsyncMock(side_effect=RuntimeError("boom"))
        ) as deliver:
            await dispatcher.dispatch(HOOK_URL, SECRET, "app-1", events)

        assert deliver.await_count == 2

    @pytest.mark.asyncio
    async def test_dispatch_without_url_is_noop(self):
        dispatcher = CustomerWebhookDispatcher(max_attempts=1)

        with patch.object(dispatcher, "deliver", AsyncMock()) as deliver:
            await dispatcher.dispatch(None, SECRET, "app-1", [CustomerEvent("x")])

        deliver.assert_not_awaited()


# ---------------------------------------------------------------------------
# Emitted events
# ---------------------------------------------------------------------------

class TestEmittedEvents:
    """Events scheduled by the API after a committed change"""

    @pytest.mark.asyncio
    async def test_manual_grant_emits_entitlement_granted(
        self, client, db, catalog, secret_headers
    ):
        await _enable_webhooks(db, catalog)

        with patch.object(
            CustomerWebhookDispatcher, "dispatch", new_callable=AsyncMock
        ) as dispatch:
            response = await client.post(
                "/api/v1/entitlements/grant",
                json={"app_user_id": "reader_1", "entitlement": "pro"},
                headers=secret_headers,
            )

        assert response.status_code == 200
        dispatch.assert_awaited_once()
        url, secret, app_id, events = dispatch.await_args.args
        assert url == HOOK_URL
        assert secret == SECRET
        assert app_id == str(catalog["app"].id)
        assert [(e.type, e.data["entitlement"]) for e in events] == [
            ("entitlement.granted", "pro")
        ]

    @pytest.mark.asyncio
    async def test_receipt_emits_subscription_created(
        self, client, db, catalog, apple_signer, public_headers
    ):
        await _enable_webhooks(db, catalog)
        signed = apple_signer.sign(
            apple_transaction(
                "5000000000000001",
                "5000000000000001",
                expires_date=datetime.now(timezone.utc) + timedelta(days=30),
            )
        )

        with patch.object(
            CustomerWebhookDispatcher, "dispatch", new_callable=AsyncMock
        ) as dispatch:
            await client.post(
                "/api/v1/receipts",
                json={"app_user_id": "reader_1", "platform": "ios", "receipt_data": signed},
                headers=public_headers,
            )

        events = dispatch.await_args.args[3]
        assert [e.type for e in events] == ["subscription.created", "entitlement.granted"]
        assert events[0].data["original_transaction_id"] == "5000000000000001"
        assert events[0].data["status"] == "active"

    @pytest.mark.asyncio
    async def test_nothing_scheduled_without_webhook_url(self, client, catalog, secret_headers):
        with patch.object(
            CustomerWebhookDispatcher, "dispatch", new_callable=AsyncMock
        ) as dispatch:
            await client.post(
                "/api/v1/entitlements/grant",
                json={"app_user_id": "reader_1", "entitlement": "pro"},
                headers=secret_headers,
            )

        dispatch.assert_not_awaited()
