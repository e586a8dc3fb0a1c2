"""
Subscriber API Tests
====================

Tests for subscriber and entitlement endpoints:
- Get-or-create, alias lookup and attribute merging
- Manual grants and revokes with the secret key
- Entitlement expiry evaluated on read and the snapshot cache TTL
"""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from app.config import settings
from app.models.entitlement import SubscriberEntitlement
from app.models.subscription import Platform
from app.services.events import CanonicalEvent, EventSource, SubscriptionFact
from app.services.reconciler import SubscriptionReconciler
from app.services.subscribers import SubscriberService
from factories import store_transaction

SUBSCRIBERS_URL = "/api/v1/subscribers"
GRANT_URL = "/api/v1/entitlements/grant"
REVOKE_URL = "/api/v1/entitlements/revoke"


def _subscriber(response) -> dict:
    return response.json()["data"]["subscriber"]


# ---------------------------------------------------------------------------
# Subscribers
# ---------------------------------------------------------------------------

class TestSubscribers:
    """Tests for /api/v1/subscribers"""

    @pytest.mark.asyncio
    async def test_create_returns_empty_snapshot(self, client, catalog, public_headers):
        response = await client.post(
            SUBSCRIBERS_URL,
            json={"app_user_id": "reader_1", "attributes": {"$email": "reader@example.com"}},
            headers=public_headers,
        )

        assert response.status_code == 200
        subscriber = _subscriber(response)
        assert subscriber["app_user_id"] == "reader_1"
        assert subscriber["original_app_user_id"] == "reader_1"
        assert subscriber["attributes"] == {"$email": "reader@example.com"}
        assert subscriber["entitlements"] == {}
        assert subscriber["active_subscriptions"] == []
        assert subscriber["first_seen_at"] is not None

    @pytest.mark.asyncio
    async def test_create_is_idempotent(self, client, catalog, public_headers):
        first = await client.post(
            SUBSCRIBERS_URL, json={"app_user_id": "reader_1"}, headers=public_headers
        )
        second = await client.post(
            SUBSCRIBERS_URL, json={"app_user_id": "reader_1"}, headers=public_headers
        )

        assert _subscriber(first)["id"] == _subscriber(second)["id"]

    @pytest.mark.asyncio
    async def test_unknown_subscriber_is_404(self, client, catalog, public_headers):
        response = await client.get(f"{SUBSCRIBERS_URL}/nobody", headers=public_headers)

        assert response.status_code == 404
        assert response.json()["success"] is False
        assert response.json()["error"]["code"] == "SUBSCRIBER_001"

    @pytest.mark.asyncio
    async def test_alias_resolves_to_subscriber(self, client, catalog, public_headers):
        await client.post(
            SUBSCRIBERS_URL,
            json={"app_user_id": "reader_1", "alias": "$anon_8f2c"},
            headers=public_headers,
        )

        response = await client.get(f"{SUBSCRIBERS_URL}/$anon_8f2c", headers=public_headers)

        assert response.status_code == 200
        subscriber = _subscriber(response)
        assert subscriber["app_user_id"] == "reader_1"
        assert subscriber["aliases"] == ["$anon_8f2c"]

    @pytest.mark.asyncio
    async def test_null_attribute_deletes_key(self, client, catalog, public_headers):
        await client.post(
            SUBSCRIBERS_URL,
            json={"app_user_id": "reader_1", "attributes": {"$email": "a@b.c", "plan": "team"}},
            headers=public_headers,
        )

        response = await client.post(
            f"{SUBSCRIBERS_URL}/reader_1/attributes",
            json={"attributes": {"$email": None, "locale": "de"}},
            headers=public_headers,
        )

        assert response.status_code == 200
        assert _subscriber(response)["attributes"] == {"plan": "team", "locale": "de"}

    @pytest.mark.asyncio
    async def test_attributes_for_unknown_subscriber_is_404(
        self, client, catalog, public_headers
    ):
        response = await client.post(
            f"{SUBSCRIBERS_URL}/nobody/attributes",
            json={"attributes": {"a": 1}},
            headers=public_headers,
        )

        assert response.status_code == 404


# ---------------------------------------------------------------------------
# Manual entitlements
# ---------------------------------------------------------------------------

class TestManualEntitlements:
    """Tests for /api/v1/entitlements"""

    @pytest.mark.asyncio
    async def test_grant_creates_subscriber_with_manual_entitlement(
        self, client, catalog, secret_headers
    ):
        response = await client.post(
            GRANT_URL,
            json={
                "app_user_id": "support_case_1",
                "entitlement": "pro",
                "expires_date": "2030-01-01T00:00:00Z",
                "reason": "goodwill",
            },
            headers=secret_headers,
        )

        assert response.status_code == 200
        pro = _subscriber(response)["entitlements"]["pro"]
        assert pro["source"] == "manual"
        assert pro["is_active"] is True
        assert pro["product_identifier"] is None
        assert pro["expires_date"].startswith("2030-01-01T00:00:00")

    @pytest.mark.asyncio
    async def test_public_key_cannot_grant(self, client, catalog, public_headers):
        response = await client.post(
            GRANT_URL,
            json={"app_user_id": "reader_1", "entitlement": "pro"},
            headers=public_headers,
        )

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "AUTH_003"

    @pytest.mark.asyncio
    async def test_revoke_removes_entitlement(self, client, catalog, secret_headers):
        await client.post(
            GRANT_URL,
            json={"app_user_id": "reader_1", "entitlement": "pro"},
            headers=secret_headers,
        )

        response = await client.post(
            REVOKE_URL,
            json={"app_user_id": "reader_1", "entitlement": "pro", "reason": "chargeback"},
            headers=secret_headers,
        )

        assert response.status_code == 200
        assert _subscriber(response)["entitlements"] == {}

        snapshot = await client.get(f"{SUBSCRIBERS_URL}/reader_1", headers=secret_headers)
        assert _subscriber(snapshot)["entitlements"] == {}

    @pytest.mark.asyncio
    async def test_unknown_entitlement_is_404(self, client, catalog, secret_headers):
        response = await client.post(
            GRANT_URL,
            json={"app_user_id": "reader_1", "entitlement": "platinum"},
            headers=secret_headers,
        )

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "ENTITLEMENT_001"


# ---------------------------------------------------------------------------
# Expiry on read
# ---------------------------------------------------------------------------

async def _seed_subscription(db, catalog, expires_date: datetime):
    subscriber, _ = await SubscriberService(db).get_or_create(catalog["app"], "reader_1")
    outcome = await SubscriptionReconciler(db).activate(
        subscriber.id,
        catalog["ios_monthly"],
        Platform.IOS,
        SubscriptionFact(
            event=CanonicalEvent.RENEWED,
            transaction=store_transaction("3000000000000001", expires_date=expires_date),
            source=EventSource.RECEIPT,
        ),
    )
    await db.commit()
    return subscriber, outcome.subscription


class TestSnapshotExpiry:
    """Entitlements whose expiry passed without a store event"""

    @pytest.mark.asyncio
    async def test_lapsed_entitlement_is_inactive(self, client, db, catalog, public_headers):
        subscriber, subscription = await _seed_subscription(
            db, catalog, datetime.now(timezone.utc) + timedelta(days=3)
        )
        lapsed = datetime.now(timezone.utc).replace(microsecond=0) - timedelta(hours=1)
        subscription.expires_date = lapsed
        rows = await db.execute(
            select(SubscriberEntitlement).where(
                SubscriberEntitlement.subscriber_id == subscriber.id
            )
        )
        for row in rows.unique().scalars():
            row.expires_date = lapsed
        await db.commit()

        response = await client.get(f"{SUBSCRIBERS_URL}/reader_1", headers=public_headers)

        snapshot = _subscriber(response)
        pro = snapshot["entitlements"]["pro"]
        assert pro["is_active"] is False
        assert pro["is_at_risk"] is False
        assert snapshot["active_subscriptions"] == []

    @pytest.mark.asyncio
    async def test_current_entitlement_stays_active(self, client, db, catalog, public_headers):
        await _seed_subscription(db, catalog, datetime.now(timezone.utc) + timedelta(days=3))

        response = await client.get(f"{SUBSCRIBERS_URL}/reader_1", headers=public_headers)

        snapshot = _subscriber(response)
        assert snapshot["entitlements"]["pro"]["is_active"] is True
        assert snapshot["active_subscriptions"] == ["pro_monthly"]


class TestSnapshotTtl:
    """Tests for SubscriberService.snapshot_ttl"""

    NOW = datetime(2026, 10, 19, 9, 0, tzinfo=timezone.utc)

    def _snapshot(self, **entitlements) -> dict:
        return {
            "entitlements": {
                name: {"is_active": active, "expires_date": expires}
                for name, (active, expires) in entitlements.items()
            }
        }

    def test_bounded_by_earliest_active_expiry(self):
        snapshot = self._snapshot(
            pro=(True, (self.NOW + timedelta(seconds=90)).isoformat()),
            extras=(True, (self.NOW + timedelta(seconds=45)).isoformat()),
        )

        assert SubscriberService.snapshot_ttl(snapshot, self.NOW) == 45

    def test_lifetime_and_lapsed_entries_keep_default(self, monkeypatch):
        monkeypatch.setattr(settings, "SNAPSHOT_CACHE_TTL_SECONDS", 300)
        snapshot = self._snapshot(
            lifetime=(True, None),
            pro=(False, (self.NOW - timedelta(hours=1)).isoformat()),
        )

        assert SubscriberService.snapshot_ttl(snapshot, self.NOW) == 300
