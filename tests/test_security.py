"""
Security, Rate Limit and Cache Tests
====================================

Tests for:
- API key parsing and webhook body signatures
- API key authentication on the HTTP layer
- Fixed-window rate limiting (fails open without Redis)
- Snapshot cache reads and invalidation
"""

import json
from unittest.mock import AsyncMock, call, patch

import pytest

from app.core.errors import AppException
from app.core.rate_limit import RateLimiter, enforce_rate_limit
from app.core.security import (
    KEY_TYPE_PUBLIC,
    KEY_TYPE_SECRET,
    generate_api_key,
    parse_api_key,
    sign_payload,
    verify_payload_signature,
)
from app.services.cache import CacheInvalidator, CacheKeys, CacheManager
from factories import PUBLIC_KEY


# ---------------------------------------------------------------------------
# Keys and signatures
# ---------------------------------------------------------------------------

class TestApiKeys:
    """Tests for API key helpers"""

    @pytest.mark.parametrize(
        "header, expected",
        [
            ("Bearer pk_abc", ("pk_abc", KEY_TYPE_PUBLIC)),
            ("bearer  sk_abc ", ("sk_abc", KEY_TYPE_SECRET)),
            ("sk_abc", ("sk_abc", KEY_TYPE_SECRET)),
            ("Bearer xx_abc", None),
            ("", None),
            (None, None),
        ],
    )
    def test_parse_api_key(self, header, expected):
        assert parse_api_key(header) == expected

    def test_generated_keys_carry_prefix(self):
        assert generate_api_key().startswith("pk_")
        assert generate_api_key(KEY_TYPE_SECRET).startswith("sk_")
        assert generate_api_key() != generate_api_key()


class TestPayloadSignature:
    """Tests for outbound webhook signatures"""

    def test_signature_round_trip(self):
        body = b'{"type":"subscription.renewed"}'
        signature = sign_payload("whsec_test", body)

        assert signature.startswith("sha256=")
        assert verify_payload_signature("whsec_test", body, signature)

    def test_signature_rejects_other_body_or_secret(self):
        signature = sign_payload("whsec_test", b"{}")

        assert not verify_payload_signature("whsec_test", b"{ }", signature)
        assert not verify_payload_signature("whsec_other", b"{}", signature)
        assert not verify_payload_signature("whsec_test", b"{}", "")


# ---------------------------------------------------------------------------
# HTTP authentication
# ---------------------------------------------------------------------------

class TestAuthentication:
    """Tests for API key resolution on endpoints"""

    @pytest.mark.asyncio
    async def test_missing_key(self, client, catalog):
        response = await client.get("/api/v1/subscribers/reader_1")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "AUTH_001"
        assert response.headers["WWW-Authenticate"] == "Bearer"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "header",
        [
            "Bearer pk_test_unknown",
            "Bearer sk_test_unknown",
            f"Bearer {PUBLIC_KEY.replace('pk_', 'xx_')}",
        ],
    )
    async def test_rejected_keys(self, client, catalog, header):
        response = await client.get(
            "/api/v1/subscribers/reader_1", headers={"Authorization": header}
        )

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "AUTH_002"

    @pytest.mark.asyncio
    async def test_bare_key_is_accepted(self, client, catalog):
        response = await client.post(
            "/api/v1/subscribers",
            json={"app_user_id": "reader_1"},
            headers={"Authorization": PUBLIC_KEY},
        )

        assert response.status_code == 200


# ---------------------------------------------------------------------------
# Rate limiting
# ---------------------------------------------------------------------------

class TestRateLimiter:
    """Tests for RateLimiter and enforce_rate_limit"""

    @pytest.mark.asyncio
    async def test_first_request_sets_window_expiry(self):
        mock_client = AsyncMock()
        mock_client.incr.return_value = 1

        with patch("app.core.rate_limit.get_redis", return_value=mock_client):
            result = await RateLimiter.check_rate_limit("app-1:public", "public", max_requests=5)

        assert result["allowed"] is True
        assert result["remaining"] == 4
        mock_client.expire.assert_awaited_once()
        assert mock_client.expire.await_args.args[1] == RateLimiter.WINDOW_SECONDS

    @pytest.mark.asyncio
    async def test_over_limit_is_denied(self):
        mock_client = AsyncMock()
        mock_client.incr.return_value = 6

        with patch("app.core.rate_limit.get_redis", return_value=mock_client):
            result = await RateLimiter.check_rate_limit("app-1:public", "public", max_requests=5)

        assert result["allowed"] is False
        assert result["remaining"] == 0
        mock_client.expire.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_redis_failure_fails_open(self):
        with patch(
            "app.core.rate_limit.get_redis",
            AsyncMock(side_effect=ConnectionError("Redis unavailable")),
        ):
            result = await RateLimiter.check_rate_limit("app-1:secret", "secret")

        assert result["allowed"] is True

    @pytest.mark.asyncio
    async def test_enforce_raises_429_with_headers(self):
        mock_client = AsyncMock()
        mock_client.incr.return_value = 10_000

        with patch("app.core.rate_limit.get_redis", return_value=mock_client):
            with pytest.raises(AppException) as exc_info:
                await enforce_rate_limit("app-1:public", "public")

        error = exc_info.value
        assert error.status_code == 429
        assert error.code == "RATE_LIMIT"
        assert error.headers["X-RateLimit-Remaining"] == "0"
        assert "Retry-After" in error.headers


# ---------------------------------------------------------------------------
# Snapshot cache
# ---------------------------------------------------------------------------

class TestSnapshotCache:
    """Tests for cached snapshot reads and invalidation"""

    @pytest.mark.asyncio
    async def test_cached_snapshot_is_served(self, client, catalog, public_headers):
        app_id = str(catalog["app"].id)
        cached = {
            "id": "00000000-0000-0000-0000-000000000001",
            "app_user_id": "reader_1",
            "entitlements": {},
        }
        mock_client = AsyncMock()
        mock_client.get.return_value = json.dumps(cached)

        with patch("app.services.cache.get_redis", return_value=mock_client):
            response = await client.get("/api/v1/subscribers/reader_1", headers=public_headers)

        assert response.status_code == 200
        assert response.json()["data"]["subscriber"]["id"] == cached["id"]
        mock_client.get.assert_awaited_once_with(
            CacheKeys.subscriber_snapshot(app_id, "reader_1")
        )

    @pytest.mark.asyncio
    async def test_invalidation_covers_aliases(self):
        mock_client = AsyncMock()
        mock_client.delete.return_value = 1

        with patch("app.services.cache.get_redis", return_value=mock_client):
            await CacheInvalidator.on_subscriber_change("app-1", "reader_1", ["$anon_1"])

        assert mock_client.delete.await_args_list == [
            call("cache:subscriber:app-1:reader_1"),
            call("cache:subscriber:app-1:$anon_1"),
        ]

    @pytest.mark.asyncio
    async def test_cache_errors_degrade_to_miss(self):
        with patch(
            "app.services.cache.get_redis",
            AsyncMock(side_effect=ConnectionError("Redis unavailable")),
        ):
            assert await CacheManager.get("cache:subscriber:a:b") is None
            assert await CacheManager.set("cache:subscriber:a:b", {}) is False
            assert await CacheManager.delete("cache:subscriber:a:b") is False
