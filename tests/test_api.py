"""
API Tests

Integration tests for the payment integrity API: receipt validation,
webhook intake, and the admin security gateway (authenticate, rate
limit, authorize).
"""

from datetime import timedelta

import httpx
import pytest
import pytest_asyncio
from fastapi import Depends, FastAPI
from httpx import AsyncClient, ASGITransport

from payguard.api.auth import create_admin_session, decode_admin_session
from payguard.api.gateway import rate_limit_exceeded_handler, require_admin
from payguard.errors import RateLimitExceeded
from payguard.schemas import AdminIdentity, FlaggedTransaction

API_HEADERS = {"X-API-Key": "test-api-token"}


def _bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin_headers(api_settings) -> dict:
    return _bearer(create_admin_session("admin_1", email="ops@example.com"))


@pytest.fixture
def moderator_headers(api_settings) -> dict:
    """Valid session without the admin claim."""
    return _bearer(create_admin_session("mod_1", email="mod@example.com", is_admin=False))


class TestHealthEndpoint:
    """Tests for health check endpoint."""

    @pytest.mark.asyncio
    async def test_health_returns_status(self, api_client: AsyncClient):
        response = await api_client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] in ("healthy", "degraded")
        assert "components" in data


class TestMetricsEndpoint:
    """Tests for the Prometheus endpoint."""

    @pytest.mark.asyncio
    async def test_metrics_exposed(self, api_client: AsyncClient):
        response = await api_client.get("/metrics")

        assert response.status_code == 200
        assert "payguard_requests_total" in response.text

    @pytest.mark.asyncio
    async def test_metrics_token_required_when_configured(self, api_client: AsyncClient, api_settings, monkeypatch):
        monkeypatch.setattr(api_settings, "metrics_token", "metrics-secret")

        assert (await api_client.get("/metrics")).status_code == 401
        response = await api_client.get("/metrics", headers={"X-API-Key": "metrics-secret"})
        assert response.status_code == 200


class TestReceiptEndpoint:
    """Tests for POST /receipts/validate."""

    @pytest.mark.asyncio
    async def test_requires_api_token(self, api_client: AsyncClient):
        response = await api_client.post("/receipts/validate", json={"receipt_data": "abc"})

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_valid_receipt(self, api_client: AsyncClient, authority, receipt_payload):
        authority.queue(receipt_payload(transaction_id="txn_api"))

        response = await api_client.post(
            "/receipts/validate",
            json={"receipt_data": "abc", "account_id": "account_a"},
            headers=API_HEADERS,
        )

        assert response.status_code == 200
        data = response.json()
        assert data["is_valid"] is True
        assert data["transaction"]["transaction_id"] == "txn_api"
        assert data["environment"] == "Production"

    @pytest.mark.asyncio
    async def test_rejection_is_200(self, api_client: AsyncClient, authority, receipt_payload):
        authority.queue(receipt_payload(status=21003))

        response = await api_client.post(
            "/receipts/validate", json={"receipt_data": "abc"}, headers=API_HEADERS
        )

        assert response.status_code == 200
        assert response.json()["is_valid"] is False
        assert response.json()["status_code"] == 21003

    @pytest.mark.asyncio
    async def test_malformed_response_is_502(self, api_client: AsyncClient, authority, receipt_payload):
        authority.queue(receipt_payload(entries=[]))

        response = await api_client.post(
            "/receipts/validate", json={"receipt_data": "abc"}, headers=API_HEADERS
        )

        assert response.status_code == 502

    @pytest.mark.asyncio
    async def test_network_failure_is_503(self, api_client: AsyncClient, authority):
        authority.queue(httpx.ConnectTimeout("timed out"))

        response = await api_client.post(
            "/receipts/validate", json={"receipt_data": "abc"}, headers=API_HEADERS
        )

        assert response.status_code == 503


class TestWebhookEndpoint:
    """Tests for POST /webhooks/app-store."""

    @pytest.mark.asyncio
    async def test_unverifiable_payload_is_ignored(self, api_client: AsyncClient, audit_log):
        response = await api_client.post("/webhooks/app-store", json={"signedPayload": "not-a-jws"})

        assert response.status_code == 200
        assert response.json() == {"status": "ignored"}
        assert audit_log.entries[-1].details["origin"] == "127.0.0.1"

    @pytest.mark.asyncio
    async def test_forwarded_origin_behind_trusted_proxy(
        self, api_client: AsyncClient, api_settings, monkeypatch, audit_log
    ):
        monkeypatch.setattr(api_settings, "trusted_proxies", "127.0.0.1")

        await api_client.post(
            "/webhooks/app-store",
            json={"signedPayload": "not-a-jws"},
            headers={"X-Forwarded-For": "10.9.9.9, 198.51.100.9"},
        )

        assert audit_log.entries[-1].details["origin"] == "198.51.100.9"

    @pytest.mark.asyncio
    async def test_missing_payload_is_ignored(self, api_client: AsyncClient):
        response = await api_client.post("/webhooks/app-store", json={})

        assert response.json() == {"status": "ignored"}


class TestAdminLogin:
    """Tests for POST /admin/login."""

    @pytest.mark.asyncio
    async def test_login_returns_session(self, api_client: AsyncClient):
        response = await api_client.post("/admin/login", json={"api_key": "test-admin-token"})

        assert response.status_code == 200
        session = response.json()
        assert session["token_type"] == "bearer"
        claims = decode_admin_session(session["access_token"])
        assert claims.admin_id == "admin"
        assert claims.is_admin is True

        listed = await api_client.get("/admin/flagged", headers=_bearer(session["access_token"]))
        assert listed.status_code == 200

    @pytest.mark.asyncio
    async def test_wrong_key(self, api_client: AsyncClient):
        response = await api_client.post("/admin/login", json={"api_key": "guess"})

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_identity_in_body_is_ignored(self, api_client: AsyncClient):
        """A fresh admin_id at login does not buy a fresh admin-action bucket."""
        first = await api_client.post(
            "/admin/login", json={"admin_id": "alice", "api_key": "test-admin-token"}
        )
        headers = _bearer(first.json()["access_token"])
        for _ in range(100):
            assert (await api_client.get("/admin/alerts", headers=headers)).status_code == 200

        second = await api_client.post(
            "/admin/login",
            json={"admin_id": "mallory", "email": "mallory@example.com", "api_key": "test-admin-token"},
        )
        identity = decode_admin_session(second.json()["access_token"])

        assert identity.admin_id == "admin"
        assert identity.email is None
        response = await api_client.get("/admin/alerts", headers=_bearer(second.json()["access_token"]))
        assert response.status_code == 429

    @pytest.mark.asyncio
    async def test_operator_needs_allowlist(self, api_client: AsyncClient, api_settings, monkeypatch):
        """Operator keys carry no admin claim; only the allow-list authorizes them."""
        monkeypatch.setattr(api_settings, "operator_keys", "Ops@Example.com=operator-key")

        response = await api_client.post("/admin/login", json={"api_key": "operator-key"})
        token = response.json()["access_token"]
        identity = decode_admin_session(token)

        assert identity.admin_id == "ops@example.com"
        assert identity.is_admin is False
        assert (await api_client.get("/admin/flagged", headers=_bearer(token))).status_code == 403

        monkeypatch.setattr(api_settings, "admin_email_allowlist", "ops@example.com")
        assert (await api_client.get("/admin/flagged", headers=_bearer(token))).status_code == 200

    @pytest.mark.asyncio
    async def test_login_tier_limits_per_origin(self, api_client: AsyncClient, api_settings, monkeypatch):
        """The sixth attempt from one origin within 15 minutes is rejected."""
        monkeypatch.setattr(api_settings, "trusted_proxies", "127.0.0.1")
        body = {"api_key": "guess"}
        origin = {"X-Forwarded-For": "203.0.113.50"}

        for _ in range(5):
            assert (await api_client.post("/admin/login", json=body, headers=origin)).status_code == 401

        response = await api_client.post("/admin/login", json=body, headers=origin)
        assert response.status_code == 429
        assert response.json()["retryAfter"] >= 1
        assert int(response.headers["Retry-After"]) >= 1

        other = await api_client.post(
            "/admin/login", json=body, headers={"X-Forwarded-For": "203.0.113.51"}
        )
        assert other.status_code == 401

    @pytest.mark.asyncio
    async def test_rotating_forwarded_for_does_not_reset_login_tier(self, api_client: AsyncClient):
        """Without a trusted proxy, X-Forwarded-For is ignored."""
        body = {"api_key": "guess"}

        for i in range(5):
            response = await api_client.post(
                "/admin/login", json=body, headers={"X-Forwarded-For": f"203.0.113.{i}"}
            )
            assert response.status_code == 401

        response = await api_client.post(
            "/admin/login", json=body, headers={"X-Forwarded-For": "203.0.113.99"}
        )
        assert response.status_code == 429


class TestAdminGateway:
    """Tests for the authenticate -> rate limit -> authorize order."""

    @pytest.mark.asyncio
    async def test_missing_session_is_401(self, api_client: AsyncClient):
        assert (await api_client.get("/admin/flagged")).status_code == 401

    @pytest.mark.asyncio
    async def test_expired_session_is_401(self, api_client: AsyncClient):
        expired = create_admin_session("admin_1", ttl=timedelta(seconds=-5))

        response = await api_client.get("/admin/flagged", headers=_bearer(expired))

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_tampered_session_is_401(self, api_client: AsyncClient, admin_headers):
        headers = {"Authorization": admin_headers["Authorization"] + "x"}

        assert (await api_client.get("/admin/flagged", headers=headers)).status_code == 401

    @pytest.mark.asyncio
    async def test_unauthenticated_calls_do_not_consume_limit(self, api_client: AsyncClient, admin_headers):
        """Authentication happens before any rate-limit check."""
        for _ in range(150):
            await api_client.get("/admin/flagged")

        response = await api_client.get("/admin/flagged", headers=admin_headers)

        assert response.status_code == 200
        assert response.headers["X-RateLimit-Remaining"] == "99"

    @pytest.mark.asyncio
    async def test_101st_admin_action_is_429(self, api_client: AsyncClient, admin_headers):
        for _ in range(100):
            assert (await api_client.get("/admin/alerts", headers=admin_headers)).status_code == 200

        response = await api_client.get("/admin/alerts", headers=admin_headers)

        assert response.status_code == 429
        assert response.json()["retryAfter"] >= 1
        assert response.headers["X-RateLimit-Remaining"] == "0"

    @pytest.mark.asyncio
    async def test_non_admin_is_403(self, api_client: AsyncClient, moderator_headers):
        assert (await api_client.get("/admin/flagged", headers=moderator_headers)).status_code == 403

    @pytest.mark.asyncio
    async def test_allowlisted_email_is_authorized(self, api_client: AsyncClient, api_settings, monkeypatch, moderator_headers):
        monkeypatch.setattr(api_settings, "admin_email_allowlist", "Mod@Example.com")

        assert (await api_client.get("/admin/flagged", headers=moderator_headers)).status_code == 200

    @pytest.mark.asyncio
    async def test_allowlist_cannot_bypass_rate_limit(self, api_client: AsyncClient, api_settings, monkeypatch, moderator_headers):
        monkeypatch.setattr(api_settings, "admin_email_allowlist", "mod@example.com")

        for _ in range(100):
            await api_client.get("/admin/flagged", headers=moderator_headers)

        assert (await api_client.get("/admin/flagged", headers=moderator_headers)).status_code == 429

    @pytest.mark.asyncio
    async def test_rate_limit_before_authorization(self, api_client: AsyncClient, moderator_headers):
        """An exhausted non-admin gets 429, not 403."""
        for _ in range(100):
            assert (await api_client.get("/admin/flagged", headers=moderator_headers)).status_code == 403

        assert (await api_client.get("/admin/flagged", headers=moderator_headers)).status_code == 429


class TestGatewayWithoutRateLimit:
    """Tests for require_admin(check_rate_limit=False)."""

    @pytest_asyncio.fixture
    async def probe_client(self, services):
        app = FastAPI()
        app.state.services = services
        app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

        @app.get("/probe")
        async def probe(admin: AdminIdentity = Depends(require_admin(check_rate_limit=False))):
            return {"admin_id": admin.admin_id}

        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            yield client

    @pytest.mark.asyncio
    async def test_no_limit_when_disabled(self, probe_client, admin_headers):
        for _ in range(150):
            response = await probe_client.get("/probe", headers=admin_headers)
            assert response.status_code == 200

        assert "X-RateLimit-Remaining" not in response.headers

    @pytest.mark.asyncio
    async def test_still_authenticates(self, probe_client):
        assert (await probe_client.get("/probe")).status_code == 401


class TestReviewEndpoints:
    """Tests for the review queue endpoints."""

    @pytest_asyncio.fixture
    async def flagged(self, review_queue) -> FlaggedTransaction:
        item = FlaggedTransaction(account_id="account_a", transaction_id="txn_1", fraud_score=65, reasons=["x"])
        await review_queue.add_flagged(item)
        return item

    @pytest.mark.asyncio
    async def test_list_and_resolve(self, api_client: AsyncClient, admin_headers, flagged):
        listed = await api_client.get("/admin/flagged", params={"status": "pending"}, headers=admin_headers)
        assert [f["id"] for f in listed.json()] == [flagged.id]

        response = await api_client.post(
            f"/admin/flagged/{flagged.id}/resolve",
            json={"resolution": "legitimate"},
            headers=admin_headers,
        )

        assert response.status_code == 200
        assert response.json()["status"] == "resolved"
        assert response.json()["resolved_by"] == "admin_1"

        pending = await api_client.get("/admin/flagged", params={"status": "pending"}, headers=admin_headers)
        assert pending.json() == []

    @pytest.mark.asyncio
    async def test_resolve_unknown_is_404(self, api_client: AsyncClient, admin_headers):
        response = await api_client.post(
            "/admin/flagged/nope/resolve", json={"resolution": "x"}, headers=admin_headers
        )

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_bulk_resolve(self, api_client: AsyncClient, admin_headers, flagged):
        response = await api_client.post(
            "/admin/flagged/bulk-resolve",
            json={"resolution": "fraud", "flagged_ids": [flagged.id, "nope"]},
            headers=admin_headers,
        )

        assert response.status_code == 200
        assert response.json() == {"resolved": [flagged.id], "not_found": ["nope"]}
        assert response.headers["X-RateLimit-Bulk-Remaining"] == "9"

    @pytest.mark.asyncio
    async def test_bulk_tier_limit(self, api_client: AsyncClient, admin_headers):
        body = {"resolution": "fraud", "flagged_ids": ["nope"]}
        for _ in range(10):
            assert (await api_client.post("/admin/flagged/bulk-resolve", json=body, headers=admin_headers)).status_code == 200

        response = await api_client.post("/admin/flagged/bulk-resolve", json=body, headers=admin_headers)

        assert response.status_code == 429

    @pytest.mark.asyncio
    async def test_acknowledge_alert(self, api_client: AsyncClient, admin_headers, services):
        await services.detector.track_fraud_attempt("account_a", "duplicate_receipt", {})
        alerts = await api_client.get("/admin/alerts", params={"acknowledged": False}, headers=admin_headers)
        alert_id = alerts.json()[0]["id"]

        response = await api_client.post(f"/admin/alerts/{alert_id}/acknowledge", headers=admin_headers)

        assert response.status_code == 200
        assert response.json()["acknowledged"] is True
        assert response.json()["acknowledged_by"] == "admin_1"
