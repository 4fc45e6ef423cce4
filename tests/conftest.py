"""
Pytest Configuration and Fixtures - Payment Integrity

Provides in-memory stores, App Store response builders and an API client
wired to mocked outbound HTTP.
"""

import json
from datetime import datetime, timedelta, UTC
from typing import AsyncGenerator, Callable, Optional
from uuid import uuid4

import httpx
import pytest
import pytest_asyncio
import redis.asyncio as redis
from httpx import AsyncClient, ASGITransport

from payguard.config import settings
from payguard.schemas import PurchaseRecord, Transaction
from payguard.store import (
    InMemoryAccountStore,
    InMemoryAuditLog,
    InMemoryPurchaseStore,
    InMemoryReviewQueue,
)

TEST_BUNDLE_ID = "com.example.app"
TEST_SHARED_SECRET = "test-shared-secret"
TEST_API_TOKEN = "test-api-token"
TEST_ADMIN_TOKEN = "test-admin-token"


def pytest_configure(config):
    config.addinivalue_line("markers", "unit: unit tests (no infrastructure)")
    config.addinivalue_line("markers", "integration: integration tests (requires Redis)")


def _ms(moment: datetime) -> str:
    return str(int(moment.timestamp() * 1000))


# =============================================================================
# Stores
# =============================================================================

@pytest.fixture
def purchases() -> InMemoryPurchaseStore:
    return InMemoryPurchaseStore()


@pytest.fixture
def accounts() -> InMemoryAccountStore:
    return InMemoryAccountStore()


@pytest.fixture
def audit_log() -> InMemoryAuditLog:
    return InMemoryAuditLog()


@pytest.fixture
def review_queue() -> InMemoryReviewQueue:
    return InMemoryReviewQueue()


@pytest.fixture
def make_record() -> Callable[..., PurchaseRecord]:
    """
    Factory for purchase records.

    Defaults to a non-promotional subscription purchased just now.
    """

    def _make(
        account_id: str,
        transaction_id: Optional[str] = None,
        purchased_at: Optional[datetime] = None,
        refunded_at: Optional[datetime] = None,
        promotional_offer_id: Optional[str] = None,
    ) -> PurchaseRecord:
        purchased_at = purchased_at or datetime.now(UTC)
        transaction = Transaction(
            transaction_id=transaction_id or f"txn_{uuid4().hex[:16]}",
            product_id="com.example.premium.monthly",
            purchase_timestamp=purchased_at,
            expiry_timestamp=purchased_at + timedelta(days=30),
            promotional_offer_id=promotional_offer_id,
        )
        return PurchaseRecord(
            transaction=transaction,
            account_id=account_id,
            refunded=refunded_at is not None,
            refunded_at=refunded_at,
            is_promotional=promotional_offer_id is not None,
        )

    return _make


# =============================================================================
# App Store responses
# =============================================================================

@pytest.fixture
def receipt_payload() -> Callable[..., dict]:
    """
    Factory for verifyReceipt response bodies.

    Produces a successful auto-renewing subscription unless told otherwise.
    """

    def _payload(
        status: int = 0,
        transaction_id: str = "1000000000000001",
        product_id: str = "com.example.premium.monthly",
        environment: str = "Production",
        is_trial_period: bool = False,
        promotional_offer_id: Optional[str] = None,
        entries: Optional[list] = None,
        bundle_id: str = TEST_BUNDLE_ID,
    ) -> dict:
        if status != 0:
            return {"status": status, "environment": environment}

        now = datetime.now(UTC)
        entry = {
            "transaction_id": transaction_id,
            "original_transaction_id": transaction_id,
            "product_id": product_id,
            "purchase_date_ms": _ms(now),
            "expires_date_ms": _ms(now + timedelta(days=7 if is_trial_period else 30)),
            "is_trial_period": "true" if is_trial_period else "false",
            "is_in_intro_offer_period": "false",
            "web_order_line_item_id": "2000000000000001",
        }
        if promotional_offer_id:
            entry["promotional_offer_id"] = promotional_offer_id

        return {
            "status": 0,
            "environment": environment,
            "receipt": {
                "bundle_id": bundle_id,
                "receipt_creation_date_ms": _ms(now),
                "in_app": [],
            },
            "latest_receipt_info": [entry] if entries is None else entries,
            "pending_renewal_info": [{"auto_renew_status": "1", "product_id": product_id}],
        }

    return _payload


class AuthorityStub:
    """
    Scripted verifyReceipt endpoint behind httpx.MockTransport.

    Each call pops the next queued payload; every requested URL is kept.
    """

    def __init__(self) -> None:
        self.responses: list = []
        self.calls: list[str] = []
        self.bodies: list[dict] = []

    def queue(self, *responses) -> None:
        self.responses.extend(responses)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(str(request.url))
        self.bodies.append(json.loads(request.content))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        if isinstance(response, httpx.Response):
            return response
        return httpx.Response(200, json=response)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


@pytest.fixture
def authority() -> AuthorityStub:
    return AuthorityStub()


# =============================================================================
# Redis
# =============================================================================

@pytest_asyncio.fixture
async def redis_client() -> AsyncGenerator[redis.Redis, None]:
    """
    Get Redis client for tests.

    Uses a test-specific key prefix and skips when Redis is unavailable.
    """
    client = redis.Redis(
        host=settings.redis_host,
        port=settings.redis_port,
        db=settings.redis_db,
        decode_responses=True,
    )

    try:
        await client.ping()
    except Exception:
        await client.aclose()
        pytest.skip("Redis not available")

    yield client

    keys = await client.keys("payguard:test:*")
    if keys:
        await client.delete(*keys)
    await client.aclose()


# =============================================================================
# API
# =============================================================================

@pytest.fixture
def api_settings(monkeypatch):
    """Pin the security settings the API tests rely on."""
    monkeypatch.setattr(settings, "api_token", TEST_API_TOKEN)
    monkeypatch.setattr(settings, "admin_token", TEST_ADMIN_TOKEN)
    monkeypatch.setattr(settings, "metrics_token", None)
    monkeypatch.setattr(settings, "metrics_enabled", True)
    monkeypatch.setattr(settings, "appstore_shared_secret", TEST_SHARED_SECRET)
    monkeypatch.setattr(settings, "admin_email_allowlist", "")
    monkeypatch.setattr(settings, "admin_id", "admin")
    monkeypatch.setattr(settings, "operator_keys", "")
    monkeypatch.setattr(settings, "trusted_proxies", "")
    return settings


@pytest_asyncio.fixture
async def services(api_settings, authority, purchases, accounts, audit_log, review_queue):
    """Services over in-memory stores; the authority is scripted per test."""
    from payguard.api.dependencies import build_services

    built = build_services(
        purchases,
        accounts,
        audit_log,
        review_queue,
        authority.client(),
    )
    yield built
    await built.close()


@pytest_asyncio.fixture
async def api_client(services) -> AsyncGenerator[AsyncClient, None]:
    """
    Get async HTTP client for API tests.

    Uses lifespan context manager to run the app's startup/shutdown path.
    """
    from payguard.api.main import create_app, lifespan

    app = create_app(services)
    async with lifespan(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            yield client
