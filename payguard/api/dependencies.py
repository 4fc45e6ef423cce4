"""
API Dependencies

Service wiring and FastAPI dependency injection for shared resources.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import httpx
import redis.asyncio as redis
from fastapi import Request

from ..config import settings
from ..detection import DuplicateDetector
from ..ratelimit import AdminRateLimiter, InMemoryRateLimitBackend, RedisRateLimitBackend
from ..scoring import FraudScoringEngine, ReviewFlagger
from ..store import (
    AccountStore,
    AuditLog,
    InMemoryAccountStore,
    InMemoryAuditLog,
    InMemoryPurchaseStore,
    InMemoryReviewQueue,
    PurchaseStore,
    RedisAccountStore,
    RedisPurchaseStore,
    ReviewQueue,
)
from ..store.postgres import PostgresAuditStore
from ..validation import AppStoreClient, ReceiptValidator
from ..webhooks import KeySetCache, WebhookProcessor, WebhookVerifier

logger = logging.getLogger("payguard.api.dependencies")


@dataclass
class Services:
    """Everything the API needs, built once per application."""
    purchases: PurchaseStore
    accounts: AccountStore
    audit_log: AuditLog
    review_queue: ReviewQueue
    rate_limiter: AdminRateLimiter
    detector: DuplicateDetector
    validator: ReceiptValidator
    verifier: WebhookVerifier
    processor: WebhookProcessor
    http_client: Optional[httpx.AsyncClient] = None
    redis_client: Optional[redis.Redis] = None
    postgres: Optional[PostgresAuditStore] = None

    async def close(self) -> None:
        await self.validator.wait_for_background()
        if self.http_client:
            await self.http_client.aclose()
        if self.redis_client:
            await self.redis_client.aclose()
        if self.postgres:
            await self.postgres.close()


def build_services(
    purchases: PurchaseStore,
    accounts: AccountStore,
    audit_log: AuditLog,
    review_queue: ReviewQueue,
    http_client: httpx.AsyncClient,
    rate_limiter: Optional[AdminRateLimiter] = None,
    **kwargs,
) -> Services:
    """Wire the integrity core around the given stores."""
    detector = DuplicateDetector(purchases, audit_log, review_queue)
    engine = FraudScoringEngine.from_stores(purchases, accounts, audit_log)
    validator = ReceiptValidator(
        client=AppStoreClient(http_client=http_client),
        detector=detector,
        scoring_engine=engine,
        flagger=ReviewFlagger(review_queue),
    )
    verifier = WebhookVerifier(KeySetCache(http_client), audit_log)
    processor = WebhookProcessor(purchases, detector)

    return Services(
        purchases=purchases,
        accounts=accounts,
        audit_log=audit_log,
        review_queue=review_queue,
        rate_limiter=rate_limiter or AdminRateLimiter(),
        detector=detector,
        validator=validator,
        verifier=verifier,
        processor=processor,
        http_client=http_client,
        **kwargs,
    )


async def create_services() -> Services:
    """
    Build services from settings.

    Storage backends:
    - STORAGE_BACKEND=redis: purchases, accounts and rate-limit buckets in Redis
    - AUDIT_BACKEND=postgres: audit log and review queue in PostgreSQL
    """
    http_client = httpx.AsyncClient(timeout=settings.appstore_timeout_seconds)
    redis_client = None
    postgres = None

    if settings.storage_backend == "redis":
        redis_client = redis.Redis.from_url(settings.redis_url, decode_responses=True)
        purchases = RedisPurchaseStore(redis_client, settings.redis_key_prefix)
        accounts = RedisAccountStore(redis_client, settings.redis_key_prefix)
        rate_limiter = AdminRateLimiter(
            RedisRateLimitBackend(redis_client, settings.redis_key_prefix)
        )
    else:
        purchases = InMemoryPurchaseStore()
        accounts = InMemoryAccountStore()
        rate_limiter = AdminRateLimiter(InMemoryRateLimitBackend())

    if settings.audit_backend == "postgres":
        postgres = PostgresAuditStore(settings.postgres_url)
        await postgres.initialize()
        audit_log: AuditLog = postgres
        review_queue: ReviewQueue = postgres
    else:
        audit_log = InMemoryAuditLog()
        review_queue = InMemoryReviewQueue()

    logger.info(
        "Services initialized: storage=%s audit=%s env=%s",
        settings.storage_backend, settings.audit_backend, settings.app_env,
    )

    return build_services(
        purchases,
        accounts,
        audit_log,
        review_queue,
        http_client,
        rate_limiter=rate_limiter,
        redis_client=redis_client,
        postgres=postgres,
    )


def get_services(request: Request) -> Services:
    """FastAPI dependency returning the application's services."""
    return request.app.state.services


def client_origin(request: Request) -> str:
    """
    Originating client address.

    X-Forwarded-For is honored only when the direct peer is a trusted
    proxy. The origin is then the rightmost hop that is not itself a
    trusted proxy; entries left of it are client-supplied.
    """
    peer = request.client.host if request.client else "unknown"
    trusted = settings.trusted_proxies_set
    if peer not in trusted:
        return peer

    hops = [hop.strip() for hop in request.headers.get("x-forwarded-for", "").split(",") if hop.strip()]
    for hop in reversed(hops):
        if hop not in trusted:
            return hop
    return peer
