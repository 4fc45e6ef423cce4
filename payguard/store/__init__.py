# Persistence collaborators
from .base import AccountStore, AuditLog, PurchaseStore, ReviewQueue
from .memory import (
    InMemoryAccountStore,
    InMemoryAuditLog,
    InMemoryPurchaseStore,
    InMemoryReviewQueue,
)
from .redis_store import RedisAccountStore, RedisPurchaseStore

__all__ = [
    "AccountStore",
    "AuditLog",
    "PurchaseStore",
    "ReviewQueue",
    "InMemoryAccountStore",
    "InMemoryAuditLog",
    "InMemoryPurchaseStore",
    "InMemoryReviewQueue",
    "RedisAccountStore",
    "RedisPurchaseStore",
]
