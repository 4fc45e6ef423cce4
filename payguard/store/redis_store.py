"""
Redis store implementations.

Key format: {prefix}{entity}:{id}[:{metric}]
Examples:
- payguard:purchase:1000000123456789          (JSON PurchaseRecord)
- payguard:account:user_42:purchases          (ZSET txn id -> purchase ms)
- payguard:account:user_42                    (HASH account profile)
- payguard:device:<fingerprint>:accounts      (SET of account ids)

The ownership claim uses ``SET NX`` so that exactly one writer can
create a purchase record for a transaction id.
"""

from datetime import datetime
from typing import Optional

import redis.asyncio as redis
from redis.exceptions import WatchError

from ..schemas import AccountProfile, PurchaseRecord
from .base import AccountStore, PurchaseStore


class RedisPurchaseStore(PurchaseStore):
    """
    Purchase records as JSON strings plus a per-account ZSET index.

    The index score is the purchase timestamp in milliseconds, so
    windowed lookups are a single ZRANGEBYSCORE.
    """

    def __init__(self, redis_client: redis.Redis, key_prefix: str = "payguard:"):
        """
        Initialize purchase store.

        Args:
            redis_client: Async Redis client (decode_responses=True)
            key_prefix: Prefix for all Redis keys
        """
        self.redis = redis_client
        self.prefix = key_prefix

    def _record_key(self, transaction_id: str) -> str:
        return f"{self.prefix}purchase:{transaction_id}"

    def _index_key(self, account_id: str) -> str:
        return f"{self.prefix}account:{account_id}:purchases"

    async def get(self, transaction_id: str) -> Optional[PurchaseRecord]:
        raw = await self.redis.get(self._record_key(transaction_id))
        if raw is None:
            return None
        return PurchaseRecord.model_validate_json(raw)

    async def claim(self, record: PurchaseRecord) -> PurchaseRecord:
        key = self._record_key(record.transaction_id)

        # SET NX is the conditional write; no separate existence check
        created = await self.redis.set(key, record.model_dump_json(), nx=True)
        if not created:
            existing = await self.get(record.transaction_id)
            return existing if existing is not None else record

        ts_ms = int(record.purchase_timestamp.timestamp() * 1000)
        await self.redis.zadd(self._index_key(record.account_id), {record.transaction_id: ts_ms})
        return record

    async def list_for_account(
        self,
        account_id: str,
        since: Optional[datetime] = None,
    ) -> list[PurchaseRecord]:
        index_key = self._index_key(account_id)
        if since is None:
            transaction_ids = await self.redis.zrange(index_key, 0, -1)
        else:
            since_ms = int(since.timestamp() * 1000)
            # "(" makes the lower bound exclusive
            transaction_ids = await self.redis.zrangebyscore(index_key, f"({since_ms}", "+inf")

        if not transaction_ids:
            return []

        raw_records = await self.redis.mget([self._record_key(t) for t in transaction_ids])
        return [PurchaseRecord.model_validate_json(raw) for raw in raw_records if raw]

    async def mark_refunded(
        self,
        transaction_id: str,
        refunded_at: datetime,
    ) -> Optional[PurchaseRecord]:
        key = self._record_key(transaction_id)

        async with self.redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    raw = await pipe.get(key)
                    if raw is None:
                        await pipe.unwatch()
                        return None

                    record = PurchaseRecord.model_validate_json(raw)
                    updated = record.model_copy(update={"refunded": True, "refunded_at": refunded_at})

                    pipe.multi()
                    pipe.set(key, updated.model_dump_json())
                    await pipe.execute()
                    return updated
                except WatchError:
                    # Record changed between WATCH and EXEC; retry
                    continue


class RedisAccountStore(AccountStore):
    """Account profiles maintained by the account service in Redis hashes."""

    def __init__(self, redis_client: redis.Redis, key_prefix: str = "payguard:"):
        self.redis = redis_client
        self.prefix = key_prefix

    async def get_account(self, account_id: str) -> Optional[AccountProfile]:
        data = await self.redis.hgetall(f"{self.prefix}account:{account_id}")
        if not data or "created_at" not in data:
            return None
        return AccountProfile(
            account_id=account_id,
            created_at=datetime.fromisoformat(data["created_at"]),
            device_fingerprint=data.get("device_fingerprint") or None,
        )

    async def count_accounts_for_device(self, device_fingerprint: str) -> int:
        return await self.redis.scard(f"{self.prefix}device:{device_fingerprint}:accounts")

    async def register(self, account: AccountProfile) -> None:
        """Write an account profile and its device index entry."""
        pipe = self.redis.pipeline()
        mapping = {"created_at": account.created_at.isoformat()}
        if account.device_fingerprint:
            mapping["device_fingerprint"] = account.device_fingerprint
            pipe.sadd(f"{self.prefix}device:{account.device_fingerprint}:accounts", account.account_id)
        pipe.hset(f"{self.prefix}account:{account.account_id}", mapping=mapping)
        await pipe.execute()
