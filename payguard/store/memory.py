"""
In-memory store implementations.

Used for development and tests. Single-process only: the claim is
atomic with respect to other coroutines on the same event loop.
"""

import asyncio
from collections import deque
from datetime import datetime, UTC
from typing import Deque, Optional

from ..schemas import (
    AccountProfile,
    AdminAlert,
    FlaggedTransaction,
    FraudEventType,
    FraudLogEntry,
    PurchaseRecord,
    ReviewStatus,
)
from .base import AccountStore, AuditLog, PurchaseStore, ReviewQueue


class InMemoryPurchaseStore(PurchaseStore):
    """Dict-backed purchase store with a lock-guarded claim."""

    def __init__(self) -> None:
        self._records: dict[str, PurchaseRecord] = {}
        self._lock = asyncio.Lock()

    async def get(self, transaction_id: str) -> Optional[PurchaseRecord]:
        return self._records.get(transaction_id)

    async def claim(self, record: PurchaseRecord) -> PurchaseRecord:
        async with self._lock:
            existing = self._records.get(record.transaction_id)
            if existing is not None:
                return existing
            self._records[record.transaction_id] = record
            return record

    async def list_for_account(
        self,
        account_id: str,
        since: Optional[datetime] = None,
    ) -> list[PurchaseRecord]:
        return [
            r for r in self._records.values()
            if r.account_id == account_id
            and (since is None or r.purchase_timestamp > since)
        ]

    async def mark_refunded(
        self,
        transaction_id: str,
        refunded_at: datetime,
    ) -> Optional[PurchaseRecord]:
        async with self._lock:
            existing = self._records.get(transaction_id)
            if existing is None:
                return None
            updated = existing.model_copy(update={"refunded": True, "refunded_at": refunded_at})
            self._records[transaction_id] = updated
            return updated


class InMemoryAccountStore(AccountStore):
    """Account profiles registered up front (tests, local runs)."""

    def __init__(self, accounts: Optional[list[AccountProfile]] = None) -> None:
        self._accounts: dict[str, AccountProfile] = {}
        for account in accounts or []:
            self.register(account)

    def register(self, account: AccountProfile) -> None:
        self._accounts[account.account_id] = account

    async def get_account(self, account_id: str) -> Optional[AccountProfile]:
        return self._accounts.get(account_id)

    async def count_accounts_for_device(self, device_fingerprint: str) -> int:
        return sum(
            1 for a in self._accounts.values()
            if a.device_fingerprint == device_fingerprint
        )


class InMemoryAuditLog(AuditLog):
    """Bounded ring buffer of audit entries."""

    def __init__(self, maxlen: int = 10000) -> None:
        self._entries: Deque[FraudLogEntry] = deque(maxlen=maxlen)

    @property
    def entries(self) -> list[FraudLogEntry]:
        return list(self._entries)

    async def append(self, entry: FraudLogEntry) -> None:
        self._entries.append(entry)

    async def count(self, account_id: str, event_type: FraudEventType) -> int:
        return sum(
            1 for e in self._entries
            if e.account_id == account_id and e.event_type == event_type
        )


class InMemoryReviewQueue(ReviewQueue):

    def __init__(self) -> None:
        self._flagged: dict[str, FlaggedTransaction] = {}
        self._alerts: dict[str, AdminAlert] = {}

    async def add_flagged(self, flagged: FlaggedTransaction) -> None:
        self._flagged[flagged.id] = flagged

    async def add_alert(self, alert: AdminAlert) -> None:
        self._alerts[alert.id] = alert

    async def list_flagged(
        self,
        status: Optional[ReviewStatus] = None,
        limit: int = 100,
    ) -> list[FlaggedTransaction]:
        items = [f for f in self._flagged.values() if status is None or f.status == status]
        items.sort(key=lambda f: f.created_at, reverse=True)
        return items[:limit]

    async def resolve(
        self,
        flagged_id: str,
        resolution: str,
        resolved_by: str,
    ) -> Optional[FlaggedTransaction]:
        flagged = self._flagged.get(flagged_id)
        if flagged is None:
            return None
        updated = flagged.model_copy(update={
            "status": ReviewStatus.RESOLVED,
            "resolution": resolution,
            "resolved_by": resolved_by,
            "resolved_at": datetime.now(UTC),
        })
        self._flagged[flagged_id] = updated
        return updated

    async def list_alerts(
        self,
        acknowledged: Optional[bool] = None,
        limit: int = 100,
    ) -> list[AdminAlert]:
        items = [
            a for a in self._alerts.values()
            if acknowledged is None or a.acknowledged == acknowledged
        ]
        items.sort(key=lambda a: a.created_at, reverse=True)
        return items[:limit]

    async def acknowledge_alert(
        self,
        alert_id: str,
        acknowledged_by: str,
    ) -> Optional[AdminAlert]:
        alert = self._alerts.get(alert_id)
        if alert is None:
            return None
        updated = alert.model_copy(update={"acknowledged": True, "acknowledged_by": acknowledged_by})
        self._alerts[alert_id] = updated
        return updated
