"""
Store Interfaces

Opaque persistence collaborators used by the integrity core:
- PurchaseStore: purchase records keyed by transaction id
- AccountStore: read-only account lookups
- AuditLog: append-only fraud/validation audit trail
- ReviewQueue: flagged transactions and admin alerts

The only write that must be conditional is ``PurchaseStore.claim``:
two concurrent validations of one transaction by different accounts
must not both become owner.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

from ..schemas import (
    AccountProfile,
    AdminAlert,
    FlaggedTransaction,
    FraudEventType,
    FraudLogEntry,
    PurchaseRecord,
    ReviewStatus,
)


class PurchaseStore(ABC):
    """Purchase records keyed by ``transaction_id``."""

    @abstractmethod
    async def get(self, transaction_id: str) -> Optional[PurchaseRecord]:
        """Return the record for a transaction, if any."""

    @abstractmethod
    async def claim(self, record: PurchaseRecord) -> PurchaseRecord:
        """
        Compare-and-set the owner of a transaction.

        Stores ``record`` only if no record exists for its transaction id.

        Returns:
            The record that owns the transaction after the call: ``record``
            itself when the claim won, otherwise the existing record.
        """

    @abstractmethod
    async def list_for_account(
        self,
        account_id: str,
        since: Optional[datetime] = None,
    ) -> list[PurchaseRecord]:
        """Return an account's purchases, optionally only those after ``since``."""

    @abstractmethod
    async def mark_refunded(
        self,
        transaction_id: str,
        refunded_at: datetime,
    ) -> Optional[PurchaseRecord]:
        """Flag a purchase as refunded. Returns the updated record."""


class AccountStore(ABC):
    """Read-only account lookups."""

    @abstractmethod
    async def get_account(self, account_id: str) -> Optional[AccountProfile]:
        """Return the account profile, if the account exists."""

    @abstractmethod
    async def count_accounts_for_device(self, device_fingerprint: str) -> int:
        """Number of distinct accounts seen on a device fingerprint."""


class AuditLog(ABC):
    """Append-only audit trail."""

    @abstractmethod
    async def append(self, entry: FraudLogEntry) -> None:
        """Append an entry."""

    @abstractmethod
    async def count(self, account_id: str, event_type: FraudEventType) -> int:
        """Count an account's entries of one type."""


class ReviewQueue(ABC):
    """Human review queue. Entries are only resolved by moderators."""

    @abstractmethod
    async def add_flagged(self, flagged: FlaggedTransaction) -> None:
        """Queue a transaction for review."""

    @abstractmethod
    async def add_alert(self, alert: AdminAlert) -> None:
        """Raise an admin alert."""

    @abstractmethod
    async def list_flagged(
        self,
        status: Optional[ReviewStatus] = None,
        limit: int = 100,
    ) -> list[FlaggedTransaction]:
        """Most recent flagged transactions first."""

    @abstractmethod
    async def resolve(
        self,
        flagged_id: str,
        resolution: str,
        resolved_by: str,
    ) -> Optional[FlaggedTransaction]:
        """Resolve a flagged transaction. ``None`` if unknown."""

    @abstractmethod
    async def list_alerts(
        self,
        acknowledged: Optional[bool] = None,
        limit: int = 100,
    ) -> list[AdminAlert]:
        """Most recent alerts first."""

    @abstractmethod
    async def acknowledge_alert(
        self,
        alert_id: str,
        acknowledged_by: str,
    ) -> Optional[AdminAlert]:
        """Acknowledge an alert. ``None`` if unknown."""
