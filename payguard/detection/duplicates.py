"""
Duplicate & Promotion Abuse Detection

Guards purchase ownership and promotional offers:
1. A transaction id may be owned by at most one account
2. Promotional purchases are capped per account within a lookback window
3. The same promotional code may not be redeemed twice by one account

Also the audit sink for everything the validator rejects. Abuse
(fraud_attempt) and ordinary failures (validation_failure) are kept as
separate event types so review queues never conflate them.
"""

import logging
from datetime import datetime, timedelta, UTC
from typing import Any, Optional

from ..config import settings
from ..metrics import metrics
from ..schemas import (
    AdminAlert,
    AlertPriority,
    FraudEventType,
    FraudLogEntry,
    PurchaseRecord,
)
from ..store import AuditLog, PurchaseStore, ReviewQueue

logger = logging.getLogger("payguard.detection.duplicates")


class DuplicateDetector:
    """
    Duplicate receipt and promotional abuse checks over the purchase store.

    The ownership write goes through ``PurchaseStore.claim`` (a
    compare-and-set), never a read followed by a plain write.
    """

    def __init__(
        self,
        purchases: PurchaseStore,
        audit_log: AuditLog,
        review_queue: ReviewQueue,
        max_promo_codes_per_user: int = None,
        promo_lookback_days: int = None,
    ):
        """
        Initialize detector.

        Args:
            purchases: Purchase record store
            audit_log: Append-only audit trail
            review_queue: Admin alert sink
            max_promo_codes_per_user: Promotional purchases allowed per window
            promo_lookback_days: Promotional lookback window
        """
        self.purchases = purchases
        self.audit_log = audit_log
        self.review_queue = review_queue
        self.max_promo_codes = (
            max_promo_codes_per_user if max_promo_codes_per_user is not None else settings.max_promo_codes_per_user
        )
        self.promo_lookback = timedelta(
            days=promo_lookback_days if promo_lookback_days is not None else settings.promo_lookback_days
        )

    # =========================================================================
    # Ownership
    # =========================================================================

    async def check_receipt_duplicate(self, transaction_id: str, account_id: str) -> bool:
        """
        Check whether a transaction is owned by a different account.

        Re-validation by the owning account (e.g. app reinstall) is not a
        duplicate.

        Returns:
            True if another account already owns the transaction
        """
        existing = await self.purchases.get(transaction_id)
        if existing is None:
            return False

        if existing.account_id != account_id:
            logger.warning(
                "Duplicate receipt: transaction=%s owner=%s attempted_by=%s",
                transaction_id, existing.account_id, account_id,
            )
            return True

        return False

    async def claim(self, record: PurchaseRecord) -> bool:
        """
        Record ``record.account_id`` as owner of the transaction.

        Returns:
            True if the account owns the transaction after the call
            (new claim or existing own claim), False if another account won
        """
        owner = await self.purchases.claim(record)
        return owner.account_id == record.account_id

    # =========================================================================
    # Promotional abuse
    # =========================================================================

    async def check_promotional_code_abuse(
        self,
        account_id: str,
        promo_code: str,
        transaction_id: Optional[str] = None,
    ) -> bool:
        """
        Check whether redeeming ``promo_code`` now would be abuse.

        Either condition alone flags abuse:
        - promotional purchases already recorded in the lookback window
          exceed the per-account ceiling (with a ceiling of 3 the fourth
          is allowed and the fifth rejected)
        - the account already redeemed this exact code in the window

        Args:
            account_id: Redeeming account
            promo_code: Promotional offer identifier
            transaction_id: Current transaction; its own record is ignored
                so re-validation does not flag itself

        Returns:
            True if abuse is detected
        """
        since = datetime.now(UTC) - self.promo_lookback
        recent = await self.purchases.list_for_account(account_id, since=since)
        prior = [
            r for r in recent
            if r.transaction_id != transaction_id
            and (r.is_promotional or r.promotional_offer_id)
        ]

        if len(prior) > self.max_promo_codes:
            logger.warning(
                "Promo abuse: account=%s promotional_purchases=%d limit=%d",
                account_id, len(prior), self.max_promo_codes,
            )
            return True

        same_code = [r for r in prior if r.promotional_offer_id == promo_code]
        if same_code:
            logger.warning(
                "Promo abuse: account=%s reused code=%s uses=%d",
                account_id, promo_code, len(same_code) + 1,
            )
            return True

        return False

    # =========================================================================
    # Audit sink
    # =========================================================================

    async def track_fraud_attempt(
        self,
        account_id: Optional[str],
        fraud_type: str,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        """Record an abuse rejection and raise a critical admin alert."""
        details = details or {}
        metrics.fraud_attempts.labels(fraud_type=fraud_type).inc()

        await self.audit_log.append(
            FraudLogEntry(
                account_id=account_id,
                event_type=FraudEventType.FRAUD_ATTEMPT,
                fraud_type=fraud_type,
                reason=fraud_type,
                details=details,
                severity="high",
            )
        )
        await self.review_queue.add_alert(
            AdminAlert(
                alert_type="fraud_attempt",
                account_id=account_id,
                details={"fraud_type": fraud_type, **details},
                priority=AlertPriority.CRITICAL,
            )
        )
        logger.error("FRAUD ATTEMPT: type=%s account=%s details=%s", fraud_type, account_id, details)

    async def track_validation_failure(
        self,
        account_id: Optional[str],
        status_code: Optional[int],
        reason: str,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        """Record an ordinary validation failure."""
        await self.audit_log.append(
            FraudLogEntry(
                account_id=account_id,
                event_type=FraudEventType.VALIDATION_FAILURE,
                status_code=status_code,
                reason=reason,
                details=details or {},
                severity="medium",
            )
        )
        logger.info("Validation failure: account=%s status=%s reason=%s", account_id, status_code, reason)

    async def track_security_event(
        self,
        account_id: Optional[str],
        event: str,
        details: Optional[dict[str, Any]] = None,
        severity: str = "high",
    ) -> None:
        """Record a security event (jailbreak signal, bad webhook signature)."""
        await self.audit_log.append(
            FraudLogEntry(
                account_id=account_id,
                event_type=FraudEventType.SECURITY_EVENT,
                fraud_type=event,
                reason=event,
                details=details or {},
                severity=severity,
            )
        )
        logger.warning("Security event: %s account=%s details=%s", event, account_id, details)
