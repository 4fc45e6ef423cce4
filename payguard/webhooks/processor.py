"""
Webhook Processor

Acts on verified notifications only. Refunds and revocations mark the
purchase refunded and re-check the account's refund pattern; everything
else is acknowledged and logged.
"""

import logging
from datetime import datetime, UTC

from ..config import settings
from ..detection import DuplicateDetector
from ..schemas import NotificationType, WebhookNotification
from ..scoring import RapidCycleSignal
from ..store import PurchaseStore

logger = logging.getLogger("payguard.webhooks.processor")

REFUND_TYPES = {NotificationType.REFUND.value, NotificationType.REVOKE.value}


class WebhookProcessor:
    """Applies verified lifecycle notifications to purchase records."""

    def __init__(
        self,
        purchases: PurchaseStore,
        detector: DuplicateDetector,
        rapid_cycle: RapidCycleSignal = None,
        max_refunds_warning: int = None,
    ):
        self.purchases = purchases
        self.detector = detector
        self.rapid_cycle = rapid_cycle or RapidCycleSignal(purchases)
        self.max_refunds_warning = (
            max_refunds_warning if max_refunds_warning is not None else settings.max_refunds_warning
        )

    async def process(self, notification: WebhookNotification) -> str:
        """
        Apply a verified notification.

        Returns:
            "processed" or "ignored"
        """
        if notification.notification_type in REFUND_TYPES:
            return await self._handle_refund(notification)

        logger.info(
            "Webhook notification acknowledged: type=%s subtype=%s transaction=%s",
            notification.notification_type,
            notification.subtype,
            notification.transaction.transaction_id if notification.transaction else None,
        )
        return "processed"

    async def _handle_refund(self, notification: WebhookNotification) -> str:
        transaction = notification.transaction
        if transaction is None:
            logger.error("No transaction info in %s notification", notification.notification_type)
            return "ignored"

        refunded_at = transaction.revocation_date or datetime.now(UTC)
        record = await self.purchases.mark_refunded(transaction.transaction_id, refunded_at)
        if record is None:
            logger.error("Purchase not found for refund: transaction=%s", transaction.transaction_id)
            return "ignored"

        logger.warning(
            "Refund notification: type=%s account=%s transaction=%s",
            notification.notification_type, record.account_id, transaction.transaction_id,
        )

        account_purchases = await self.purchases.list_for_account(record.account_id)
        refund_count = sum(1 for r in account_purchases if r.refunded)
        if refund_count > self.max_refunds_warning:
            await self.detector.track_fraud_attempt(
                record.account_id,
                "multiple_refunds",
                {"refund_count": refund_count, "transaction_id": transaction.transaction_id},
            )

        if await self.rapid_cycle.detect(record.account_id, datetime.now(UTC)):
            await self.detector.track_fraud_attempt(
                record.account_id,
                "rapid_refund_cycle",
                {"transaction_id": transaction.transaction_id},
            )

        return "processed"
