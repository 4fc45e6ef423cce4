"""
Review Flagging

Turns a fraud assessment into review-queue records:
- score >= medium: FlaggedTransaction (priority high when >= high)
- score >= critical: additionally an AdminAlert with priority critical

Records are only ever resolved by moderators.
"""

import logging
from typing import Optional

from ..config import settings
from ..metrics import metrics
from ..schemas import (
    AdminAlert,
    AlertPriority,
    FlaggedTransaction,
    FraudAssessment,
    Transaction,
)
from ..store import ReviewQueue

logger = logging.getLogger("payguard.scoring.review")


class ReviewFlagger:
    """Queues suspicious transactions for manual review."""

    def __init__(
        self,
        review_queue: ReviewQueue,
        medium_threshold: int = None,
        high_threshold: int = None,
        critical_threshold: int = None,
    ):
        self.review_queue = review_queue
        self.medium = medium_threshold if medium_threshold is not None else settings.fraud_score_medium
        self.high = high_threshold if high_threshold is not None else settings.fraud_score_high
        self.critical = (
            critical_threshold if critical_threshold is not None else settings.fraud_score_critical
        )

    def priority_for(self, score: int) -> AlertPriority:
        return AlertPriority.HIGH if score >= self.high else AlertPriority.MEDIUM

    async def flag_for_review(
        self,
        account_id: str,
        transaction: Transaction,
        assessment: FraudAssessment,
    ) -> Optional[FlaggedTransaction]:
        """
        Queue a transaction for review if its score warrants it.

        Returns:
            The FlaggedTransaction, or None when below the review threshold
        """
        if assessment.score < self.medium:
            return None

        flagged = FlaggedTransaction(
            account_id=account_id,
            transaction_id=transaction.transaction_id,
            product_id=transaction.product_id,
            fraud_score=assessment.score,
            reasons=assessment.reasons,
            priority=self.priority_for(assessment.score),
        )
        await self.review_queue.add_flagged(flagged)
        metrics.flagged_transactions.labels(priority=flagged.priority.value).inc()

        if assessment.score >= self.critical:
            await self.review_queue.add_alert(
                AdminAlert(
                    alert_type="high_fraud_score",
                    account_id=account_id,
                    details={
                        "transaction_id": transaction.transaction_id,
                        "product_id": transaction.product_id,
                        "fraud_score": assessment.score,
                        "reasons": assessment.reasons,
                        "flagged_id": flagged.id,
                    },
                    priority=AlertPriority.CRITICAL,
                )
            )
            logger.error(
                "Critical fraud score: account=%s transaction=%s score=%d",
                account_id, transaction.transaction_id, assessment.score,
            )
        else:
            logger.warning(
                "Transaction flagged for review: account=%s transaction=%s score=%d priority=%s",
                account_id, transaction.transaction_id, assessment.score, flagged.priority.value,
            )

        return flagged
