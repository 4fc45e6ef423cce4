"""
Fraud Scoring Engine

Runs every fraud signal concurrently and combines their points into a
single integer score.

Scoring rules:
- Points from all signals are summed
- The sum is clamped to [0, 100] as the final step (no per-signal cap)
- A signal whose lookup fails contributes 0 and is logged
- score >= medium threshold -> flagged for review
- score >= critical threshold -> critical (admin alert)
"""

import asyncio
import logging
from datetime import datetime, UTC
from typing import Callable, Optional

from ..config import settings
from ..metrics import metrics
from ..schemas import FraudAssessment, FraudContext, FraudSignal
from ..store import AccountStore, AuditLog, PurchaseStore
from .signals import (
    AccountAgeSignal,
    BaseSignal,
    DeviceSharingSignal,
    FraudAttemptSignal,
    JailbreakSignal,
    PromotionalAbuseSignal,
    RapidCycleSignal,
    RefundHistorySignal,
    ValidationFailureSignal,
    VelocitySignal,
)

logger = logging.getLogger("payguard.scoring")

MIN_SCORE = 0
MAX_SCORE = 100


def default_signals(
    purchases: PurchaseStore,
    accounts: AccountStore,
    audit_log: AuditLog,
) -> list[BaseSignal]:
    """The standard signal set with thresholds from settings."""
    return [
        RefundHistorySignal(purchases),
        ValidationFailureSignal(audit_log),
        AccountAgeSignal(accounts),
        JailbreakSignal(),
        PromotionalAbuseSignal(purchases),
        RapidCycleSignal(purchases),
        FraudAttemptSignal(audit_log),
        VelocitySignal(purchases),
        DeviceSharingSignal(accounts),
    ]


class FraudScoringEngine:
    """
    Combines independent fraud signals into a bounded score.

    Signals run in parallel; one failing lookup never blocks a
    validation, it just contributes nothing.
    """

    def __init__(
        self,
        signals: list[BaseSignal],
        medium_threshold: int = None,
        critical_threshold: int = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize scoring engine.

        Args:
            signals: Signal instances to run
            medium_threshold: Review threshold
            critical_threshold: Admin alert threshold
            clock: Returns the reference time (defaults to UTC now)
        """
        self.signals = signals
        self.medium_threshold = (
            medium_threshold if medium_threshold is not None else settings.fraud_score_medium
        )
        self.critical_threshold = (
            critical_threshold if critical_threshold is not None else settings.fraud_score_critical
        )
        self.clock = clock or (lambda: datetime.now(UTC))

    @classmethod
    def from_stores(
        cls,
        purchases: PurchaseStore,
        accounts: AccountStore,
        audit_log: AuditLog,
        **kwargs,
    ) -> "FraudScoringEngine":
        """Build an engine with the default signal set."""
        return cls(default_signals(purchases, accounts, audit_log), **kwargs)

    async def calculate_fraud_score(
        self,
        account_id: str,
        context: Optional[FraudContext] = None,
    ) -> FraudAssessment:
        """
        Score an account/transaction.

        Args:
            account_id: Account being scored
            context: Per-transaction context bag

        Returns:
            FraudAssessment with score in [0, 100]
        """
        context = context or FraudContext()
        now = self.clock()

        results = await asyncio.gather(
            *(signal.evaluate(account_id, context, now) for signal in self.signals),
            return_exceptions=True,
        )

        total = 0
        contributions: list[FraudSignal] = []

        for signal, result in zip(self.signals, results):
            if isinstance(result, Exception):
                # Signal failed - log and continue with a neutral contribution
                logger.warning(
                    "Fraud signal %s failed for account %s: %s",
                    signal.name, account_id, result,
                )
                metrics.errors_total.labels(error_type=f"signal_{signal.name}").inc()
                continue

            if result.points <= 0:
                continue

            total += result.points
            contributions.append(
                FraudSignal(
                    name=signal.name,
                    points=result.points,
                    reason="; ".join(result.reasons),
                )
            )
            metrics.signal_triggers.labels(signal=signal.name).inc()

        score = max(MIN_SCORE, min(MAX_SCORE, total))
        metrics.fraud_score_distribution.observe(score)

        assessment = FraudAssessment(
            score=score,
            signals=contributions,
            flagged_for_review=score >= self.medium_threshold,
            critical=score >= self.critical_threshold,
        )

        logger.info(
            "Fraud score calculated: account=%s score=%d transaction=%s product=%s reasons=%s",
            account_id, score, context.transaction_id, context.product_id, assessment.reasons,
        )
        return assessment
