"""
Fraud Signals

Each signal looks at one aspect of an account's history and awards
points. Signals are independent: each does its own scoped lookup and
knows nothing about the others. The engine sums their points.

Point ranges:
- Refund history: 0-30
- Validation failures: 0-20
- Account age: 0-15
- Jailbreak risk: 0-25
- Promotional abuse: 0-20
- Rapid purchase/refund cycling: 0-30
- Prior fraud attempts: 0-75
- Velocity: 0-25
- Device sharing: 0-15
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from ..config import settings
from ..schemas import FraudContext, FraudEventType
from ..store import AccountStore, AuditLog, PurchaseStore


@dataclass
class SignalResult:
    """Points awarded by one signal, with the reasons behind them."""
    points: int = 0
    reasons: list[str] = field(default_factory=list)

    def add(self, points: int, reason: str) -> None:
        self.points += points
        self.reasons.append(reason)


class BaseSignal(ABC):
    """Base class for all fraud signals."""

    name: str = "signal"

    @abstractmethod
    async def evaluate(
        self,
        account_id: str,
        context: FraudContext,
        now: datetime,
    ) -> SignalResult:
        """
        Compute this signal's contribution.

        Args:
            account_id: Account being scored
            context: Per-transaction context
            now: Reference time for windowed lookups

        Returns:
            SignalResult (points >= 0)
        """
        pass


class RefundHistorySignal(BaseSignal):
    """Refunded purchases over the account's lifetime."""

    name = "refund_history"

    def __init__(
        self,
        purchases: PurchaseStore,
        warning_threshold: int = None,
        critical_threshold: int = None,
    ):
        self.purchases = purchases
        self.warning = warning_threshold if warning_threshold is not None else settings.max_refunds_warning
        self.critical = (
            critical_threshold if critical_threshold is not None else settings.max_refunds_critical
        )

    async def evaluate(self, account_id: str, context: FraudContext, now: datetime) -> SignalResult:
        result = SignalResult()
        records = await self.purchases.list_for_account(account_id)
        refunds = sum(1 for r in records if r.refunded)

        if refunds > self.critical:
            result.add(30, f"Critical refund count: {refunds}")
        elif refunds > self.warning:
            result.add(20, f"High refund count: {refunds}")
        elif refunds > 0:
            result.add(10, f"Previous refunds: {refunds}")

        return result


class ValidationFailureSignal(BaseSignal):
    """
    Recorded validation failures.

    A failure being scored right now is counted on top of the recorded ones.
    """

    name = "validation_failures"

    def __init__(
        self,
        audit_log: AuditLog,
        warning_threshold: int = None,
        critical_threshold: int = None,
    ):
        self.audit_log = audit_log
        self.warning = (
            warning_threshold if warning_threshold is not None else settings.max_validation_failures_warning
        )
        self.critical = (
            critical_threshold if critical_threshold is not None else settings.max_validation_failures_critical
        )

    async def evaluate(self, account_id: str, context: FraudContext, now: datetime) -> SignalResult:
        result = SignalResult()
        failures = await self.audit_log.count(account_id, FraudEventType.VALIDATION_FAILURE)
        if context.validation_failed:
            failures += 1

        if failures > self.critical:
            result.add(20, f"Critical validation failures: {failures}")
        elif failures > self.warning:
            result.add(10, f"Multiple validation failures: {failures}")

        return result


class AccountAgeSignal(BaseSignal):
    """
    Young accounts are riskier.

    Full penalty below ``high_risk_hours``; afterwards the penalty decays
    linearly from 10 to 0 at ``decay_days``.
    """

    name = "account_age"

    def __init__(
        self,
        accounts: AccountStore,
        high_risk_hours: int = None,
        decay_days: int = None,
    ):
        self.accounts = accounts
        self.high_risk = timedelta(
            hours=high_risk_hours if high_risk_hours is not None else settings.new_account_high_risk_hours
        )
        self.decay_end = timedelta(
            days=decay_days if decay_days is not None else settings.new_account_decay_days
        )

    async def evaluate(self, account_id: str, context: FraudContext, now: datetime) -> SignalResult:
        result = SignalResult()
        account = await self.accounts.get_account(account_id)
        if account is None:
            return result

        age = now - account.created_at
        if age < self.high_risk:
            result.add(15, "Brand new account (<1 day)")
        elif age < self.decay_end:
            fraction = (self.decay_end - age) / (self.decay_end - self.high_risk)
            points = round(10 * fraction)
            if points > 0:
                result.add(points, f"New account ({age.days} days old)")

        return result


class JailbreakSignal(BaseSignal):
    """Proportional to the heuristics' 0-1 tamper risk."""

    name = "jailbreak_risk"

    def __init__(self, max_points: int = 25, medium_risk: float = None, high_risk: float = None):
        self.max_points = max_points
        self.medium = medium_risk if medium_risk is not None else settings.jailbreak_risk_medium
        self.high = high_risk if high_risk is not None else settings.jailbreak_risk_high

    async def evaluate(self, account_id: str, context: FraudContext, now: datetime) -> SignalResult:
        result = SignalResult()
        risk = context.jailbreak_risk
        if not risk:
            return result

        points = round(self.max_points * risk)
        if points <= 0:
            return result

        if risk > self.high:
            level = "High"
        elif risk > self.medium:
            level = "Medium"
        else:
            level = "Low"
        result.add(points, f"{level} jailbreak risk: {risk:.2f}")
        return result


class PromotionalAbuseSignal(BaseSignal):
    """Promotional purchase on an account that already has several."""

    name = "promotional_abuse"

    def __init__(self, purchases: PurchaseStore, max_promo_codes: int = None):
        self.purchases = purchases
        self.max_promo_codes = (
            max_promo_codes if max_promo_codes is not None else settings.max_promo_codes_per_user
        )

    async def evaluate(self, account_id: str, context: FraudContext, now: datetime) -> SignalResult:
        result = SignalResult()
        if not context.is_promotional:
            return result

        records = await self.purchases.list_for_account(account_id)
        promo_count = sum(
            1 for r in records
            if r.is_promotional and r.transaction_id != context.transaction_id
        )

        if promo_count > self.max_promo_codes:
            result.add(20, f"Excessive promo code use: {promo_count}")
        elif promo_count > 2:
            result.add(10, f"Multiple promo codes: {promo_count}")

        return result


class RapidCycleSignal(BaseSignal):
    """
    Purchase-then-refund cycling within the recent window.

    Either pattern triggers:
    1. At least 3 recent purchases with a refund ratio above the limit
    2. At least 2 refunds within ``rapid_refund_hours`` of purchase
    """

    name = "rapid_cycle"

    def __init__(
        self,
        purchases: PurchaseStore,
        window_days: int = None,
        refund_rate: float = None,
        rapid_refund_hours: int = None,
    ):
        self.purchases = purchases
        self.window = timedelta(
            days=window_days if window_days is not None else settings.refund_cycle_window_days
        )
        self.refund_rate = refund_rate if refund_rate is not None else settings.refund_rate_suspicious
        self.rapid_refund = timedelta(
            hours=rapid_refund_hours if rapid_refund_hours is not None else settings.rapid_refund_hours
        )

    async def detect(self, account_id: str, now: datetime) -> bool:
        """Return True if the account shows a purchase/refund cycle."""
        recent = await self.purchases.list_for_account(account_id, since=now - self.window)
        refunded = [r for r in recent if r.refunded]

        if len(recent) >= 3 and len(refunded) / len(recent) > self.refund_rate:
            return True

        rapid = sum(
            1 for r in refunded
            if r.refunded_at is not None
            and r.refunded_at - r.purchase_timestamp < self.rapid_refund
        )
        return rapid >= 2

    async def evaluate(self, account_id: str, context: FraudContext, now: datetime) -> SignalResult:
        result = SignalResult()
        if await self.detect(account_id, now):
            result.add(30, "Rapid purchase/refund cycle detected")
        return result


class FraudAttemptSignal(BaseSignal):
    """25 points per prior fraud attempt, up to three."""

    name = "fraud_attempts"

    def __init__(self, audit_log: AuditLog, points_per_attempt: int = 25, max_attempts: int = 3):
        self.audit_log = audit_log
        self.points_per_attempt = points_per_attempt
        self.max_attempts = max_attempts

    async def evaluate(self, account_id: str, context: FraudContext, now: datetime) -> SignalResult:
        result = SignalResult()
        attempts = await self.audit_log.count(account_id, FraudEventType.FRAUD_ATTEMPT)
        if attempts > 0:
            result.add(
                self.points_per_attempt * min(attempts, self.max_attempts),
                f"Previous fraud attempts: {attempts}",
            )
        return result


class VelocitySignal(BaseSignal):
    """Purchases per hour and per day above normal use."""

    name = "velocity"

    def __init__(
        self,
        purchases: PurchaseStore,
        max_per_hour: int = None,
        max_per_day: int = None,
    ):
        self.purchases = purchases
        self.max_per_hour = max_per_hour if max_per_hour is not None else settings.max_purchases_per_hour
        self.max_per_day = max_per_day if max_per_day is not None else settings.max_purchases_per_day

    async def evaluate(self, account_id: str, context: FraudContext, now: datetime) -> SignalResult:
        result = SignalResult()
        daily = await self.purchases.list_for_account(account_id, since=now - timedelta(days=1))
        hour_ago = now - timedelta(hours=1)
        hourly = [r for r in daily if r.purchase_timestamp > hour_ago]

        if len(hourly) > self.max_per_hour:
            result.add(15, f"Too many purchases in 1 hour: {len(hourly)}")
        if len(daily) > self.max_per_day:
            result.add(10, f"Too many purchases in 24 hours: {len(daily)}")

        return result


class DeviceSharingSignal(BaseSignal):
    """Many accounts on one device fingerprint."""

    name = "device_sharing"

    def __init__(self, accounts: AccountStore, max_users_per_device: int = None):
        self.accounts = accounts
        self.max_users = (
            max_users_per_device if max_users_per_device is not None else settings.max_users_per_device
        )

    async def evaluate(self, account_id: str, context: FraudContext, now: datetime) -> SignalResult:
        result = SignalResult()
        if not context.device_fingerprint:
            return result

        users = await self.accounts.count_accounts_for_device(context.device_fingerprint)
        if users > self.max_users:
            result.add(15, f"Device shared by {users} accounts")
        elif users > 2:
            result.add(8, f"Device shared by {users} accounts")

        return result
