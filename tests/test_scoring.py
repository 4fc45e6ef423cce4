"""
Scoring Module Tests

Tests for the individual fraud signals, the scoring engine's bounds and
failure isolation, and review flagging. All tests run on in-memory stores.
"""

import random
from datetime import datetime, timedelta, UTC

import pytest

from payguard.schemas import (
    AccountProfile,
    AlertPriority,
    FraudAssessment,
    FraudContext,
    FraudEventType,
    FraudLogEntry,
    Transaction,
)
from payguard.scoring import BaseSignal, FraudScoringEngine, ReviewFlagger, SignalResult
from payguard.scoring.signals import (
    AccountAgeSignal,
    DeviceSharingSignal,
    FraudAttemptSignal,
    JailbreakSignal,
    PromotionalAbuseSignal,
    RapidCycleSignal,
    RefundHistorySignal,
    ValidationFailureSignal,
    VelocitySignal,
)

NOW = datetime.now(UTC)
CONTEXT = FraudContext()


class FixedSignal(BaseSignal):
    """Awards a fixed number of points."""

    def __init__(self, points: int, name: str = "fixed"):
        self.points = points
        self.name = name

    async def evaluate(self, account_id, context, now):
        result = SignalResult()
        if self.points:
            result.add(self.points, f"{self.name}: {self.points}")
        return result


class BrokenSignal(BaseSignal):
    """Simulates a failed store lookup."""

    name = "broken"

    async def evaluate(self, account_id, context, now):
        raise ConnectionError("store unavailable")


async def _log(audit_log, account_id: str, event_type: FraudEventType, n: int) -> None:
    for _ in range(n):
        await audit_log.append(FraudLogEntry(account_id=account_id, event_type=event_type))


class TestRefundHistorySignal:
    """Tests for the refund history signal."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("refunds,expected", [(0, 0), (1, 10), (2, 10), (3, 20), (4, 30)])
    async def test_refund_tiers(self, purchases, make_record, refunds, expected):
        for _ in range(refunds):
            await purchases.claim(make_record("account_a", refunded_at=NOW))
        await purchases.claim(make_record("account_a"))

        result = await RefundHistorySignal(purchases).evaluate("account_a", CONTEXT, NOW)

        assert result.points == expected


class TestValidationFailureSignal:
    """Tests for the validation failure signal."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("failures,expected", [(3, 0), (4, 10), (5, 10), (6, 20)])
    async def test_failure_tiers(self, audit_log, failures, expected):
        await _log(audit_log, "account_a", FraudEventType.VALIDATION_FAILURE, failures)

        result = await ValidationFailureSignal(audit_log).evaluate("account_a", CONTEXT, NOW)

        assert result.points == expected

    @pytest.mark.asyncio
    async def test_current_failure_counts(self, audit_log):
        """The failure being scored is added to the recorded ones."""
        await _log(audit_log, "account_a", FraudEventType.VALIDATION_FAILURE, 5)

        result = await ValidationFailureSignal(audit_log).evaluate(
            "account_a", FraudContext(validation_failed=True), NOW
        )

        assert result.points == 20

    @pytest.mark.asyncio
    async def test_fraud_attempts_are_not_failures(self, audit_log):
        await _log(audit_log, "account_a", FraudEventType.FRAUD_ATTEMPT, 10)

        result = await ValidationFailureSignal(audit_log).evaluate("account_a", CONTEXT, NOW)

        assert result.points == 0


class TestAccountAgeSignal:
    """Tests for the account age signal."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "age,expected",
        [
            (timedelta(hours=2), 15),
            (timedelta(days=1), 10),
            (timedelta(days=4), 5),
            (timedelta(days=7), 0),
            (timedelta(days=90), 0),
        ],
    )
    async def test_age_decay(self, accounts, age, expected):
        accounts.register(AccountProfile(account_id="account_a", created_at=NOW - age))

        result = await AccountAgeSignal(accounts).evaluate("account_a", CONTEXT, NOW)

        assert result.points == expected

    @pytest.mark.asyncio
    async def test_unknown_account(self, accounts):
        result = await AccountAgeSignal(accounts).evaluate("ghost", CONTEXT, NOW)

        assert result.points == 0


class TestJailbreakSignal:
    """Tests for the jailbreak risk signal."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("risk,expected", [(None, 0), (0.0, 0), (0.2, 5), (0.4, 10), (1.0, 25)])
    async def test_proportional_points(self, risk, expected):
        result = await JailbreakSignal().evaluate("account_a", FraudContext(jailbreak_risk=risk), NOW)

        assert result.points == expected

    @pytest.mark.asyncio
    async def test_high_risk_reason(self):
        result = await JailbreakSignal().evaluate("account_a", FraudContext(jailbreak_risk=0.8), NOW)

        assert result.reasons[0].startswith("High jailbreak risk")


class TestPromotionalAbuseSignal:
    """Tests for the promotional abuse signal."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("prior,expected", [(2, 0), (3, 10), (4, 20)])
    async def test_promo_tiers(self, purchases, make_record, prior, expected):
        for i in range(prior):
            await purchases.claim(make_record("account_a", promotional_offer_id=f"CODE_{i}"))

        result = await PromotionalAbuseSignal(purchases).evaluate(
            "account_a", FraudContext(is_promotional=True, transaction_id="txn_now"), NOW
        )

        assert result.points == expected

    @pytest.mark.asyncio
    async def test_zero_ceiling_is_honored(self, purchases, make_record):
        await purchases.claim(make_record("account_a", promotional_offer_id="CODE_0"))

        result = await PromotionalAbuseSignal(purchases, max_promo_codes=0).evaluate(
            "account_a", FraudContext(is_promotional=True, transaction_id="txn_now"), NOW
        )

        assert result.points == 20

    @pytest.mark.asyncio
    async def test_only_applies_to_promotional_purchases(self, purchases, make_record):
        for i in range(5):
            await purchases.claim(make_record("account_a", promotional_offer_id=f"CODE_{i}"))

        result = await PromotionalAbuseSignal(purchases).evaluate("account_a", CONTEXT, NOW)

        assert result.points == 0


class TestRapidCycleSignal:
    """Tests for purchase/refund cycling."""

    @pytest.mark.asyncio
    async def test_high_refund_ratio(self, purchases, make_record):
        """Three recent purchases, two refunded days later."""
        bought = NOW - timedelta(days=10)
        await purchases.claim(make_record("account_a", purchased_at=bought, refunded_at=bought + timedelta(days=3)))
        await purchases.claim(make_record("account_a", purchased_at=bought, refunded_at=bought + timedelta(days=3)))
        await purchases.claim(make_record("account_a", purchased_at=bought))

        result = await RapidCycleSignal(purchases).evaluate("account_a", CONTEXT, NOW)

        assert result.points == 30

    @pytest.mark.asyncio
    async def test_two_rapid_refunds(self, purchases, make_record):
        bought = NOW - timedelta(days=2)
        for _ in range(2):
            await purchases.claim(
                make_record("account_a", purchased_at=bought, refunded_at=bought + timedelta(hours=3))
            )

        assert await RapidCycleSignal(purchases).detect("account_a", NOW) is True

    @pytest.mark.asyncio
    async def test_single_slow_refund(self, purchases, make_record):
        bought = NOW - timedelta(days=10)
        await purchases.claim(make_record("account_a", purchased_at=bought, refunded_at=bought + timedelta(days=2)))
        await purchases.claim(make_record("account_a", purchased_at=bought))

        result = await RapidCycleSignal(purchases).evaluate("account_a", CONTEXT, NOW)

        assert result.points == 0


class TestFraudAttemptSignal:
    """Tests for prior fraud attempts."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("attempts,expected", [(0, 0), (1, 25), (2, 50), (3, 75), (7, 75)])
    async def test_points_per_attempt(self, audit_log, attempts, expected):
        await _log(audit_log, "account_a", FraudEventType.FRAUD_ATTEMPT, attempts)

        result = await FraudAttemptSignal(audit_log).evaluate("account_a", CONTEXT, NOW)

        assert result.points == expected


class TestVelocitySignal:
    """Tests for purchase velocity."""

    @pytest.mark.asyncio
    async def test_hourly_burst(self, purchases, make_record):
        for minutes in (5, 10, 15, 20):
            await purchases.claim(make_record("account_a", purchased_at=NOW - timedelta(minutes=minutes)))

        result = await VelocitySignal(purchases).evaluate("account_a", CONTEXT, NOW)

        assert result.points == 15

    @pytest.mark.asyncio
    async def test_daily_volume(self, purchases, make_record):
        """Eleven purchases spread over a day, at most one per hour."""
        for i in range(11):
            await purchases.claim(
                make_record("account_a", purchased_at=NOW - timedelta(hours=2 * i, minutes=30))
            )

        result = await VelocitySignal(purchases).evaluate("account_a", CONTEXT, NOW)

        assert result.points == 10


class TestDeviceSharingSignal:
    """Tests for device sharing."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("sharing,expected", [(2, 0), (3, 8), (4, 15)])
    async def test_sharing_tiers(self, accounts, sharing, expected):
        for i in range(sharing):
            accounts.register(
                AccountProfile(account_id=f"account_{i}", created_at=NOW - timedelta(days=90), device_fingerprint="fp")
            )

        result = await DeviceSharingSignal(accounts).evaluate(
            "account_0", FraudContext(device_fingerprint="fp"), NOW
        )

        assert result.points == expected

    @pytest.mark.asyncio
    async def test_no_fingerprint(self, accounts):
        result = await DeviceSharingSignal(accounts).evaluate("account_0", CONTEXT, NOW)

        assert result.points == 0


class TestFraudScoringEngine:
    """Tests for score combination."""

    @pytest.mark.asyncio
    async def test_clean_account_scores_zero(self, purchases, accounts, audit_log):
        engine = FraudScoringEngine.from_stores(purchases, accounts, audit_log)

        assessment = await engine.calculate_fraud_score("account_a")

        assert assessment.score == 0
        assert assessment.signals == []
        assert not assessment.flagged_for_review

    @pytest.mark.asyncio
    async def test_points_are_summed(self):
        engine = FraudScoringEngine([FixedSignal(20, "a"), FixedSignal(15, "b"), FixedSignal(0, "c")])

        assessment = await engine.calculate_fraud_score("account_a")

        assert assessment.score == 35
        assert [s.name for s in assessment.signals] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_sum_is_clamped_to_100(self):
        engine = FraudScoringEngine([FixedSignal(75, "a"), FixedSignal(30, "b"), FixedSignal(25, "c")])

        assessment = await engine.calculate_fraud_score("account_a")

        assert assessment.score == 100
        assert assessment.critical

    @pytest.mark.asyncio
    async def test_zero_thresholds_are_honored(self):
        engine = FraudScoringEngine([FixedSignal(0)], medium_threshold=0, critical_threshold=0)

        assessment = await engine.calculate_fraud_score("account_a")

        assert assessment.score == 0
        assert assessment.flagged_for_review
        assert assessment.critical

    @pytest.mark.asyncio
    async def test_score_always_within_bounds(self):
        """Random signal mixes never leave [0, 100]."""
        rng = random.Random(1337)
        for _ in range(200):
            signals = [FixedSignal(rng.randint(0, 75), f"s{i}") for i in range(rng.randint(0, 9))]
            assessment = await FraudScoringEngine(signals).calculate_fraud_score("account_a")
            assert 0 <= assessment.score <= 100
            assert assessment.score == min(100, sum(s.points for s in signals))

    @pytest.mark.asyncio
    async def test_maxed_out_account_scores_100(self, purchases, accounts, audit_log, make_record):
        """Every real signal firing at once still yields exactly 100."""
        accounts.register(AccountProfile(account_id="account_a", created_at=NOW - timedelta(hours=1), device_fingerprint="fp"))
        for i in range(4):
            accounts.register(AccountProfile(account_id=f"other_{i}", created_at=NOW, device_fingerprint="fp"))
        for i in range(12):
            await purchases.claim(
                make_record(
                    "account_a",
                    purchased_at=NOW - timedelta(minutes=5 * i),
                    refunded_at=NOW,
                    promotional_offer_id=f"CODE_{i}",
                )
            )
        await _log(audit_log, "account_a", FraudEventType.VALIDATION_FAILURE, 10)
        await _log(audit_log, "account_a", FraudEventType.FRAUD_ATTEMPT, 5)

        engine = FraudScoringEngine.from_stores(purchases, accounts, audit_log, clock=lambda: NOW)
        assessment = await engine.calculate_fraud_score(
            "account_a",
            FraudContext(jailbreak_risk=1.0, is_promotional=True, device_fingerprint="fp"),
        )

        assert assessment.score == 100
        assert len(assessment.signals) == 9

    @pytest.mark.asyncio
    async def test_failing_signal_contributes_nothing(self):
        engine = FraudScoringEngine([FixedSignal(30, "a"), BrokenSignal(), FixedSignal(25, "b")])

        assessment = await engine.calculate_fraud_score("account_a")

        assert assessment.score == 55
        assert "broken" not in [s.name for s in assessment.signals]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "points,flagged,critical",
        [(49, False, False), (50, True, False), (79, True, False), (80, True, True)],
    )
    async def test_thresholds(self, points, flagged, critical):
        assessment = await FraudScoringEngine([FixedSignal(points)]).calculate_fraud_score("account_a")

        assert assessment.flagged_for_review is flagged
        assert assessment.critical is critical


class TestReviewFlagger:
    """Tests for review queue flagging."""

    @pytest.fixture
    def transaction(self) -> Transaction:
        return Transaction(
            transaction_id="txn_1",
            product_id="com.example.premium.monthly",
            purchase_timestamp=NOW,
        )

    @pytest.mark.asyncio
    async def test_below_medium_is_not_flagged(self, review_queue, transaction):
        flagged = await ReviewFlagger(review_queue).flag_for_review(
            "account_a", transaction, FraudAssessment(score=49)
        )

        assert flagged is None
        assert await review_queue.list_flagged() == []

    @pytest.mark.asyncio
    async def test_zero_thresholds_are_honored(self, review_queue, transaction):
        flagger = ReviewFlagger(review_queue, medium_threshold=0, high_threshold=0, critical_threshold=100)

        flagged = await flagger.flag_for_review("account_a", transaction, FraudAssessment(score=0))

        assert flagged.priority == AlertPriority.HIGH
        assert await review_queue.list_alerts() == []

    @pytest.mark.asyncio
    async def test_medium_priority(self, review_queue, transaction):
        flagged = await ReviewFlagger(review_queue).flag_for_review(
            "account_a", transaction, FraudAssessment(score=55)
        )

        assert flagged.priority == AlertPriority.MEDIUM
        assert (await review_queue.list_flagged())[0].transaction_id == "txn_1"
        assert await review_queue.list_alerts() == []

    @pytest.mark.asyncio
    async def test_high_priority(self, review_queue, transaction):
        flagged = await ReviewFlagger(review_queue).flag_for_review(
            "account_a", transaction, FraudAssessment(score=72)
        )

        assert flagged.priority == AlertPriority.HIGH
        assert await review_queue.list_alerts() == []

    @pytest.mark.asyncio
    async def test_critical_raises_alert(self, review_queue, transaction):
        flagged = await ReviewFlagger(review_queue).flag_for_review(
            "account_a", transaction, FraudAssessment(score=85)
        )

        alerts = await review_queue.list_alerts()
        assert len(alerts) == 1
        assert alerts[0].alert_type == "high_fraud_score"
        assert alerts[0].priority == AlertPriority.CRITICAL
        assert alerts[0].details["flagged_id"] == flagged.id
