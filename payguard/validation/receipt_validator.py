"""
Receipt Validator

Validates a client-submitted receipt end to end:

1. Verify with the App Store (production, then at most one sandbox retry)
2. Non-zero status -> rejected result with the mapped error message
3. Normalize the most recent transaction entry
4. Duplicate check (another account owns it -> score 100)
5. Promotional abuse check when an offer id is present (-> score 90)
6. Jailbreak heuristics
7. Fraud scoring; medium-or-above queues a review in the background
8. Conditional ownership claim

Business-rule rejections come back as ``is_valid=False`` results.
Malformed responses and network failures are recorded and raised.
"""

import asyncio
import logging
from typing import Coroutine, Optional

from ..config import settings
from ..detection import (
    DuplicateDetector,
    detect_jailbreak_indicators,
    generate_device_fingerprint,
)
from ..errors import (
    DuplicateReceipt,
    MalformedResponse,
    NetworkFailure,
    PromoAbuseDetected,
    ReceiptRejected,
    ValidationRejected,
)
from ..metrics import metrics
from ..schemas import (
    DeviceInfo,
    FraudAssessment,
    FraudContext,
    PurchaseRecord,
    ReceiptValidationResult,
    Transaction,
)
from ..scoring import FraudScoringEngine, ReviewFlagger
from .app_store import STATUS_OK, AppStoreClient, get_error_message

logger = logging.getLogger("payguard.validation")


class ReceiptValidator:
    """
    Receipt validation pipeline.

    Anonymous validations (no account id) skip every account-scoped
    check and score 0.
    """

    def __init__(
        self,
        client: AppStoreClient,
        detector: DuplicateDetector,
        scoring_engine: FraudScoringEngine,
        flagger: ReviewFlagger,
        jailbreak_alert_threshold: float = None,
    ):
        """
        Initialize validator.

        Args:
            client: App Store verification client
            detector: Duplicate/promo detector and audit sink
            scoring_engine: Fraud scoring engine
            flagger: Review queue writer
            jailbreak_alert_threshold: Risk above which a security event is logged
        """
        self.client = client
        self.detector = detector
        self.scoring_engine = scoring_engine
        self.flagger = flagger
        self.jailbreak_alert_threshold = (
            jailbreak_alert_threshold
            if jailbreak_alert_threshold is not None
            else settings.jailbreak_risk_high
        )
        self._background: set[asyncio.Task] = set()

    async def validate(
        self,
        receipt_data: str,
        account_id: Optional[str] = None,
        device_info: Optional[DeviceInfo] = None,
    ) -> ReceiptValidationResult:
        """
        Validate a receipt.

        Args:
            receipt_data: Base64 receipt blob
            account_id: Requesting account (enables fraud tracking)
            device_info: Optional client device payload

        Returns:
            ReceiptValidationResult

        Raises:
            ConfigurationError: Shared secret not configured
            MalformedResponse: Success status without a transaction entry
            NetworkFailure: Transport-level failure talking to the authority
        """
        try:
            result = await self._validate(receipt_data, account_id, device_info)
        except ReceiptRejected as e:
            if e.abuse:
                await self.detector.track_fraud_attempt(
                    account_id,
                    e.fraud_type,
                    self._abuse_details(e),
                )
                metrics.validations_total.labels(outcome=e.fraud_type).inc()
                logger.error("FRAUD ALERT: %s account=%s", e.message, account_id)
            else:
                metrics.validations_total.labels(outcome="rejected").inc()
            return ReceiptValidationResult.rejected(
                error=e.message,
                fraud_score=e.fraud_score,
                status_code=e.status_code,
            )

        metrics.validations_total.labels(outcome="valid").inc()
        return result

    async def _validate(
        self,
        receipt_data: str,
        account_id: Optional[str],
        device_info: Optional[DeviceInfo],
    ) -> ReceiptValidationResult:
        try:
            response = await self.client.verify_receipt(receipt_data)
        except NetworkFailure as e:
            await self.detector.track_validation_failure(
                account_id, None, "network_failure", {"error": str(e)}
            )
            metrics.validations_total.labels(outcome="network_failure").inc()
            raise

        # =====================================================================
        # Authority rejection
        # =====================================================================
        if response.status != STATUS_OK:
            message = get_error_message(response.status)
            logger.warning("Receipt validation failed: status=%s account=%s", response.status, account_id)

            fraud_score = 0
            if account_id:
                assessment = await self.scoring_engine.calculate_fraud_score(
                    account_id, FraudContext(validation_failed=True)
                )
                fraud_score = assessment.score

            await self.detector.track_validation_failure(
                account_id,
                response.status,
                "receipt_validation_failed",
                {"message": message, "environment": response.environment.value},
            )
            raise ValidationRejected(response.status, message, fraud_score=fraud_score)

        # =====================================================================
        # Normalize the most recent transaction
        # =====================================================================
        transaction = await self._latest_transaction(response, account_id)

        # =====================================================================
        # Duplicate and promotional abuse checks
        # =====================================================================
        if account_id and await self.detector.check_receipt_duplicate(
            transaction.transaction_id, account_id
        ):
            raise DuplicateReceipt(transaction.transaction_id)

        is_promotional = transaction.promotional_offer_id is not None
        if account_id and is_promotional and await self.detector.check_promotional_code_abuse(
            account_id,
            transaction.promotional_offer_id,
            transaction_id=transaction.transaction_id,
        ):
            raise PromoAbuseDetected(transaction.promotional_offer_id)

        # =====================================================================
        # Jailbreak heuristics
        # =====================================================================
        jailbreak = detect_jailbreak_indicators(
            response.receipt, device_info, response.environment
        )
        if account_id and jailbreak.risk > self.jailbreak_alert_threshold:
            logger.warning(
                "SECURITY WARNING: jailbreak indicators detected account=%s risk=%.2f",
                account_id, jailbreak.risk,
            )
            await self.detector.track_security_event(
                account_id,
                "jailbreak_detected",
                {"risk_score": jailbreak.risk, "indicators": jailbreak.indicators},
            )

        # =====================================================================
        # Fraud scoring and review
        # =====================================================================
        assessment = FraudAssessment(score=0)
        if account_id:
            assessment = await self.scoring_engine.calculate_fraud_score(
                account_id,
                FraudContext(
                    jailbreak_risk=jailbreak.risk,
                    is_promotional=is_promotional,
                    transaction_id=transaction.transaction_id,
                    product_id=transaction.product_id,
                    device_fingerprint=generate_device_fingerprint(device_info),
                ),
            )
            if assessment.flagged_for_review:
                self._fire_and_forget(
                    self._flag_for_review(account_id, transaction, assessment),
                    "flag_for_review",
                )

        # =====================================================================
        # Ownership claim
        # =====================================================================
        if account_id:
            record = PurchaseRecord(
                transaction=transaction,
                account_id=account_id,
                is_promotional=is_promotional,
                fraud_score=assessment.score,
            )
            if not await self.detector.claim(record):
                # Lost a concurrent claim to another account
                raise DuplicateReceipt(transaction.transaction_id)

        logger.info(
            "Receipt validated: account=%s transaction=%s product=%s environment=%s score=%d",
            account_id, transaction.transaction_id, transaction.product_id,
            response.environment.value, assessment.score,
        )

        return ReceiptValidationResult(
            is_valid=True,
            fraud_score=assessment.score,
            transaction=transaction,
            is_subscription=transaction.is_subscription,
            is_trial_period=transaction.is_trial_period,
            is_intro_offer_period=transaction.is_intro_offer_period,
            auto_renew_status=transaction.auto_renew_status,
            is_promotional=is_promotional,
            jailbreak_risk=jailbreak.risk,
            flagged_for_review=assessment.flagged_for_review,
            environment=response.environment,
        )

    async def _latest_transaction(self, response, account_id: Optional[str]) -> Transaction:
        entries = response.latest_receipt_info
        try:
            if not entries:
                raise MalformedResponse("No transaction information in receipt")
            return Transaction.from_receipt_entry(entries[0], response.pending_renewal_info)
        except (KeyError, TypeError, ValueError) as e:
            error = MalformedResponse(f"Unreadable transaction entry: {e}")
        except MalformedResponse as e:
            error = e

        await self.detector.track_validation_failure(
            account_id, STATUS_OK, "malformed_response", {"error": str(error)}
        )
        metrics.validations_total.labels(outcome="malformed").inc()
        raise error

    async def _flag_for_review(
        self,
        account_id: str,
        transaction: Transaction,
        assessment: FraudAssessment,
    ) -> None:
        flagged = await self.flagger.flag_for_review(account_id, transaction, assessment)
        if flagged is not None:
            await self.detector.track_security_event(
                account_id,
                "high_fraud_score",
                {
                    "transaction_id": transaction.transaction_id,
                    "fraud_score": assessment.score,
                    "flagged_id": flagged.id,
                },
                severity=flagged.priority.value,
            )

    @staticmethod
    def _abuse_details(error: ReceiptRejected) -> dict:
        if isinstance(error, DuplicateReceipt):
            return {"transaction_id": error.transaction_id}
        if isinstance(error, PromoAbuseDetected):
            return {"promotional_offer_id": error.promotional_offer_id}
        return {}

    def _fire_and_forget(self, coro: Coroutine, name: str) -> None:
        """Run a coroutine in the background and log failures."""
        task = asyncio.create_task(coro)
        self._background.add(task)

        def _log_exception(task_ref: asyncio.Task) -> None:
            self._background.discard(task_ref)
            try:
                task_ref.result()
            except Exception as exc:  # pragma: no cover - best effort logging
                logger.warning("Background task %s failed: %s", name, exc)

        task.add_done_callback(_log_exception)

    async def wait_for_background(self) -> None:
        """Wait for pending review-flagging tasks (shutdown, tests)."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
