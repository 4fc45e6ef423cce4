"""
Error Taxonomy

Every failure the integrity subsystem can surface. Business-rule
rejections (``ReceiptRejected`` subclasses) are normal outcomes that the
receipt validator converts into an ``is_valid=False`` result; transport
and protocol failures propagate to the caller.
"""

from typing import Optional


class PaymentIntegrityError(Exception):
    """Base class for all payment integrity errors."""


class ConfigurationError(PaymentIntegrityError):
    """Required configuration (shared secret, key-set URL) is missing."""


# =============================================================================
# Receipt validation
# =============================================================================

class ReceiptValidationError(PaymentIntegrityError):
    """Base class for receipt validation failures."""


class ReceiptRejected(ReceiptValidationError):
    """
    Receipt was rejected by a business rule or by the authority.

    Carries the fraud score reported back to the client.
    """

    fraud_score: int = 0
    abuse: bool = False

    def __init__(
        self,
        message: str,
        fraud_score: Optional[int] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        if fraud_score is not None:
            self.fraud_score = fraud_score


class ValidationRejected(ReceiptRejected):
    """Authority returned a non-zero, non-retryable status."""

    def __init__(self, status_code: int, message: str, fraud_score: int = 0):
        super().__init__(message, fraud_score=fraud_score, status_code=status_code)


class DuplicateReceipt(ReceiptRejected):
    """Transaction already belongs to a different account."""

    fraud_score = 100
    abuse = True
    fraud_type = "duplicate_receipt"

    def __init__(self, transaction_id: str, owner_account_id: Optional[str] = None):
        super().__init__("Receipt already used")
        self.transaction_id = transaction_id
        self.owner_account_id = owner_account_id


class PromoAbuseDetected(ReceiptRejected):
    """Promotional offer reused beyond policy limits."""

    fraud_score = 90
    abuse = True
    fraud_type = "promo_code_abuse"

    def __init__(self, promotional_offer_id: str):
        super().__init__("Promotional code abuse detected")
        self.promotional_offer_id = promotional_offer_id


class MalformedResponse(ReceiptValidationError):
    """Authority reported success but returned no usable transaction entry."""


class NetworkFailure(ReceiptValidationError):
    """Transport-level failure talking to the verification authority."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


# =============================================================================
# Webhooks
# =============================================================================

class SignatureInvalid(PaymentIntegrityError):
    """
    Signed notification failed verification.

    Raised inside the verifier only; callers receive ``None``.
    """


# =============================================================================
# Rate limiting
# =============================================================================

class RateLimitExceeded(PaymentIntegrityError):
    """Caller exhausted a rate-limit tier."""

    def __init__(self, message: str, retry_after: int, tier: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.retry_after = retry_after
        self.tier = tier
