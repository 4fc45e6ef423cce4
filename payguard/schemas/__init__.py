# Data schemas for the payment integrity service
from .transactions import (
    Transaction,
    PurchaseRecord,
    AccountProfile,
    DeviceInfo,
    ReceiptEnvironment,
    ReceiptValidationRequest,
    ReceiptValidationResult,
)
from .fraud import (
    FraudContext,
    FraudSignal,
    FraudAssessment,
    FraudEventType,
    FraudLogEntry,
    FlaggedTransaction,
    AdminAlert,
    AlertPriority,
    ReviewStatus,
    ReviewResolution,
    BulkReviewResolution,
)
from .ratelimit import RateLimitTier, RateLimitResult, TierPolicy
from .webhooks import (
    NotificationType,
    WebhookRequest,
    WebhookNotification,
    NotificationTransaction,
)
from .admin import AdminIdentity, AdminLoginRequest, AdminSession

__all__ = [
    # Transactions
    "Transaction",
    "PurchaseRecord",
    "AccountProfile",
    "DeviceInfo",
    "ReceiptEnvironment",
    "ReceiptValidationRequest",
    "ReceiptValidationResult",
    # Fraud
    "FraudContext",
    "FraudSignal",
    "FraudAssessment",
    "FraudEventType",
    "FraudLogEntry",
    "FlaggedTransaction",
    "AdminAlert",
    "AlertPriority",
    "ReviewStatus",
    "ReviewResolution",
    "BulkReviewResolution",
    # Rate limiting
    "RateLimitTier",
    "RateLimitResult",
    "TierPolicy",
    # Webhooks
    "NotificationType",
    "WebhookRequest",
    "WebhookNotification",
    "NotificationTransaction",
    # Admin
    "AdminIdentity",
    "AdminLoginRequest",
    "AdminSession",
]
