"""
Fraud Schemas

Scoring inputs and outputs plus the audit and review records that
human moderators work from. Scores are integers on a 0-100 scale.
"""

from datetime import datetime, UTC
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field


def _utc_now() -> datetime:
    """Return current UTC time (timezone-aware)."""
    return datetime.now(UTC)


def _new_id() -> str:
    return uuid4().hex


class FraudEventType(str, Enum):
    """
    Audit trail event types.

    Kept distinct so validation-failure metrics never absorb fraud signals.
    """
    VALIDATION_FAILURE = "validation_failure"
    FRAUD_ATTEMPT = "fraud_attempt"
    SECURITY_EVENT = "security_event"


class AlertPriority(str, Enum):
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ReviewStatus(str, Enum):
    PENDING = "pending"
    RESOLVED = "resolved"


class FraudContext(BaseModel):
    """Per-transaction context bag handed to the scoring engine."""
    jailbreak_risk: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    is_promotional: bool = False
    transaction_id: Optional[str] = None
    product_id: Optional[str] = None
    device_fingerprint: Optional[str] = None
    validation_failed: bool = False


class FraudSignal(BaseModel):
    """Named contribution of one signal to the final score."""
    name: str
    points: int = Field(..., ge=0)
    reason: str


class FraudAssessment(BaseModel):
    """
    Ephemeral scoring result.

    Only ``score`` and ``flagged_for_review`` are ever stored, on the
    purchase record.
    """
    score: int = Field(..., ge=0, le=100)
    signals: list[FraudSignal] = Field(default_factory=list)
    flagged_for_review: bool = False
    critical: bool = False

    @property
    def reasons(self) -> list[str]:
        return [s.reason for s in self.signals]


class FraudLogEntry(BaseModel):
    """Append-only audit trail entry."""
    id: str = Field(default_factory=_new_id)
    account_id: Optional[str] = None
    event_type: FraudEventType
    fraud_type: Optional[str] = None
    status_code: Optional[int] = None
    reason: Optional[str] = None
    details: dict[str, Any] = Field(default_factory=dict)
    severity: str = "medium"
    timestamp: datetime = Field(default_factory=_utc_now)


class FlaggedTransaction(BaseModel):
    """Transaction queued for human review. Never auto-resolved."""
    id: str = Field(default_factory=_new_id)
    account_id: str
    transaction_id: str
    product_id: Optional[str] = None
    fraud_score: int = Field(..., ge=0, le=100)
    reasons: list[str] = Field(default_factory=list)
    priority: AlertPriority = AlertPriority.MEDIUM
    status: ReviewStatus = ReviewStatus.PENDING
    resolution: Optional[str] = None
    resolved_by: Optional[str] = None
    created_at: datetime = Field(default_factory=_utc_now)
    resolved_at: Optional[datetime] = None


class AdminAlert(BaseModel):
    """Alert surfaced to moderators for critical scores and fraud attempts."""
    id: str = Field(default_factory=_new_id)
    alert_type: str
    account_id: Optional[str] = None
    details: dict[str, Any] = Field(default_factory=dict)
    priority: AlertPriority = AlertPriority.CRITICAL
    acknowledged: bool = False
    acknowledged_by: Optional[str] = None
    created_at: datetime = Field(default_factory=_utc_now)


class ReviewResolution(BaseModel):
    """Body of the flagged-transaction resolve endpoints."""
    resolution: str = Field(..., min_length=1, max_length=500)


class BulkReviewResolution(ReviewResolution):
    flagged_ids: list[str] = Field(..., min_length=1, max_length=500)
