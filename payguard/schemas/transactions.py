"""
Transaction and Receipt Schemas

Defines the normalized purchase transaction produced by receipt
validation, the persisted purchase record, and the request/response
shapes of the receipt validation endpoint.

Dates coming from the App Store are millisecond epoch strings; they are
normalized to timezone-aware UTC datetimes here.
"""

from datetime import datetime, UTC
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


def _utc_now() -> datetime:
    """Return current UTC time (timezone-aware)."""
    return datetime.now(UTC)


def parse_ms_timestamp(value: Any) -> Optional[datetime]:
    """Convert an App Store millisecond timestamp (str or int) to UTC datetime."""
    if value is None or value == "":
        return None
    return datetime.fromtimestamp(int(value) / 1000, tz=UTC)


def parse_flag(value: Any) -> bool:
    """App Store booleans arrive as the strings "true"/"false"."""
    if isinstance(value, bool):
        return value
    return str(value).lower() == "true"


class ReceiptEnvironment(str, Enum):
    """Verification environment that accepted the receipt."""
    PRODUCTION = "Production"
    SANDBOX = "Sandbox"


class Transaction(BaseModel):
    """
    A single purchase event as reported by the platform.

    Immutable once recorded. Renewals are new transactions sharing
    ``original_transaction_id``.
    """
    model_config = ConfigDict(frozen=True)

    transaction_id: str = Field(
        ...,
        min_length=1,
        description="Platform-assigned id, unique per purchase event",
    )
    original_transaction_id: Optional[str] = Field(
        default=None,
        description="Groups renewals of one subscription",
    )
    product_id: str = Field(..., description="Store product identifier")
    purchase_timestamp: datetime = Field(..., description="When the purchase was made")
    expiry_timestamp: Optional[datetime] = Field(
        default=None,
        description="Subscription expiry (absent for non-subscription products)",
    )
    is_trial_period: bool = False
    is_intro_offer_period: bool = False
    auto_renew_status: bool = False
    cancellation_timestamp: Optional[datetime] = None
    promotional_offer_id: Optional[str] = None
    web_order_line_item_id: Optional[str] = None

    @property
    def is_subscription(self) -> bool:
        """Subscriptions are the products that carry an expiry."""
        return self.expiry_timestamp is not None

    @classmethod
    def from_receipt_entry(
        cls,
        entry: dict[str, Any],
        pending_renewal_info: Optional[list[dict[str, Any]]] = None,
    ) -> "Transaction":
        """
        Normalize a ``latest_receipt_info`` entry.

        Args:
            entry: One element of ``latest_receipt_info``
            pending_renewal_info: The response's renewal array, if any

        Returns:
            Normalized Transaction
        """
        renewal = pending_renewal_info[0] if pending_renewal_info else {}
        return cls(
            transaction_id=str(entry["transaction_id"]),
            original_transaction_id=entry.get("original_transaction_id"),
            product_id=entry["product_id"],
            purchase_timestamp=parse_ms_timestamp(entry["purchase_date_ms"]),
            expiry_timestamp=parse_ms_timestamp(entry.get("expires_date_ms")),
            is_trial_period=parse_flag(entry.get("is_trial_period", "false")),
            is_intro_offer_period=parse_flag(entry.get("is_in_intro_offer_period", "false")),
            auto_renew_status=str(renewal.get("auto_renew_status", "")) == "1",
            cancellation_timestamp=parse_ms_timestamp(entry.get("cancellation_date_ms")),
            promotional_offer_id=entry.get("promotional_offer_id") or None,
            web_order_line_item_id=entry.get("web_order_line_item_id"),
        )


class PurchaseRecord(BaseModel):
    """
    Persisted association of a transaction with its owning account.

    Created on successful validation through a conditional claim;
    afterwards only refund/cancellation events modify it.
    """
    transaction: Transaction
    account_id: str = Field(..., min_length=1)
    refunded: bool = False
    refunded_at: Optional[datetime] = None
    is_promotional: bool = False
    fraud_score: int = Field(default=0, ge=0, le=100)
    created_at: datetime = Field(default_factory=_utc_now)

    @property
    def transaction_id(self) -> str:
        return self.transaction.transaction_id

    @property
    def purchase_timestamp(self) -> datetime:
        return self.transaction.purchase_timestamp

    @property
    def promotional_offer_id(self) -> Optional[str]:
        return self.transaction.promotional_offer_id


class AccountProfile(BaseModel):
    """Read-only view of an account used by age and device signals."""
    account_id: str
    created_at: datetime
    device_fingerprint: Optional[str] = None


class DeviceInfo(BaseModel):
    """
    Optional device payload supplied by the client.

    Self-reported, so it can only raise risk, never lower it.
    """
    is_jailbroken: Optional[bool] = Field(
        default=None,
        description="Client-side jailbreak check result",
    )
    suspicious_paths: list[str] = Field(
        default_factory=list,
        description="Filesystem paths the client found present",
    )
    can_open_cydia: bool = Field(
        default=False,
        description="True if the cydia:// URL scheme is openable",
    )
    device_model: Optional[str] = None
    os_version: Optional[str] = None
    app_version: Optional[str] = None
    locale: Optional[str] = None
    timezone: Optional[str] = None
    vendor_id: Optional[str] = None


class ReceiptValidationRequest(BaseModel):
    """Body of POST /receipts/validate."""
    receipt_data: str = Field(..., min_length=1, description="Base64 receipt blob")
    account_id: Optional[str] = Field(
        default=None,
        description="Requesting account (enables fraud tracking)",
    )
    device_info: Optional[DeviceInfo] = None


class ReceiptValidationResult(BaseModel):
    """
    Normalized outcome of a receipt validation.

    ``is_valid=True`` may still be accompanied by an out-of-band review
    when the fraud score reached the review threshold.
    """
    is_valid: bool
    error: Optional[str] = None
    status_code: Optional[int] = Field(
        default=None,
        description="Authority status code for authority rejections",
    )
    fraud_score: int = Field(default=0, ge=0, le=100)
    transaction: Optional[Transaction] = None
    is_subscription: bool = False
    is_trial_period: bool = False
    is_intro_offer_period: bool = False
    auto_renew_status: bool = False
    is_promotional: bool = False
    jailbreak_risk: float = Field(default=0.0, ge=0.0, le=1.0)
    flagged_for_review: bool = False
    environment: Optional[ReceiptEnvironment] = None
    validated_at: datetime = Field(default_factory=_utc_now)

    @classmethod
    def rejected(
        cls,
        error: str,
        fraud_score: int,
        status_code: Optional[int] = None,
    ) -> "ReceiptValidationResult":
        return cls(
            is_valid=False,
            error=error,
            fraud_score=fraud_score,
            status_code=status_code,
        )
