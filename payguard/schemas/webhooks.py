"""
Webhook Schemas

App Store Server Notifications (V2). The envelope is untrusted until the
verifier returns a ``WebhookNotification``; nothing here is persisted
before that.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from .transactions import parse_ms_timestamp


class NotificationType(str, Enum):
    """Lifecycle notification types the processor understands."""
    SUBSCRIBED = "SUBSCRIBED"
    DID_RENEW = "DID_RENEW"
    DID_FAIL_TO_RENEW = "DID_FAIL_TO_RENEW"
    DID_CHANGE_RENEWAL_STATUS = "DID_CHANGE_RENEWAL_STATUS"
    DID_CHANGE_RENEWAL_PREF = "DID_CHANGE_RENEWAL_PREF"
    EXPIRED = "EXPIRED"
    GRACE_PERIOD_EXPIRED = "GRACE_PERIOD_EXPIRED"
    REFUND = "REFUND"
    REVOKE = "REVOKE"
    REFUND_DECLINED = "REFUND_DECLINED"
    REFUND_REVERSED = "REFUND_REVERSED"
    CONSUMPTION_REQUEST = "CONSUMPTION_REQUEST"
    RENEWAL_EXTENDED = "RENEWAL_EXTENDED"
    PRICE_INCREASE = "PRICE_INCREASE"
    OFFER_REDEEMED = "OFFER_REDEEMED"
    TEST = "TEST"


class WebhookRequest(BaseModel):
    """Inbound webhook body."""
    model_config = ConfigDict(populate_by_name=True)

    signed_payload: Optional[str] = Field(default=None, alias="signedPayload")


class NotificationTransaction(BaseModel):
    """Verified contents of ``signedTransactionInfo``."""
    transaction_id: str
    original_transaction_id: Optional[str] = None
    product_id: Optional[str] = None
    bundle_id: Optional[str] = None
    purchase_date: Optional[datetime] = None
    expires_date: Optional[datetime] = None
    revocation_date: Optional[datetime] = None

    @classmethod
    def from_claims(cls, claims: dict[str, Any]) -> "NotificationTransaction":
        return cls(
            transaction_id=str(claims["transactionId"]),
            original_transaction_id=claims.get("originalTransactionId"),
            product_id=claims.get("productId"),
            bundle_id=claims.get("bundleId"),
            purchase_date=parse_ms_timestamp(claims.get("purchaseDate")),
            expires_date=parse_ms_timestamp(claims.get("expiresDate")),
            revocation_date=parse_ms_timestamp(claims.get("revocationDate")),
        )


class WebhookNotification(BaseModel):
    """A notification whose signature and bundle identity were verified."""
    notification_type: str
    subtype: Optional[str] = None
    notification_uuid: Optional[str] = None
    bundle_id: Optional[str] = None
    environment: Optional[str] = None
    transaction: Optional[NotificationTransaction] = None
    renewal_info: dict[str, Any] = Field(default_factory=dict)
    signed_date: Optional[datetime] = None
