# Receipt validation
from .app_store import (
    ERROR_MESSAGES,
    STATUS_SANDBOX_RECEIPT,
    AppStoreClient,
    AuthorityResponse,
    get_error_message,
)
from .receipt_validator import ReceiptValidator

__all__ = [
    "ERROR_MESSAGES",
    "STATUS_SANDBOX_RECEIPT",
    "AppStoreClient",
    "AuthorityResponse",
    "get_error_message",
    "ReceiptValidator",
]
