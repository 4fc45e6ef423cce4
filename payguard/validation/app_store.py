"""
App Store Receipt Verification Client

Talks to the platform's verifyReceipt endpoints.

Environment handling:
- Production is always tried first
- Status 21007 ("receipt is from the test environment") triggers exactly
  one call to the sandbox endpoint
- No other retries; transport errors surface as NetworkFailure
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from ..config import settings
from ..errors import ConfigurationError, NetworkFailure
from ..metrics import metrics
from ..schemas import ReceiptEnvironment

logger = logging.getLogger("payguard.validation.app_store")


STATUS_OK = 0
STATUS_SANDBOX_RECEIPT = 21007

ERROR_MESSAGES = {
    21000: "The App Store could not read the JSON object you provided.",
    21002: "The data in the receipt-data property was malformed or missing.",
    21003: "The receipt could not be authenticated.",
    21004: "The shared secret you provided does not match the shared secret on file.",
    21005: "The receipt server is not currently available.",
    21006: "This receipt is valid but the subscription has expired.",
    21007: "This receipt is from the test environment.",
    21008: "This receipt is from the production environment.",
    21009: "Internal data access error.",
    21010: "This receipt could not be authorized.",
}


def get_error_message(status: int) -> str:
    """Map an authority status code to its documented message."""
    return ERROR_MESSAGES.get(status, f"Unknown error (status: {status})")


@dataclass
class AuthorityResponse:
    """Decoded verifyReceipt response and the endpoint that produced it."""
    payload: dict[str, Any]
    environment: ReceiptEnvironment
    attempts: int = 1

    @property
    def status(self) -> int:
        return int(self.payload.get("status", -1))

    @property
    def latest_receipt_info(self) -> list[dict[str, Any]]:
        return self.payload.get("latest_receipt_info") or []

    @property
    def pending_renewal_info(self) -> list[dict[str, Any]]:
        return self.payload.get("pending_renewal_info") or []

    @property
    def receipt(self) -> dict[str, Any]:
        return self.payload.get("receipt") or {}


class AppStoreClient:
    """verifyReceipt client with the single production-to-sandbox fallback."""

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        shared_secret: Optional[str] = None,
        production_url: Optional[str] = None,
        sandbox_url: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        """
        Initialize client.

        Args:
            http_client: Shared AsyncClient (one is created if omitted)
            shared_secret: App-specific shared secret
            production_url: Production verifyReceipt URL
            sandbox_url: Sandbox verifyReceipt URL
            timeout: Per-call timeout in seconds
        """
        self.timeout = timeout if timeout is not None else settings.appstore_timeout_seconds
        self.shared_secret = shared_secret or settings.appstore_shared_secret
        self.production_url = production_url or settings.appstore_production_url
        self.sandbox_url = sandbox_url or settings.appstore_sandbox_url
        self._owns_client = http_client is None
        self.http = http_client or httpx.AsyncClient(timeout=self.timeout)

    async def close(self) -> None:
        if self._owns_client:
            await self.http.aclose()

    async def verify_receipt(self, receipt_data: str) -> AuthorityResponse:
        """
        Verify a receipt, falling back to sandbox once on 21007.

        Raises:
            ConfigurationError: Shared secret not configured
            NetworkFailure: Transport error or non-JSON body
        """
        if not self.shared_secret:
            raise ConfigurationError("App Store shared secret not configured")

        body = {
            "receipt-data": receipt_data,
            "password": self.shared_secret,
            "exclude-old-transactions": True,
        }

        # Production first
        payload = await self._post(self.production_url, body, ReceiptEnvironment.PRODUCTION)
        if payload.get("status") != STATUS_SANDBOX_RECEIPT:
            return AuthorityResponse(
                payload=payload,
                environment=self._environment(payload, ReceiptEnvironment.PRODUCTION),
            )

        # Sandbox receipt sent to production: one retry, never more
        logger.info("Sandbox receipt detected, retrying with sandbox endpoint")
        metrics.sandbox_retries.inc()
        payload = await self._post(self.sandbox_url, body, ReceiptEnvironment.SANDBOX)
        return AuthorityResponse(
            payload=payload,
            environment=self._environment(payload, ReceiptEnvironment.SANDBOX),
            attempts=2,
        )

    async def _post(
        self,
        url: str,
        body: dict[str, Any],
        environment: ReceiptEnvironment,
    ) -> dict[str, Any]:
        start = time.perf_counter()
        try:
            response = await self.http.post(url, json=body, timeout=self.timeout)
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPError as e:
            metrics.errors_total.labels(error_type="authority_network").inc()
            raise NetworkFailure(f"App Store {environment.value} request failed: {e}", cause=e) from e
        except ValueError as e:
            metrics.errors_total.labels(error_type="authority_network").inc()
            raise NetworkFailure(f"App Store {environment.value} returned a non-JSON body", cause=e) from e
        finally:
            metrics.authority_latency.labels(environment=environment.value).observe(
                (time.perf_counter() - start) * 1000
            )

        if not isinstance(payload, dict):
            raise NetworkFailure(f"App Store {environment.value} returned an unexpected body")
        return payload

    @staticmethod
    def _environment(
        payload: dict[str, Any],
        default: ReceiptEnvironment,
    ) -> ReceiptEnvironment:
        try:
            return ReceiptEnvironment(payload.get("environment"))
        except ValueError:
            return default
