"""
Webhook Signature Verifier

Authenticates App Store Server Notifications before anything acts on
them. The notification is a JWS whose header names a key id; the key is
looked up in the issuer's published key set.

Verification steps:
1. signedPayload present
2. Header decodes, carries a kid and an accepted algorithm
3. Key for the kid exists in the key set (unknown kid forces a refresh)
4. Signature and issuer verify
5. Nested signedTransactionInfo / signedRenewalInfo verify the same way
6. bundleId matches the configured bundle id

Any failure yields None and a security_event audit entry carrying the
caller's origin. The verifier never raises to its caller.
"""

import logging
import time
from typing import Any, Callable, Optional

import httpx
import jwt

from ..config import settings
from ..errors import SignatureInvalid
from ..metrics import metrics
from ..schemas import (
    FraudEventType,
    FraudLogEntry,
    NotificationTransaction,
    WebhookNotification,
)
from ..schemas.transactions import parse_ms_timestamp
from ..store import AuditLog

logger = logging.getLogger("payguard.webhooks.verifier")


class KeySetCache:
    """
    Published key set with a TTL.

    Lookups of a kid not in the cached set trigger a refresh, so key
    rotation is picked up without waiting for the TTL.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        url: Optional[str] = None,
        ttl_seconds: Optional[int] = None,
        timeout: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.http = http_client
        self.url = url or settings.webhook_jwks_url
        self.ttl = ttl_seconds if ttl_seconds is not None else settings.webhook_jwks_cache_ttl_seconds
        self.timeout = timeout if timeout is not None else settings.webhook_jwks_timeout_seconds
        self._clock = clock
        self._keys: dict[str, jwt.PyJWK] = {}
        self._fetched_at: Optional[float] = None

    def _stale(self) -> bool:
        return self._fetched_at is None or self._clock() - self._fetched_at >= self.ttl

    async def refresh(self) -> None:
        """
        Fetch the key set.

        Raises:
            SignatureInvalid: Fetch failed or the set has no usable keys
        """
        metrics.key_set_fetches.inc()
        try:
            response = await self.http.get(self.url, timeout=self.timeout)
            response.raise_for_status()
            key_set = jwt.PyJWKSet.from_dict(response.json())
        except httpx.HTTPError as e:
            raise SignatureInvalid(f"Key set fetch failed: {e}") from e
        except (ValueError, jwt.PyJWTError) as e:
            raise SignatureInvalid(f"Key set unusable: {e}") from e

        self._keys = {key.key_id: key for key in key_set.keys if key.key_id}
        self._fetched_at = self._clock()
        logger.info("Key set refreshed: %d keys", len(self._keys))

    async def get_key(self, kid: str) -> Optional[jwt.PyJWK]:
        if self._stale() or kid not in self._keys:
            await self.refresh()
        return self._keys.get(kid)


class WebhookVerifier:
    """Authenticate-or-reject for signed lifecycle notifications."""

    def __init__(
        self,
        key_set: KeySetCache,
        audit_log: AuditLog,
        bundle_id: Optional[str] = None,
        issuer: Optional[str] = None,
        algorithms: Optional[list[str]] = None,
    ):
        """
        Initialize verifier.

        Args:
            key_set: Key set cache
            audit_log: Sink for failed verifications
            bundle_id: Expected bundle id (unchecked if None)
            issuer: Expected issuer on the envelope (unchecked if None)
            algorithms: Accepted JWS algorithms
        """
        self.key_set = key_set
        self.audit_log = audit_log
        self.bundle_id = bundle_id if bundle_id is not None else settings.app_bundle_id
        self.issuer = issuer if issuer is not None else settings.webhook_issuer
        self.algorithms = algorithms or settings.webhook_algorithms_list

    async def verify(
        self,
        signed_payload: Optional[str],
        origin: Optional[str] = None,
    ) -> Optional[WebhookNotification]:
        """
        Verify a signed notification.

        Args:
            signed_payload: The body's signedPayload
            origin: Caller's network origin, for the audit trail only

        Returns:
            Verified WebhookNotification, or None on any failure
        """
        try:
            notification = await self._verify(signed_payload)
        except SignatureInvalid as e:
            metrics.webhook_verifications.labels(result="rejected").inc()
            logger.error("Webhook signature verification failed: %s origin=%s", e, origin)
            await self._record_failure(str(e), origin)
            return None

        metrics.webhook_verifications.labels(result="verified").inc()
        logger.info(
            "Webhook signature verified: type=%s subtype=%s",
            notification.notification_type, notification.subtype,
        )
        return notification

    async def _verify(self, signed_payload: Optional[str]) -> WebhookNotification:
        if not signed_payload:
            raise SignatureInvalid("No signed payload")

        claims = await self._decode(signed_payload, check_issuer=True)

        notification_type = claims.get("notificationType")
        if not notification_type:
            raise SignatureInvalid("Payload has no notificationType")

        data = claims.get("data") or {}
        if not isinstance(data, dict):
            raise SignatureInvalid("Payload data is not an object")
        bundle_id = data.get("bundleId")
        self._check_bundle(bundle_id)

        transaction = None
        if data.get("signedTransactionInfo"):
            transaction_claims = await self._decode(data["signedTransactionInfo"], check_issuer=False)
            self._check_bundle(transaction_claims.get("bundleId", bundle_id))
            try:
                transaction = NotificationTransaction.from_claims(transaction_claims)
            except (KeyError, TypeError, ValueError, OverflowError, OSError) as e:
                raise SignatureInvalid(f"Unreadable transaction info: {e}") from e

        renewal_info: dict[str, Any] = {}
        if data.get("signedRenewalInfo"):
            renewal_info = await self._decode(data["signedRenewalInfo"], check_issuer=False)

        try:
            return WebhookNotification(
                notification_type=notification_type,
                subtype=claims.get("subtype"),
                notification_uuid=claims.get("notificationUUID"),
                bundle_id=bundle_id,
                environment=data.get("environment"),
                transaction=transaction,
                renewal_info=renewal_info,
                signed_date=parse_ms_timestamp(claims.get("signedDate")),
            )
        except (TypeError, ValueError, OverflowError, OSError) as e:
            raise SignatureInvalid(f"Unreadable notification: {e}") from e

    async def _decode(self, token: str, check_issuer: bool) -> dict[str, Any]:
        """Verify one JWS against the key set and return its claims."""
        if not isinstance(token, str):
            raise SignatureInvalid("JWS is not a string")
        try:
            header = jwt.get_unverified_header(token)
        except jwt.PyJWTError as e:
            raise SignatureInvalid(f"Invalid JWS header: {e}") from e

        kid = header.get("kid")
        if not kid:
            raise SignatureInvalid("JWS header has no kid")
        if header.get("alg") not in self.algorithms:
            raise SignatureInvalid(f"Algorithm not accepted: {header.get('alg')}")

        key = await self.key_set.get_key(kid)
        if key is None:
            raise SignatureInvalid(f"No key for kid {kid}")

        issuer = self.issuer if check_issuer else None
        try:
            return jwt.decode(
                token,
                key.key,
                algorithms=self.algorithms,
                issuer=issuer,
                options={"verify_aud": False, "require": ["iss"] if issuer else []},
            )
        except jwt.PyJWTError as e:
            raise SignatureInvalid(f"Signature verification failed: {e}") from e

    def _check_bundle(self, bundle_id: Optional[str]) -> None:
        if self.bundle_id and bundle_id != self.bundle_id:
            raise SignatureInvalid(f"Bundle id mismatch: {bundle_id}")

    async def _record_failure(self, reason: str, origin: Optional[str]) -> None:
        try:
            await self.audit_log.append(
                FraudLogEntry(
                    event_type=FraudEventType.SECURITY_EVENT,
                    fraud_type="webhook_verification_failed",
                    reason=reason,
                    details={"origin": origin},
                    severity="high",
                )
            )
        except Exception as e:
            # The caller must still get None
            logger.warning("Failed to record webhook verification failure: %s", e)
