"""
Device / Receipt Risk Heuristics

Pure functions that inspect a receipt's structure and the optional
client device payload and emit a jailbreak/tamper risk in [0, 1].

Indicators:
1. Bundle id containing cracking-tool names
2. Sandbox receipt accepted while running in production
3. Missing receipt creation date
4. Abnormally large in_app array (common in forged receipts)
5. Client-reported jailbreak, jailbreak files, Cydia URL scheme
6. Very old receipts being replayed
"""

import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, UTC
from typing import Any, Optional

from ..config import settings
from ..schemas import DeviceInfo, ReceiptEnvironment
from ..schemas.transactions import parse_ms_timestamp

logger = logging.getLogger("payguard.detection.jailbreak")


SUSPICIOUS_BUNDLE_PATTERNS = (
    "cracked", "hacked", "pirate", "modded", "jailbreak",
    "cydia", "sileo", "unc0ver", "checkra1n", "taurine",
)

JAILBREAK_PATHS = (
    "/Applications/Cydia.app",
    "/Library/MobileSubstrate",
    "/bin/bash",
    "/usr/sbin/sshd",
    "/etc/apt",
)

MAX_IN_APP_ENTRIES = 50
MAX_RECEIPT_AGE_DAYS = 365


@dataclass
class JailbreakAssessment:
    """Risk in [0, 1] plus the indicators that produced it."""
    risk: float = 0.0
    indicators: list[str] = field(default_factory=list)

    def add(self, weight: float, indicator: str) -> None:
        self.risk += weight
        self.indicators.append(indicator)


def detect_jailbreak_indicators(
    receipt: Optional[dict[str, Any]],
    device_info: Optional[DeviceInfo] = None,
    environment: Optional[ReceiptEnvironment] = None,
    now: Optional[datetime] = None,
) -> JailbreakAssessment:
    """
    Score a receipt envelope and device payload for tampering.

    Args:
        receipt: The ``receipt`` object of the authority response
        device_info: Optional client-reported device payload
        environment: Environment that accepted the receipt
        now: Reference time (defaults to current UTC time)

    Returns:
        JailbreakAssessment with risk capped at 1.0
    """
    receipt = receipt or {}
    now = now or datetime.now(UTC)
    assessment = JailbreakAssessment()

    bundle_id = str(receipt.get("bundle_id") or "").lower()
    for pattern in SUSPICIOUS_BUNDLE_PATTERNS:
        if pattern in bundle_id:
            assessment.add(0.5, f"Suspicious bundle ID: {pattern}")
            break

    if environment == ReceiptEnvironment.SANDBOX and settings.app_env == "production":
        assessment.add(0.3, "Environment mismatch: sandbox in production")

    created_at = _creation_date(receipt.get("receipt_creation_date_ms"))
    if not receipt.get("receipt_creation_date") and created_at is None:
        assessment.add(0.2, "Missing receipt creation date")

    in_app = receipt.get("in_app")
    if isinstance(in_app, list) and len(in_app) > MAX_IN_APP_ENTRIES:
        assessment.add(0.3, "Abnormally large in_app array")

    if device_info is not None:
        if device_info.is_jailbroken is True:
            assessment.add(0.8, "Device reports jailbreak")

        if any(
            known in path
            for path in device_info.suspicious_paths
            for known in JAILBREAK_PATHS
        ):
            assessment.add(0.6, "Jailbreak files detected")

        if device_info.can_open_cydia:
            assessment.add(0.7, "Can open Cydia URL scheme")

    if created_at is not None:
        age_days = (now - created_at).total_seconds() / 86400
        if age_days > MAX_RECEIPT_AGE_DAYS:
            assessment.add(0.2, f"Very old receipt: {age_days:.0f} days")

    assessment.risk = min(round(assessment.risk, 4), 1.0)

    if assessment.indicators:
        logger.warning(
            "Jailbreak indicators detected: risk=%.2f indicators=%s bundle_id=%s",
            assessment.risk, assessment.indicators, bundle_id,
        )

    return assessment


def _creation_date(value: Any) -> Optional[datetime]:
    """Parse the creation timestamp; unreadable values count as absent."""
    try:
        return parse_ms_timestamp(value)
    except (TypeError, ValueError, OverflowError, OSError):
        logger.warning("Unreadable receipt_creation_date_ms: %r", value)
        return None


def generate_device_fingerprint(device_info: Optional[DeviceInfo]) -> Optional[str]:
    """
    Stable hash of the device payload used for device-sharing checks.

    Returns None when no device payload was supplied.
    """
    if device_info is None:
        return None

    parts = [
        device_info.device_model,
        device_info.os_version,
        device_info.app_version,
        device_info.locale,
        device_info.timezone,
        device_info.vendor_id,
    ]
    raw = "|".join(p or "" for p in parts)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()
