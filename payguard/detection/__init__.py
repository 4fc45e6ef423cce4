# Detection Modules
from .duplicates import DuplicateDetector
from .jailbreak import (
    JailbreakAssessment,
    detect_jailbreak_indicators,
    generate_device_fingerprint,
)

__all__ = [
    "DuplicateDetector",
    "JailbreakAssessment",
    "detect_jailbreak_indicators",
    "generate_device_fingerprint",
]
