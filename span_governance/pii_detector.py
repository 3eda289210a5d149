"""
PII detection and masking.

Pattern based, deterministic and pure: detection never mutates stored state.
Categories are scanned in a fixed order against the progressively masked
text, so a value consumed by an earlier category (a card number, say) is not
counted again by a broader one (bank account digits). Masks contain no
digits and no address characters, so masked content never matches again.
"""

import re
from typing import Any, Dict, List, Pattern, Tuple

from .governance_models import PIIDetectionResult

# Contribution of each individual match to the confidence score
MATCH_WEIGHT = 0.1

DEFAULT_MASK = "***REDACTED***"

# (category, pattern, mask) in scan order
PII_PATTERNS: List[Tuple[str, Pattern, str]] = [
    ("email", re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"), "***@***.***"),
    ("ssn", re.compile(r"\b\d{3}-\d{2}-\d{4}\b"), "***-**-****"),
    ("credit_card", re.compile(r"\b\d{4}[\s-]?\d{4}[\s-]?\d{4}[\s-]?\d{4}\b"), "****-****-****-****"),
    ("phone", re.compile(r"\b\d{3}[-.]?\d{3}[-.]?\d{4}\b"), "***-***-****"),
    ("ip_address", re.compile(r"\b(?:\d{1,3}\.){3}\d{1,3}\b"), "***.***.***.***"),
    ("passport", re.compile(r"\b[A-Z]{1,2}\d{6,9}\b"), DEFAULT_MASK),
    ("driver_license", re.compile(r"\b[A-Z]{1,2}\d{6,8}\b"), DEFAULT_MASK),
    ("bank_account", re.compile(r"\b\d{8,17}\b"), DEFAULT_MASK),
]


class PIIDetector:
    """Stateless detector; all methods are static."""

    @staticmethod
    def detect_pii(content: str) -> PIIDetectionResult:
        """
        Scan content for every PII category.

        Returns:
            PIIDetectionResult with detected categories, confidence
            (MATCH_WEIGHT per match, capped at 1.0), masked and original text
        """
        detected: List[str] = []
        masked = content
        confidence = 0.0

        for category, pattern, mask in PII_PATTERNS:
            masked, count = pattern.subn(mask, masked)
            if count:
                detected.append(category)
                confidence += count * MATCH_WEIGHT

        return PIIDetectionResult(
            has_pii=bool(detected),
            pii_types=detected,
            confidence=round(min(max(confidence, 0.0), 1.0), 4),
            masked_content=masked,
            original_content=content,
        )

    @staticmethod
    def mask_pii_in_object(obj: Any, show_pii: bool = False) -> Any:
        """Recursively mask every string inside a dict/list payload."""
        if show_pii:
            return obj
        if isinstance(obj, str):
            return PIIDetector.detect_pii(obj).masked_content
        if isinstance(obj, (list, tuple)):
            return [PIIDetector.mask_pii_in_object(item) for item in obj]
        if isinstance(obj, dict):
            masked: Dict[Any, Any] = {}
            for key, value in obj.items():
                masked[key] = PIIDetector.mask_pii_in_object(value)
            return masked
        return obj
