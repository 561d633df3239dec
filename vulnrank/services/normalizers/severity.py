import logging
import math
from typing import Optional, Union

from cvss import CVSS2, CVSS3, CVSS4
from cvss.exceptions import CVSSError

from vulnrank.core.constants import (
    CVSS_CRITICAL_THRESHOLD,
    CVSS_HIGH_THRESHOLD,
    CVSS_MEDIUM_THRESHOLD,
)
from vulnrank.models.vulnerability import Severity

logger = logging.getLogger(__name__)

# Advisory severity labels -> Severity (GitHub uses MODERATE)
SEVERITY_LABELS = {
    "CRITICAL": Severity.CRITICAL,
    "HIGH": Severity.HIGH,
    "MODERATE": Severity.MEDIUM,
    "MEDIUM": Severity.MEDIUM,
    "LOW": Severity.LOW,
}


def score_to_severity(score: Optional[float]) -> Severity:
    """Map a 0-10 CVSS base score onto the ordinal severity scale."""
    if score is None or math.isnan(score):
        return Severity.UNKNOWN
    if score >= CVSS_CRITICAL_THRESHOLD:
        return Severity.CRITICAL
    if score >= CVSS_HIGH_THRESHOLD:
        return Severity.HIGH
    if score >= CVSS_MEDIUM_THRESHOLD:
        return Severity.MEDIUM
    if score > 0:
        return Severity.LOW
    return Severity.UNKNOWN


def infer_severity_from_id(advisory_id: str) -> Severity:
    """GitHub-reviewed advisories without a score default to MEDIUM."""
    if advisory_id.startswith("GHSA-"):
        return Severity.MEDIUM
    return Severity.UNKNOWN


def normalize_severity_label(label: Optional[str]) -> Severity:
    if not label:
        return Severity.UNKNOWN
    return SEVERITY_LABELS.get(label.strip().upper(), Severity.UNKNOWN)


def parse_cvss_score(value: Union[str, float, int, None]) -> Optional[float]:
    """
    Extract a 0-10 base score from a CVSS field.

    Accepts a bare number ("7.5", 7.5), a CVSS v4.0 or v3.x vector
    ("CVSS:4.0/AV:N/...", "CVSS:3.1/AV:N/...") or a CVSS v2 vector
    ("AV:N/AC:L/Au:N/..."). Returns None for anything else.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return _clamp_score(float(value))

    text = value.strip()
    if not text:
        return None

    try:
        return _clamp_score(float(text))
    except ValueError:
        pass

    try:
        if text.startswith("CVSS:4"):
            return _clamp_score(float(CVSS4(text).scores()[0]))
        if text.startswith("CVSS:3"):
            return _clamp_score(float(CVSS3(text).scores()[0]))
        if "Au:" in text and not text.startswith("CVSS:"):
            return _clamp_score(float(CVSS2(text).scores()[0]))
    except (CVSSError, ValueError) as e:
        logger.debug(f"Unparseable CVSS vector {text!r}: {e}")
    return None


def _clamp_score(score: float) -> Optional[float]:
    if math.isnan(score) or math.isinf(score):
        return None
    return min(10.0, max(0.0, score))


def max_severity(a: Severity, b: Severity) -> Severity:
    return a if a.rank >= b.rank else b


def raise_to_floor(severity: Severity, floor: Severity) -> Severity:
    """Return ``severity`` unless it ranks below ``floor``."""
    return max_severity(severity, floor)
