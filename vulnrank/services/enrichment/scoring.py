import math
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

from vulnrank.core.constants import (
    ATTACK_COMPLEXITY_DEFAULT,
    ATTACK_COMPLEXITY_WEIGHTS,
    ATTACK_VECTOR_LABELS,
    ATTACK_VECTOR_WEIGHTS,
    CVSS_CRITICAL_THRESHOLD,
    CVSS_HIGH_THRESHOLD,
    RCE_CWES,
    REMEDIATION_SEVERITY_WEIGHTS,
    SCOPE_CHANGED_BONUS,
    USER_INTERACTION_DEFAULT,
    USER_INTERACTION_WEIGHTS,
    WEIGHT_CVSS_VECTOR,
    WEIGHT_EPSS,
    WEIGHT_FIX_AVAILABLE,
    WEIGHT_KEV,
    WEIGHT_SEVERITY,
)
from vulnrank.models.vulnerability import Severity, Vulnerability
from vulnrank.schemas.remediation import ScoreBreakdown


@dataclass(frozen=True)
class CVSSVectorMetrics:
    """Exploitability metrics read from a CVSS vector string."""

    attack_vector: Optional[str] = None  # N, A, L, P
    attack_complexity: Optional[str] = None  # L, H (v2 also M)
    user_interaction: Optional[str] = None  # N, R
    scope_changed: bool = False
    metrics: Dict[str, str] = field(default_factory=dict)

    @property
    def high_confidentiality_and_integrity_impact(self) -> bool:
        conf = self.metrics.get("C") or self.metrics.get("VC")
        integ = self.metrics.get("I") or self.metrics.get("VI")
        return conf == "H" and integ == "H"


def parse_cvss_vector(vector: Optional[str]) -> CVSSVectorMetrics:
    """
    Parse a CVSS v2, v3.x or v4.0 vector into its exploitability metrics.

    Unknown or missing metrics stay None. Never raises.
    """
    if not vector:
        return CVSSVectorMetrics()

    metrics: Dict[str, str] = {}
    for part in vector.strip().split("/"):
        key, sep, value = part.partition(":")
        if sep and key and key != "CVSS":
            metrics.setdefault(key.strip(), value.strip().upper())

    user_interaction = metrics.get("UI")
    # CVSS 4.0 splits "required" into Passive and Active
    if user_interaction in ("P", "A"):
        user_interaction = "R"

    return CVSSVectorMetrics(
        attack_vector=metrics.get("AV"),
        attack_complexity=metrics.get("AC"),
        user_interaction=user_interaction,
        scope_changed=metrics.get("S") == "C",
        metrics=metrics,
    )


def vector_factor(metrics: CVSSVectorMetrics, score: Optional[float] = None) -> float:
    """
    Exploitability factor in [0, 1].

    - Attack vector: Network 0.4, Adjacent 0.24, Local 0.12, Physical 0.04;
      without one, estimated from the base score (>=9: 0.3, >=7: 0.2, else 0.1)
    - Attack complexity: Low 0.3, High 0.1, otherwise 0.15
    - User interaction: None 0.2, Required 0.05, otherwise 0.1
    - Scope changed: +0.1
    """
    if metrics.attack_vector in ATTACK_VECTOR_WEIGHTS:
        factor = ATTACK_VECTOR_WEIGHTS[metrics.attack_vector]
    else:
        cvss = _finite(score)
        if cvss >= CVSS_CRITICAL_THRESHOLD:
            factor = 0.3
        elif cvss >= CVSS_HIGH_THRESHOLD:
            factor = 0.2
        else:
            factor = 0.1

    factor += ATTACK_COMPLEXITY_WEIGHTS.get(
        metrics.attack_complexity or "", ATTACK_COMPLEXITY_DEFAULT
    )
    factor += USER_INTERACTION_WEIGHTS.get(
        metrics.user_interaction or "", USER_INTERACTION_DEFAULT
    )
    if metrics.scope_changed:
        factor += SCOPE_CHANGED_BONUS

    return min(1.0, factor)


def score_vulnerability(vuln: Vulnerability) -> Tuple[float, ScoreBreakdown]:
    """
    Composite remediation priority score (0-100) for one vulnerability.

    Formula (weights sum to 100):
    - KEV: 30 if confirmed exploited
    - EPSS: probability x 20
    - Vector: exploitability factor x 15
    - Severity: exponential weight x 30 (CRITICAL 1.0, HIGH 0.5,
      MEDIUM 0.15, LOW 0.03, UNKNOWN 0.01)
    - Fix: 5 if a fixed version exists
    """
    metrics = parse_cvss_vector(vuln.cvss_vector)
    severity = Severity(vuln.severity).value
    epss = min(1.0, max(0.0, _finite(vuln.epss_score)))

    breakdown = ScoreBreakdown(
        kev=WEIGHT_KEV if vuln.is_known_exploited else 0.0,
        epss=round_half_up(epss * WEIGHT_EPSS),
        vector=round_half_up(vector_factor(metrics, vuln.score) * WEIGHT_CVSS_VECTOR),
        severity=round_half_up(
            REMEDIATION_SEVERITY_WEIGHTS.get(
                severity, REMEDIATION_SEVERITY_WEIGHTS["UNKNOWN"]
            )
            * WEIGHT_SEVERITY
        ),
        fix=WEIGHT_FIX_AVAILABLE if vuln.has_fix else 0.0,
    )
    return round_half_up(breakdown.total), breakdown


def attack_vector_label(metrics: CVSSVectorMetrics) -> str:
    return ATTACK_VECTOR_LABELS.get(metrics.attack_vector or "", "Unknown")


def is_network_rce(vuln: Vulnerability) -> bool:
    """Network-reachable and either full C/I impact or a code-execution CWE."""
    metrics = parse_cvss_vector(vuln.cvss_vector)
    if metrics.attack_vector != "N":
        return False
    if metrics.high_confidentiality_and_integrity_impact:
        return True
    return any(cwe.strip().upper() in RCE_CWES for cwe in vuln.cwes)


def round_half_up(value: float, decimals: int = 2) -> float:
    factor = 10**decimals
    return math.floor(value * factor + 0.5) / factor


def _finite(value: Optional[float]) -> float:
    if value is None or math.isnan(value) or math.isinf(value):
        return 0.0
    return value
