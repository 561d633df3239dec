import logging
import math
from datetime import datetime
from typing import List, Optional, Sequence, Tuple

from vulnrank.core import parse_datetime, utc_now
from vulnrank.core.constants import (
    EPSS_HIGH_THRESHOLD,
    RISK_LEVEL_THRESHOLDS,
    SCAN_DIRECT_MULTIPLIER,
    SCAN_FIX_AVAILABLE_MULTIPLIER,
    SCAN_HIGH_EPSS_MULTIPLIER,
    SCAN_KEV_MULTIPLIER,
    SCAN_SEVERITY_WEIGHTS,
)
from vulnrank.models.dependency import Dependency
from vulnrank.models.vulnerability import Severity, Vulnerability
from vulnrank.schemas.scan import OldestUnfixedVuln, ScanMetrics
from vulnrank.services.enrichment.scoring import round_half_up

logger = logging.getLogger(__name__)

DependencyVulns = Tuple[Dependency, List[Vulnerability]]

SECONDS_PER_DAY = 24 * 60 * 60


def vulnerability_weight(vuln: Vulnerability, is_direct: bool) -> float:
    weight = SCAN_SEVERITY_WEIGHTS.get(
        Severity(vuln.severity).value, SCAN_SEVERITY_WEIGHTS["UNKNOWN"]
    )

    # Actively exploited vulns are highest priority
    if vuln.is_known_exploited:
        weight *= SCAN_KEV_MULTIPLIER

    if vuln.epss_score is not None and vuln.epss_score > EPSS_HIGH_THRESHOLD:
        weight *= SCAN_HIGH_EPSS_MULTIPLIER

    if is_direct:
        weight *= SCAN_DIRECT_MULTIPLIER

    # Still bad, but remediable
    if vuln.has_fix:
        weight *= SCAN_FIX_AVAILABLE_MULTIPLIER

    return weight


def calculate_risk_score(results: Sequence[DependencyVulns]) -> int:
    """
    Global project risk on a 0-100 log scale.

    One critical is about 70, a handful of criticals saturates near 100.
    Independent of the remediation score, which ranks packages instead.
    """
    raw = 0.0
    count = 0
    for dependency, vulns in results:
        for vuln in vulns:
            raw += vulnerability_weight(vuln, dependency.is_direct)
            count += 1

    if count == 0:
        return 0

    return min(100, int(round_half_up(20 * math.log2(raw + 1), 0)))


def risk_score_to_level(score: float) -> str:
    for threshold, level in RISK_LEVEL_THRESHOLDS:
        if score >= threshold:
            return level
    return "low" if score > 0 else "none"


def _age_in_days(published_at: Optional[str], now: datetime) -> Optional[int]:
    published = parse_datetime(published_at)
    if published is None:
        return None
    return max(0, math.floor((now - published).total_seconds() / SECONDS_PER_DAY))


def calculate_metrics(
    results: Sequence[DependencyVulns], now: Optional[datetime] = None
) -> ScanMetrics:
    """Scan-level analytics: risk, fix availability, age, KEV and EPSS."""
    now = now or utc_now()
    all_vulns = [v for _, vulns in results for v in vulns]

    risk_score = calculate_risk_score(results)

    # Vulnerability age
    ages = sorted(
        age
        for age in (_age_in_days(v.published_at, now) for v in all_vulns)
        if age is not None
    )
    median_age = ages[len(ages) // 2] if ages else 0

    # Oldest unfixed
    oldest: Optional[OldestUnfixedVuln] = None
    for vuln in all_vulns:
        if vuln.has_fix:
            continue
        age = _age_in_days(vuln.published_at, now)
        if age is None:
            continue
        if oldest is None or age > oldest.age:
            oldest = OldestUnfixedVuln(id=vuln.id, severity=vuln.severity, age=age)

    # KEV metrics
    kev_vulns = [v for v in all_vulns if v.is_known_exploited]

    # EPSS metrics
    epss_scores = [v.epss_score for v in all_vulns if v.epss_score is not None]

    metrics = ScanMetrics(
        risk_score=risk_score,
        risk_level=risk_score_to_level(risk_score),
        critical_with_fix=sum(
            1 for v in all_vulns if v.severity == Severity.CRITICAL and v.has_fix
        ),
        high_with_fix=sum(
            1 for v in all_vulns if v.severity == Severity.HIGH and v.has_fix
        ),
        median_vuln_age=median_age,
        oldest_unfixed_vuln=oldest,
        kev_count=len(kev_vulns),
        kev_with_fix=sum(1 for v in kev_vulns if v.has_fix),
        avg_epss_score=sum(epss_scores) / len(epss_scores) if epss_scores else 0.0,
        max_epss_score=max(epss_scores) if epss_scores else 0.0,
        high_epss_count=sum(1 for s in epss_scores if s > EPSS_HIGH_THRESHOLD),
        direct_dependencies=sum(1 for dep, _ in results if dep.is_direct),
        transitive_dependencies=sum(1 for dep, _ in results if not dep.is_direct),
    )
    logger.debug(
        f"Scan metrics: risk {metrics.risk_score} ({metrics.risk_level}), "
        f"{metrics.kev_count} KEV, {metrics.high_epss_count} high EPSS"
    )
    return metrics
