"""
Remediation Planner

Turns a merged vulnerability map into a ranked list of package upgrades.

Each CVE is scored 0-100 (see ``score_vulnerability``). A package's risk is
its worst CVE plus a dampened sum of the rest, so fifty low findings cannot
outrank one critical. Packages with a known-exploited CVE get a multiplier.
"""

import logging
from functools import cmp_to_key
from typing import Dict, List, Optional, Sequence, Tuple

from vulnrank.core.config import settings
from vulnrank.core.constants import KEV_RISK_MULTIPLIER, MAX_SCORE_PER_CVE, RISK_DAMPENER
from vulnrank.models.dependency import Dependency
from vulnrank.models.vulnerability import Severity, Vulnerability
from vulnrank.schemas.remediation import (
    RemediationAction,
    RemediationCve,
    RemediationReport,
    ScoreBreakdown,
)
from vulnrank.services.enrichment.scoring import (
    attack_vector_label,
    is_network_rce,
    parse_cvss_vector,
    round_half_up,
    score_vulnerability,
)
from vulnrank.services.normalizers.versions import compare_versions

logger = logging.getLogger(__name__)

DependencyVulns = Tuple[Dependency, List[Vulnerability]]

CLEAN_SUMMARY = "No vulnerabilities detected. Project is clean."


def aggregate_dependency_risk(scores: Sequence[float], has_kev: bool) -> Tuple[float, float]:
    """
    Combine per-CVE scores into (base, adjusted) package risk.

    base = top score + 0.1 x sum(other scores); adjusted = base x 2.5 when
    any CVE is known exploited.
    """
    if not scores:
        return 0.0, 0.0
    ordered = sorted(scores, reverse=True)
    base = round_half_up(ordered[0] + sum(ordered[1:]) * RISK_DAMPENER)
    adjusted = round_half_up(base * KEV_RISK_MULTIPLIER) if has_kev else base
    return base, adjusted


def best_fix_version(versions: Sequence[Optional[str]]) -> Optional[str]:
    """Highest fixed version; upgrading to it fixes every listed CVE."""
    best: Optional[str] = None
    for version in versions:
        if not version:
            continue
        if best is None or compare_versions(version, best) > 0:
            best = version
    return best


def format_risk_dominator(top_cve: Optional[RemediationCve]) -> str:
    """One-line reason for the ranking, e.g. "1 CRITICAL RCE (Network)"."""
    if top_cve is None:
        return "No CVEs"
    severity = Severity(top_cve.severity).value
    rce = (
        " RCE"
        if top_cve.attack_vector == "Network"
        and (top_cve.cvss >= 9 or severity in ("CRITICAL", "HIGH"))
        else ""
    )
    return f"1 {severity}{rce} ({top_cve.attack_vector})"


def build_action(dependency: Dependency, vulns: List[Vulnerability]) -> RemediationAction:
    severity_counts: Dict[str, int] = {}
    cves: List[RemediationCve] = []
    attack_vectors: List[str] = []
    totals = ScoreBreakdown()
    scores: List[float] = []
    kev_count = 0
    max_epss = 0.0
    max_cvss = 0.0
    has_network_rce = False

    for vuln in vulns:
        score, breakdown = score_vulnerability(vuln)
        scores.append(score)
        totals = ScoreBreakdown(
            kev=totals.kev + breakdown.kev,
            epss=totals.epss + breakdown.epss,
            vector=totals.vector + breakdown.vector,
            severity=totals.severity + breakdown.severity,
            fix=totals.fix + breakdown.fix,
        )

        if vuln.is_known_exploited:
            kev_count += 1
        max_epss = max(max_epss, vuln.epss_score or 0.0)
        max_cvss = max(max_cvss, vuln.score or 0.0)
        has_network_rce = has_network_rce or is_network_rce(vuln)

        severity = Severity(vuln.severity).value
        severity_counts[severity] = severity_counts.get(severity, 0) + 1

        attack_vector = attack_vector_label(parse_cvss_vector(vuln.cvss_vector))
        if attack_vector not in attack_vectors:
            attack_vectors.append(attack_vector)

        cves.append(
            RemediationCve(
                id=vuln.id,
                severity=vuln.severity,
                cvss=vuln.score or 0.0,
                epss=vuln.epss_score or 0.0,
                is_kev=vuln.is_known_exploited,
                score=score,
                breakdown=breakdown,
                attack_vector=attack_vector,
                fix_version=vuln.fixed_version,
                summary=vuln.summary,
            )
        )

    base, adjusted = aggregate_dependency_risk(scores, kev_count > 0)
    # Stable: equal scores keep arrival order
    cves.sort(key=lambda c: c.score, reverse=True)

    return RemediationAction(
        package_name=dependency.name,
        current_version=dependency.version,
        ecosystem=dependency.ecosystem,
        fix_version=best_fix_version([v.fixed_version for v in vulns]),
        is_direct=dependency.is_direct,
        parent=dependency.parent,
        vuln_count=len(vulns),
        fix_coverage=sum(1 for v in vulns if v.has_fix),
        severity_counts=severity_counts,
        kev_count=kev_count,
        max_epss=max_epss,
        max_cvss=max_cvss,
        has_network_rce=has_network_rce,
        attack_vectors=attack_vectors,
        risk_score=adjusted,
        base_risk_score=base,
        breakdown=ScoreBreakdown(
            kev=round_half_up(totals.kev),
            epss=round_half_up(totals.epss),
            vector=round_half_up(totals.vector),
            severity=round_half_up(totals.severity),
            fix=round_half_up(totals.fix),
        ),
        risk_dominator=format_risk_dominator(cves[0] if cves else None),
        cves=cves,
    )


def _compare_actions(a: RemediationAction, b: RemediationAction) -> int:
    """KEV first, then adjusted risk, then max EPSS, then fewer CVEs."""
    if (a.kev_count > 0) != (b.kev_count > 0):
        return -1 if a.kev_count > 0 else 1
    if a.risk_score != b.risk_score:
        return -1 if a.risk_score > b.risk_score else 1
    if a.max_epss != b.max_epss:
        return -1 if a.max_epss > b.max_epss else 1
    return a.vuln_count - b.vuln_count


def rank_actions(actions: List[RemediationAction]) -> List[RemediationAction]:
    return sorted(actions, key=cmp_to_key(_compare_actions))


def compute_remediation(
    results: Sequence[DependencyVulns], top_n: Optional[int] = None
) -> RemediationReport:
    """
    Build the remediation plan for a scan.

    Every vulnerable dependency is scored before ROI is computed, so
    ``risk_reduction_pct`` is each package's share of the whole project's
    risk. Only the ``top_n`` best-ranked actions are returned.
    """
    top_n = top_n if top_n is not None else settings.REMEDIATION_TOP_N
    vulnerable = [(dep, vulns) for dep, vulns in results if vulns]

    if not vulnerable:
        return RemediationReport(
            total_packages=len(results),
            max_score_per_cve=MAX_SCORE_PER_CVE,
            summary=CLEAN_SUMMARY,
        )

    actions = [build_action(dep, vulns) for dep, vulns in vulnerable]
    total_risk = round_half_up(sum(a.risk_score for a in actions))

    # ROI uses adjusted risk so it agrees with the ranking
    for action in actions:
        action.risk_reduction_pct = (
            round_half_up(action.risk_score / total_risk * 100, 1) if total_risk > 0 else 0.0
        )

    all_vulns = [v for _, vulns in vulnerable for v in vulns]
    total_kev = sum(1 for v in all_vulns if v.is_known_exploited)
    top_actions = rank_actions(actions)[:top_n]

    logger.debug(
        f"Remediation: {len(actions)} vulnerable packages, total risk {total_risk}"
    )

    return RemediationReport(
        actions=top_actions,
        total_risk_score=total_risk,
        total_vuln_count=len(all_vulns),
        total_kev_count=total_kev,
        total_critical_count=sum(1 for v in all_vulns if v.severity == Severity.CRITICAL),
        total_high_count=sum(1 for v in all_vulns if v.severity == Severity.HIGH),
        total_packages=len(results),
        max_score_per_cve=MAX_SCORE_PER_CVE,
        summary=generate_summary(top_actions, len(all_vulns), total_risk, total_kev),
    )


def generate_summary(
    top_actions: List[RemediationAction],
    total_vulns: int,
    total_risk: float,
    total_kev: int,
) -> str:
    if not top_actions:
        return CLEAN_SUMMARY

    fix_count = sum(a.vuln_count for a in top_actions)
    reduction = round_half_up(sum(a.risk_reduction_pct for a in top_actions), 0)

    summary = (
        f"Fixing {len(top_actions)} packages resolves {fix_count} of {total_vulns} "
        f"vulnerabilities ({_format_number(reduction)}% of {_format_number(total_risk)} total risk points)."
    )
    if total_kev > 0:
        plural = "s" if total_kev > 1 else ""
        summary += f" {total_kev} CVE{plural} confirmed actively exploited (CISA KEV)."

    fixable = sum(1 for a in top_actions if a.fix_version)
    if fixable > 0:
        summary += f" {fixable}/{len(top_actions)} have fix versions available."
    return summary


def _format_number(value: float) -> str:
    return f"{value:.2f}".rstrip("0").rstrip(".")
