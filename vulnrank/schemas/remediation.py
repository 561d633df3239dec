"""
Remediation Schema Definitions

Ranked remediation plan produced from a merged vulnerability map.
"""

from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from vulnrank.core.constants import MAX_SCORE_PER_CVE
from vulnrank.models.vulnerability import Severity


class ScoreBreakdown(BaseModel):
    """Points contributed by each scoring dimension."""

    kev: float = 0.0
    epss: float = 0.0
    vector: float = 0.0
    severity: float = 0.0
    fix: float = 0.0

    @property
    def total(self) -> float:
        return self.kev + self.epss + self.vector + self.severity + self.fix


class RemediationCve(BaseModel):
    id: str
    severity: Severity
    cvss: float = 0.0
    epss: float = 0.0
    is_kev: bool = False
    score: float  # 0 - MAX_SCORE_PER_CVE
    breakdown: ScoreBreakdown
    attack_vector: str = "Unknown"
    fix_version: Optional[str] = None
    summary: str = ""


class RemediationAction(BaseModel):
    """Everything known about upgrading one dependency."""

    package_name: str
    current_version: str
    ecosystem: str
    fix_version: Optional[str] = None
    is_direct: bool = False
    parent: Optional[str] = None

    vuln_count: int = 0
    fix_coverage: int = 0  # CVEs with a fixed version
    severity_counts: Dict[str, int] = Field(default_factory=dict)
    kev_count: int = 0
    max_epss: float = 0.0
    max_cvss: float = 0.0
    has_network_rce: bool = False
    attack_vectors: List[str] = Field(default_factory=list)

    risk_score: float = Field(
        0.0, description="Adjusted risk (base x KEV multiplier); drives ranking and ROI"
    )
    base_risk_score: float = Field(
        0.0, description="Top CVE score plus dampened sum of the rest"
    )
    risk_reduction_pct: float = Field(
        0.0, description="Share of total project risk removed by this upgrade"
    )
    breakdown: ScoreBreakdown = Field(default_factory=ScoreBreakdown)
    risk_dominator: str = ""

    cves: List[RemediationCve] = Field(default_factory=list)


class RemediationReport(BaseModel):
    actions: List[RemediationAction] = Field(default_factory=list)
    total_risk_score: float = 0.0
    total_vuln_count: int = 0
    total_kev_count: int = 0
    total_critical_count: int = 0
    total_high_count: int = 0
    total_packages: int = 0
    max_score_per_cve: float = MAX_SCORE_PER_CVE
    summary: str = ""
