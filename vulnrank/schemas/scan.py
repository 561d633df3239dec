from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from vulnrank.core.constants import ALL_SOURCES
from vulnrank.models.dependency import Dependency
from vulnrank.models.vulnerability import Severity, Vulnerability
from vulnrank.schemas.remediation import RemediationReport


class ScanOptions(BaseModel):
    """Per-scan overrides. Unset values fall back to settings."""

    sources: Optional[List[str]] = None
    github_token: Optional[str] = None
    nvd_api_key: Optional[str] = None
    offline: Optional[bool] = None
    top_n: Optional[int] = Field(None, ge=1)

    @field_validator("sources")
    @classmethod
    def validate_sources(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        if v is None:
            return v
        unknown = [s for s in v if s not in ALL_SOURCES]
        if unknown:
            raise ValueError(f"Unknown sources: {', '.join(unknown)}")
        return v


class ScanResult(BaseModel):
    dependency: Dependency
    vulnerabilities: List[Vulnerability] = Field(default_factory=list)


class OldestUnfixedVuln(BaseModel):
    id: str
    severity: Severity
    age: int  # days


class ScanMetrics(BaseModel):
    risk_score: int = 0
    risk_level: str = "none"  # none, low, medium, high, critical

    critical_with_fix: int = 0
    high_with_fix: int = 0

    median_vuln_age: int = 0  # days
    oldest_unfixed_vuln: Optional[OldestUnfixedVuln] = None

    kev_count: int = 0
    kev_with_fix: int = 0

    avg_epss_score: float = 0.0
    max_epss_score: float = 0.0
    high_epss_count: int = 0

    direct_dependencies: int = 0
    transitive_dependencies: int = 0


class ScanReport(BaseModel):
    timestamp: str
    total_dependencies: int = 0
    total_vulnerabilities: int = 0
    severity_counts: Dict[str, int] = Field(default_factory=dict)
    results: List[ScanResult] = Field(default_factory=list)
    source_timestamps: Dict[str, str] = Field(default_factory=dict)
    source_errors: Dict[str, str] = Field(default_factory=dict)
    metrics: ScanMetrics = Field(default_factory=ScanMetrics)
    remediation: RemediationReport = Field(default_factory=RemediationReport)
    scan_duration_ms: int = 0
