from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from vulnrank.core.constants import get_severity_value


class Severity(str, Enum):
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"
    UNKNOWN = "UNKNOWN"

    @property
    def rank(self) -> int:
        return get_severity_value(self.value)


class VulnerabilitySource(str, Enum):
    OSV = "osv"
    GHSA = "ghsa"
    NVD = "nvd"
    KEV = "kev"
    EPSS = "epss"


class Vulnerability(BaseModel):
    """Canonical advisory record shared by every source adapter."""

    model_config = ConfigDict(validate_assignment=True)

    id: str = Field(..., description="Primary advisory identifier")
    aliases: List[str] = Field(
        default_factory=list, description="Alternative IDs (e.g. GHSA vs CVE)"
    )
    summary: str = Field("", description="Short description")
    details: str = Field("", description="Long description")

    severity: Severity = Field(Severity.UNKNOWN, description="Ordinal severity")
    score: Optional[float] = Field(None, ge=0, le=10, description="CVSS base score")
    cvss_vector: Optional[str] = Field(None, description="CVSS vector string")

    fixed_version: Optional[str] = Field(None, description="First fixed version")
    affected_versions: str = Field("unknown", description="Affected range")
    references: List[str] = Field(default_factory=list)
    published_at: Optional[str] = Field(None, description="ISO-8601 publish date")
    modified_at: Optional[str] = Field(None, description="ISO-8601 modify date")
    source: VulnerabilitySource = Field(..., description="Source that reported it")
    cwes: List[str] = Field(default_factory=list)

    # Threat intelligence
    is_known_exploited: bool = Field(False, description="Listed in CISA KEV")
    kev_date_added: Optional[str] = None
    kev_due_date: Optional[str] = None
    epss_score: Optional[float] = Field(
        None, ge=0, le=1, description="Probability of exploitation in 30 days"
    )
    epss_percentile: Optional[float] = Field(None, ge=0, le=1)

    @property
    def all_ids(self) -> List[str]:
        """Primary id followed by aliases."""
        return [self.id] + [a for a in self.aliases if a != self.id]

    @property
    def cve_ids(self) -> List[str]:
        return [i for i in self.all_ids if i.startswith("CVE-")]

    @property
    def has_fix(self) -> bool:
        return bool(self.fixed_version)


# Dependency key (ecosystem:name@version) -> vulnerabilities in arrival order
VulnMap = Dict[str, List[Vulnerability]]
