"""
Enrichment Schema Definitions

Data classes exchanged between the advisory source adapters and the
aggregator:
- EPSS (exploitation probability)
- CISA KEV (confirmed exploitation)
- NVD (CVSS metrics and weaknesses)
- Per-source outcomes and the aggregation result with provenance
"""

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, computed_field

from vulnrank.core import utc_now
from vulnrank.models.vulnerability import Severity, VulnMap

# =============================================================================
# EPSS/KEV Enrichment Schemas
# =============================================================================


class EPSSData(BaseModel):
    """EPSS (Exploit Prediction Scoring System) data for a CVE."""

    cve: str
    epss_score: float  # Probability of exploitation in next 30 days (0.0 - 1.0)
    percentile: float  # Percentile rank among all CVEs (0.0 - 1.0)
    date: str = ""  # Date of the EPSS calculation


class KEVEntry(BaseModel):
    """CISA Known Exploited Vulnerability entry."""

    cve: str
    vendor_project: str = ""
    product: str = ""
    vulnerability_name: str = ""
    date_added: str = ""
    short_description: str = ""
    required_action: str = ""
    due_date: str = ""
    known_ransomware_use: bool = False


class KEVCatalog(BaseModel):
    """Parsed CISA KEV catalog, indexed by CVE id."""

    title: str = ""
    catalog_version: str = ""
    date_released: str = ""
    entries: Dict[str, KEVEntry] = Field(default_factory=dict)

    @computed_field
    @property
    def count(self) -> int:
        return len(self.entries)

    def get(self, cve: str) -> Optional[KEVEntry]:
        return self.entries.get(cve)


# =============================================================================
# NVD Enrichment Schemas
# =============================================================================


class NVDRecord(BaseModel):
    """CVSS metrics and weaknesses for one CVE from the NVD 2.0 API."""

    cve: str
    description: str = ""
    score: Optional[float] = None
    severity: Severity = Severity.UNKNOWN
    cvss_vector: Optional[str] = None
    cwes: List[str] = Field(default_factory=list)
    references: List[str] = Field(default_factory=list)
    published_at: Optional[str] = None
    modified_at: Optional[str] = None


# =============================================================================
# Aggregation Schemas
# =============================================================================


class SourceOutcome(BaseModel):
    """Result of running one aggregation stage: ok, or failed with a reason."""

    source: str
    ok: bool
    error: Optional[str] = None
    completed_at: datetime = Field(default_factory=utc_now)

    @classmethod
    def success(cls, source: str) -> "SourceOutcome":
        return cls(source=source, ok=True)

    @classmethod
    def failure(cls, source: str, reason: str) -> "SourceOutcome":
        return cls(source=source, ok=False, error=reason)


class AggregationResult(BaseModel):
    """Merged vulnerability map with per-source provenance."""

    vuln_map: VulnMap = Field(default_factory=dict)
    source_timestamps: Dict[str, str] = Field(default_factory=dict)
    source_errors: Dict[str, str] = Field(default_factory=dict)
    outcomes: List[SourceOutcome] = Field(default_factory=list)

    def record(self, outcome: SourceOutcome) -> None:
        self.outcomes.append(outcome)
        if outcome.ok:
            self.source_timestamps[outcome.source] = outcome.completed_at.isoformat()
            self.source_errors.pop(outcome.source, None)
        else:
            self.source_errors[outcome.source] = outcome.error or "unknown error"

    @computed_field
    @property
    def vulnerability_count(self) -> int:
        return sum(len(v) for v in self.vuln_map.values())
