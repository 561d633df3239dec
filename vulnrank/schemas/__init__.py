"""
Schema Exports

Centralized export of the Pydantic models exchanged between the
aggregation, scoring and reporting stages.
"""

# Enrichment schemas (Pydantic)
from vulnrank.schemas.enrichment import (
    AggregationResult,
    EPSSData,
    KEVCatalog,
    KEVEntry,
    NVDRecord,
    SourceOutcome,
)

# Remediation schemas (Pydantic)
from vulnrank.schemas.remediation import (
    RemediationAction,
    RemediationCve,
    RemediationReport,
    ScoreBreakdown,
)

# Scan schemas (Pydantic)
from vulnrank.schemas.scan import (
    OldestUnfixedVuln,
    ScanMetrics,
    ScanOptions,
    ScanReport,
    ScanResult,
)

__all__ = [
    # Enrichment
    "AggregationResult",
    "EPSSData",
    "KEVCatalog",
    "KEVEntry",
    "NVDRecord",
    "SourceOutcome",
    # Remediation
    "RemediationAction",
    "RemediationCve",
    "RemediationReport",
    "ScoreBreakdown",
    # Scan
    "OldestUnfixedVuln",
    "ScanMetrics",
    "ScanOptions",
    "ScanReport",
    "ScanResult",
]
