"""
Shared Constants

Centralized constants used across the application to ensure consistency.
"""

from typing import Dict, FrozenSet, Optional

# =============================================================================
# Severity
# =============================================================================

# Severity order for comparisons (higher value = more severe)
SEVERITY_ORDER: Dict[str, int] = {
    "CRITICAL": 4,
    "HIGH": 3,
    "MEDIUM": 2,
    "LOW": 1,
    "UNKNOWN": 0,
}

# CVSS base score thresholds (lower bound, inclusive)
CVSS_CRITICAL_THRESHOLD: float = 9.0
CVSS_HIGH_THRESHOLD: float = 7.0
CVSS_MEDIUM_THRESHOLD: float = 4.0


def get_severity_value(severity: Optional[str]) -> int:
    """Get numeric value for severity. Higher = more severe."""
    if not severity:
        return 0
    return SEVERITY_ORDER.get(str(severity).upper(), 0)


# =============================================================================
# Advisory source endpoints
# =============================================================================

OSV_API_URL = "https://api.osv.dev/v1"
GHSA_GRAPHQL_URL = "https://api.github.com/graphql"
NVD_API_URL = "https://services.nvd.nist.gov/rest/json/cves/2.0"
KEV_CATALOG_URL = (
    "https://www.cisa.gov/sites/default/files/feeds/known_exploited_vulnerabilities.json"
)
EPSS_API_URL = "https://api.first.org/data/v1/epss"

# Request timeouts per source in seconds
ANALYZER_TIMEOUTS: Dict[str, float] = {
    "default": 30.0,
    "osv": 60.0,
    "osv_detail": 5.0,
    "ghsa": 10.0,
    "nvd": 15.0,
    "kev": 15.0,
    "epss": 10.0,
}

# =============================================================================
# Source limits
# =============================================================================

OSV_BATCH_SIZE = 1000  # Max queries per querybatch request
OSV_DETAIL_CONCURRENCY = 20  # Parallel GET /vulns/{id} requests

GHSA_CONCURRENT_REQUESTS = 5
GHSA_RESULTS_PER_PACKAGE = 25

NVD_MAX_CVES_PER_SCAN = 50
NVD_RATE_LIMIT_WITH_KEY = 0.6  # seconds between requests
NVD_RATE_LIMIT_WITHOUT_KEY = 6.0
NVD_RATE_LIMIT_COOLDOWN = 30.0  # single sleep after 403/429
NVD_IGNORED_CWES: FrozenSet[str] = frozenset({"NVD-CWE-noinfo", "NVD-CWE-Other"})

EPSS_BATCH_SIZE = 100  # Max CVEs per EPSS API request

# =============================================================================
# Source vocabulary
# =============================================================================

ALL_SOURCES = ("osv", "ghsa", "nvd", "kev", "epss")
DEFAULT_SOURCES = ("osv", "kev", "epss")

# Dependency ecosystem -> OSV ecosystem name
OSV_ECOSYSTEM_MAP: Dict[str, str] = {
    "npm": "npm",
    "pip": "PyPI",
    "go": "Go",
    "maven": "Maven",
    "cargo": "crates.io",
    "nuget": "NuGet",
    "gem": "RubyGems",
    "composer": "Packagist",
}

# Dependency ecosystem -> GitHub SecurityAdvisoryEcosystem enum
GHSA_ECOSYSTEM_MAP: Dict[str, str] = {
    "npm": "NPM",
    "pip": "PIP",
    "go": "GO",
    "maven": "MAVEN",
    "cargo": "RUST",
    "nuget": "NUGET",
    "gem": "RUBYGEMS",
    "composer": "COMPOSER",
}

# =============================================================================
# Remediation scoring (per-CVE weights sum to 100)
# =============================================================================

WEIGHT_KEV: float = 30
WEIGHT_EPSS: float = 20
WEIGHT_CVSS_VECTOR: float = 15
WEIGHT_SEVERITY: float = 30
WEIGHT_FIX_AVAILABLE: float = 5
MAX_SCORE_PER_CVE: float = (
    WEIGHT_KEV + WEIGHT_EPSS + WEIGHT_CVSS_VECTOR + WEIGHT_SEVERITY + WEIGHT_FIX_AVAILABLE
)

# Exponential: one Critical must outweigh many Lows
REMEDIATION_SEVERITY_WEIGHTS: Dict[str, float] = {
    "CRITICAL": 1.0,
    "HIGH": 0.5,
    "MEDIUM": 0.15,
    "LOW": 0.03,
    "UNKNOWN": 0.01,
}

RISK_DAMPENER: float = 0.1  # Applied to every CVE score except the top one
KEV_RISK_MULTIPLIER: float = 2.5

# Attack vector contribution to the vector factor
ATTACK_VECTOR_WEIGHTS: Dict[str, float] = {
    "N": 0.4,  # Network
    "A": 0.24,  # Adjacent
    "L": 0.12,  # Local
    "P": 0.04,  # Physical
}
ATTACK_COMPLEXITY_WEIGHTS: Dict[str, float] = {"L": 0.3, "H": 0.1}
ATTACK_COMPLEXITY_DEFAULT: float = 0.15
USER_INTERACTION_WEIGHTS: Dict[str, float] = {"N": 0.2, "R": 0.05}
USER_INTERACTION_DEFAULT: float = 0.1
SCOPE_CHANGED_BONUS: float = 0.1

ATTACK_VECTOR_LABELS: Dict[str, str] = {
    "N": "Network",
    "A": "Adjacent",
    "L": "Local",
    "P": "Physical",
}

# Weakness classes treated as remote code execution
RCE_CWES: FrozenSet[str] = frozenset(
    {"CWE-94", "CWE-78", "CWE-502", "CWE-787", "CWE-119"}
)

# =============================================================================
# Global scan risk score
# =============================================================================

SCAN_SEVERITY_WEIGHTS: Dict[str, float] = {
    "CRITICAL": 10,
    "HIGH": 5,
    "MEDIUM": 2,
    "LOW": 0.5,
    "UNKNOWN": 0.25,
}
SCAN_KEV_MULTIPLIER: float = 3
SCAN_HIGH_EPSS_MULTIPLIER: float = 1.5
SCAN_DIRECT_MULTIPLIER: float = 1.25
SCAN_FIX_AVAILABLE_MULTIPLIER: float = 0.8

# EPSS above this is "likely to be exploited" for scan-level metrics
EPSS_HIGH_THRESHOLD: float = 0.5

# Lower bounds (inclusive) of each risk level; anything above 0 is at least "low"
RISK_LEVEL_THRESHOLDS = (
    (80, "critical"),
    (60, "high"),
    (30, "medium"),
)
