"""
Prometheus Metrics Collection for VulnRank

Metrics for advisory source traffic and scan outcomes. The library never
starts an exporter; an embedding process exposes the default registry the
way it already does.
"""

import time
from contextlib import contextmanager
from typing import Iterator

from prometheus_client import Counter, Histogram

# =============================================================================
# Advisory Source Traffic
# =============================================================================

advisory_requests_total = Counter(
    "vulnrank_advisory_requests_total",
    "HTTP requests sent to advisory sources",
    ["source"],
)

advisory_request_failures_total = Counter(
    "vulnrank_advisory_request_failures_total",
    "Advisory requests that raised, including exhausted retries",
    ["source"],
)

advisory_request_seconds = Histogram(
    "vulnrank_advisory_request_seconds",
    "Advisory request latency in seconds",
    ["source"],
    buckets=(0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0),
)

advisory_rate_limited_total = Counter(
    "vulnrank_advisory_rate_limited_total",
    "HTTP 429 and 403 rate-limit responses from advisory sources",
    ["source"],
)

# =============================================================================
# Scan Metrics
# =============================================================================

source_stage_total = Counter(
    "vulnrank_source_stage_total",
    "Aggregation stage outcomes by source and status",
    ["source", "status"],
)

scan_risk_score = Histogram(
    "vulnrank_scan_risk_score",
    "Global scan risk score (0-100)",
    buckets=(0, 10, 30, 60, 80, 100),
)

scans_total = Counter(
    "vulnrank_scans_total",
    "Total scans by mode",
    ["mode"],
)


@contextmanager
def track_advisory_request(source: str) -> Iterator[None]:
    """Count one request to ``source`` and record its latency or failure."""
    advisory_requests_total.labels(source=source).inc()
    start_time = time.time()
    try:
        yield
    except Exception:
        advisory_request_failures_total.labels(source=source).inc()
        raise
    advisory_request_seconds.labels(source=source).observe(time.time() - start_time)
