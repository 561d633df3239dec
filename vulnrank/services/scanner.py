import logging
import time
from typing import Dict, List, Optional

import httpx

from vulnrank.core import utc_now
from vulnrank.core.config import settings
from vulnrank.core.metrics import scan_risk_score, scans_total
from vulnrank.models.dependency import Dependency
from vulnrank.models.vulnerability import Severity
from vulnrank.schemas.scan import ScanOptions, ScanReport, ScanResult
from vulnrank.services.aggregator import VulnerabilityAggregator
from vulnrank.services.remediation import compute_remediation
from vulnrank.services.stats import calculate_metrics

logger = logging.getLogger(__name__)


class ScanEngine:
    """
    Scans a list of dependencies end to end.

    Aggregation runs first; scoring, metrics and the remediation plan are
    computed afterwards from the merged map. The engine never owns the HTTP
    client it is given.
    """

    def __init__(
        self,
        aggregator: Optional[VulnerabilityAggregator] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._client = client
        self._aggregator = aggregator

    def _aggregator_for(self, options: ScanOptions) -> VulnerabilityAggregator:
        # An injected aggregator is used exactly as configured
        if self._aggregator is not None:
            return self._aggregator
        return VulnerabilityAggregator(
            client=self._client,
            github_token=options.github_token,
            nvd_api_key=options.nvd_api_key,
        )

    async def scan(
        self, dependencies: List[Dependency], options: Optional[ScanOptions] = None
    ) -> ScanReport:
        options = options or ScanOptions()
        offline = settings.OFFLINE_MODE if options.offline is None else options.offline
        start_time = time.time()

        # Same package listed twice is scanned once
        unique: Dict[str, Dependency] = {}
        for dep in dependencies:
            unique.setdefault(dep.key, dep)
        deps = list(unique.values())

        aggregator = self._aggregator_for(options)
        try:
            aggregation = await aggregator.query_all(
                deps, sources=options.sources, offline=offline
            )
        finally:
            if aggregator is not self._aggregator:
                await aggregator.close()

        results = [
            ScanResult(dependency=dep, vulnerabilities=aggregation.vuln_map.get(dep.key, []))
            for dep in deps
        ]
        pairs = [(r.dependency, r.vulnerabilities) for r in results]

        severity_counts = {s.value: 0 for s in Severity}
        for r in results:
            for vuln in r.vulnerabilities:
                severity_counts[Severity(vuln.severity).value] += 1

        metrics = calculate_metrics(pairs)
        remediation = compute_remediation(pairs, top_n=options.top_n)

        scan_risk_score.observe(metrics.risk_score)
        scans_total.labels(mode="offline" if offline else "online").inc()

        duration_ms = int((time.time() - start_time) * 1000)
        logger.info(
            f"Scanned {len(deps)} dependencies: "
            f"{sum(severity_counts.values())} vulnerabilities, "
            f"risk {metrics.risk_score} ({metrics.risk_level}) in {duration_ms}ms"
        )

        return ScanReport(
            timestamp=utc_now().isoformat(),
            total_dependencies=len(deps),
            total_vulnerabilities=sum(severity_counts.values()),
            severity_counts=severity_counts,
            results=results,
            source_timestamps=aggregation.source_timestamps,
            source_errors=aggregation.source_errors,
            metrics=metrics,
            remediation=remediation,
            scan_duration_ms=duration_ms,
        )


async def scan_dependencies(
    dependencies: List[Dependency], options: Optional[ScanOptions] = None
) -> ScanReport:
    """Run one scan with a dedicated HTTP client that is closed afterwards."""
    async with httpx.AsyncClient(timeout=settings.HTTP_TIMEOUT_SECONDS) as client:
        return await ScanEngine(client=client).scan(dependencies, options)
