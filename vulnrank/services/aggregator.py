import asyncio
import logging
import time
from typing import Awaitable, Callable, Iterable, Iterator, List, Optional, Set

import httpx

from vulnrank.core.config import settings
from vulnrank.core.constants import ALL_SOURCES
from vulnrank.core.metrics import source_stage_total
from vulnrank.models.dependency import Dependency
from vulnrank.models.vulnerability import Vulnerability, VulnMap
from vulnrank.schemas.enrichment import AggregationResult, SourceOutcome
from vulnrank.services.analyzers.osv import OSVAnalyzer
from vulnrank.services.enrichment import kev_provider
from vulnrank.services.enrichment.epss import EPSSProvider
from vulnrank.services.enrichment.ghsa import GHSAProvider
from vulnrank.services.enrichment.kev import KEVProvider, apply_kev_catalog
from vulnrank.services.enrichment.nvd import NVDProvider
from vulnrank.services.normalizers.severity import max_severity

logger = logging.getLogger(__name__)


class VulnerabilityAggregator:
    """
    Runs the advisory sources in a fixed order and merges their output.

    Pipeline: OSV -> GHSA -> NVD -> KEV -> EPSS.
    - OSV establishes the base map.
    - GHSA adds advisories not already present by id or alias.
    - NVD fills missing CVSS scores and CWEs in place.
    - KEV and EPSS only annotate existing entries.

    Every stage is isolated: its failure is recorded as provenance and the
    remaining stages still run against the map accumulated so far.
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        osv: Optional[OSVAnalyzer] = None,
        ghsa: Optional[GHSAProvider] = None,
        nvd: Optional[NVDProvider] = None,
        kev: Optional[KEVProvider] = None,
        epss: Optional[EPSSProvider] = None,
        github_token: Optional[str] = None,
        nvd_api_key: Optional[str] = None,
    ):
        self._http_client = client
        self._owns_client = client is None
        self._client_lock = asyncio.Lock()  # Prevent race condition on client creation

        api_key = nvd_api_key if nvd_api_key is not None else settings.NVD_API_KEY
        token = github_token if github_token is not None else settings.GITHUB_TOKEN

        self.osv = osv or OSVAnalyzer()
        self.ghsa = ghsa or GHSAProvider(token=token)
        self.nvd = nvd or NVDProvider(api_key=api_key)
        self.kev = kev or kev_provider
        self.epss = epss or EPSSProvider()

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client with thread-safe initialization."""
        if self._http_client is not None and not self._http_client.is_closed:
            return self._http_client

        async with self._client_lock:
            # Double-check after acquiring lock
            if self._http_client is not None and not self._http_client.is_closed:
                return self._http_client
            self._http_client = httpx.AsyncClient(timeout=settings.HTTP_TIMEOUT_SECONDS)
            self._owns_client = True
        return self._http_client

    async def close(self):
        """Close HTTP client if this aggregator created it."""
        if self._owns_client and self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()

    async def query_all(
        self,
        dependencies: List[Dependency],
        sources: Optional[Iterable[str]] = None,
        initial: Optional[VulnMap] = None,
        offline: Optional[bool] = None,
    ) -> AggregationResult:
        selected = resolve_sources(sources)
        result = AggregationResult(vuln_map=initial if initial is not None else {})

        offline = settings.OFFLINE_MODE if offline is None else offline
        if offline:
            logger.info("Offline mode: skipping all advisory sources")
            return result

        if not dependencies and not result.vuln_map:
            return result

        client = await self._get_client()

        if "osv" in selected:
            await self._run_stage(
                result, "osv", lambda: self._run_osv(client, dependencies, result.vuln_map)
            )

        if "ghsa" in selected:
            if self.ghsa.has_token:
                await self._run_stage(
                    result,
                    "ghsa",
                    lambda: self._run_ghsa(client, dependencies, result.vuln_map),
                )
            else:
                logger.info("GHSA selected but no GitHub token configured, skipping")

        if "nvd" in selected:
            if self.nvd.has_api_key:
                await self._run_stage(
                    result, "nvd", lambda: self._run_nvd(client, result.vuln_map)
                )
            else:
                logger.info("NVD selected but no API key configured, skipping")

        if "kev" in selected:
            await self._run_stage(
                result, "kev", lambda: self._run_kev(client, result.vuln_map)
            )

        if "epss" in selected:
            await self._run_stage(
                result, "epss", lambda: self._run_epss(client, result.vuln_map)
            )

        logger.info(
            f"Aggregated {result.vulnerability_count} vulnerabilities across "
            f"{len(result.vuln_map)} packages "
            f"(sources ok: {sorted(result.source_timestamps)}, "
            f"failed: {sorted(result.source_errors)})"
        )
        return result

    async def _run_stage(
        self,
        result: AggregationResult,
        source: str,
        stage: Callable[[], Awaitable[None]],
    ) -> SourceOutcome:
        start_time = time.time()
        try:
            await stage()
        except Exception as e:
            reason = str(e) or type(e).__name__
            logger.error(f"Source {source} failed: {reason}")
            outcome = SourceOutcome.failure(source, reason)
            source_stage_total.labels(source=source, status="error").inc()
        else:
            logger.debug(f"Source {source} completed in {time.time() - start_time:.2f}s")
            outcome = SourceOutcome.success(source)
            source_stage_total.labels(source=source, status="ok").inc()
        result.record(outcome)
        return outcome

    async def _run_osv(
        self, client: httpx.AsyncClient, dependencies: List[Dependency], vuln_map: VulnMap
    ) -> None:
        found = await self.osv.query(client, dependencies)
        merge_vuln_maps(vuln_map, found)

    async def _run_ghsa(
        self, client: httpx.AsyncClient, dependencies: List[Dependency], vuln_map: VulnMap
    ) -> None:
        found = await self.ghsa.query_batch(client, dependencies)
        added = merge_vuln_maps(vuln_map, found)
        logger.debug(f"GHSA contributed {added} new vulnerabilities")

    async def _run_nvd(self, client: httpx.AsyncClient, vuln_map: VulnMap) -> None:
        cve_ids = self.nvd.select_cves(iter_vulnerabilities(vuln_map))
        if not cve_ids:
            logger.debug("NVD: no unscored CVEs to enrich")
            return
        records = await self.nvd.query(client, cve_ids)
        self.nvd.apply(iter_vulnerabilities(vuln_map), records)

    async def _run_kev(self, client: httpx.AsyncClient, vuln_map: VulnMap) -> None:
        catalog = await self.kev.load_catalog(client)
        flagged = apply_kev_catalog(iter_vulnerabilities(vuln_map), catalog)
        logger.info(f"KEV: {flagged} known exploited vulnerabilities")

    async def _run_epss(self, client: httpx.AsyncClient, vuln_map: VulnMap) -> None:
        await self.epss.enrich(client, list(iter_vulnerabilities(vuln_map)))


def resolve_sources(sources: Optional[Iterable[str]]) -> Set[str]:
    """Validate a source selection; None means the configured default."""
    selected = set(settings.SOURCES if sources is None else sources)
    unknown = selected - set(ALL_SOURCES)
    if unknown:
        raise ValueError(
            f"Unknown sources: {', '.join(sorted(unknown))} "
            f"(expected any of {', '.join(ALL_SOURCES)})"
        )
    return selected


def iter_vulnerabilities(vuln_map: VulnMap) -> Iterator[Vulnerability]:
    for vulns in vuln_map.values():
        yield from vulns


def is_duplicate(candidate: Vulnerability, existing: Vulnerability) -> bool:
    """True if the two entries share an id or alias."""
    return not set(candidate.all_ids).isdisjoint(existing.all_ids)


def merge_vuln_maps(target: VulnMap, incoming: VulnMap) -> int:
    """Merge ``incoming`` into ``target`` per dependency. Returns entries added."""
    added = 0
    for key, vulns in incoming.items():
        entries = target.setdefault(key, [])
        for vuln in vulns:
            added += int(merge_vulnerability_into_list(entries, vuln))
        if not entries:
            del target[key]
    return added


def merge_vulnerability_into_list(
    target_list: List[Vulnerability], candidate: Vulnerability
) -> bool:
    """
    Merge a vulnerability into a dependency's list, deduplicating by ID and aliases.

    A new advisory is appended. A duplicate is folded into the existing entry:
    aliases are unioned, the higher severity wins, and missing fixed version,
    CVSS data, CWEs and references are filled in. If the merged entry now
    overlaps other entries, those are folded in too, so no two entries in the
    list ever share an id or alias. Returns True if the candidate was appended.
    """
    matches = [tv for tv in target_list if is_duplicate(candidate, tv)]

    if not matches:
        target_list.append(candidate.model_copy(deep=True))
        return True

    primary = matches[0]
    _merge_into(primary, candidate)
    for other in matches[1:]:
        _merge_into(primary, other)
        target_list.remove(other)
    return False


def _merge_into(target: Vulnerability, source: Vulnerability) -> None:
    aliases = list(target.aliases)
    for alias in source.all_ids:
        if alias != target.id and alias not in aliases:
            aliases.append(alias)
    if aliases != target.aliases:
        target.aliases = aliases

    # Merge Severity (Max)
    merged_severity = max_severity(target.severity, source.severity)
    if merged_severity != target.severity:
        target.severity = merged_severity

    # Fixed version merge (prefer non-empty)
    if not target.fixed_version and source.fixed_version:
        target.fixed_version = source.fixed_version

    # CVSS merge (prefer higher)
    if source.score is not None and (target.score is None or source.score > target.score):
        target.score = source.score
        target.cvss_vector = source.cvss_vector or target.cvss_vector
    elif not target.cvss_vector and source.cvss_vector:
        target.cvss_vector = source.cvss_vector

    if not target.cwes and source.cwes:
        target.cwes = list(source.cwes)

    # Description merge (prefer longer)
    if len(source.details) > len(target.details):
        target.details = source.details

    references = target.references + [r for r in source.references if r not in target.references]
    if references != target.references:
        target.references = references

    if not target.published_at and source.published_at:
        target.published_at = source.published_at
