import asyncio
import logging
from typing import Any, Dict, List, Optional, Tuple

import httpx

from vulnrank.core.constants import (
    ANALYZER_TIMEOUTS,
    OSV_API_URL,
    OSV_BATCH_SIZE,
    OSV_DETAIL_CONCURRENCY,
    OSV_ECOSYSTEM_MAP,
)
from vulnrank.core.http_utils import HTTPRequestError, request_json
from vulnrank.models.dependency import Dependency
from vulnrank.models.vulnerability import (
    Severity,
    Vulnerability,
    VulnerabilitySource,
    VulnMap,
)
from vulnrank.services.normalizers.severity import (
    infer_severity_from_id,
    normalize_severity_label,
    parse_cvss_score,
    score_to_severity,
)
from .base import Analyzer

logger = logging.getLogger(__name__)

CVSS_SEVERITY_TYPES = ("CVSS_V3", "CVSS_V4", "CVSS_V2")


class OSVAnalyzer(Analyzer):
    """
    Primary vulnerability source: checks every dependency against OSV.dev.

    Dependencies are sent through the batch endpoint. The batch endpoint
    returns abbreviated records, so any vulnerability without a summary or
    details is fetched individually (bounded concurrency, short timeout,
    never retried). A failed detail fetch keeps the abbreviated record.
    """

    name = "osv"
    api_url = OSV_API_URL

    def __init__(
        self,
        batch_size: int = OSV_BATCH_SIZE,
        detail_concurrency: int = OSV_DETAIL_CONCURRENCY,
        detail_timeout: float = ANALYZER_TIMEOUTS["osv_detail"],
    ):
        self.batch_size = batch_size
        self.detail_concurrency = detail_concurrency
        self.detail_timeout = detail_timeout

    async def query(
        self, client: httpx.AsyncClient, dependencies: List[Dependency]
    ) -> VulnMap:
        results: VulnMap = {}
        batches = 0
        failed_batches = 0

        # OSV Batch API: POST /v1/querybatch, max 1000 queries per request
        for chunk in self._chunks(dependencies, self.batch_size):
            batches += 1
            payload = {"queries": [self._build_query(dep) for dep in chunk]}
            try:
                data = await request_json(
                    client,
                    "POST",
                    f"{self.api_url}/querybatch",
                    "OSV",
                    timeout=ANALYZER_TIMEOUTS["osv"],
                    json=payload,
                )
                batch_results = self._batch_results(data)
            except HTTPRequestError as e:
                failed_batches += 1
                logger.warning(f"OSV batch of {len(chunk)} packages failed: {e}")
                continue

            missing_ids = sorted(
                {
                    raw["id"]
                    for res in batch_results
                    for raw in _vuln_records(res)
                    if _needs_detail(raw)
                }
            )
            details = await self._fetch_details(client, missing_ids)

            for dep, res in zip(chunk, batch_results):
                converted: List[Vulnerability] = []
                for raw in _vuln_records(res):
                    record = details.get(raw["id"], raw) if _needs_detail(raw) else raw
                    vuln = _safe_convert(record)
                    if vuln and not any(v.id == vuln.id for v in converted):
                        converted.append(vuln)
                if converted:
                    results[dep.key] = converted

        if batches and failed_batches == batches:
            raise HTTPRequestError(f"All {batches} OSV batch requests failed")

        logger.info(
            f"OSV: {sum(len(v) for v in results.values())} vulnerabilities "
            f"across {len(results)} of {len(dependencies)} packages"
        )
        return results

    @staticmethod
    def _build_query(dep: Dependency) -> Dict[str, Any]:
        return {
            "package": {
                "name": dep.name,
                "ecosystem": OSV_ECOSYSTEM_MAP.get(dep.ecosystem, dep.ecosystem),
            },
            "version": dep.version,
        }

    @staticmethod
    def _batch_results(data: Any) -> List[Dict[str, Any]]:
        if not isinstance(data, dict) or not isinstance(data.get("results"), list):
            raise HTTPRequestError("Malformed OSV batch response")
        return [r if isinstance(r, dict) else {} for r in data["results"]]

    async def _fetch_details(
        self, client: httpx.AsyncClient, vuln_ids: List[str]
    ) -> Dict[str, Dict[str, Any]]:
        """Fetch full records for the given ids; failures are dropped."""
        if not vuln_ids:
            return {}

        semaphore = asyncio.Semaphore(self.detail_concurrency)

        async def fetch_one(vuln_id: str) -> Tuple[str, Optional[Dict[str, Any]]]:
            async with semaphore:
                try:
                    data = await request_json(
                        client,
                        "GET",
                        f"{self.api_url}/vulns/{vuln_id}",
                        "OSV",
                        timeout=self.detail_timeout,
                    )
                except HTTPRequestError as e:
                    logger.debug(f"OSV detail fetch for {vuln_id} skipped: {e}")
                    return vuln_id, None
                return vuln_id, data if isinstance(data, dict) else None

        pairs = await asyncio.gather(*(fetch_one(i) for i in vuln_ids))
        details = {vuln_id: data for vuln_id, data in pairs if data}
        logger.debug(f"OSV: fetched {len(details)}/{len(vuln_ids)} detail records")
        return details


def _vuln_records(result: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Records of one batch result that carry a usable id."""
    vulns = result.get("vulns")
    if not isinstance(vulns, list):
        return []
    return [
        raw
        for raw in vulns
        if isinstance(raw, dict) and isinstance(raw.get("id"), str) and raw["id"]
    ]


def _needs_detail(raw: Dict[str, Any]) -> bool:
    return not raw.get("summary") and not raw.get("details")


def _safe_convert(raw: Dict[str, Any]) -> Optional[Vulnerability]:
    try:
        return convert_osv_vulnerability(raw)
    except (AttributeError, KeyError, TypeError, ValueError) as e:
        logger.warning(f"Skipping malformed OSV record {raw.get('id')}: {e}")
        return None


def convert_osv_vulnerability(raw: Dict[str, Any]) -> Vulnerability:
    """Convert an OSV schema record into a Vulnerability."""
    vuln_id = raw["id"]
    database_specific = raw.get("database_specific") or {}

    score: Optional[float] = None
    cvss_vector: Optional[str] = None
    for entry in raw.get("severity") or []:
        if entry.get("type") not in CVSS_SEVERITY_TYPES:
            continue
        text = str(entry.get("score") or "")
        if cvss_vector is None and "/" in text:
            cvss_vector = text
        parsed = parse_cvss_score(text)
        if score is None and parsed is not None:
            score = parsed
            if "/" in text:
                cvss_vector = text

    if score is not None:
        severity = score_to_severity(score)
    else:
        severity = normalize_severity_label(database_specific.get("severity"))
        if severity == Severity.UNKNOWN:
            severity = infer_severity_from_id(vuln_id)

    fixed_version, affected_versions = _extract_ranges(raw.get("affected") or [])

    cwes = database_specific.get("cwe_ids")
    return Vulnerability(
        id=vuln_id,
        aliases=[a for a in dict.fromkeys(raw.get("aliases") or []) if a != vuln_id],
        summary=raw.get("summary") or "No summary available",
        details=raw.get("details") or "",
        severity=severity,
        score=score,
        cvss_vector=cvss_vector,
        fixed_version=fixed_version,
        affected_versions=affected_versions,
        references=[r["url"] for r in raw.get("references") or [] if r.get("url")],
        published_at=raw.get("published"),
        modified_at=raw.get("modified"),
        source=VulnerabilitySource.OSV,
        cwes=list(cwes) if isinstance(cwes, list) else [],
    )


def _extract_ranges(affected: List[Dict[str, Any]]) -> Tuple[Optional[str], str]:
    """First fixed version, and a human-readable affected range."""
    fixed_version: Optional[str] = None
    affected_versions = "unknown"

    for entry in affected:
        for rng in entry.get("ranges") or []:
            events = rng.get("events") or []
            introduced = next((e["introduced"] for e in events if e.get("introduced")), None)
            fixed = next((e["fixed"] for e in events if e.get("fixed")), None)
            if fixed and fixed_version is None:
                fixed_version = fixed
            if introduced and affected_versions == "unknown":
                affected_versions = (
                    f">={introduced}, <{fixed}" if fixed else f">={introduced}"
                )

    return fixed_version, affected_versions
