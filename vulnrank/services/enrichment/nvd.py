import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

import httpx

from vulnrank.core.constants import (
    ANALYZER_TIMEOUTS,
    NVD_API_URL,
    NVD_IGNORED_CWES,
    NVD_MAX_CVES_PER_SCAN,
    NVD_RATE_LIMIT_COOLDOWN,
    NVD_RATE_LIMIT_WITH_KEY,
    NVD_RATE_LIMIT_WITHOUT_KEY,
)
from vulnrank.core.http_utils import HTTPRequestError, RateLimiter, request_json
from vulnrank.models.vulnerability import Severity, Vulnerability
from vulnrank.schemas.enrichment import NVDRecord
from vulnrank.services.normalizers.severity import (
    normalize_severity_label,
    parse_cvss_score,
    score_to_severity,
)

logger = logging.getLogger(__name__)

# Process-wide: every NVD lookup shares one request spacing, across scans
nvd_rate_limiter = RateLimiter(NVD_RATE_LIMIT_WITHOUT_KEY)


class NVDProvider:
    """
    Provider for CVSS metrics from the NVD 2.0 API.

    NVD rate limits are strict, so lookups are one CVE per request and every
    request first passes through the rate limiter. Unless one is injected,
    all providers share ``nvd_rate_limiter``; the spacing applied depends on
    whether this provider has an API key. A 403/429 response triggers one
    cooldown sleep; the affected CVE is skipped and the remaining CVEs are
    still queried.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        rate_limiter: Optional[RateLimiter] = None,
        cooldown: float = NVD_RATE_LIMIT_COOLDOWN,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._api_key = api_key or None
        self.min_interval = (
            NVD_RATE_LIMIT_WITH_KEY if self._api_key else NVD_RATE_LIMIT_WITHOUT_KEY
        )
        self.rate_limiter = rate_limiter if rate_limiter is not None else nvd_rate_limiter
        self._cooldown = cooldown
        self._sleep = sleep

    @property
    def has_api_key(self) -> bool:
        return bool(self._api_key)

    def _get_headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._api_key:
            headers["apiKey"] = self._api_key
        return headers

    @staticmethod
    def select_cves(vulnerabilities: Iterable[Vulnerability]) -> List[str]:
        """CVE ids of vulnerabilities still missing a score, deduplicated and capped."""
        cve_ids: List[str] = []
        for vuln in vulnerabilities:
            if vuln.score is None:
                cve_ids.extend(vuln.cve_ids)
        return list(dict.fromkeys(cve_ids))[:NVD_MAX_CVES_PER_SCAN]

    async def query(
        self, client: httpx.AsyncClient, cve_ids: List[str]
    ) -> Dict[str, NVDRecord]:
        ids = [i for i in dict.fromkeys(cve_ids) if i.startswith("CVE-")]
        ids = ids[:NVD_MAX_CVES_PER_SCAN]
        results: Dict[str, NVDRecord] = {}
        failures = 0

        for cve_id in ids:
            await self.rate_limiter.wait(self.min_interval)
            try:
                data = await request_json(
                    client,
                    "GET",
                    NVD_API_URL,
                    "NVD",
                    timeout=ANALYZER_TIMEOUTS.get("nvd", ANALYZER_TIMEOUTS["default"]),
                    params={"cveId": cve_id},
                    headers=self._get_headers(),
                )
            except HTTPRequestError as e:
                failures += 1
                if e.is_rate_limited:
                    logger.warning(
                        f"NVD rate limited on {cve_id}, cooling down {self._cooldown}s"
                    )
                    await self._sleep(self._cooldown)
                else:
                    logger.warning(f"NVD lookup for {cve_id} failed: {e}")
                continue

            entries = data.get("vulnerabilities") if isinstance(data, dict) else None
            if not entries:
                logger.debug(f"NVD has no record for {cve_id}")
                continue
            try:
                results[cve_id] = convert_nvd_cve(entries[0]["cve"])
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                failures += 1
                logger.warning(f"Malformed NVD record for {cve_id}: {e}")

        if ids and failures == len(ids):
            raise HTTPRequestError(f"All {len(ids)} NVD lookups failed")

        logger.info(f"NVD: enriched {len(results)}/{len(ids)} CVEs")
        return results

    @staticmethod
    def apply(
        vulnerabilities: Iterable[Vulnerability], records: Dict[str, NVDRecord]
    ) -> int:
        """Fill missing scores and CWEs in place. Returns the number of vulns updated."""
        updated = 0
        for vuln in vulnerabilities:
            record = next((records[c] for c in vuln.cve_ids if c in records), None)
            if record is None:
                continue
            changed = False
            if vuln.score is None and record.score is not None:
                vuln.score = record.score
                vuln.cvss_vector = record.cvss_vector
                vuln.severity = record.severity
                changed = True
            if not vuln.cwes and record.cwes:
                vuln.cwes = list(record.cwes)
                changed = True
            updated += int(changed)
        return updated


def convert_nvd_cve(cve: Dict[str, Any]) -> NVDRecord:
    """Convert an NVD 2.0 ``cve`` object, preferring CVSS v3.1, then v3.0, then v2."""
    metrics = cve.get("metrics") or {}
    score: Optional[float] = None
    vector: Optional[str] = None
    severity = Severity.UNKNOWN

    for key in ("cvssMetricV31", "cvssMetricV30"):
        entries = metrics.get(key) or []
        if entries:
            cvss_data = entries[0].get("cvssData") or {}
            score = parse_cvss_score(cvss_data.get("baseScore"))
            vector = cvss_data.get("vectorString")
            severity = normalize_severity_label(cvss_data.get("baseSeverity"))
            if severity == Severity.UNKNOWN:
                severity = score_to_severity(score)
            break
    else:
        entries = metrics.get("cvssMetricV2") or []
        if entries:
            cvss_data = entries[0].get("cvssData") or {}
            score = parse_cvss_score(cvss_data.get("baseScore"))
            vector = cvss_data.get("vectorString")
            severity = score_to_severity(score)

    description = next(
        (d.get("value", "") for d in cve.get("descriptions") or [] if d.get("lang") == "en"),
        "",
    )

    cwes: List[str] = []
    for weakness in cve.get("weaknesses") or []:
        for desc in weakness.get("description") or []:
            value = desc.get("value")
            if value and value not in NVD_IGNORED_CWES and value not in cwes:
                cwes.append(value)

    return NVDRecord(
        cve=cve["id"],
        description=description,
        score=score,
        severity=severity,
        cvss_vector=vector,
        cwes=cwes,
        references=[r["url"] for r in cve.get("references") or [] if r.get("url")],
        published_at=cve.get("published"),
        modified_at=cve.get("lastModified"),
    )
