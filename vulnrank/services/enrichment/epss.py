import asyncio
import logging
import math
from typing import Any, Dict, Iterable, List, Optional

import httpx
from pydantic import ValidationError

from vulnrank.core.config import settings
from vulnrank.core.constants import ANALYZER_TIMEOUTS, EPSS_API_URL, EPSS_BATCH_SIZE
from vulnrank.core.http_utils import HTTPRequestError, request_json
from vulnrank.models.vulnerability import Vulnerability
from vulnrank.schemas.enrichment import EPSSData

logger = logging.getLogger(__name__)


class EPSSProvider:
    """Provider for Exploit Prediction Scoring System (EPSS) data."""

    BATCH_SIZE = EPSS_BATCH_SIZE  # Max CVEs per EPSS API request

    def __init__(
        self,
        max_retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
    ):
        self._max_retries = max(
            1,
            max_retries if max_retries is not None else settings.ENRICHMENT_MAX_RETRIES,
        )
        self._retry_delay = (
            retry_delay if retry_delay is not None else settings.ENRICHMENT_RETRY_DELAY
        )

    async def fetch_epss_batch(
        self, client: httpx.AsyncClient, cves: List[str]
    ) -> Dict[str, EPSSData]:
        """Fetch EPSS scores for a batch of CVEs with retry logic."""
        if not cves:
            return {}

        timeout = ANALYZER_TIMEOUTS.get("epss", ANALYZER_TIMEOUTS["default"])
        last_error: Optional[HTTPRequestError] = None

        for attempt in range(self._max_retries):
            try:
                # EPSS API accepts comma-separated CVE list
                data = await request_json(
                    client,
                    "GET",
                    EPSS_API_URL,
                    "EPSS",
                    timeout=timeout,
                    params={"cve": ",".join(cves)},
                )
                results = parse_epss_response(data)

                # Log if some CVEs weren't found (not an error, just info)
                missing = set(cves) - set(results)
                if missing:
                    logger.debug(
                        f"EPSS: No data for {len(missing)} CVEs (may be too new or invalid)"
                    )
                return results
            except HTTPRequestError as e:
                last_error = e
                if e.is_rate_limited:
                    wait_time = self._retry_delay * (2**attempt)  # Exponential backoff
                    logger.warning(f"EPSS API rate limited, waiting {wait_time}s")
                    await asyncio.sleep(wait_time)
                    continue
                if not e.is_retryable:
                    logger.warning(f"EPSS API client error: {e}")
                    raise
                logger.warning(
                    f"EPSS API error (attempt {attempt + 1}/{self._max_retries}): {e}"
                )

            if attempt < self._max_retries - 1:
                await asyncio.sleep(self._retry_delay)

        logger.error(f"EPSS API failed after {self._max_retries} attempts: {last_error}")
        raise HTTPRequestError(f"EPSS unavailable: {last_error}")

    async def fetch_scores(
        self, client: httpx.AsyncClient, cves: List[str]
    ) -> Dict[str, EPSSData]:
        """
        Fetch EPSS data for the given CVEs in batches.

        A failing batch is skipped; HTTPRequestError is raised only if every
        batch failed.
        """
        unique = [c for c in dict.fromkeys(cves) if c.startswith("CVE-")]
        result: Dict[str, EPSSData] = {}
        batches = 0
        failed = 0

        for i in range(0, len(unique), self.BATCH_SIZE):
            batch = unique[i : i + self.BATCH_SIZE]
            batches += 1
            try:
                result.update(await self.fetch_epss_batch(client, batch))
            except HTTPRequestError as e:
                failed += 1
                logger.warning(f"EPSS batch of {len(batch)} CVEs skipped: {e}")

        if batches and failed == batches:
            raise HTTPRequestError(f"All {batches} EPSS batches failed")
        return result

    async def enrich(
        self, client: httpx.AsyncClient, vulnerabilities: Iterable[Vulnerability]
    ) -> int:
        """Fill epss_score/epss_percentile for every vuln carrying a scored CVE."""
        by_cve: Dict[str, List[Vulnerability]] = {}
        for vuln in vulnerabilities:
            for cve in vuln.cve_ids:
                by_cve.setdefault(cve, []).append(vuln)

        if not by_cve:
            return 0

        scores = await self.fetch_scores(client, list(by_cve))
        enriched = set()
        for cve, data in scores.items():
            for vuln in by_cve.get(cve, []):
                vuln.epss_score = data.epss_score
                vuln.epss_percentile = data.percentile
                enriched.add(id(vuln))
        logger.info(f"EPSS: scored {len(enriched)} vulnerabilities")
        return len(enriched)


def parse_epss_response(data: Any) -> Dict[str, EPSSData]:
    if not isinstance(data, dict) or not isinstance(data.get("data"), list):
        raise HTTPRequestError("Malformed EPSS response", retryable=False)

    results: Dict[str, EPSSData] = {}
    for entry in data["data"]:
        cve = entry.get("cve") if isinstance(entry, dict) else None
        if not cve:
            continue
        score = _probability(entry.get("epss"))
        percentile = _probability(entry.get("percentile"))
        if score is None:
            continue
        try:
            data_point = EPSSData(
                cve=cve,
                epss_score=score,
                percentile=percentile if percentile is not None else 0.0,
                date=entry.get("date") or "",
            )
        except ValidationError as e:
            logger.debug(f"Skipping malformed EPSS entry {cve!r}: {e}")
            continue
        results[data_point.cve] = data_point
    return results


def _probability(value: Any) -> Optional[float]:
    """Values arrive as strings ("0.97"); reject anything outside [0, 1]."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(number) or number < 0 or number > 1:
        return None
    return number
