import asyncio
import logging
from typing import Any, Dict, Iterable, Optional

import httpx
from pydantic import ValidationError

from vulnrank.core.cache import CacheTTL, TTLCache
from vulnrank.core.config import settings
from vulnrank.core.constants import ANALYZER_TIMEOUTS, KEV_CATALOG_URL
from vulnrank.core.http_utils import HTTPRequestError, request_json
from vulnrank.models.vulnerability import Severity, Vulnerability
from vulnrank.schemas.enrichment import KEVCatalog, KEVEntry
from vulnrank.services.normalizers.severity import raise_to_floor

logger = logging.getLogger(__name__)


class KEVProvider:
    """Provider for CISA Known Exploited Vulnerabilities (KEV) catalog."""

    def __init__(
        self,
        cache: Optional[TTLCache[KEVCatalog]] = None,
        max_retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
    ):
        self.cache: TTLCache[KEVCatalog] = (
            cache if cache is not None else TTLCache(CacheTTL.KEV_CATALOG)
        )
        self._max_retries = max(
            1,
            max_retries if max_retries is not None else settings.ENRICHMENT_MAX_RETRIES,
        )
        self._retry_delay = (
            retry_delay if retry_delay is not None else settings.ENRICHMENT_RETRY_DELAY
        )

    async def fetch_catalog(self, client: httpx.AsyncClient) -> KEVCatalog:
        """Fetch KEV catalog from CISA with retry logic."""
        timeout = ANALYZER_TIMEOUTS.get("kev", ANALYZER_TIMEOUTS["default"])
        last_error: Optional[HTTPRequestError] = None

        for attempt in range(self._max_retries):
            try:
                data = await request_json(
                    client, "GET", KEV_CATALOG_URL, "CISA KEV", timeout=timeout
                )
                catalog = parse_kev_catalog(data)
                logger.info(f"Fetched {catalog.count} entries from CISA KEV catalog")
                return catalog
            except HTTPRequestError as e:
                last_error = e
                if not e.is_retryable:
                    # Client error (4xx) or unusable payload - don't retry
                    logger.warning(f"KEV catalog fetch failed: {e}")
                    raise
                logger.warning(
                    f"KEV catalog fetch failed "
                    f"(attempt {attempt + 1}/{self._max_retries}): {e}"
                )

            if attempt < self._max_retries - 1:
                await asyncio.sleep(self._retry_delay * (attempt + 1))

        logger.error(
            f"KEV catalog fetch failed after {self._max_retries} attempts: {last_error}"
        )
        raise HTTPRequestError(
            f"KEV catalog unavailable: {last_error}",
            status_code=last_error.status_code if last_error else None,
        )

    async def load_catalog(self, client: httpx.AsyncClient) -> KEVCatalog:
        """
        Return the KEV catalog, fetching only when the cache has expired.

        If the fetch fails and an older catalog is cached, that stale catalog
        is returned. Raises HTTPRequestError only when no catalog was ever
        loaded.
        """
        cached = self.cache.get()
        if cached is not None:
            logger.debug(f"KEV catalog loaded from cache ({cached.count} entries)")
            return cached

        try:
            catalog = await self.fetch_catalog(client)
        except HTTPRequestError as e:
            stale = self.cache.get_stale()
            if stale is None:
                raise
            logger.warning(
                f"Using stale KEV catalog (age {self.cache.age()}) after fetch failure: {e}"
            )
            return stale

        self.cache.set(catalog)
        return catalog

    async def enrich(
        self, client: httpx.AsyncClient, vulnerabilities: Iterable[Vulnerability]
    ) -> int:
        catalog = await self.load_catalog(client)
        return apply_kev_catalog(vulnerabilities, catalog)


def parse_kev_catalog(data: Any) -> KEVCatalog:
    if not isinstance(data, dict) or not isinstance(data.get("vulnerabilities"), list):
        raise HTTPRequestError("Malformed KEV catalog", retryable=False)

    entries: Dict[str, KEVEntry] = {}
    skipped = 0
    for vuln in data["vulnerabilities"]:
        cve = vuln.get("cveID") if isinstance(vuln, dict) else None
        if not cve:
            continue
        try:
            entry = _convert_kev_entry(vuln)
        except (ValidationError, AttributeError, TypeError, ValueError) as e:
            skipped += 1
            logger.debug(f"Skipping malformed KEV entry {cve!r}: {e}")
            continue
        entries[entry.cve] = entry

    if skipped:
        logger.warning(f"Skipped {skipped} malformed KEV catalog entries")

    # KEV catalog has 1000+ entries, empty is suspicious - never cache it
    if not entries:
        raise HTTPRequestError("KEV catalog returned no entries", retryable=False)

    try:
        return KEVCatalog(
            title=data.get("title") or "",
            catalog_version=data.get("catalogVersion") or "",
            date_released=data.get("dateReleased") or "",
            entries=entries,
        )
    except ValidationError as e:
        raise HTTPRequestError(f"Malformed KEV catalog: {e}", retryable=False) from e


def _convert_kev_entry(vuln: Dict[str, Any]) -> KEVEntry:
    ransomware_value = vuln.get("knownRansomwareCampaignUse") or ""
    return KEVEntry(
        cve=vuln["cveID"],
        vendor_project=vuln.get("vendorProject") or "",
        product=vuln.get("product") or "",
        vulnerability_name=vuln.get("vulnerabilityName") or "",
        date_added=vuln.get("dateAdded") or "",
        short_description=vuln.get("shortDescription") or "",
        required_action=vuln.get("requiredAction") or "",
        due_date=vuln.get("dueDate") or "",
        known_ransomware_use=str(ransomware_value).lower() == "known",
    )


def apply_kev_catalog(
    vulnerabilities: Iterable[Vulnerability], catalog: KEVCatalog
) -> int:
    """
    Flag vulnerabilities whose id or any alias is in the catalog.

    Known-exploited vulnerabilities are always at least HIGH severity.
    Returns the number of vulnerabilities flagged.
    """
    flagged = 0
    for vuln in vulnerabilities:
        entry = next((catalog.get(i) for i in vuln.all_ids if catalog.get(i)), None)
        if entry is None:
            continue
        vuln.is_known_exploited = True
        vuln.kev_date_added = entry.date_added or None
        vuln.kev_due_date = entry.due_date or None
        vuln.severity = raise_to_floor(vuln.severity, Severity.HIGH)
        flagged += 1
    return flagged
