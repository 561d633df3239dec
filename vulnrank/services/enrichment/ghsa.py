import asyncio
import logging
from typing import Any, Dict, List, Optional, Tuple

import httpx

from vulnrank.core.constants import (
    ANALYZER_TIMEOUTS,
    GHSA_CONCURRENT_REQUESTS,
    GHSA_ECOSYSTEM_MAP,
    GHSA_GRAPHQL_URL,
    GHSA_RESULTS_PER_PACKAGE,
)
from vulnrank.core.http_utils import HTTPRequestError, request_json
from vulnrank.models.dependency import Dependency
from vulnrank.models.vulnerability import Vulnerability, VulnerabilitySource, VulnMap
from vulnrank.services.normalizers.severity import normalize_severity_label
from vulnrank.services.normalizers.versions import version_in_range

logger = logging.getLogger(__name__)

SECURITY_VULNERABILITIES_QUERY = """
query($ecosystem: SecurityAdvisoryEcosystem!, $package: String!, $first: Int!) {
  securityVulnerabilities(
    first: $first,
    ecosystem: $ecosystem,
    package: $package,
    orderBy: { field: UPDATED_AT, direction: DESC }
  ) {
    nodes {
      advisory {
        ghsaId
        summary
        description
        severity
        publishedAt
        updatedAt
        permalink
        identifiers { type value }
        references { url }
        cwes(first: 5) { nodes { cweId } }
      }
      package { name ecosystem }
      vulnerableVersionRange
      firstPatchedVersion { identifier }
    }
  }
}
"""


class GHSAProvider:
    """Provider for GitHub Security Advisory (GHSA) data via GraphQL."""

    def __init__(
        self,
        token: Optional[str] = None,
        concurrency: int = GHSA_CONCURRENT_REQUESTS,
    ):
        self._github_token: Optional[str] = None
        self._concurrency = concurrency
        self.set_token(token)

    def set_token(self, token: Optional[str]) -> None:
        """Set the GitHub Personal Access Token. The GraphQL API requires one."""
        self._github_token = token or None
        if token:
            logger.debug("GitHub token configured for GHSA lookups")

    @property
    def has_token(self) -> bool:
        return bool(self._github_token)

    def _get_github_headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self._github_token}",
            "Content-Type": "application/json",
        }

    async def query_package(
        self,
        client: httpx.AsyncClient,
        name: str,
        ecosystem: str,
        version: Optional[str] = None,
    ) -> List[Vulnerability]:
        """
        Fetch advisories for one package.

        With ``version``, advisories whose vulnerable range clearly excludes
        it are dropped; ranges that cannot be interpreted are kept.
        """
        gh_ecosystem = GHSA_ECOSYSTEM_MAP.get(ecosystem)
        if not self._github_token or not gh_ecosystem:
            return []

        data = await request_json(
            client,
            "POST",
            GHSA_GRAPHQL_URL,
            "GHSA",
            timeout=ANALYZER_TIMEOUTS.get("ghsa", ANALYZER_TIMEOUTS["default"]),
            headers=self._get_github_headers(),
            json={
                "query": SECURITY_VULNERABILITIES_QUERY,
                "variables": {
                    "ecosystem": gh_ecosystem,
                    "package": name,
                    "first": GHSA_RESULTS_PER_PACKAGE,
                },
            },
        )

        if not isinstance(data, dict) or not isinstance(data.get("data"), dict):
            errors = data.get("errors") if isinstance(data, dict) else None
            first = errors[0] if isinstance(errors, list) and errors else None
            message = first.get("message") if isinstance(first, dict) else "missing data"
            raise HTTPRequestError(f"GitHub GraphQL error for {name}: {message}")

        connection = data["data"].get("securityVulnerabilities") or {}
        nodes = connection.get("nodes") if isinstance(connection, dict) else None
        if not isinstance(nodes, list):
            nodes = []
        vulns: List[Vulnerability] = []
        for node in nodes:
            try:
                vuln = convert_ghsa_node(node)
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed GHSA node for {name}: {e}")
                continue
            if version and version_in_range(version, vuln.affected_versions) is False:
                continue
            if not any(v.id == vuln.id for v in vulns):
                vulns.append(vuln)
        return vulns

    async def query_batch(
        self, client: httpx.AsyncClient, dependencies: List[Dependency]
    ) -> VulnMap:
        """
        Query advisories for direct dependencies only.

        GitHub offers no batch endpoint, so packages are looked up
        individually with a bounded number of requests in flight.
        """
        if not self._github_token:
            logger.debug("GHSA skipped: no GitHub token configured")
            return {}

        direct = [d for d in dependencies if d.is_direct]
        if not direct:
            return {}

        semaphore = asyncio.Semaphore(self._concurrency)

        async def lookup(dep: Dependency) -> Tuple[Dependency, Optional[List[Vulnerability]]]:
            async with semaphore:
                try:
                    vulns = await self.query_package(
                        client, dep.name, dep.ecosystem, dep.version
                    )
                    return dep, vulns
                except HTTPRequestError as e:
                    logger.warning(f"GHSA lookup for {dep.name} failed: {e}")
                    return dep, None

        pairs = await asyncio.gather(*(lookup(dep) for dep in direct))

        if all(vulns is None for _, vulns in pairs):
            raise HTTPRequestError(f"All {len(pairs)} GHSA lookups failed")

        results: VulnMap = {dep.key: vulns for dep, vulns in pairs if vulns}

        logger.info(
            f"GHSA: {sum(len(v) for v in results.values())} advisories "
            f"for {len(results)} of {len(direct)} direct dependencies"
        )
        return results


def convert_ghsa_node(node: Dict[str, Any]) -> Vulnerability:
    """Convert a securityVulnerabilities node into a Vulnerability."""
    advisory = node["advisory"]
    ghsa_id = advisory["ghsaId"]

    aliases = [
        ident["value"]
        for ident in advisory.get("identifiers") or []
        if ident.get("type") == "CVE" and ident.get("value")
    ]
    references = [advisory["permalink"]] if advisory.get("permalink") else []
    references += [r["url"] for r in advisory.get("references") or [] if r.get("url")]
    patched = node.get("firstPatchedVersion") or {}
    cwes = (advisory.get("cwes") or {}).get("nodes") or []

    return Vulnerability(
        id=ghsa_id,
        aliases=list(dict.fromkeys(aliases)),
        summary=advisory.get("summary") or "No summary",
        details=advisory.get("description") or "",
        severity=normalize_severity_label(advisory.get("severity")),
        fixed_version=patched.get("identifier"),
        affected_versions=node.get("vulnerableVersionRange") or "unknown",
        references=list(dict.fromkeys(references)),
        published_at=advisory.get("publishedAt"),
        modified_at=advisory.get("updatedAt"),
        source=VulnerabilitySource.GHSA,
        cwes=[c["cweId"] for c in cwes if c.get("cweId")],
    )
