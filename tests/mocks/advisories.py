"""Reusable advisory fixtures, API payload builders and mock HTTP clients."""

import asyncio
import json
from typing import Any, Callable, Dict, List, Optional

import httpx

from vulnrank.models.dependency import Dependency
from vulnrank.models.vulnerability import Vulnerability

Handler = Callable[[httpx.Request], httpx.Response]


def make_dependency(
    name="libfoo",
    version="1.0.0",
    ecosystem="npm",
    is_direct=True,
    **kwargs,
):
    """Create a Dependency with sensible defaults for testing."""
    return Dependency(
        name=name, version=version, ecosystem=ecosystem, is_direct=is_direct, **kwargs
    )


def make_vulnerability(
    id="CVE-2023-0001",
    severity="MEDIUM",
    source="osv",
    **kwargs,
):
    """Create a Vulnerability with sensible defaults for testing."""
    return Vulnerability(id=id, severity=severity, source=source, **kwargs)


def mock_client(handler: Handler) -> httpx.AsyncClient:
    """AsyncClient whose every request is answered by ``handler``."""
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class RecordingHandler:
    """MockTransport handler that records requests and routes by URL substring."""

    def __init__(self, routes: Optional[Dict[str, Handler]] = None):
        self.routes = routes or {}
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        for fragment, handler in self.routes.items():
            if fragment in str(request.url):
                return handler(request)
        return httpx.Response(404, json={"message": "not found"})

    def calls_to(self, fragment: str) -> List[httpx.Request]:
        return [r for r in self.requests if fragment in str(r.url)]


class ConcurrencyRecorder:
    """
    Async route that holds requests open to measure how many run at once.

    Each request waits until ``release_at`` requests are in flight (or
    ``timeout`` passes), then is answered by ``respond``.
    """

    def __init__(self, respond: Handler, release_at: int, timeout: float = 1.0):
        self.respond = respond
        self.release_at = release_at
        self.timeout = timeout
        self.in_flight = 0
        self.peak = 0
        self._released: Optional[asyncio.Event] = None

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        if self._released is None:
            self._released = asyncio.Event()
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        if self.in_flight >= self.release_at:
            self._released.set()
        try:
            await asyncio.wait_for(self._released.wait(), self.timeout)
        except asyncio.TimeoutError:
            pass
        finally:
            self.in_flight -= 1
        return self.respond(request)


def request_body(request: httpx.Request) -> Any:
    return json.loads(request.content.decode())


# ── Payload builders ────────────────────────────────────────────────


def osv_record(
    vuln_id: str,
    aliases=None,
    summary="Prototype pollution",
    severity=None,
    fixed=None,
    introduced="0",
    cwe_ids=None,
    published="2023-01-15T00:00:00Z",
) -> Dict[str, Any]:
    events: List[Dict[str, str]] = [{"introduced": introduced}]
    if fixed:
        events.append({"fixed": fixed})
    record: Dict[str, Any] = {
        "id": vuln_id,
        "aliases": aliases or [],
        "summary": summary,
        "details": f"Details for {vuln_id}",
        "affected": [{"ranges": [{"type": "SEMVER", "events": events}]}],
        "references": [{"type": "WEB", "url": f"https://osv.dev/vulnerability/{vuln_id}"}],
        "published": published,
        "modified": "2023-02-01T00:00:00Z",
        "database_specific": {"cwe_ids": cwe_ids or []},
    }
    if severity:
        record["severity"] = [{"type": "CVSS_V3", "score": severity}]
    return record


def ghsa_node(
    ghsa_id: str,
    cve: Optional[str] = None,
    severity="HIGH",
    vulnerable_range="< 1.2.0",
    patched="1.2.0",
) -> Dict[str, Any]:
    identifiers = [{"type": "GHSA", "value": ghsa_id}]
    if cve:
        identifiers.append({"type": "CVE", "value": cve})
    return {
        "advisory": {
            "ghsaId": ghsa_id,
            "summary": f"Advisory {ghsa_id}",
            "description": "A longer description of the advisory.",
            "severity": severity,
            "identifiers": identifiers,
            "permalink": f"https://github.com/advisories/{ghsa_id}",
            "references": [],
            "publishedAt": "2023-03-01T00:00:00Z",
            "updatedAt": "2023-03-02T00:00:00Z",
            "cwes": {"nodes": [{"cweId": "CWE-1321"}]},
        },
        "vulnerableVersionRange": vulnerable_range,
        "firstPatchedVersion": {"identifier": patched} if patched else None,
    }


def ghsa_response(nodes: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {"data": {"securityVulnerabilities": {"nodes": nodes}}}


def nvd_response(cve_id: str, score=7.5, vector=None, cwes=None) -> Dict[str, Any]:
    vector = vector or "CVSS:3.1/AV:N/AC:L/PR:N/UI:N/S:U/C:H/I:N/A:N"
    return {
        "vulnerabilities": [
            {
                "cve": {
                    "id": cve_id,
                    "descriptions": [{"lang": "en", "value": f"{cve_id} description"}],
                    "metrics": {
                        "cvssMetricV31": [
                            {
                                "cvssData": {
                                    "baseScore": score,
                                    "vectorString": vector,
                                    "baseSeverity": "HIGH",
                                }
                            }
                        ]
                    },
                    "weaknesses": [
                        {"description": [{"lang": "en", "value": c} for c in (cwes or [])]}
                    ],
                    "references": [],
                    "published": "2023-01-01T00:00:00.000",
                    "lastModified": "2023-01-02T00:00:00.000",
                }
            }
        ]
    }


def kev_catalog(cves: List[str]) -> Dict[str, Any]:
    return {
        "title": "CISA Catalog of Known Exploited Vulnerabilities",
        "catalogVersion": "2024.01.01",
        "dateReleased": "2024-01-01T00:00:00.000Z",
        "count": len(cves),
        "vulnerabilities": [
            {
                "cveID": cve,
                "vendorProject": "Example",
                "product": "libfoo",
                "vulnerabilityName": f"{cve} exploited",
                "dateAdded": "2023-06-01",
                "shortDescription": "",
                "requiredAction": "Apply updates",
                "dueDate": "2023-06-22",
                "knownRansomwareCampaignUse": "Unknown",
            }
            for cve in cves
        ],
    }


def epss_response(scores: Dict[str, float], percentile: float = 0.9) -> Dict[str, Any]:
    return {
        "status": "OK",
        "data": [
            {
                "cve": cve,
                "epss": str(score),
                "percentile": str(percentile),
                "date": "2024-01-01",
            }
            for cve, score in scores.items()
        ],
    }
