"""Tests for the OSV batch analyzer and record conversion."""

import asyncio

import httpx
import pytest

from vulnrank.core.http_utils import HTTPRequestError
from vulnrank.models.vulnerability import Severity, VulnerabilitySource
from vulnrank.services.analyzers.osv import OSVAnalyzer, convert_osv_vulnerability
from tests.mocks.advisories import (
    ConcurrencyRecorder,
    RecordingHandler,
    make_dependency,
    mock_client,
    osv_record,
    request_body,
)


def _run(analyzer, handler, deps):
    async def run():
        async with mock_client(handler) as client:
            return await analyzer.query(client, deps)

    return asyncio.run(run())


class TestConvertOsvVulnerability:
    def test_cvss_vector_is_scored(self):
        raw = osv_record(
            "GHSA-aaaa-bbbb-cccc",
            severity="CVSS:3.1/AV:N/AC:L/PR:N/UI:N/S:U/C:H/I:H/A:H",
        )
        vuln = convert_osv_vulnerability(raw)
        assert vuln.score == 9.8
        assert vuln.severity == Severity.CRITICAL
        assert vuln.cvss_vector.startswith("CVSS:3.1/")
        assert vuln.source == VulnerabilitySource.OSV

    def test_database_specific_label_used_without_score(self):
        raw = osv_record("GHSA-aaaa-bbbb-cccc")
        raw["database_specific"]["severity"] = "MODERATE"
        vuln = convert_osv_vulnerability(raw)
        assert vuln.score is None
        assert vuln.severity == Severity.MEDIUM

    def test_ghsa_id_without_any_severity_defaults_to_medium(self):
        vuln = convert_osv_vulnerability(osv_record("GHSA-aaaa-bbbb-cccc"))
        assert vuln.severity == Severity.MEDIUM

    def test_other_id_without_severity_is_unknown(self):
        vuln = convert_osv_vulnerability(osv_record("PYSEC-2023-10"))
        assert vuln.severity == Severity.UNKNOWN

    def test_fixed_version_and_range(self):
        vuln = convert_osv_vulnerability(osv_record("CVE-2023-1", fixed="1.2.0", introduced="1.0.0"))
        assert vuln.fixed_version == "1.2.0"
        assert vuln.affected_versions == ">=1.0.0, <1.2.0"

    def test_self_alias_dropped(self):
        vuln = convert_osv_vulnerability(
            osv_record("CVE-2023-1", aliases=["CVE-2023-1", "GHSA-x", "GHSA-x"])
        )
        assert vuln.aliases == ["GHSA-x"]

    def test_cwes_copied(self):
        vuln = convert_osv_vulnerability(osv_record("CVE-2023-1", cwe_ids=["CWE-79"]))
        assert vuln.cwes == ["CWE-79"]

    def test_cvss_v4_vector_is_scored(self):
        raw = osv_record("CVE-2024-1")
        raw["severity"] = [
            {
                "type": "CVSS_V4",
                "score": "CVSS:4.0/AV:N/AC:L/AT:N/PR:N/UI:N/VC:H/VI:H/VA:H/SC:N/SI:N/SA:N",
            }
        ]
        vuln = convert_osv_vulnerability(raw)
        assert vuln.score == 9.3
        assert vuln.severity == Severity.CRITICAL
        assert vuln.cvss_vector.startswith("CVSS:4.0/")


class TestOSVAnalyzerQuery:
    def setup_method(self):
        self.lodash = make_dependency(name="lodash", version="4.17.20", ecosystem="npm")
        self.requests = make_dependency(name="requests", version="2.19.0", ecosystem="pip")

    def test_batch_results_are_keyed_by_dependency(self):
        def batch(request):
            return httpx.Response(
                200,
                json={
                    "results": [
                        {"vulns": [osv_record("GHSA-lodash-1", fixed="4.17.21")]},
                        {},
                    ]
                },
            )

        handler = RecordingHandler({"/querybatch": batch})
        result = _run(OSVAnalyzer(), handler, [self.lodash, self.requests])

        assert list(result) == ["npm:lodash@4.17.20"]
        assert result["npm:lodash@4.17.20"][0].id == "GHSA-lodash-1"

    def test_ecosystems_are_mapped_to_osv_names(self):
        handler = RecordingHandler(
            {"/querybatch": lambda r: httpx.Response(200, json={"results": [{}, {}]})}
        )
        _run(OSVAnalyzer(), handler, [self.lodash, self.requests])

        queries = request_body(handler.requests[0])["queries"]
        assert queries[0]["package"] == {"name": "lodash", "ecosystem": "npm"}
        assert queries[1]["package"] == {"name": "requests", "ecosystem": "PyPI"}
        assert queries[1]["version"] == "2.19.0"

    def test_abbreviated_records_are_fetched_in_full(self):
        handler = RecordingHandler(
            {
                "/querybatch": lambda r: httpx.Response(
                    200, json={"results": [{"vulns": [{"id": "GHSA-1", "modified": "x"}]}]}
                ),
                "/vulns/GHSA-1": lambda r: httpx.Response(
                    200, json=osv_record("GHSA-1", summary="Full record", fixed="4.17.21")
                ),
            }
        )
        result = _run(OSVAnalyzer(), handler, [self.lodash])

        vuln = result["npm:lodash@4.17.20"][0]
        assert vuln.summary == "Full record"
        assert vuln.fixed_version == "4.17.21"

    def test_failed_detail_fetch_keeps_batch_record(self):
        handler = RecordingHandler(
            {
                "/querybatch": lambda r: httpx.Response(
                    200, json={"results": [{"vulns": [{"id": "GHSA-1", "modified": "x"}]}]}
                ),
                "/vulns/GHSA-1": lambda r: httpx.Response(500),
            }
        )
        result = _run(OSVAnalyzer(), handler, [self.lodash])

        vuln = result["npm:lodash@4.17.20"][0]
        assert vuln.id == "GHSA-1"
        assert vuln.summary == "No summary available"
        assert len(handler.calls_to("/vulns/GHSA-1")) == 1

    def test_dependencies_are_chunked(self):
        def batch(request):
            count = len(request_body(request)["queries"])
            return httpx.Response(200, json={"results": [{}] * count})

        handler = RecordingHandler({"/querybatch": batch})
        deps = [make_dependency(name=f"pkg{i}") for i in range(5)]
        _run(OSVAnalyzer(batch_size=2), handler, deps)

        assert [len(request_body(r)["queries"]) for r in handler.requests] == [2, 2, 1]

    def test_one_failed_batch_is_skipped(self):
        calls = []

        def batch(request):
            calls.append(request)
            if len(calls) == 1:
                return httpx.Response(503)
            return httpx.Response(
                200, json={"results": [{"vulns": [osv_record("CVE-2023-5")]}]}
            )

        deps = [make_dependency(name="a"), make_dependency(name="b")]
        result = _run(OSVAnalyzer(batch_size=1), RecordingHandler({"/querybatch": batch}), deps)
        assert list(result) == ["npm:b@1.0.0"]

    def test_all_batches_failed_raises(self):
        handler = RecordingHandler({"/querybatch": lambda r: httpx.Response(500)})
        with pytest.raises(HTTPRequestError):
            _run(OSVAnalyzer(), handler, [self.lodash])

    def test_malformed_response_raises(self):
        handler = RecordingHandler({"/querybatch": lambda r: httpx.Response(200, json=[])})
        with pytest.raises(HTTPRequestError):
            _run(OSVAnalyzer(), handler, [self.lodash])

    def test_duplicate_ids_within_dependency_collapsed(self):
        record = osv_record("CVE-2023-7")
        handler = RecordingHandler(
            {
                "/querybatch": lambda r: httpx.Response(
                    200, json={"results": [{"vulns": [record, record]}]}
                )
            }
        )
        result = _run(OSVAnalyzer(), handler, [self.lodash])
        assert len(result["npm:lodash@4.17.20"]) == 1

    def test_malformed_records_do_not_drop_other_dependencies(self):
        broken = {"id": "CVE-2023-2", "summary": "Broken", "severity": ["junk"]}
        handler = RecordingHandler(
            {
                "/querybatch": lambda r: httpx.Response(
                    200,
                    json={
                        "results": [
                            {"vulns": [broken]},
                            {"vulns": ["junk", 42, {"summary": "no id"}]},
                            {"vulns": "junk"},
                            {"vulns": [osv_record("CVE-2023-3")]},
                        ]
                    },
                )
            }
        )
        deps = [make_dependency(name=n) for n in ("a", "b", "c", "d")]
        result = _run(OSVAnalyzer(), handler, deps)

        assert list(result) == ["npm:d@1.0.0"]
        assert result["npm:d@1.0.0"][0].id == "CVE-2023-3"
        assert handler.calls_to("/vulns/") == []

    def test_detail_fetches_are_capped_at_twenty(self):
        stubs = [{"id": f"OSV-{i}"} for i in range(30)]
        details = ConcurrencyRecorder(
            lambda r: httpx.Response(200, json=osv_record(r.url.path.rsplit("/", 1)[-1])),
            release_at=20,
        )
        handler = RecordingHandler(
            {
                "/querybatch": lambda r: httpx.Response(
                    200, json={"results": [{"vulns": stubs}]}
                ),
                "/vulns/": details,
            }
        )
        result = _run(OSVAnalyzer(), handler, [self.lodash])

        assert details.peak == 20
        assert len(handler.calls_to("/vulns/")) == 30
        assert len(result["npm:lodash@4.17.20"]) == 30
        assert result["npm:lodash@4.17.20"][0].summary == "Prototype pollution"

    def test_detail_requests_use_five_second_timeout(self):
        handler = RecordingHandler(
            {
                "/querybatch": lambda r: httpx.Response(
                    200, json={"results": [{"vulns": [{"id": "GHSA-1"}]}]}
                ),
                "/vulns/GHSA-1": lambda r: httpx.Response(200, json=osv_record("GHSA-1")),
            }
        )
        _run(OSVAnalyzer(), handler, [self.lodash])

        timeout = handler.calls_to("/vulns/GHSA-1")[0].extensions["timeout"]
        assert timeout["read"] == 5.0
        assert timeout["connect"] == 5.0
