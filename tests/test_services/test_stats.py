"""Tests for the global scan risk score and scan metrics."""

from datetime import datetime, timezone

import pytest

from vulnrank.services.stats import (
    calculate_metrics,
    calculate_risk_score,
    risk_score_to_level,
    vulnerability_weight,
)
from tests.mocks.advisories import make_dependency, make_vulnerability

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _transitive(*vulns):
    return [(make_dependency(name="dep", is_direct=False), list(vulns))]


class TestVulnerabilityWeight:
    def test_base_weights(self):
        assert vulnerability_weight(make_vulnerability(severity="CRITICAL"), False) == 10
        assert vulnerability_weight(make_vulnerability(severity="LOW"), False) == 0.5
        assert vulnerability_weight(make_vulnerability(severity="UNKNOWN"), False) == 0.25

    def test_all_multipliers(self):
        vuln = make_vulnerability(
            severity="CRITICAL",
            is_known_exploited=True,
            epss_score=0.6,
            fixed_version="2.0.0",
        )
        # 10 x 3 (KEV) x 1.5 (EPSS) x 1.25 (direct) x 0.8 (fix)
        assert vulnerability_weight(vuln, True) == pytest.approx(45.0)

    def test_epss_threshold_is_exclusive(self):
        vuln = make_vulnerability(severity="HIGH", epss_score=0.5)
        assert vulnerability_weight(vuln, False) == 5


class TestCalculateRiskScore:
    def test_no_vulnerabilities(self):
        assert calculate_risk_score([]) == 0
        assert calculate_risk_score(_transitive()) == 0

    def test_single_critical(self):
        assert calculate_risk_score(_transitive(make_vulnerability(severity="CRITICAL"))) == 69

    def test_direct_critical_scores_higher(self):
        results = [(make_dependency(is_direct=True), [make_vulnerability(severity="CRITICAL")])]
        assert calculate_risk_score(results) == 75

    def test_fix_available_lowers_score(self):
        vuln = make_vulnerability(severity="CRITICAL", fixed_version="1.0.1")
        assert calculate_risk_score(_transitive(vuln)) == 63

    def test_kev_critical(self):
        vuln = make_vulnerability(severity="CRITICAL", is_known_exploited=True)
        assert calculate_risk_score(_transitive(vuln)) == 99

    def test_saturates_at_100(self):
        vulns = [make_vulnerability(id=f"CVE-{i}", severity="CRITICAL") for i in range(20)]
        assert calculate_risk_score(_transitive(*vulns)) == 100


class TestRiskScoreToLevel:
    def test_thresholds(self):
        assert risk_score_to_level(100) == "critical"
        assert risk_score_to_level(80) == "critical"
        assert risk_score_to_level(79) == "high"
        assert risk_score_to_level(60) == "high"
        assert risk_score_to_level(59) == "medium"
        assert risk_score_to_level(30) == "medium"
        assert risk_score_to_level(29) == "low"
        assert risk_score_to_level(1) == "low"
        assert risk_score_to_level(0) == "none"

    def test_single_low_is_low(self):
        score = calculate_risk_score(_transitive(make_vulnerability(severity="LOW")))
        assert score == 12
        assert risk_score_to_level(score) == "low"


class TestCalculateMetrics:
    def setup_method(self):
        self.recent = make_vulnerability(
            id="CVE-2023-10", severity="LOW", published_at="2023-12-22T00:00:00Z"
        )
        self.older_unfixed = make_vulnerability(
            id="CVE-2023-31", severity="CRITICAL", published_at="2023-12-01T00:00:00Z"
        )
        self.oldest_fixed = make_vulnerability(
            id="CVE-2023-365",
            severity="CRITICAL",
            published_at="2023-01-01T00:00:00Z",
            fixed_version="1.0.1",
            is_known_exploited=True,
            epss_score=0.8,
        )
        self.undated = make_vulnerability(
            id="CVE-2023-X", severity="HIGH", fixed_version="2.0.0", epss_score=0.2
        )
        self.results = [
            (make_dependency(name="a", is_direct=True), [self.recent, self.older_unfixed]),
            (make_dependency(name="b", is_direct=False), [self.oldest_fixed, self.undated]),
            (make_dependency(name="c", is_direct=False), []),
        ]

    def test_age_metrics(self):
        metrics = calculate_metrics(self.results, now=NOW)
        assert metrics.median_vuln_age == 31
        assert metrics.oldest_unfixed_vuln.id == "CVE-2023-31"
        assert metrics.oldest_unfixed_vuln.age == 31
        assert metrics.oldest_unfixed_vuln.severity == "CRITICAL"

    def test_fix_kev_and_epss_metrics(self):
        metrics = calculate_metrics(self.results, now=NOW)
        assert metrics.critical_with_fix == 1
        assert metrics.high_with_fix == 1
        assert metrics.kev_count == 1
        assert metrics.kev_with_fix == 1
        assert metrics.max_epss_score == 0.8
        assert metrics.avg_epss_score == pytest.approx(0.5)
        assert metrics.high_epss_count == 1

    def test_dependency_counts_and_risk(self):
        metrics = calculate_metrics(self.results, now=NOW)
        assert metrics.direct_dependencies == 1
        assert metrics.transitive_dependencies == 2
        assert metrics.risk_score == calculate_risk_score(self.results)
        assert metrics.risk_level == risk_score_to_level(metrics.risk_score)

    def test_empty_results(self):
        metrics = calculate_metrics([], now=NOW)
        assert metrics.risk_score == 0
        assert metrics.risk_level == "none"
        assert metrics.median_vuln_age == 0
        assert metrics.oldest_unfixed_vuln is None
        assert metrics.avg_epss_score == 0.0

    def test_future_publish_date_clamps_to_zero(self):
        vuln = make_vulnerability(published_at="2024-06-01T00:00:00Z")
        metrics = calculate_metrics(_transitive(vuln), now=NOW)
        assert metrics.oldest_unfixed_vuln.age == 0
