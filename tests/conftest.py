"""
Shared test fixtures and configuration.

Environment variables are set BEFORE any vulnrank imports so the settings
singleton never picks up real credentials from the developer's shell.
"""

import os
import sys

# Ensure the package is importable
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

# Override settings before any vulnrank code imports the settings singleton
os.environ["GITHUB_TOKEN"] = ""
os.environ["NVD_API_KEY"] = ""
os.environ["SOURCES"] = '["osv", "kev", "epss"]'
os.environ["OFFLINE_MODE"] = "false"
os.environ["ENRICHMENT_MAX_RETRIES"] = "2"
os.environ["ENRICHMENT_RETRY_DELAY"] = "0"

import pytest  # noqa: E402

from tests.mocks.advisories import make_dependency, make_vulnerability  # noqa: E402


@pytest.fixture
def libfoo():
    """Direct npm dependency used throughout the aggregation tests."""
    return make_dependency(name="libfoo", version="1.0.0", ecosystem="npm", is_direct=True)


@pytest.fixture
def transitive_dep():
    return make_dependency(
        name="tinyparse", version="0.3.1", ecosystem="npm", is_direct=False, parent="libfoo"
    )


@pytest.fixture
def critical_vuln():
    return make_vulnerability(
        id="CVE-2024-0001",
        severity="CRITICAL",
        score=9.8,
        cvss_vector="CVSS:3.1/AV:N/AC:L/PR:N/UI:N/S:U/C:H/I:H/A:H",
        fixed_version="1.2.0",
    )
