"""Vulnerability aggregation and remediation prioritization."""

__version__ = "1.0.0"
