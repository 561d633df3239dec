import re
from typing import Optional, Tuple, Union

from packaging.version import InvalidVersion, Version
from packaging.version import parse as parse_version

RANGE_CLAUSE = re.compile(r"^(>=|<=|>|<|=)\s*(\S+)$")

VersionKey = Tuple[Tuple[int, int, str], ...]


def parse_version_key(v: str) -> VersionKey:
    """Parse a version string into a comparable tuple.

    Numeric parts compare numerically and rank above alphabetic parts, so
    "1.10" > "1.9" and "1.0.0" > "1.0.rc1". Works for any ecosystem's
    version format.
    """
    v = v.strip().lower()
    if v.startswith("v"):
        v = v[1:]

    parts = []
    for part in re.split(r"[^a-z0-9]+", v):
        if not part:
            continue
        if part.isdigit():
            parts.append((1, int(part), ""))
        else:
            parts.append((0, 0, part))
    return tuple(parts)


def _as_comparable(v: str) -> Union[Version, VersionKey]:
    try:
        return parse_version(v)
    except InvalidVersion:
        return parse_version_key(v)


def compare_versions(a: str, b: str) -> int:
    """Return a negative number, zero or a positive number like cmp()."""
    left, right = _as_comparable(a), _as_comparable(b)
    if type(left) is not type(right):
        left, right = parse_version_key(a), parse_version_key(b)
    if left == right:
        return 0
    return 1 if left > right else -1


def version_in_range(version: str, range_expr: Optional[str]) -> Optional[bool]:
    """
    Check a version against an advisory range such as ">= 1.0, < 1.2.3".

    Returns None when the range cannot be interpreted, so callers can keep
    the advisory rather than silently dropping it.
    """
    if not range_expr:
        return None

    for clause in range_expr.split(","):
        match = RANGE_CLAUSE.match(clause.strip())
        if not match:
            return None
        op, bound = match.groups()
        cmp = compare_versions(version, bound)
        if op == "=" and cmp != 0:
            return False
        if op == ">=" and cmp < 0:
            return False
        if op == ">" and cmp <= 0:
            return False
        if op == "<=" and cmp > 0:
            return False
        if op == "<" and cmp >= 0:
            return False
    return True
