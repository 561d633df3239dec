"""
In-process Cache

Explicit time-bounded cache for advisory data that changes slowly (the CISA
KEV catalog). The cache is an ordinary object owned by the adapter that uses
it, so a test or a long-running process can inject, inspect and invalidate it.

Key features:
- Value, fetch time and TTL held together
- Freshness check against an injectable clock
- Stale reads stay available after the TTL for fallback on fetch failure
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Generic, Optional, TypeVar

from vulnrank.core import utc_now
from vulnrank.core.config import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CacheTTL:
    """TTL values in seconds."""

    KEV_CATALOG = settings.KEV_CACHE_TTL_HOURS * 60 * 60


class TTLCache(Generic[T]):
    """
    Single-value cache: {value, fetched_at, ttl}.

    ``get`` only returns a fresh value. ``get_stale`` returns whatever was
    last stored, regardless of age, for stale-but-available fallback.
    """

    def __init__(
        self,
        ttl_seconds: float,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.ttl = timedelta(seconds=ttl_seconds)
        self.value: Optional[T] = None
        self.fetched_at: Optional[datetime] = None
        self._clock = clock

    @property
    def has_value(self) -> bool:
        return self.value is not None

    def age(self) -> Optional[timedelta]:
        if self.fetched_at is None:
            return None
        return self._clock() - self.fetched_at

    def is_fresh(self) -> bool:
        age = self.age()
        return self.has_value and age is not None and age < self.ttl

    def get(self) -> Optional[T]:
        """Return the cached value if it is within its TTL."""
        if self.is_fresh():
            return self.value
        return None

    def get_stale(self) -> Optional[T]:
        """Return the last stored value even if expired."""
        return self.value

    def set(self, value: T, fetched_at: Optional[datetime] = None) -> None:
        self.value = value
        self.fetched_at = fetched_at or self._clock()
        logger.debug(f"Cache updated at {self.fetched_at.isoformat()}")

    def invalidate(self) -> None:
        self.value = None
        self.fetched_at = None
