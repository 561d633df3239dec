"""
HTTP Utilities

Shared helpers for advisory API calls: one exception type for every way a
request can fail, a JSON request helper with metrics, and a rate limiter for
APIs that require minimum spacing between requests.
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Optional

import httpx

from vulnrank.core.metrics import (
    advisory_rate_limited_total,
    track_advisory_request,
)

logger = logging.getLogger(__name__)

RATE_LIMIT_STATUS_CODES = (403, 429)


class HTTPRequestError(Exception):
    """Base exception for HTTP request failures.

    Raised for transport failures (timeouts, connection errors), HTTP error
    statuses and malformed response bodies alike.
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        retryable: Optional[bool] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self._retryable = retryable

    @property
    def is_rate_limited(self) -> bool:
        return self.status_code in RATE_LIMIT_STATUS_CODES

    @property
    def is_retryable(self) -> bool:
        """Timeouts, connection errors and 5xx responses are worth retrying."""
        if self._retryable is not None:
            return self._retryable
        return self.status_code is None or self.status_code >= 500


async def request_json(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    service_name: str,
    timeout: Optional[float] = None,
    **kwargs: Any,
) -> Any:
    """
    Perform an HTTP request and decode its JSON body.

    Args:
        client: Shared async client
        method: HTTP method
        url: Request URL
        service_name: Name of the external service (for logging and metrics)
        timeout: Per-request timeout in seconds; client default if omitted
        **kwargs: Passed through to ``client.request`` (json, params, headers)

    Returns:
        Decoded JSON payload

    Raises:
        HTTPRequestError: on timeout, connection failure, non-2xx status or
            a body that is not valid JSON
    """
    if timeout is not None:
        kwargs["timeout"] = timeout

    with track_advisory_request(service_name):
        try:
            response = await client.request(method, url, **kwargs)
            response.raise_for_status()
            return response.json()
        except httpx.TimeoutException as e:
            raise HTTPRequestError(f"Timeout calling {service_name}") from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            if status in RATE_LIMIT_STATUS_CODES:
                advisory_rate_limited_total.labels(source=service_name).inc()
            raise HTTPRequestError(
                f"HTTP {status} from {service_name}", status_code=status
            ) from e
        except httpx.RequestError as e:
            raise HTTPRequestError(
                f"Connection error calling {service_name}: {e}"
            ) from e
        except ValueError as e:
            raise HTTPRequestError(f"Malformed response from {service_name}: {e}") from e


class RateLimiter:
    """
    Enforces a minimum interval between consecutive requests.

    Callers await ``wait()`` before each request. Calls are serialized by an
    internal lock, so concurrent callers queue up and are released one at a
    time, each at least ``min_interval`` seconds after the previous one.

    One limiter may be shared across scans that run on different event
    loops; the lock is recreated for each loop, the request timestamp is not.
    A caller may pass its own ``min_interval`` to ``wait()``.
    """

    def __init__(
        self,
        min_interval: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self._last_request: Optional[float] = None
        self._lock: Optional[asyncio.Lock] = None
        self._lock_loop: Optional[asyncio.AbstractEventLoop] = None

    def _get_lock(self) -> asyncio.Lock:
        loop = asyncio.get_running_loop()
        if self._lock is None or self._lock_loop is not loop:
            self._lock = asyncio.Lock()
            self._lock_loop = loop
        return self._lock

    async def wait(self, min_interval: Optional[float] = None) -> None:
        interval = self.min_interval if min_interval is None else min_interval
        async with self._get_lock():
            if self._last_request is not None:
                remaining = interval - (self._clock() - self._last_request)
                if remaining > 0:
                    logger.debug(f"Rate limiter sleeping {remaining:.2f}s")
                    await self._sleep(remaining)
            self._last_request = self._clock()
