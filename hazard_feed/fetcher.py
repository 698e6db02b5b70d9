import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Sequence

import httpx

log = logging.getLogger(__name__)


class SourceUnavailable(Exception):
    """Every endpoint of a provider failed."""

    def __init__(self, message: str, last_status: Optional[int] = None):
        super().__init__(message)
        self.last_status = last_status


class EndpointFailover:
    """Primary endpoint with one 429 backoff retry, then alternates in order.

    The primary gets ``primary_timeout``; alternates get ``alternate_timeout``.
    Any non-2xx answer, timeout or transport error counts as a failure.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        primary: str,
        alternates: Sequence[str] = (),
        primary_timeout: float = 30.0,
        alternate_timeout: Optional[float] = None,
        rate_limit_backoff: float = 2.0,
        name: str = "http",
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.client = client
        self.primary = primary
        self.alternates = list(alternates)
        self.primary_timeout = primary_timeout
        self.alternate_timeout = alternate_timeout or primary_timeout
        self.rate_limit_backoff = rate_limit_backoff
        self.name = name
        self._sleep = sleep

    async def _attempt(self, method: str, url: str, timeout: float, **kwargs) -> httpx.Response:
        r = await self.client.request(method, url, timeout=timeout, **kwargs)
        r.raise_for_status()
        return r

    async def request(self, method: str, **kwargs) -> httpx.Response:
        last_status: Optional[int] = None

        for attempt in range(2):
            try:
                return await self._attempt(method, self.primary, self.primary_timeout, **kwargs)
            except httpx.HTTPStatusError as e:
                last_status = e.response.status_code
                if last_status == 429 and attempt == 0:
                    log.warning(f"[{self.name}] rate limited by {self.primary}, retrying in {self.rate_limit_backoff}s")
                    await self._sleep(self.rate_limit_backoff)
                    continue
                log.warning(f"[{self.name}] primary endpoint failed: HTTP {last_status}")
            except httpx.HTTPError as e:
                log.warning(f"[{self.name}] primary endpoint failed: {type(e).__name__}: {e}")
            break

        for url in self.alternates:
            try:
                r = await self._attempt(method, url, self.alternate_timeout, **kwargs)
                log.info(f"[{self.name}] alternate endpoint {url} succeeded")
                return r
            except httpx.HTTPStatusError as e:
                last_status = e.response.status_code
                log.warning(f"[{self.name}] alternate {url} failed: HTTP {last_status}")
            except httpx.HTTPError as e:
                log.warning(f"[{self.name}] alternate {url} failed: {type(e).__name__}: {e}")

        if last_status == 429:
            log.error(f"[{self.name}] rate limit exceeded on every endpoint")
        raise SourceUnavailable(f"all {self.name} endpoints failed", last_status)
