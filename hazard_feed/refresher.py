import asyncio
import logging
from typing import Awaitable, Callable, List, Set

from .cache import CacheStore
from .models import HazardRecord

log = logging.getLogger(__name__)

FetchFn = Callable[[], Awaitable[List[HazardRecord]]]


class BackgroundRefresher:
    """Re-fetches stale cache lines off the request path, one task per key.

    A ``schedule`` call for a key that already has a refresh in flight is a
    no-op. Failures are logged and the old cache line is left as it was.
    """

    def __init__(self, cache: CacheStore):
        self.cache = cache
        self._in_flight: Set[str] = set()
        self._tasks: Set[asyncio.Task] = set()

    def in_flight(self, key: str) -> bool:
        return key in self._in_flight

    def schedule(self, key: str, fetch_fn: FetchFn) -> bool:
        """Start a refresh for ``key``; returns False when one is already running."""
        if key in self._in_flight:
            log.debug(f"[Refresh] {self.cache.name} {key} already in flight")
            return False
        self._in_flight.add(key)
        task = asyncio.create_task(self._run(key, fetch_fn))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return True

    async def _run(self, key: str, fetch_fn: FetchFn) -> None:
        try:
            log.info(f"[Refresh] refreshing {self.cache.name} {key} in background")
            data = await fetch_fn()
            self.cache.set(key, data)
            log.info(f"[Refresh] {self.cache.name} {key} refreshed ({len(data)} hazards)")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.warning(f"[Refresh] {self.cache.name} {key} failed, keeping old cache: {e}")
        finally:
            self._in_flight.discard(key)

    async def drain(self) -> None:
        """Wait for every pending refresh."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await self.drain()
