import logging
import threading
import time
from typing import Callable, Dict, List, Optional, Tuple

from .models import CacheResult, HazardRecord

log = logging.getLogger(__name__)

FRESH_SECS = 10 * 60
TTL_SECS = 15 * 60
MAX_ENTRIES = 50


def make_cache_key(lat: float, lon: float, radius_m) -> str:
    # 2 decimals is roughly a 1.1 km cell, so nearby clicks share a line
    return f"{round(lat, 2):.2f},{round(lon, 2):.2f},{radius_m}"


class CacheStore:
    """Per-source hazard cache with fresh / stale-but-usable / expired ages.

    Expired entries are not deleted on read: they stay available through
    ``get_stale_fallback`` until evicted by size.
    """

    def __init__(
        self,
        name: str = "hazards",
        fresh_secs: float = FRESH_SECS,
        ttl_secs: float = TTL_SECS,
        max_entries: int = MAX_ENTRIES,
        clock: Callable[[], float] = time.monotonic,
    ):
        if fresh_secs > ttl_secs:
            raise ValueError("fresh_secs must not exceed ttl_secs")
        self.name = name
        self.fresh_secs = fresh_secs
        self.ttl_secs = ttl_secs
        self.max_entries = max_entries
        self._clock = clock
        self._entries: Dict[str, Tuple[float, Tuple[HazardRecord, ...]]] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._entries

    def get(self, key: str) -> CacheResult:
        with self._lock:
            entry = self._entries.get(key)
        if entry is None:
            return CacheResult(None, False)

        fetched_at, data = entry
        age = self._clock() - fetched_at
        if age < self.fresh_secs:
            log.debug(f"[Cache] {self.name} hit {key} ({age:.0f}s old)")
            return CacheResult(list(data), False)
        if age < self.ttl_secs:
            log.info(f"[Cache] {self.name} stale {key} ({age / 60:.0f}min old), refresh due")
            return CacheResult(list(data), True)
        return CacheResult(None, False)

    def set(self, key: str, data: List[HazardRecord]) -> None:
        with self._lock:
            # re-insert so an overwritten key counts as newest
            self._entries.pop(key, None)
            self._entries[key] = (self._clock(), tuple(data))
            while len(self._entries) > self.max_entries:
                oldest = next(iter(self._entries))
                del self._entries[oldest]
                log.debug(f"[Cache] {self.name} evicted {oldest}")

    def get_stale_fallback(self, key: str) -> Optional[List[HazardRecord]]:
        with self._lock:
            entry = self._entries.get(key)
        if entry is None:
            return None
        return list(entry[1])
