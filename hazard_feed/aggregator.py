import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, Collection, List, Optional, Sequence

from .fusion import DEDUP_THRESHOLD_M, merge_hazards
from .ingestors import SourceAdapter
from .models import SEVERITY_RANK, AggregateResult, HazardRecord, HazardStats

log = logging.getLogger(__name__)

# (lat, lon, radius_m) -> community reports around the point
CommunityProvider = Callable[[float, float, float], Awaitable[List[HazardRecord]]]


class HazardAggregator:
    """Combines community reports with every external source for one query.

    Adapters are merged in the order given, after the community list. Adapter
    fetches never raise; an error from ``community_provider`` does.
    """

    def __init__(
        self,
        community_provider: CommunityProvider,
        adapters: Sequence[SourceAdapter] = (),
        dedup_threshold_m: float = DEDUP_THRESHOLD_M,
    ):
        self.community_provider = community_provider
        self.adapters = list(adapters)
        self.dedup_threshold_m = dedup_threshold_m

    def adapter(self, source: str) -> Optional[SourceAdapter]:
        for a in self.adapters:
            if a.source == source:
                return a
        return None

    async def get_hazards(
        self,
        lat: float,
        lon: float,
        radius_m: float = 5000,
        sources: Optional[Collection[str]] = None,
        types: Optional[Collection[str]] = None,
        min_severity: Optional[str] = None,
        limit: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> AggregateResult:
        active = [a for a in self.adapters if sources is None or a.source in sources]

        community = await self.community_provider(lat, lon, radius_m)
        per_source = await asyncio.gather(*(a.fetch(lat, lon, radius_m) for a in active))

        merged = merge_hazards(
            community, *per_source,
            center=(lat, lon),
            threshold_m=self.dedup_threshold_m,
            now=now,
        )

        stats = HazardStats(community=len(community))
        for a, hazards in zip(active, per_source):
            if a.source in HazardStats.model_fields:
                setattr(stats, a.source, len(hazards))
        stats.total = len(community) + sum(len(h) for h in per_source)
        stats.merged = len(merged)

        if types:
            merged = [h for h in merged if h.type in types]
        if min_severity:
            floor = SEVERITY_RANK[min_severity]
            merged = [h for h in merged if SEVERITY_RANK[h.severity] >= floor]
        if limit is not None:
            merged = merged[:limit]

        log.info(
            f"[Merge] ({lat:.4f},{lon:.4f}) r={radius_m:.0f}m: "
            + ", ".join(f"{k}={v}" for k, v in stats.model_dump().items())
            + f", returned={len(merged)}"
        )
        return AggregateResult(hazards=merged, stats=stats)
