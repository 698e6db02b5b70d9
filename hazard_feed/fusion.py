import logging
from datetime import datetime, timezone
from math import radians, sin, cos, asin, sqrt
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .models import HazardRecord

log = logging.getLogger(__name__)

EARTH_RADIUS_M = 6371000.0
METERS_PER_DEGREE_LAT = 111000.0
DEDUP_THRESHOLD_M = 50.0


def haversine_m(lat1, lon1, lat2, lon2) -> float:
    if None in (lat1, lon1, lat2, lon2):
        return 1e12
    dlat = radians(lat2 - lat1)
    dlon = radians(lon2 - lon1)
    a = sin(dlat/2)**2 + cos(radians(lat1))*cos(radians(lat2))*sin(dlon/2)**2
    return 2*EARTH_RADIUS_M*asin(sqrt(a))


def bounding_box(lat: float, lon: float, radius_m: float) -> Dict[str, float]:
    """Equirectangular box around a center; good enough for a few km."""
    lat_delta = radius_m / METERS_PER_DEGREE_LAT
    lon_delta = radius_m / (METERS_PER_DEGREE_LAT * cos(radians(lat)))
    return {
        "min_lat": lat - lat_delta,
        "max_lat": lat + lat_delta,
        "min_lon": lon - lon_delta,
        "max_lon": lon + lon_delta,
    }


def is_duplicate(candidate: HazardRecord, kept: Iterable[HazardRecord],
                 threshold_m: float = DEDUP_THRESHOLD_M) -> bool:
    for h in kept:
        if h.type != candidate.type:
            continue
        if haversine_m(h.latitude, h.longitude, candidate.latitude, candidate.longitude) < threshold_m:
            return True
    return False


def drop_expired(hazards: Iterable[HazardRecord], now: Optional[datetime] = None) -> List[HazardRecord]:
    now = now or datetime.now(timezone.utc)
    out = []
    for h in hazards:
        if h.is_expired(now):
            log.debug(f"[Merge] dropping expired {h.source} hazard {h.id} (ended {h.end_date})")
            continue
        out.append(h)
    return out


def _sort_key(h: HazardRecord) -> Tuple[int, float]:
    if h.distance_meters is None:
        return (1, 0.0)
    return (0, h.distance_meters)


def merge_hazards(
    community: Sequence[HazardRecord],
    *others: Sequence[HazardRecord],
    center: Optional[Tuple[float, float]] = None,
    threshold_m: float = DEDUP_THRESHOLD_M,
    now: Optional[datetime] = None,
) -> List[HazardRecord]:
    """Merge community reports with machine sources into one list.

    Community reports always survive. A record from ``others`` is dropped when an
    already kept record of the same type lies closer than ``threshold_m``; the
    lists in ``others`` are consumed in the order given. Distances missing on a
    record are filled in relative to ``center``, and the result is sorted
    nearest first with distance-less records last.
    """
    now = now or datetime.now(timezone.utc)
    merged = drop_expired(community, now)

    for source_list in others:
        for h in drop_expired(source_list, now):
            if is_duplicate(h, merged, threshold_m):
                log.debug(f"[Merge] {h.id} duplicates a kept {h.type} hazard within {threshold_m:.0f}m")
                continue
            merged.append(h)

    if center is not None:
        clat, clon = center
        merged = [
            h if h.distance_meters is not None
            else h.model_copy(update={"distance_meters": round(haversine_m(clat, clon, h.latitude, h.longitude))})
            for h in merged
        ]

    merged.sort(key=_sort_key)
    return merged
