from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, NamedTuple, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

Source = Literal["community", "osm", "tomtom"]
Severity = Literal["low", "medium", "high", "critical"]

# shared taxonomy; community reports may carry their own types (e.g. "pothole")
HAZARD_TYPES = (
    "construction", "road_closure", "road_work", "barrier", "accident",
    "flooding", "poor_lighting", "road_damage", "other",
)

SEVERITY_RANK: Dict[str, int] = {"low": 0, "medium": 1, "high": 2, "critical": 3}


def as_utc(dt: datetime) -> datetime:
    """Naive datetimes are taken to be UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


class HazardRecord(BaseModel):
    """One hazard, normalized from any source.

    Records are immutable; the merger attaches ``distance_meters`` by copying.
    """

    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )

    id: Union[int, str]
    source: Source
    type: str
    severity: Severity = "medium"
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    description: str = ""
    reported_at: Optional[datetime] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None   # None means ongoing
    verified: bool = False
    status: Optional[str] = None
    distance_meters: Optional[float] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def coordinates(self):
        return self.latitude, self.longitude

    def is_expired(self, now: datetime) -> bool:
        if self.end_date is None:
            return False
        return as_utc(self.end_date) < as_utc(now)


class CacheResult(NamedTuple):
    data: Optional[List[HazardRecord]]
    needs_refresh: bool


class HazardStats(BaseModel):
    total: int = 0
    community: int = 0
    osm: int = 0
    tomtom: int = 0
    merged: int = 0


class AggregateResult(BaseModel):
    hazards: List[HazardRecord]
    stats: HazardStats
