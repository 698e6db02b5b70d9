import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

import httpx
from pydantic import ValidationError

from .cache import CacheStore, make_cache_key
from .fetcher import EndpointFailover
from .fusion import bounding_box, haversine_m
from .models import CacheResult, HazardRecord, as_utc
from .refresher import BackgroundRefresher

log = logging.getLogger(__name__)

PARSE_ERRORS = (AttributeError, KeyError, IndexError, TypeError, ValueError, ValidationError)


def _now():
    return datetime.now(timezone.utc)


def parse_date(value: Any) -> Optional[datetime]:
    """Parse the loose date strings found in OSM tags and provider payloads.

    Accepts ISO dates/datetimes (with or without ``Z``), ``YYYY-MM`` and ``YYYY``.
    Returns None for anything else.
    """
    if value is None:
        return None
    s = str(value).strip()
    if not s:
        return None
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    try:
        return as_utc(datetime.fromisoformat(s))
    except ValueError:
        pass
    for fmt in ("%Y-%m", "%Y"):
        try:
            return datetime.strptime(s, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
    return None


def years_before(now: datetime, years: int) -> datetime:
    try:
        return now.replace(year=now.year - years)
    except ValueError:
        # Feb 29 -> Feb 28
        return now.replace(year=now.year - years, day=28)


class SourceAdapter:
    """Cached fetch for one external hazard provider.

    Subclasses implement ``request`` (raw payload from the provider) and
    ``parse`` (payload -> records). ``fetch`` never raises: a provider failure
    falls back to whatever the cache still holds, or to an empty list.
    """

    source = "unknown"

    def __init__(self, cache: CacheStore, refresher: Optional[BackgroundRefresher] = None):
        self.cache = cache
        self.refresher = refresher or BackgroundRefresher(cache)

    @property
    def enabled(self) -> bool:
        return True

    async def request(self, lat: float, lon: float, radius_m: float) -> Any:
        raise NotImplementedError

    def parse(self, payload: Any, lat: float, lon: float, now: Optional[datetime] = None) -> List[HazardRecord]:
        raise NotImplementedError

    async def fetch_live(self, lat: float, lon: float, radius_m: float) -> List[HazardRecord]:
        payload = await self.request(lat, lon, radius_m)
        hazards = self.parse(payload, lat, lon)
        log.info(f"[{self.source.upper()}] fetched {len(hazards)} hazards near ({lat:.4f},{lon:.4f})")
        return hazards

    async def fetch(self, lat: float, lon: float, radius_m: float = 5000) -> List[HazardRecord]:
        if not self.enabled:
            return []

        key = make_cache_key(lat, lon, radius_m)
        try:
            cached = self.cache.get(key)
        except Exception as e:
            log.warning(f"[{self.source.upper()}] unreadable cache line {key}, treating as miss: {e}")
            cached = CacheResult(None, False)

        if cached.data is not None:
            if cached.needs_refresh:
                self.refresher.schedule(key, lambda: self.fetch_live(lat, lon, radius_m))
            return cached.data

        try:
            hazards = await self.fetch_live(lat, lon, radius_m)
        except Exception as e:
            log.error(f"[{self.source.upper()}] live fetch failed: {e}")
            fallback = self.cache.get_stale_fallback(key)
            if fallback is not None:
                log.warning(f"[{self.source.upper()}] serving expired cache for {key}")
                return fallback
            return []

        self.cache.set(key, hazards)
        return hazards


# ---- OpenStreetMap (Overpass) ----

OVERPASS_URL = "https://overpass-api.de/api/interpreter"
OVERPASS_ALTERNATES = (
    "https://overpass.kumi.systems/api/interpreter",
    "https://overpass.openstreetmap.ru/api/interpreter",
)

WAY_END_KEYS = ("end_date", "construction:end_date", "temporary:end_date", "expected_end_date", "opening_date")
NODE_END_KEYS = ("end_date", "construction:end_date", "temporary:end_date", "expected_end_date")
START_KEYS = ("construction:date", "start_date", "construction:start_date")

# (required tags, type, severity, label); value None means "any value"; first match wins
WAY_RULES: Tuple[Tuple[Dict[str, Optional[str]], str, str, str], ...] = (
    ({"construction": None}, "construction", "high", "Road under construction"),
    ({"highway": "construction"}, "construction", "high", "New road construction"),
    ({"access": "no"}, "road_closure", "critical", "Road closed"),
    ({"temporary:access": "no"}, "road_closure", "high", "Temporary road closure"),
    ({"roadworks": "yes"}, "road_work", "medium", "Road works in progress"),
)
WAY_DEFAULT = ("construction", "medium", "Road construction or closure")

NODE_RULES: Tuple[Tuple[Dict[str, Optional[str]], str, str, str], ...] = (
    ({"barrier": "gate", "access": "no"}, "barrier", "high", "Closed gate blocking access"),
    ({"barrier": "bollard", "access": "no"}, "barrier", "medium", "Bollards restricting access"),
    ({"highway": "construction"}, "construction", "medium", "Construction point"),
)
NODE_DEFAULT = ("barrier", "medium", "Barrier or obstruction")


def first_tag(tags: Dict[str, Any], keys: Sequence[str]) -> Optional[str]:
    for k in keys:
        v = tags.get(k)
        if v:
            return v
    return None


def classify(tags: Dict[str, Any], rules, default) -> Tuple[str, str, str, bool]:
    """Returns (type, severity, label, matched)."""
    for required, htype, severity, label in rules:
        if all((k in tags) if v is None else tags.get(k) == v for k, v in required.items()):
            return htype, severity, label, True
    return default[0], default[1], default[2], False


def build_overpass_query(lat: float, lon: float, radius_m: float) -> str:
    around = f"(around:{round(radius_m)},{lat},{lon})"
    return (
        "[out:json][timeout:30];\n"
        "(\n"
        f'  way["highway"="construction"]{around};\n'
        f'  way["highway"]["access"="no"]{around};\n'
        ");\n"
        "out center meta;\n"
    )


class OSMAdapter(SourceAdapter):
    """Construction zones, closures and barriers from the Overpass API."""

    source = "osm"

    def __init__(
        self,
        client: httpx.AsyncClient,
        cache: CacheStore,
        url: str = OVERPASS_URL,
        alternates: Sequence[str] = OVERPASS_ALTERNATES,
        primary_timeout: float = 45.0,
        alternate_timeout: float = 30.0,
        rate_limit_backoff: float = 2.0,
        max_start_age_years: int = 2,
        refresher: Optional[BackgroundRefresher] = None,
        sleep=asyncio.sleep,
    ):
        super().__init__(cache, refresher)
        self.max_start_age_years = max_start_age_years
        self.http = EndpointFailover(
            client, url, alternates,
            primary_timeout=primary_timeout,
            alternate_timeout=alternate_timeout,
            rate_limit_backoff=rate_limit_backoff,
            name="OSM",
            sleep=sleep,
        )

    async def request(self, lat, lon, radius_m):
        r = await self.http.request(
            "POST",
            content=build_overpass_query(lat, lon, radius_m),
            headers={"Content-Type": "text/plain"},
        )
        return r.json()

    def parse(self, payload, lat, lon, now=None):
        now = now or _now()
        if not isinstance(payload, dict):
            raise ValueError("Overpass response is not a JSON object")
        elements = payload.get("elements") or []

        nodes = {}
        for el in elements:
            if isinstance(el, dict) and el.get("type") == "node" and el.get("lat") is not None and el.get("lon") is not None:
                nodes[el.get("id")] = el

        hazards = []
        for el in elements:
            try:
                if el.get("type") == "way":
                    point = self._way_point(el, nodes)
                    if point is None:
                        continue
                    h = self._hazard_from_element(el, point, "way", now)
                elif el.get("type") == "node" and el.get("tags") and el.get("lat") is not None and el.get("lon") is not None:
                    h = self._hazard_from_element(el, (el["lat"], el["lon"]), "node", now)
                else:
                    continue
            except PARSE_ERRORS as e:
                log.warning(f"[OSM] skipping malformed element {el.get('id') if isinstance(el, dict) else el!r}: {e}")
                continue
            if h is not None:
                hazards.append(h)
        return hazards

    @staticmethod
    def _way_point(way, nodes) -> Optional[Tuple[float, float]]:
        center = way.get("center") or {}
        if center.get("lat") is not None and center.get("lon") is not None:
            return center["lat"], center["lon"]
        if way.get("lat") is not None and way.get("lon") is not None:
            return way["lat"], way["lon"]
        resolved = [nodes[n] for n in way.get("nodes") or [] if n in nodes]
        if not resolved:
            return None
        mid = resolved[len(resolved) // 2]
        return mid["lat"], mid["lon"]

    def _hazard_from_element(self, el, point, osm_type, now) -> Optional[HazardRecord]:
        tags = el.get("tags") or {}
        name = tags.get("name")

        end_raw = first_tag(tags, WAY_END_KEYS if osm_type == "way" else NODE_END_KEYS)
        end = parse_date(end_raw)
        if end is not None and end < now:
            log.info(f"[OSM] skipping expired {osm_type} {el.get('id')} (ended {end_raw}): {name or 'Unnamed'}")
            return None

        start_raw = first_tag(tags, START_KEYS)
        start = parse_date(start_raw)
        if start is not None and start < years_before(now, self.max_start_age_years):
            log.info(f"[OSM] skipping old {osm_type} {el.get('id')} (started {start_raw}), likely stale: {name or 'Unnamed'}")
            return None

        if osm_type == "way":
            htype, severity, label, matched = classify(tags, WAY_RULES, WAY_DEFAULT)
            description = f"{label}: {name or 'Unnamed road'}" if matched else label
        else:
            htype, severity, label, _ = classify(tags, NODE_RULES, NODE_DEFAULT)
            description = label

        if tags.get("note"):
            description += f" - {tags['note']}"
        if start_raw:
            description += f" (Started: {start_raw})"
        if end_raw:
            description += f" (Ends: {end_raw})"

        metadata = {
            "osm_id": el.get("id"),
            "osm_type": osm_type,
            "osm_timestamp": el.get("timestamp"),
            "osm_version": el.get("version"),
            "construction_date": start_raw,
            "end_date": end_raw,
            "tags": tags,
        }
        if osm_type == "way":
            metadata.update(name=name, highway_type=tags.get("highway"), surface=tags.get("surface"))

        return HazardRecord(
            id=f"osm-{osm_type}-{el['id']}",
            source="osm",
            type=htype,
            severity=severity,
            latitude=point[0],
            longitude=point[1],
            description=description,
            reported_at=parse_date(el.get("timestamp")) or now,
            start_date=start,
            end_date=end,
            verified=True,
            metadata=metadata,
        )


# ---- TomTom traffic incidents ----

TOMTOM_URL = "https://api.tomtom.com/traffic/services/5/incidentDetails"
TOMTOM_FIELDS = (
    "{incidents{type,geometry{type,coordinates},properties{id,iconCategory,magnitudeOfDelay,"
    "events{description,code,iconCategory},startTime,endTime,from,to,length,delay,roadNumbers,timeValidity}}}"
)
TOMTOM_CATEGORIES = "0,1,2,3,4,5,6,7,8,9,10,11,14"

# 0 unknown, 1 accident, 2 fog, 3 dangerous conditions, 4 rain, 5 ice, 6 jam,
# 7 lane closed, 8 road closed, 9 road works, 10 wind, 11 flooding, 14 broken down vehicle
ICON_CATEGORY_TYPES = {
    0: "accident",
    1: "accident",
    2: "poor_lighting",
    3: "road_damage",
    4: "flooding",
    5: "road_damage",
    6: "accident",
    7: "road_closure",
    8: "road_closure",
    9: "construction",
    10: "road_damage",
    11: "flooding",
    14: "accident",
}

# 0 unknown, 1 minor, 2 moderate, 3 major, 4 undefined (road closures)
MAGNITUDE_SEVERITY = {0: "medium", 1: "low", 2: "medium", 3: "high", 4: "critical"}


def incident_point(geometry: Dict[str, Any]) -> Optional[Tuple[float, float]]:
    """(lat, lon) of an incident: the point itself, or the middle vertex of a line."""
    coords = geometry.get("coordinates")
    if not coords:
        return None
    if geometry.get("type") == "Point":
        lon, lat = coords[0], coords[1]
    elif geometry.get("type") == "LineString":
        lon, lat = coords[len(coords) // 2][:2]
    else:
        return None
    return float(lat), float(lon)


def describe_incident(props: Dict[str, Any]) -> str:
    parts = [e.get("description") for e in props.get("events") or [] if e.get("description")]
    text = ". ".join(parts)
    start, end = props.get("from"), props.get("to")
    if start and end:
        text += f" From {start} to {end}."
    elif start:
        text += f" At {start}."
    if props.get("roadNumbers"):
        text += f" Road: {', '.join(props['roadNumbers'])}."
    if props.get("length"):
        text += f" Length: {round(props['length'])}m."
    if props.get("delay"):
        text += f" Delay: {round(props['delay'] / 60)} min."
    return text.strip() or "Traffic incident"


class TomTomAdapter(SourceAdapter):
    """Live incidents from the TomTom Traffic Incident Details API."""

    source = "tomtom"

    def __init__(
        self,
        client: httpx.AsyncClient,
        cache: CacheStore,
        api_key: Optional[str],
        url: str = TOMTOM_URL,
        timeout: float = 30.0,
        rate_limit_backoff: float = 2.0,
        refresher: Optional[BackgroundRefresher] = None,
        sleep=asyncio.sleep,
    ):
        super().__init__(cache, refresher)
        self.api_key = api_key
        self.http = EndpointFailover(
            client, url,
            primary_timeout=timeout,
            rate_limit_backoff=rate_limit_backoff,
            name="TomTom",
            sleep=sleep,
        )
        if not api_key:
            log.warning("[TomTom] TOMTOM_API_KEY not set, TomTom incidents disabled")

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    def build_params(self, lat, lon, radius_m) -> Dict[str, str]:
        box = bounding_box(lat, lon, radius_m)
        return {
            "key": self.api_key,
            "bbox": f"{box['min_lon']},{box['min_lat']},{box['max_lon']},{box['max_lat']}",
            "fields": TOMTOM_FIELDS,
            "language": "en-GB",
            "categoryFilter": TOMTOM_CATEGORIES,
            "timeValidityFilter": "present",
        }

    async def request(self, lat, lon, radius_m):
        r = await self.http.request("GET", params=self.build_params(lat, lon, radius_m))
        return r.json()

    def parse(self, payload, lat, lon, now=None):
        now = now or _now()
        if not isinstance(payload, dict):
            raise ValueError("TomTom response is not a JSON object")

        hazards = []
        for incident in payload.get("incidents") or []:
            try:
                h = self._hazard_from_incident(incident, lat, lon, now)
            except PARSE_ERRORS as e:
                log.warning(f"[TomTom] skipping malformed incident: {e}")
                continue
            if h is not None:
                hazards.append(h)
        return hazards

    def _hazard_from_incident(self, incident, center_lat, center_lon, now) -> Optional[HazardRecord]:
        props = incident.get("properties") or {}
        point = incident_point(incident.get("geometry") or {})
        if point is None:
            return None

        end = parse_date(props.get("endTime"))
        if end is not None and end < now:
            log.debug(f"[TomTom] skipping ended incident {props.get('id')} ({props.get('endTime')})")
            return None

        start = parse_date(props.get("startTime"))
        lat, lon = point
        return HazardRecord(
            id=f"tomtom-{props['id']}",
            source="tomtom",
            type=ICON_CATEGORY_TYPES.get(props.get("iconCategory"), "accident"),
            severity=MAGNITUDE_SEVERITY.get(props.get("magnitudeOfDelay"), "medium"),
            latitude=lat,
            longitude=lon,
            description=describe_incident(props),
            reported_at=start or now,
            start_date=start,
            end_date=end,
            verified=True,
            distance_meters=round(haversine_m(center_lat, center_lon, lat, lon)),
            metadata={
                "iconCategory": props.get("iconCategory"),
                "magnitudeOfDelay": props.get("magnitudeOfDelay"),
                "length": props.get("length"),
                "delay": props.get("delay"),
            },
        )
