import os
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel

from .ingestors import OVERPASS_ALTERNATES, OVERPASS_URL, TOMTOM_URL


def _getenv_float(key: str, default: float) -> float:
    try:
        return float(os.getenv(key, default))
    except (TypeError, ValueError):
        return default


def _getenv_int(key: str, default: int) -> int:
    try:
        return int(os.getenv(key, default))
    except (TypeError, ValueError):
        return default


def _getenv_list(key: str, default) -> List[str]:
    val = os.getenv(key)
    if not val:
        return list(default)
    return [x.strip() for x in val.split(",") if x.strip()]


class Settings(BaseModel):
    tomtom_api_key: Optional[str] = None
    tomtom_url: str = TOMTOM_URL
    tomtom_timeout_secs: float = 30.0

    overpass_url: str = OVERPASS_URL
    overpass_alternates: List[str] = list(OVERPASS_ALTERNATES)
    osm_primary_timeout_secs: float = 45.0
    osm_alternate_timeout_secs: float = 30.0
    osm_max_start_age_years: int = 2

    rate_limit_backoff_secs: float = 2.0

    cache_fresh_secs: float = 600.0
    cache_ttl_secs: float = 900.0
    cache_max_entries: int = 50

    dedup_threshold_m: float = 50.0
    community_max_age_days: int = 182
    default_radius_m: float = 5000.0
    default_limit: int = 100

    db_path: str = "hazards.sqlite"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()
        key = os.getenv("TOMTOM_API_KEY")
        if key == "your-tomtom-api-key-here":
            key = None
        return cls(
            tomtom_api_key=key or None,
            tomtom_url=os.getenv("TOMTOM_URL", TOMTOM_URL),
            tomtom_timeout_secs=_getenv_float("TOMTOM_TIMEOUT_SECS", 30.0),
            overpass_url=os.getenv("OVERPASS_URL", OVERPASS_URL),
            overpass_alternates=_getenv_list("OVERPASS_ALTERNATES", OVERPASS_ALTERNATES),
            osm_primary_timeout_secs=_getenv_float("OSM_PRIMARY_TIMEOUT_SECS", 45.0),
            osm_alternate_timeout_secs=_getenv_float("OSM_ALTERNATE_TIMEOUT_SECS", 30.0),
            osm_max_start_age_years=_getenv_int("OSM_MAX_START_AGE_YEARS", 2),
            rate_limit_backoff_secs=_getenv_float("RATE_LIMIT_BACKOFF_SECS", 2.0),
            cache_fresh_secs=_getenv_float("CACHE_FRESH_SECS", 600.0),
            cache_ttl_secs=_getenv_float("CACHE_TTL_SECS", 900.0),
            cache_max_entries=_getenv_int("CACHE_MAX_ENTRIES", 50),
            dedup_threshold_m=_getenv_float("DEDUP_THRESHOLD_M", 50.0),
            community_max_age_days=_getenv_int("COMMUNITY_MAX_AGE_DAYS", 182),
            default_radius_m=_getenv_float("DEFAULT_RADIUS_M", 5000.0),
            default_limit=_getenv_int("DEFAULT_LIMIT", 100),
            db_path=os.getenv("HAZARDS_DB_PATH", "hazards.sqlite"),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )
