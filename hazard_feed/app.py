import logging
from typing import Optional

import httpx
from fastapi import FastAPI, Path, Query
from fastapi.responses import JSONResponse

from .aggregator import CommunityProvider, HazardAggregator
from .cache import CacheStore
from .config import Settings
from .ingestors import OSMAdapter, TomTomAdapter
from .models import Severity
from .storage import fetch_community_hazards, init_db

log = logging.getLogger(__name__)

USER_AGENT = "HazardFeed/1.0"


def _make_cache(settings: Settings, name: str) -> CacheStore:
    return CacheStore(
        name=name,
        fresh_secs=settings.cache_fresh_secs,
        ttl_secs=settings.cache_ttl_secs,
        max_entries=settings.cache_max_entries,
    )


def build_aggregator(
    settings: Settings,
    client: httpx.AsyncClient,
    community_provider: CommunityProvider,
) -> HazardAggregator:
    osm = OSMAdapter(
        client,
        _make_cache(settings, "osm"),
        url=settings.overpass_url,
        alternates=settings.overpass_alternates,
        primary_timeout=settings.osm_primary_timeout_secs,
        alternate_timeout=settings.osm_alternate_timeout_secs,
        rate_limit_backoff=settings.rate_limit_backoff_secs,
        max_start_age_years=settings.osm_max_start_age_years,
    )
    tomtom = TomTomAdapter(
        client,
        _make_cache(settings, "tomtom"),
        api_key=settings.tomtom_api_key,
        url=settings.tomtom_url,
        timeout=settings.tomtom_timeout_secs,
        rate_limit_backoff=settings.rate_limit_backoff_secs,
    )
    return HazardAggregator(
        community_provider,
        adapters=[osm, tomtom],
        dedup_threshold_m=settings.dedup_threshold_m,
    )


def create_app(
    settings: Optional[Settings] = None,
    community_provider: Optional[CommunityProvider] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    app = FastAPI(title="Hazard Feed")

    @app.on_event("startup")
    async def on_start():
        logging.basicConfig(
            level=settings.log_level,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
        provider = community_provider
        if provider is None:
            await init_db(settings.db_path)

            async def provider(lat, lon, radius_m):
                return await fetch_community_hazards(
                    lat, lon, radius_m,
                    limit=settings.default_limit,
                    max_age_days=settings.community_max_age_days,
                    db_path=settings.db_path,
                )

        client = httpx.AsyncClient(transport=transport, headers={"User-Agent": USER_AGENT})
        app.state.http = client
        app.state.aggregator = build_aggregator(settings, client, provider)
        log.info("[API] sources: " + ", ".join(
            f"{a.source}={'on' if a.enabled else 'off'}" for a in app.state.aggregator.adapters))

    @app.on_event("shutdown")
    async def on_stop():
        for a in app.state.aggregator.adapters:
            await a.refresher.close()
        await app.state.http.aclose()

    @app.get("/health")
    async def health():
        return {
            "ok": True,
            "sources": {
                a.source: {"enabled": a.enabled, "cached_locations": len(a.cache)}
                for a in app.state.aggregator.adapters
            },
        }

    @app.get("/hazards/combined/{latitude}/{longitude}")
    async def combined_hazards(
        latitude: float = Path(ge=-90, le=90),
        longitude: float = Path(ge=-180, le=180),
        radius: Optional[float] = Query(None, gt=0, le=50000),
        limit: Optional[int] = Query(None, gt=0, le=1000),
        include_osm: bool = True,
        include_tomtom: bool = True,
        types: Optional[str] = None,
        min_severity: Optional[Severity] = None,
    ):
        radius = radius or settings.default_radius_m
        limit = limit or settings.default_limit
        sources = {s for s, on in (("osm", include_osm), ("tomtom", include_tomtom)) if on}
        type_set = {t.strip() for t in types.split(",") if t.strip()} if types else None

        log.info(f"[API] combined hazards near ({latitude}, {longitude}) r={radius:.0f}m")
        try:
            result = await app.state.aggregator.get_hazards(
                latitude, longitude, radius,
                sources=sources,
                types=type_set,
                min_severity=min_severity,
                limit=limit,
            )
        except Exception as e:
            log.error(f"[API] combined hazards failed: {type(e).__name__}: {e}", exc_info=True)
            return JSONResponse(
                status_code=500,
                content={"success": False, "message": "Internal server error"},
            )

        return {
            "success": True,
            "data": {
                "hazards": [h.model_dump(mode="json", by_alias=True) for h in result.hazards],
                "searchLocation": {"latitude": latitude, "longitude": longitude},
                "radiusMeters": radius,
                "stats": result.stats.model_dump(),
            },
        }

    return app


app = create_app()
