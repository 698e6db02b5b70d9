import httpx
import pytest
from fastapi.testclient import TestClient

from hazard_feed.app import create_app
from hazard_feed.config import Settings

from conftest import make_hazard, osm_way, overpass_payload, tomtom_incident


def provider_returning(*hazards):
    async def provider(lat, lon, radius_m):
        return list(hazards)
    return provider


def upstream(request: httpx.Request):
    if request.url.host == "overpass.test":
        return httpx.Response(200, json=overpass_payload(osm_way(9, 51.501, -0.121, name="Canal Rd")))
    if request.url.host == "tomtom.test":
        return httpx.Response(200, json={"incidents": [
            tomtom_incident("t1", [-0.12, 51.5], icon=1, magnitude=3),
        ]})
    return httpx.Response(404)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        tomtom_api_key="test-key",
        tomtom_url="https://tomtom.test/incidentDetails",
        overpass_url="https://overpass.test/api/interpreter",
        overpass_alternates=[],
        db_path=str(tmp_path / "hazards.sqlite"),
    )


def client_for(settings, provider):
    app = create_app(settings, community_provider=provider, transport=httpx.MockTransport(upstream))
    return TestClient(app)


def test_combined_hazards(settings):
    provider = provider_returning(make_hazard(1, 51.5003, -0.12, type="pothole", severity="high"))
    with client_for(settings, provider) as client:
        r = client.get("/hazards/combined/51.5/-0.12", params={"radius": 2000})

    assert r.status_code == 200
    body = r.json()
    assert body["success"] is True
    data = body["data"]
    assert data["searchLocation"] == {"latitude": 51.5, "longitude": -0.12}
    assert data["radiusMeters"] == 2000
    assert data["stats"] == {"total": 3, "community": 1, "osm": 1, "tomtom": 1, "merged": 3}
    assert [h["id"] for h in data["hazards"]] == ["tomtom-t1", 1, "osm-way-9"]

    first = data["hazards"][0]
    assert first["distanceMeters"] == 0
    assert first["source"] == "tomtom"
    assert "reportedAt" in first and "startDate" in first and "endDate" in first


def test_source_toggles_and_filters(settings):
    with client_for(settings, provider_returning()) as client:
        r = client.get("/hazards/combined/51.5/-0.12",
                       params={"include_tomtom": "false", "types": "construction", "min_severity": "high"})

    data = r.json()["data"]
    assert [h["id"] for h in data["hazards"]] == ["osm-way-9"]
    assert data["stats"]["tomtom"] == 0


def test_invalid_coordinates_rejected(settings):
    with client_for(settings, provider_returning()) as client:
        assert client.get("/hazards/combined/95/0").status_code == 422
        assert client.get("/hazards/combined/0/-181").status_code == 422
        assert client.get("/hazards/combined/0/0", params={"min_severity": "apocalyptic"}).status_code == 422


def test_community_failure_is_500(settings):
    async def broken(lat, lon, radius_m):
        raise RuntimeError("db down")

    with client_for(settings, broken) as client:
        r = client.get("/hazards/combined/51.5/-0.12")

    assert r.status_code == 500
    assert r.json() == {"success": False, "message": "Internal server error"}


def test_health_reports_sources(settings):
    with client_for(settings, provider_returning()) as client:
        client.get("/hazards/combined/51.5/-0.12")
        r = client.get("/health")

    assert r.json() == {
        "ok": True,
        "sources": {
            "osm": {"enabled": True, "cached_locations": 1},
            "tomtom": {"enabled": True, "cached_locations": 1},
        },
    }


def test_default_community_source_is_sqlite(settings):
    app = create_app(settings, transport=httpx.MockTransport(upstream))
    with TestClient(app) as client:
        r = client.get("/hazards/combined/51.5/-0.12")
    assert r.status_code == 200
    assert r.json()["data"]["stats"]["community"] == 0
