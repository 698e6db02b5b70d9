from datetime import datetime, timezone

import httpx
import pytest

from hazard_feed.models import HazardRecord

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, minutes: float = 0, seconds: float = 0):
        self.now += minutes * 60 + seconds


async def no_sleep(secs):
    no_sleep.calls.append(secs)


no_sleep.calls = []


def make_hazard(id, lat, lon, type="construction", source="community", **kw) -> HazardRecord:
    return HazardRecord(id=id, source=source, type=type, latitude=lat, longitude=lon, **kw)


def overpass_payload(*elements):
    return {"version": 0.6, "elements": list(elements)}


def osm_way(id, lat, lon, **tags):
    return {
        "type": "way",
        "id": id,
        "center": {"lat": lat, "lon": lon},
        "timestamp": "2026-09-01T08:00:00Z",
        "version": 3,
        "tags": {"highway": "construction", **tags},
    }


def tomtom_incident(id, coords, geom_type="Point", icon=1, magnitude=2, **props):
    return {
        "type": "Feature",
        "geometry": {"type": geom_type, "coordinates": coords},
        "properties": {"id": id, "iconCategory": icon, "magnitudeOfDelay": magnitude, **props},
    }


class Recorder:
    """httpx.MockTransport handler that replays queued responses and records requests."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request: httpx.Request):
        self.requests.append(request)
        r = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(r, Exception):
            raise r
        if isinstance(r, int):
            return httpx.Response(r)
        return httpx.Response(200, json=r)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture(autouse=True)
def _reset_sleep():
    no_sleep.calls.clear()
