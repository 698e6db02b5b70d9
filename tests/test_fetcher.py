import httpx
import pytest

from hazard_feed.fetcher import EndpointFailover, SourceUnavailable

from conftest import no_sleep

PRIMARY = "https://primary.test/api"
ALTS = ["https://alt1.test/api", "https://alt2.test/api"]


def route(table):
    """Handler answering per host; each host entry is a list of status codes consumed in order."""
    calls = []

    def handler(request: httpx.Request):
        calls.append(request.url.host)
        queue = table[request.url.host]
        status = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(status, Exception):
            raise status
        return httpx.Response(status, json={"host": request.url.host})

    return handler, calls


def failover(handler, alternates=ALTS):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return EndpointFailover(client, PRIMARY, alternates, primary_timeout=45, alternate_timeout=30,
                            rate_limit_backoff=2.0, name="test", sleep=no_sleep)


@pytest.mark.asyncio
async def test_primary_success():
    handler, calls = route({"primary.test": [200]})
    r = await failover(handler).request("GET")
    assert r.json()["host"] == "primary.test"
    assert calls == ["primary.test"]
    assert no_sleep.calls == []


@pytest.mark.asyncio
async def test_rate_limit_backs_off_and_retries_primary_once():
    handler, calls = route({"primary.test": [429, 200]})
    r = await failover(handler).request("POST", content="q")
    assert r.json()["host"] == "primary.test"
    assert calls == ["primary.test", "primary.test"]
    assert no_sleep.calls == [2.0]


@pytest.mark.asyncio
async def test_rate_limited_twice_moves_to_alternates():
    handler, calls = route({"primary.test": [429, 429], "alt1.test": [200]})
    r = await failover(handler).request("GET")
    assert r.json()["host"] == "alt1.test"
    assert calls == ["primary.test", "primary.test", "alt1.test"]
    assert no_sleep.calls == [2.0]


@pytest.mark.asyncio
async def test_server_error_skips_retry_and_tries_alternates_in_order():
    handler, calls = route({"primary.test": [503], "alt1.test": [500], "alt2.test": [200]})
    r = await failover(handler).request("GET")
    assert r.json()["host"] == "alt2.test"
    assert calls == ["primary.test", "alt1.test", "alt2.test"]
    assert no_sleep.calls == []


@pytest.mark.asyncio
async def test_timeout_counts_as_failure():
    handler, calls = route({
        "primary.test": [httpx.ReadTimeout("slow")],
        "alt1.test": [200],
    })
    r = await failover(handler).request("GET")
    assert r.json()["host"] == "alt1.test"


@pytest.mark.asyncio
async def test_every_endpoint_failing_raises():
    handler, calls = route({
        "primary.test": [500],
        "alt1.test": [httpx.ConnectError("refused")],
        "alt2.test": [502],
    })
    with pytest.raises(SourceUnavailable) as err:
        await failover(handler).request("GET")
    assert calls == ["primary.test", "alt1.test", "alt2.test"]
    assert err.value.last_status == 502


@pytest.mark.asyncio
async def test_no_alternates():
    handler, calls = route({"primary.test": [429]})
    with pytest.raises(SourceUnavailable) as err:
        await failover(handler, alternates=[]).request("GET")
    assert calls == ["primary.test", "primary.test"]
    assert err.value.last_status == 429


@pytest.mark.asyncio
async def test_timeouts_passed_per_endpoint():
    seen = {}

    def handler(request):
        seen[request.url.host] = request.extensions["timeout"]["read"]
        return httpx.Response(500 if request.url.host == "primary.test" else 200)

    await failover(handler).request("GET")
    assert seen == {"primary.test": 45, "alt1.test": 30}
