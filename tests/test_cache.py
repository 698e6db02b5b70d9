import pytest

from hazard_feed.cache import CacheStore, make_cache_key

from conftest import make_hazard


@pytest.fixture
def store(clock):
    return CacheStore(name="test", clock=clock)


@pytest.fixture
def data():
    return [make_hazard("osm-way-1", 51.5, -0.12, source="osm")]


def test_missing_key(store):
    assert store.get("nope") == (None, False)
    assert store.get_stale_fallback("nope") is None


def test_fresh_then_stale_then_expired(store, clock, data):
    store.set("k", data)

    clock.advance(minutes=5)
    assert store.get("k") == (data, False)

    clock.advance(minutes=7)  # T+12
    assert store.get("k") == (data, True)

    clock.advance(minutes=4)  # T+16
    assert store.get("k") == (None, False)


def test_expired_entry_kept_for_fallback(store, clock, data):
    store.set("k", data)
    clock.advance(minutes=60)

    assert store.get("k").data is None
    assert "k" in store
    assert store.get_stale_fallback("k") == data


def test_overwrite_resets_age(store, clock, data):
    store.set("k", data)
    clock.advance(minutes=12)
    store.set("k", [])
    assert store.get("k") == ([], False)


def test_returned_list_is_a_copy(store, data):
    store.set("k", data)
    store.get("k").data.clear()
    assert store.get("k").data == data


def test_eviction_drops_oldest(clock):
    store = CacheStore(clock=clock)
    for i in range(51):
        store.set(f"key-{i}", [])
        clock.advance(seconds=1)

    assert len(store) == 50
    assert "key-0" not in store
    assert all(f"key-{i}" in store for i in range(1, 51))


def test_overwritten_key_counts_as_newest(clock):
    store = CacheStore(max_entries=2, clock=clock)
    store.set("a", [])
    store.set("b", [])
    store.set("a", [])
    store.set("c", [])
    assert "a" in store and "c" in store
    assert "b" not in store


def test_thresholds_configurable(clock, data):
    store = CacheStore(fresh_secs=10, ttl_secs=20, clock=clock)
    store.set("k", data)
    clock.advance(seconds=15)
    assert store.get("k").needs_refresh


def test_fresh_must_not_exceed_ttl():
    with pytest.raises(ValueError):
        CacheStore(fresh_secs=100, ttl_secs=10)


def test_key_groups_nearby_points():
    assert make_cache_key(51.50741, -0.12781, 5000) == make_cache_key(51.5091, -0.1251, 5000)
    assert make_cache_key(51.5074, -0.1278, 5000) == "51.51,-0.13,5000"
    assert make_cache_key(51.5074, -0.1278, 5000) != make_cache_key(51.5074, -0.1278, 2000)
    assert make_cache_key(51.5074, -0.1278, 5000) != make_cache_key(51.52, -0.1278, 5000)
