import json
import pytest
from unittest.mock import AsyncMock, MagicMock
from catalog.models.property import utcnow
from catalog.schemas.property import ChangeEvent, FilterSpec
from catalog.services.cache import (
    CacheInvalidator,
    MemoryCacheBackend,
    RedisCacheBackend,
    featured_key,
    parse_change_event,
    property_key,
    search_key,
    slug_key,
)
from factories import property_data


def change(type, record_id, **data):
    return ChangeEvent(type=type, record_id=record_id, timestamp=utcnow(), data=data or None)


class Counter:
    def __init__(self, value):
        self.value = value
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        return self.value


async def fill(cache):
    await cache.get_or_fetch(FilterSpec().cache_key(), Counter({"properties": [], "pagination": {}}))
    await cache.get_or_fetch(featured_key(6), Counter([]))
    await cache.get_or_fetch(search_key("villa"), Counter([]))
    await cache.get_or_fetch(property_key("a"), Counter({"id": "a", "slug": "house-a"}))
    await cache.get_or_fetch(slug_key("house-a"), Counter({"id": "a", "slug": "house-a"}))
    await cache.get_or_fetch(property_key("b"), Counter({"id": "b", "slug": "house-b"}))


@pytest.mark.asyncio
async def test_second_read_is_served_from_cache():
    cache = CacheInvalidator()
    fetch = Counter({"properties": [], "pagination": {"total": 0}})
    key = FilterSpec(location="Bole").cache_key()

    await cache.get_or_fetch(key, fetch)
    again = await cache.get_or_fetch(key, fetch)

    assert fetch.calls == 1
    assert again == {"properties": [], "pagination": {"total": 0}}


@pytest.mark.asyncio
@pytest.mark.parametrize("type", ["property_created", "property_updated", "property_deleted"])
async def test_change_drops_lists_and_affected_point_lookups(type):
    cache = CacheInvalidator()
    await fill(cache)

    await cache.handle_event(change(type, "a", slug="house-a"))

    assert sorted(await cache.backend.keys()) == [property_key("b")]


@pytest.mark.asyncio
async def test_slug_lookups_are_tracked_by_record_id():
    cache = CacheInvalidator()
    await fill(cache)

    # No slug in the event payload; the index still finds the slug entry
    await cache.handle_event(change("property_updated", "a"))

    assert await cache.get(slug_key("house-a")) is None
    assert await cache.get(property_key("b")) is not None


@pytest.mark.asyncio
async def test_next_read_after_invalidation_fetches_again():
    cache = CacheInvalidator()
    key = FilterSpec().cache_key()
    fetch = Counter({"properties": [], "pagination": {}})
    await cache.get_or_fetch(key, fetch)

    await cache.handle_event(change("property_created", "z"))
    await cache.get_or_fetch(key, fetch)

    assert fetch.calls == 2


@pytest.mark.asyncio
async def test_refetch_repopulates_invalidated_keys():
    cache = CacheInvalidator(refetch=True)
    key = featured_key(6)
    fetch = Counter([{"id": "x"}])
    await cache.get_or_fetch(key, fetch)

    await cache.handle_event(change("property_updated", "x"))

    assert fetch.calls == 2
    assert await cache.get(key) == [{"id": "x"}]


@pytest.mark.asyncio
async def test_failed_refetch_leaves_key_absent():
    cache = CacheInvalidator(refetch=True)
    key = featured_key(6)
    fetch = AsyncMock(side_effect=[[{"id": "x"}], RuntimeError("server down")])
    await cache.get_or_fetch(key, fetch)

    await cache.handle_event(change("property_updated", "x"))

    assert await cache.get(key) is None


@pytest.mark.asyncio
async def test_not_found_is_not_cached():
    cache = CacheInvalidator()
    fetch = Counter(None)

    assert await cache.get_or_fetch(property_key("ghost"), fetch) is None
    await cache.get_or_fetch(property_key("ghost"), fetch)

    assert fetch.calls == 2


@pytest.mark.asyncio
@pytest.mark.parametrize("raw", [
    "not json",
    "[1, 2]",
    json.dumps({"type": "property_created"}),
    json.dumps({"type": "property_updated", "recordId": "a", "timestamp": "yesterday"}),
    b"\xff\xfe",
])
async def test_malformed_messages_are_ignored(raw):
    cache = CacheInvalidator()
    await fill(cache)

    assert await cache.handle_message(raw) == []
    assert len(await cache.backend.keys()) == 6


@pytest.mark.asyncio
async def test_unknown_message_types_are_ignored():
    cache = CacheInvalidator()
    await fill(cache)

    assert await cache.handle_message(json.dumps({"type": "blog_post_created", "data": {"id": "a"}})) == []
    assert len(await cache.backend.keys()) == 6


def test_legacy_messages_without_record_id():
    event = parse_change_event(json.dumps({"type": "property_created", "data": {"_id": "abc", "title": "x"}}))

    assert event.record_id == "abc"
    assert event.kind == "created"


@pytest.mark.asyncio
async def test_memory_backend_expires_entries():
    now = [100.0]
    backend = MemoryCacheBackend(clock=lambda: now[0])
    await backend.set("k", "v", ttl=10)
    await backend.set("forever", "v")

    assert await backend.get("k") == "v"
    now[0] = 111.0
    assert await backend.get("k") is None
    assert await backend.get("forever") == "v"


@pytest.mark.asyncio
async def test_redis_backend_namespaces_keys():
    redis = MagicMock()
    redis.get = AsyncMock(return_value=b'{"a": 1}')
    redis.setex = AsyncMock()
    redis.set = AsyncMock()
    redis.delete = AsyncMock(return_value=2)

    async def scan_iter(match):
        for key in (b"catalog:property:a", b"catalog:featured-list:6"):
            yield key

    redis.scan_iter = scan_iter
    backend = RedisCacheBackend(redis)

    await backend.set("property:a", "{}", ttl=30)
    await backend.set("locations", "[]")

    redis.setex.assert_awaited_once_with("catalog:property:a", 30, "{}")
    redis.set.assert_awaited_once_with("catalog:locations", "[]")
    assert await backend.get("property:a") == '{"a": 1}'
    assert await backend.keys() == ["property:a", "featured-list:6"]
    assert await backend.delete("property:a", "featured-list:6") == 2
    redis.delete.assert_awaited_once_with("catalog:property:a", "catalog:featured-list:6")
    assert await backend.delete() == 0


@pytest.mark.asyncio
async def test_delete_invalidates_cached_page_containing_record(engine, hub):
    cache = CacheInvalidator()
    hub.connect(cache.handle_message, name="cache")
    keep = await engine.create(property_data(title="Keeper"))
    doomed = await engine.create(property_data(title="Doomed"))
    spec = FilterSpec()

    async def fetch():
        return (await engine.query(spec)).model_dump(mode="json", by_alias=True)

    await hub.drain()
    page = await cache.get_or_fetch(spec.cache_key(), fetch)
    assert [p["id"] for p in page["properties"]] == [doomed.id, keep.id]

    await engine.delete_by_id(doomed.id)
    await hub.drain()

    assert await cache.get(spec.cache_key()) is None
    page = await cache.get_or_fetch(spec.cache_key(), fetch)
    assert [p["id"] for p in page["properties"]] == [keep.id]


@pytest.mark.asyncio
async def test_fetch_overlapping_a_change_is_not_cached():
    import asyncio
    cache = CacheInvalidator()
    key = FilterSpec().cache_key()
    started, release = asyncio.Event(), asyncio.Event()

    async def slow_fetch():
        started.set()
        await release.wait()
        return {"items": ["old"]}

    pending = asyncio.ensure_future(cache.get_or_fetch(key, slow_fetch))
    await started.wait()
    await cache.handle_event(change("property_created", "n"))
    release.set()

    assert await pending == {"items": ["old"]}
    assert await cache.get_or_fetch(key, Counter({"items": ["new"]})) == {"items": ["new"]}


@pytest.mark.asyncio
async def test_hub_listener_survives_a_failed_invalidation():
    from catalog.services.hub import SubscriptionHub
    backend = MemoryCacheBackend()
    real_keys = backend.keys
    backend.keys = AsyncMock(side_effect=ConnectionError("redis down"))
    cache = CacheInvalidator(backend)
    hub = SubscriptionHub(queue_size=10)
    subscription = hub.connect(cache.listen, name="server-cache")

    hub.broadcast(change("property_updated", "a"))
    await hub.drain()
    backend.keys = AsyncMock(side_effect=real_keys)
    await cache.put(featured_key(6), [{"id": "a"}])
    hub.broadcast(change("property_updated", "a"))
    await hub.drain()

    assert subscription in hub.listeners
    assert backend.keys.await_count == 1
    assert await cache.get(featured_key(6)) is None
    hub.close()


@pytest.mark.asyncio
async def test_fetchers_are_only_kept_for_refetch():
    cache = CacheInvalidator()
    for i in range(50):
        await cache.get_or_fetch(search_key(f"text {i}"), Counter([]))

    await cache.handle_event(change("property_updated", "x"))

    assert cache._fetchers == {}


@pytest.mark.asyncio
async def test_refetch_forgets_fetchers_of_expired_keys():
    now = [0.0]
    cache = CacheInvalidator(MemoryCacheBackend(clock=lambda: now[0]), ttl=10, refetch=True)
    await cache.get_or_fetch(search_key("old"), Counter([]))
    now[0] = 20.0
    await cache.get_or_fetch(featured_key(6), Counter([{"id": "x"}]))

    await cache.handle_event(change("property_updated", "x"))

    assert set(cache._fetchers) == {featured_key(6)}
    assert await cache.get(featured_key(6)) == [{"id": "x"}]
