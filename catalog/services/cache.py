from collections import defaultdict
from pydantic import ValidationError
from redis.asyncio import Redis
from structlog import get_logger
from catalog.models.property import utcnow
from catalog.schemas.property import ChangeEvent, EVENT_TYPES
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple, Union
import json
import time

logger = get_logger()

FEATURED_KEY = "featured-list"
TYPES_KEY = "property-types"
LOCATIONS_KEY = "locations"

Fetch = Callable[[], Awaitable[Any]]

def property_key(record_id: str) -> str:
    return f"property:{record_id}"

def slug_key(slug: str) -> str:
    return f"property-slug:{slug}"

def featured_key(limit: int) -> str:
    return f"{FEATURED_KEY}:{limit}"

def search_key(text: str) -> str:
    return f"search:{(text or '').strip().lower()}"

def is_point_key(key: str) -> bool:
    return key.startswith("property:") or key.startswith("property-slug:")

def parse_change_event(raw: Union[str, bytes]) -> Optional[ChangeEvent]:
    """Parse a message from the change channel.

    Returns None for anything that is not a recognised change event;
    unknown ``type`` values are skipped quietly, malformed payloads are logged.
    """
    try:
        payload = json.loads(raw)
    except (TypeError, ValueError) as e:
        logger.warning("Malformed change message", error=str(e))
        return None
    if not isinstance(payload, dict):
        logger.warning("Malformed change message", error="payload is not an object")
        return None
    if payload.get("type") not in EVENT_TYPES:
        logger.info("Ignoring change message", type=payload.get("type"))
        return None
    # Older publishers sent only {type, data}
    data = payload.get("data")
    if isinstance(data, dict):
        payload.setdefault("recordId", data.get("id") or data.get("_id"))
    payload.setdefault("timestamp", utcnow().isoformat())
    try:
        return ChangeEvent.model_validate(payload)
    except ValidationError as e:
        logger.warning("Malformed change message", type=payload.get("type"), error=str(e))
        return None

class MemoryCacheBackend:
    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._data: Dict[str, Tuple[Optional[float], str]] = {}

    async def get(self, key: str) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if expires_at is not None and expires_at <= self._clock():
            del self._data[key]
            return None
        return value

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        expires_at = self._clock() + ttl if ttl else None
        self._data[key] = (expires_at, value)

    async def delete(self, *keys: str) -> int:
        return sum(1 for key in keys if self._data.pop(key, None) is not None)

    async def keys(self) -> List[str]:
        now = self._clock()
        for key in [k for k, (expires_at, _) in self._data.items() if expires_at is not None and expires_at <= now]:
            del self._data[key]
        return list(self._data)

class RedisCacheBackend:
    def __init__(self, redis: Redis, namespace: str = "catalog:"):
        self.redis = redis
        self.namespace = namespace

    async def get(self, key: str) -> Optional[str]:
        value = await self.redis.get(self.namespace + key)
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        if ttl:
            await self.redis.setex(self.namespace + key, ttl, value)
        else:
            await self.redis.set(self.namespace + key, value)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return await self.redis.delete(*(self.namespace + k for k in keys))

    async def keys(self) -> List[str]:
        found = []
        async for key in self.redis.scan_iter(match=self.namespace + "*"):
            if isinstance(key, bytes):
                key = key.decode("utf-8")
            found.append(key[len(self.namespace):])
        return found

class CacheInvalidator:
    """Cached query results kept coherent by change events.

    Invalidation is coarse: any change drops every list-shaped
    entry, since predicates are not re-evaluated against the changed record,
    plus the point lookups of the affected record. Point lookups of other
    records survive.

    A fetch that overlaps a change event is returned to its caller but not
    stored, so a result read before the write never outlives the event.
    """

    def __init__(self, backend=None, ttl: Optional[int] = None, refetch: bool = False):
        self.backend = backend or MemoryCacheBackend()
        self.ttl = ttl
        self.refetch = refetch
        self._generation = 0
        # Only kept when refetch is on; pruned with the keys they fill
        self._fetchers: Dict[str, Tuple[Fetch, Optional[str]]] = {}
        self._point_index: Dict[str, Set[str]] = defaultdict(set)

    async def get(self, key: str) -> Any:
        cached = await self.backend.get(key)
        return json.loads(cached) if cached is not None else None

    async def put(self, key: str, value: Any, record_id: Optional[str] = None) -> None:
        # Not-found outcomes are never cached
        if value is None:
            return
        await self.backend.set(key, json.dumps(value), self.ttl)
        if record_id:
            self._point_index[record_id].add(key)

    async def get_or_fetch(self, key: str, fetch: Fetch, record_id: Optional[str] = None) -> Any:
        cached = await self.get(key)
        if cached is not None:
            logger.debug("Cache hit", key=key)
            return cached
        generation = self._generation
        value = await fetch()
        if generation != self._generation:
            logger.debug("Discarding fetch overlapped by a change", key=key)
            return value
        if self.refetch:
            self._fetchers[key] = (fetch, record_id)
        if record_id is None and isinstance(value, dict):
            record_id = value.get("id")
        await self.put(key, value, record_id)
        return value

    def _prune(self, live: Set[str]) -> None:
        for key in [k for k in self._fetchers if k not in live]:
            del self._fetchers[key]
        for record_id in list(self._point_index):
            keys = self._point_index[record_id] & live
            if keys:
                self._point_index[record_id] = keys
            else:
                del self._point_index[record_id]

    async def keys_for(self, event: ChangeEvent) -> List[str]:
        live = set(await self.backend.keys())
        self._prune(live)
        keys = {k for k in live if not is_point_key(k)}
        keys.add(property_key(event.record_id))
        keys.update(self._point_index.pop(event.record_id, ()))
        slug = (event.data or {}).get("slug")
        if slug:
            keys.add(slug_key(slug))
        return sorted(keys)

    async def handle_event(self, event: ChangeEvent) -> List[str]:
        if event.type not in EVENT_TYPES:
            return []
        self._generation += 1
        keys = await self.keys_for(event)
        removed = await self.backend.delete(*keys)
        logger.info("Cache invalidated", event_type=event.type, record_id=event.record_id, keys=len(keys), removed=removed)
        if self.refetch:
            await self.refresh(keys)
        return keys

    async def handle_message(self, raw: Union[str, bytes]) -> List[str]:
        event = parse_change_event(raw)
        if event is None:
            return []
        return await self.handle_event(event)

    async def listen(self, raw: Union[str, bytes]) -> List[str]:
        """Hub-facing handler: a failure on one message is logged and the subscription stays open."""
        try:
            return await self.handle_message(raw)
        except Exception as e:
            logger.error("Cache invalidation failed", error=str(e))
            return []

    async def refresh(self, keys: List[str]) -> None:
        generation = self._generation
        for key in keys:
            entry = self._fetchers.pop(key, None)
            if entry is None:
                continue
            fetch, record_id = entry
            try:
                value = await fetch()
            except Exception as e:
                # Stays absent; the next read fetches again
                logger.warning("Cache refresh failed", key=key, error=str(e))
                continue
            if generation != self._generation:
                # A newer event owns the refresh from here
                return
            self._fetchers[key] = entry
            if record_id is None and isinstance(value, dict):
                record_id = value.get("id")
            await self.put(key, value, record_id)

    async def invalidate_all(self) -> int:
        self._generation += 1
        keys = await self.backend.keys()
        self._fetchers.clear()
        self._point_index.clear()
        return await self.backend.delete(*keys)
