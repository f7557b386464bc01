from httpx import AsyncClient
from structlog import get_logger
from catalog.schemas.property import FilterSpec
from catalog.services.cache import CacheInvalidator, featured_key, property_key, search_key, slug_key
from catalog.services.listener import ChangeListener, ReconnectPolicy
from typing import Any, Dict, List, Optional, Union

logger = get_logger()

class CatalogClient:
    """Reads the catalog over HTTP and keeps a local cache fresh from the change channel.

    ``start()`` opens the change listener; until then (or while it is
    reconnecting) cached results may be stale and are corrected by the next
    read after an invalidation.
    """

    def __init__(
        self,
        base_url: str,
        ws_url: Optional[str] = None,
        cache: Optional[CacheInvalidator] = None,
        http: Optional[AsyncClient] = None,
        policy: Optional[ReconnectPolicy] = None,
        **listener_kwargs,
    ):
        self.base_url = base_url.rstrip("/")
        self.cache = cache or CacheInvalidator()
        self.http = http or AsyncClient(base_url=self.base_url, timeout=30.0)
        self.listener = None
        if ws_url:
            self.listener = ChangeListener(ws_url, self.cache.handle_message, policy=policy, **listener_kwargs)

    async def start(self) -> None:
        if self.listener is not None:
            self.listener.start()

    async def close(self) -> None:
        if self.listener is not None:
            await self.listener.close()
        await self.http.aclose()

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None):
        response = await self.http.get(path, params=params)
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return response.json()

    async def query(self, spec: Union[FilterSpec, Dict[str, Any], None] = None) -> Dict[str, Any]:
        if not isinstance(spec, FilterSpec):
            spec = FilterSpec(**(spec or {}))
        params = spec.normalized()
        if "featured" in params:
            params["featured"] = str(params["featured"]).lower()
        return await self.cache.get_or_fetch(spec.cache_key(), lambda: self._get("/api/properties", params))

    async def find_featured(self, limit: int = 6) -> List[Dict[str, Any]]:
        return await self.cache.get_or_fetch(
            featured_key(limit), lambda: self._get("/api/properties/featured", {"limit": limit})
        )

    async def find_by_id(self, record_id: str) -> Optional[Dict[str, Any]]:
        return await self.cache.get_or_fetch(
            property_key(record_id), lambda: self._get(f"/api/properties/{record_id}"), record_id=record_id
        )

    async def find_by_slug(self, slug: str) -> Optional[Dict[str, Any]]:
        return await self.cache.get_or_fetch(slug_key(slug), lambda: self._get(f"/api/properties/slug/{slug}"))

    async def search(self, text: str) -> List[Dict[str, Any]]:
        return await self.cache.get_or_fetch(search_key(text), lambda: self._get("/api/properties/search", {"q": text}))
