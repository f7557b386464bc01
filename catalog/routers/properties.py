from fastapi import APIRouter, Depends, HTTPException, Query
from typing import List, Optional
from catalog.config import settings
from catalog.dependencies.services import get_cache, get_query_engine
from catalog.exceptions import InvalidFilter
from catalog.schemas.property import FilterSpec, PropertyCreate, PropertyListResponse, PropertyResponse, PropertyUpdate
from catalog.services.cache import CacheInvalidator, LOCATIONS_KEY, TYPES_KEY, featured_key, property_key, search_key, slug_key
from catalog.services.query import QueryEngine
from structlog import get_logger

logger = get_logger()
router = APIRouter(prefix="/api/properties", tags=["properties"])

def _dump(model):
    return model.model_dump(mode="json", by_alias=True)

@router.get("", response_model=PropertyListResponse)
async def list_properties(
    page: int = 1,
    limit: Optional[int] = None,
    status: Optional[str] = None,
    property_type: Optional[str] = Query(None, alias="propertyType"),
    location: Optional[str] = None,
    min_price: Optional[float] = Query(None, alias="minPrice"),
    max_price: Optional[float] = Query(None, alias="maxPrice"),
    featured: Optional[bool] = None,
    bedrooms: Optional[int] = None,
    engine: QueryEngine = Depends(get_query_engine),
    cache: CacheInvalidator = Depends(get_cache),
):
    """
    Paginated listing, newest first. Status defaults to "active"; pass status=all to see every status.
    """
    params = {
        "page": page,
        "limit": limit,
        "status": status,
        "property_type": property_type,
        "location": location,
        "min_price": min_price,
        "max_price": max_price,
        "featured": featured,
        "bedrooms": bedrooms,
    }
    # Remove None values so FilterSpec defaults apply
    spec = FilterSpec(**{k: v for k, v in params.items() if v is not None})
    try:
        engine.validate(spec)
    except InvalidFilter as e:
        logger.info("Rejected property filter", error=str(e))
        raise HTTPException(status_code=400, detail=str(e))
    result = await cache.get_or_fetch(spec.cache_key(), lambda: _fetch_page(engine, spec))
    logger.info("Fetched properties", total=result["pagination"]["total"], page=spec.page)
    return result

async def _fetch_page(engine: QueryEngine, spec: FilterSpec):
    return _dump(await engine.query(spec))

@router.get("/featured", response_model=List[PropertyResponse])
async def featured_properties(
    limit: int = settings.FEATURED_DEFAULT_LIMIT,
    engine: QueryEngine = Depends(get_query_engine),
    cache: CacheInvalidator = Depends(get_cache),
):
    try:
        engine.validate(FilterSpec(limit=limit))
    except InvalidFilter as e:
        raise HTTPException(status_code=400, detail=str(e))

    async def fetch():
        return [_dump(p) for p in await engine.find_featured(limit)]

    return await cache.get_or_fetch(featured_key(limit), fetch)

@router.get("/search", response_model=List[PropertyResponse])
async def search_properties(
    q: str = "",
    engine: QueryEngine = Depends(get_query_engine),
    cache: CacheInvalidator = Depends(get_cache),
):
    async def fetch():
        return [_dump(p) for p in await engine.search(q)]

    return await cache.get_or_fetch(search_key(q), fetch)

@router.get("/types", response_model=List[str])
async def property_types(engine: QueryEngine = Depends(get_query_engine), cache: CacheInvalidator = Depends(get_cache)):
    async def fetch():
        return sorted(await engine.list_distinct_property_types())

    return await cache.get_or_fetch(TYPES_KEY, fetch)

@router.get("/locations", response_model=List[str])
async def locations(engine: QueryEngine = Depends(get_query_engine), cache: CacheInvalidator = Depends(get_cache)):
    async def fetch():
        return sorted(await engine.list_distinct_locations())

    return await cache.get_or_fetch(LOCATIONS_KEY, fetch)

@router.get("/slug/{slug}", response_model=PropertyResponse)
async def get_property_by_slug(
    slug: str,
    engine: QueryEngine = Depends(get_query_engine),
    cache: CacheInvalidator = Depends(get_cache),
):
    async def fetch():
        found = await engine.find_by_slug(slug)
        return _dump(found) if found is not None else None

    property_data = await cache.get_or_fetch(slug_key(slug), fetch)
    if property_data is None:
        raise HTTPException(status_code=404, detail="Property not found")
    return property_data

@router.get("/{property_id}", response_model=PropertyResponse)
async def get_property(
    property_id: str,
    engine: QueryEngine = Depends(get_query_engine),
    cache: CacheInvalidator = Depends(get_cache),
):
    async def fetch():
        found = await engine.find_by_id(property_id)
        return _dump(found) if found is not None else None

    property_data = await cache.get_or_fetch(property_key(property_id), fetch, record_id=property_id)
    if property_data is None:
        raise HTTPException(status_code=404, detail="Property not found")
    return property_data

@router.post("", response_model=PropertyResponse)
async def create_property(data: PropertyCreate, engine: QueryEngine = Depends(get_query_engine)):
    created = await engine.create(data)
    logger.info("Created property", property_id=created.id, slug=created.slug)
    return created

@router.put("/{property_id}", response_model=PropertyResponse)
async def update_property(property_id: str, data: PropertyUpdate, engine: QueryEngine = Depends(get_query_engine)):
    if not await engine.update_by_id(property_id, data):
        raise HTTPException(status_code=404, detail="Property not found")
    updated = await engine.find_by_id(property_id)
    if updated is None:
        # Deleted concurrently between the update and the read back
        raise HTTPException(status_code=404, detail="Property not found")
    logger.info("Updated property", property_id=property_id)
    return updated

@router.delete("/{property_id}")
async def delete_property(property_id: str, engine: QueryEngine = Depends(get_query_engine)):
    if not await engine.delete_by_id(property_id):
        raise HTTPException(status_code=404, detail="Property not found")
    logger.info("Deleted property", property_id=property_id)
    return {"message": "Property deleted successfully"}
