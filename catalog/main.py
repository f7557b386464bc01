from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from redis.asyncio import Redis
from catalog.config import settings
from catalog.db import create_tables, make_engine, make_session_factory
from catalog.exceptions import StoreUnavailable
from catalog.routers import changes
from catalog.routers import properties
from catalog.services.cache import CacheInvalidator, MemoryCacheBackend, RedisCacheBackend, LOCATIONS_KEY, TYPES_KEY, featured_key
from catalog.services.hub import SubscriptionHub
from catalog.services.notifier import ChangeNotifier
from catalog.services.query import QueryEngine
from catalog.services.store import PropertyStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from structlog import get_logger

logger = get_logger()

app = FastAPI(title="Property Catalog Service")
app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_credentials=True, allow_methods=["*"], allow_headers=["*"])

scheduler = AsyncIOScheduler()

async def init_services(target: FastAPI, database_url: str | None = None, cache_backend: str | None = None) -> None:
    """Build the catalog core and hang it off ``target.state``."""
    state = target.state
    state.db_engine = make_engine(database_url or settings.DATABASE_URL)
    await create_tables(state.db_engine)
    state.redis = None
    if (cache_backend or settings.CACHE_BACKEND) == "redis":
        state.redis = Redis.from_url(settings.REDIS_URL)
        backend = RedisCacheBackend(state.redis)
    else:
        backend = MemoryCacheBackend()
    state.hub = SubscriptionHub(queue_size=settings.HUB_QUEUE_SIZE)
    store = PropertyStore(make_session_factory(state.db_engine))
    state.query_engine = QueryEngine(store, ChangeNotifier(state.hub))
    state.cache = CacheInvalidator(backend, ttl=settings.CACHE_TTL_SECONDS)
    # The server's own read cache listens on the same bus as remote clients
    state.cache_subscription = state.hub.connect(state.cache.listen, name="server-cache")
    logger.info("Catalog services started", cache_backend=type(backend).__name__)

async def shutdown_services(target: FastAPI) -> None:
    state = target.state
    state.hub.close()
    if state.redis is not None:
        await state.redis.close()
    await state.db_engine.dispose()

async def warm_cache():
    engine: QueryEngine = app.state.query_engine
    cache: CacheInvalidator = app.state.cache
    limit = settings.FEATURED_DEFAULT_LIMIT

    async def featured():
        return [p.model_dump(mode="json", by_alias=True) for p in await engine.find_featured(limit)]

    async def types():
        return sorted(await engine.list_distinct_property_types())

    async def locations():
        return sorted(await engine.list_distinct_locations())

    try:
        await cache.get_or_fetch(featured_key(limit), featured)
        await cache.get_or_fetch(TYPES_KEY, types)
        await cache.get_or_fetch(LOCATIONS_KEY, locations)
    except StoreUnavailable as e:
        logger.warning("Cache warm-up skipped", error=str(e))

@app.on_event("startup")
async def startup_event():
    await init_services(app)
    # Run once immediately on startup
    await warm_cache()
    scheduler.add_job(warm_cache, "interval", minutes=settings.CACHE_WARM_MINUTES)
    scheduler.start()

@app.on_event("shutdown")
async def shutdown_event():
    scheduler.shutdown()
    await shutdown_services(app)

@app.exception_handler(StoreUnavailable)
async def store_unavailable_handler(request: Request, exc: StoreUnavailable):
    logger.error("Request failed, record store unavailable", path=request.url.path, error=str(exc))
    return JSONResponse(status_code=503, content={"detail": "Property store unavailable"})

app.include_router(properties.router)
app.include_router(changes.router)

@app.get("/health")
async def root_health():
    return "ok"
