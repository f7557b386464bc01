from fastapi import Request
from catalog.services.cache import CacheInvalidator
from catalog.services.hub import SubscriptionHub
from catalog.services.query import QueryEngine

# Services are built once at startup and hung off app.state (see catalog.main)

def get_query_engine(request: Request) -> QueryEngine:
    return request.app.state.query_engine

def get_cache(request: Request) -> CacheInvalidator:
    return request.app.state.cache

def get_hub(request: Request) -> SubscriptionHub:
    return request.app.state.hub
