from __future__ import annotations

from functools import lru_cache

from records_engine.backends import create_backend
from records_engine.database import SessionLocal
from records_engine.services.builder import QueryBuilder
from records_engine.services.execution import QueryExecutionClient
from records_engine.services.rate_limiter import SlidingWindowRateLimiter
from records_engine.services.sharing import ViewSharingService
from records_engine.services.view_store import SavedViewStore
from records_engine.settings import get_settings


@lru_cache()
def get_query_builder() -> QueryBuilder:
    return QueryBuilder(settings=get_settings())


@lru_cache()
def get_execution_client() -> QueryExecutionClient:
    settings = get_settings()
    return QueryExecutionClient(create_backend(settings), settings)


@lru_cache()
def get_view_store() -> SavedViewStore:
    return SavedViewStore(SessionLocal, get_query_builder())


@lru_cache()
def get_sharing_service() -> ViewSharingService:
    return ViewSharingService(get_view_store(), get_settings())


@lru_cache()
def get_share_rate_limiter() -> SlidingWindowRateLimiter:
    return SlidingWindowRateLimiter(max_requests_per_minute=get_settings().share_resolve_rate_limit_per_minute)
