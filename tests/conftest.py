import os

os.environ.setdefault("RECORDS_ENVIRONMENT", "test")
os.environ.setdefault("RECORDS_DATABASE_URL", "sqlite+pysqlite:///:memory:")

import pytest

from records_engine import models  # noqa: E402,F401
from records_engine.database import Base, build_engine, build_session_factory  # noqa: E402
from records_engine.services.builder import QueryBuilder  # noqa: E402
from records_engine.services.sharing import ViewSharingService  # noqa: E402
from records_engine.services.view_store import SavedViewStore  # noqa: E402
from records_engine.settings import Settings  # noqa: E402


@pytest.fixture
def settings() -> Settings:
    return Settings(environment="test", database_url="sqlite+pysqlite:///:memory:")


@pytest.fixture
def session_factory():
    """Fresh in-memory database per test"""
    engine = build_engine("sqlite+pysqlite:///:memory:")
    Base.metadata.create_all(bind=engine)
    yield build_session_factory(engine)
    engine.dispose()


@pytest.fixture
def builder(settings: Settings) -> QueryBuilder:
    return QueryBuilder(settings=settings)


@pytest.fixture
def store(session_factory, builder: QueryBuilder) -> SavedViewStore:
    return SavedViewStore(session_factory, builder)


@pytest.fixture
def sharing(store: SavedViewStore, settings: Settings) -> ViewSharingService:
    return ViewSharingService(store, settings)
