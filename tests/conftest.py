import pytest
import pytest_asyncio
from catalog.db import create_tables, make_engine, make_session_factory
from catalog.services.hub import SubscriptionHub
from catalog.services.notifier import ChangeNotifier
from catalog.services.query import QueryEngine
from catalog.services.store import PropertyStore
from factories import StepClock


@pytest.fixture
def clock():
    return StepClock()


@pytest_asyncio.fixture
async def db_engine():
    engine = make_engine("sqlite+aiosqlite://")
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def store(db_engine, clock):
    return PropertyStore(make_session_factory(db_engine), clock=clock)


@pytest_asyncio.fixture
async def hub():
    hub = SubscriptionHub(queue_size=10)
    yield hub
    hub.close()


@pytest_asyncio.fixture
async def engine(store, hub):
    return QueryEngine(store, ChangeNotifier(hub), max_limit=50)
