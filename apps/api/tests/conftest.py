import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from database import LedgerStore, get_optional_store, get_store
from main import app
from routers import rate_limit
from services.generation import get_image_generator


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


@pytest_asyncio.fixture
async def ledger_store(tmp_path):
    store = LedgerStore.from_url(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    await store.create_schema()
    yield store
    await store.dispose()


@pytest_asyncio.fixture
async def outage_store(tmp_path):
    """A store whose database file can never be opened."""
    store = LedgerStore.from_url(f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'nested' / 'ledger.db'}")
    yield store
    await store.dispose()


def _client_for(store, generator=None):
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_optional_store] = lambda: store
    if generator is not None:
        app.dependency_overrides[get_image_generator] = lambda: generator
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


@pytest_asyncio.fixture
async def api_client(ledger_store):
    async with _client_for(ledger_store) as client:
        yield client
    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def outage_client(outage_store):
    async with _client_for(outage_store) as client:
        yield client
    app.dependency_overrides.clear()


@pytest.fixture
def client_factory():
    """Build a client for an explicit store/generator pair."""
    def _factory(store, generator=None):
        return _client_for(store, generator)

    yield _factory
    app.dependency_overrides.clear()
