"""Test fixtures — an in-memory store per test, real bus, real app.

Learn: Testing pattern for the FastAPI app without PostgreSQL:

1. Each test gets a fresh MemoryProfileStore (function-scoped), so no data
   leaks between tests.
2. The `client` fixture talks to the app through httpx's ASGITransport.
   ASGITransport does not run the lifespan, so the fixture connects the
   store and starts the bus itself, and stops both afterwards.
3. WebSocket tests use Starlette's TestClient instead (test_websocket.py):
   it runs the lifespan and the app on a background event loop, which is
   what a long-lived socket needs.

Bus timings are shrunk (10ms backoff, 200ms closing grace) so reconnect
scenarios finish quickly.
"""

import asyncio

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from profilecast.config import Settings
from profilecast.main import create_app
from profilecast.realtime.bus import NotificationBus
from profilecast.store.memory import MemoryProfileStore


def make_settings(**overrides) -> Settings:
    values = {
        "store_uri": "memory://",
        "ws_queue_capacity": 64,
        "changes_backoff_initial_ms": 10,
        "changes_backoff_max_ms": 50,
        "closing_grace_ms": 200,
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture()
def settings_factory():
    """Build Settings for a test app: memory store, fast bus timings."""
    return make_settings


@pytest.fixture()
def settings():
    return make_settings()


@pytest.fixture()
def store():
    return MemoryProfileStore()


@pytest_asyncio.fixture()
async def bus(store):
    """A running bus over a connected memory store, upstream already open."""
    await store.connect()
    bus = NotificationBus(
        store,
        default_capacity=64,
        backoff_initial=0.01,
        backoff_max=0.05,
        closing_grace=0.2,
    )
    await bus.start()
    await asyncio.wait_for(bus.wait_connected(), timeout=2)
    try:
        yield bus
    finally:
        await bus.stop()
        await store.close()


@pytest.fixture()
def app(settings, store):
    return create_app(settings, store=store)


@pytest_asyncio.fixture()
async def client(app):
    """HTTP client against a started app (store connected, bus running)."""
    store = app.state.store
    bus = app.state.bus

    await store.connect()
    await bus.start()
    await asyncio.wait_for(bus.wait_connected(), timeout=2)

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    await bus.stop()
    await store.close()
