from __future__ import annotations

import os

os.environ.setdefault("COUNTER_BACKEND", "memory")
os.environ.setdefault("CLAIM_BACKEND", "none")

import httpx
import pytest
import pytest_asyncio

from visitor_counter.config import Settings
from visitor_counter.counter import VisitorCounter
from visitor_counter.counter_store import InMemoryCounterStore
from visitor_counter.main import create_app


@pytest.fixture
def counter_store() -> InMemoryCounterStore:
    return InMemoryCounterStore()


@pytest.fixture
def visitor_counter(counter_store: InMemoryCounterStore) -> VisitorCounter:
    return VisitorCounter(store=counter_store, prefix="site", without_date=True)


@pytest.fixture
def app(visitor_counter: VisitorCounter):
    settings = Settings(
        environment="test",
        counter_backend="memory",
        claim_backend="none",
        trust_forwarded_for=True,
        session_secret="test-secret",
    )
    return create_app(settings, counter=visitor_counter)


@pytest_asyncio.fixture
async def client_factory(app):
    clients: list[httpx.AsyncClient] = []

    def _make() -> httpx.AsyncClient:
        transport = httpx.ASGITransport(app=app)
        test_client = httpx.AsyncClient(transport=transport, base_url="http://testserver")
        clients.append(test_client)
        return test_client

    yield _make
    for test_client in clients:
        await test_client.aclose()


@pytest_asyncio.fixture
async def client(client_factory) -> httpx.AsyncClient:
    return client_factory()
