"""
Pytest fixtures for FlowTrack tests.
"""

import asyncio
import json
import os
from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from uuid import uuid4

import httpx
import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.pool import StaticPool

# Ensure test config is set before importing flowtrack modules.
os.environ.setdefault("FLOWTRACK_ALLOW_INSECURE_DEV", "true")
os.environ.setdefault("FLOWTRACK_ENV", "development")
os.environ.setdefault("FLOWTRACK_DATABASE_URL", "sqlite+aiosqlite://")
os.environ["FLOWTRACK_ELASTICSEARCH_URL"] = ""

from flowtrack.db.base import Database
from flowtrack.observability.metrics import metrics
from flowtrack.search.client import SearchIndexClient
from flowtrack.search.synchronizer import IndexSynchronizer

pytest_plugins = ("pytest_asyncio",)

INDEX_URL = "http://index.test:9200"


class StepClock:
    """Event clock the test moves by hand."""

    def __init__(self, start: datetime):
        self.now = start

    def advance(self, **delta: float) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now

    def __call__(self) -> datetime:
        return self.now


class FakeIndex:
    """
    In-memory stand-in for the index REST API, served through
    httpx.MockTransport.
    """

    def __init__(self) -> None:
        self.indices: dict[str, dict[str, Any]] = {}
        self.documents: dict[tuple[str, str], dict[str, Any]] = {}
        self.requests: list[httpx.Request] = []
        self.searches: list[tuple[str, dict[str, Any]]] = []
        self.search_response: dict[str, Any] = {"hits": {"hits": []}}
        self.reachable = True
        self.write_status: Optional[int] = None
        self.failing_writes = 0
        self.write_delay = 0.0
        self.search_status: Optional[int] = None

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    async def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if not self.reachable:
            raise httpx.ConnectError("connection refused", request=request)

        parts = [p for p in request.url.path.split("/") if p]
        if not parts:
            return httpx.Response(200, json={"version": {"number": "8.11.0"}})

        index = parts[0]
        if len(parts) == 1:
            if request.method == "HEAD":
                return httpx.Response(200 if index in self.indices else 404)
            if request.method == "PUT":
                self.indices[index] = json.loads(request.content)
                return httpx.Response(200, json={"acknowledged": True})

        if parts[1] == "_doc":
            return await self._handle_document(request, index, parts[2])

        if parts[1] == "_search":
            if self.search_status:
                return httpx.Response(self.search_status, json={"error": "search failed"})
            self.searches.append((index, json.loads(request.content)))
            return httpx.Response(200, json=self.search_response)

        return httpx.Response(400, json={"error": f"unsupported {request.method} {request.url.path}"})

    async def _handle_document(self, request: httpx.Request, index: str, doc_id: str) -> httpx.Response:
        if self.write_delay:
            await asyncio.sleep(self.write_delay)
        if self.failing_writes:
            self.failing_writes -= 1
            return httpx.Response(self.write_status or 503, json={"error": "unavailable"})

        key = (index, doc_id)
        if request.method == "PUT":
            self.documents[key] = json.loads(request.content)
            return httpx.Response(201, json={"result": "created"})
        if request.method == "DELETE":
            if self.documents.pop(key, None) is None:
                return httpx.Response(404, json={"result": "not_found"})
            return httpx.Response(200, json={"result": "deleted"})
        return httpx.Response(405)

    def document_requests(self) -> list[httpx.Request]:
        return [r for r in self.requests if "/_doc/" in r.url.path]


@pytest.fixture(autouse=True)
def reset_metrics():
    metrics.reset()
    yield


@pytest.fixture
async def database():
    """In-memory SQLite database shared by every session of one test."""
    db = Database(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await db.init()
    yield db
    await db.close()


@pytest.fixture
async def session(database):
    async with database.session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def org_id():
    return uuid4()


@pytest.fixture
def user_id():
    return uuid4()


@pytest.fixture
def clock():
    return StepClock(datetime(2024, 3, 4, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def fake_index():
    return FakeIndex()


@pytest.fixture
async def index_client(fake_index):
    client = SearchIndexClient(INDEX_URL, transport=fake_index.transport(), timeout_seconds=1.0)
    assert await client.start()
    yield client
    await client.close()


@pytest.fixture
async def synchronizer(index_client):
    sync = IndexSynchronizer(
        index_client,
        max_retries=2,
        retry_backoff_seconds=0.0,
        operation_timeout_seconds=0.5,
    )
    await sync.start()
    yield sync
    await sync.stop(timeout=1.0)


@pytest.fixture
async def api_client(database):
    """Async test client wired to the test database, without an index."""
    from flowtrack.main import app

    app.state.database = database
    app.state.synchronizer = None

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
