import json
from datetime import UTC, datetime, timedelta

import httpx
import pytest
import pytest_asyncio

from patrolsync.client import SyncApiClient
from patrolsync.dispatcher import SyncDispatcher
from patrolsync.errors import StorageError
from patrolsync.server import create_app
from patrolsync.storage import InMemoryKeyValueStore
from patrolsync.store import ShiftStore
from patrolsync.sync_queue import SyncQueue


def _p(msg: str) -> None:
    # pytest captures stdout unless you run with -s
    print(msg, flush=True)


class Clock:
    """Injectable now_fn that only moves when a test moves it."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 7, 2, 8, 0, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class RecordingEndpoint:
    """
    httpx.MockTransport handler standing in for the sync API. Accepted calls
    are recorded; `fail_when(request, body)` returning True answers 503.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, str, dict | None]] = []
        self.requests: list[httpx.Request] = []
        self.fail_when = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        body = json.loads(request.content) if request.content else None
        if self.fail_when is not None and self.fail_when(request, body):
            _p(f"[endpoint] {request.method} {request.url.path} -> 503")
            return httpx.Response(503, json={"error": "unavailable"})
        self.calls.append((request.method, request.url.path, body))
        _p(f"[endpoint] {request.method} {request.url.path} -> 200")
        return httpx.Response(200, json={"success": True})

    @property
    def paths(self) -> list[str]:
        return [path for _method, path, _body in self.calls]


class FailingStore(InMemoryKeyValueStore):
    """In-memory store whose writes to selected keys raise StorageError."""

    def __init__(self) -> None:
        super().__init__()
        self.failing_keys: set[str] = set()

    async def put(self, key: str, value: str) -> None:
        if key in self.failing_keys:
            raise StorageError(f"disk full writing {key}")
        await super().put(key, value)


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def kv() -> InMemoryKeyValueStore:
    return InMemoryKeyValueStore()


@pytest.fixture
def queue(kv, clock) -> SyncQueue:
    return SyncQueue(kv, now_fn=clock)


@pytest.fixture
def shifts(kv, queue, clock) -> ShiftStore:
    return ShiftStore(kv, queue, now_fn=clock)


@pytest.fixture
def endpoint() -> RecordingEndpoint:
    return RecordingEndpoint()


@pytest_asyncio.fixture
async def api_client(endpoint):
    http = httpx.AsyncClient(
        transport=httpx.MockTransport(endpoint), base_url="http://sync.test"
    )
    client = SyncApiClient(http_client=http)
    yield client
    await client.aclose()


@pytest_asyncio.fixture
async def dispatcher(queue, api_client):
    dispatcher = SyncDispatcher(queue, api_client)
    yield dispatcher
    await dispatcher.stop()


@pytest.fixture
def server_app(clock):
    return create_app(now_fn=clock)


@pytest_asyncio.fixture
async def server_client(server_app):
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=server_app), base_url="http://test"
    ) as client:
        yield client


def make_client(handler) -> SyncApiClient:
    http = httpx.AsyncClient(
        transport=httpx.MockTransport(handler), base_url="http://sync.test"
    )
    return SyncApiClient(http_client=http)
