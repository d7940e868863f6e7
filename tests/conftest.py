from __future__ import annotations

from fakeredis import FakeAsyncRedis, FakeServer
import pytest
import pytest_asyncio

START_MS = 1_760_000_000_000


class ManualClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, now_ms: int = START_MS) -> None:
        self.now_ms = now_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, delta_ms: int = 1) -> int:
        self.now_ms += delta_ms
        return self.now_ms


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest_asyncio.fixture
async def redis_client() -> FakeAsyncRedis:
    client = FakeAsyncRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest_asyncio.fixture
async def unavailable_redis() -> FakeAsyncRedis:
    server = FakeServer()
    server.connected = False
    client = FakeAsyncRedis(server=server, decode_responses=True)
    yield client
    await client.aclose()
