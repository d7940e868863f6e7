from __future__ import annotations

import httpx
import pytest_asyncio

from call_analytics.main import app
from call_analytics.tracker import CallTracker


@pytest_asyncio.fixture
async def tracker(redis_client, clock) -> CallTracker:
    original = app.state.tracker
    app.state.tracker = CallTracker(redis_client, clock=clock)
    yield app.state.tracker
    app.state.tracker = original


@pytest_asyncio.fixture
async def client(tracker) -> httpx.AsyncClient:
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as test_client:
        yield test_client
