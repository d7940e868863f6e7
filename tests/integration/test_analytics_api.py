from __future__ import annotations

from datetime import datetime

from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

import call_analytics.main as main_module
from call_analytics.tracker import CallTracker


async def test_root_describes_service(client) -> None:
    response = await client.get("/")
    assert response.status_code == 200
    assert "Analytics API" in response.json()["message"]


async def test_track_then_query_endpoint(client, clock) -> None:
    totals = []
    for _ in range(3):
        response = await client.post("/api/analytics/track", json={"endpoint": "orders", "method": "GET"})
        assert response.status_code == 200
        totals.append(response.json()["totalCalls"])
        clock.advance(10)

    assert totals == [1, 2, 3]
    assert response.json() == {"endpoint": "orders", "method": "GET", "totalCalls": 3}

    detail = await client.get("/api/analytics/orders")
    assert detail.status_code == 200
    body = detail.json()
    assert body["endpoint"] == "orders"
    assert list(body["statistics"]) == ["GET"]
    stats = body["statistics"]["GET"]
    assert stats["totalCalls"] == 3
    assert stats["lastMinute"] == 3
    assert stats["lastHour"] == 3
    assert stats["lastDay"] == 3
    assert len(stats["recentTimestamps"]) == 3
    assert stats["recentTimestamps"] == sorted(stats["recentTimestamps"], reverse=True)


async def test_endpoint_with_slashes_is_addressable_when_encoded(client) -> None:
    await client.post("/api/analytics/track", json={"endpoint": "/api/items", "method": "POST"})

    detail = await client.get("/api/analytics/%2Fapi%2Fitems")
    assert detail.status_code == 200
    assert detail.json()["endpoint"] == "/api/items"
    assert detail.json()["statistics"]["POST"]["totalCalls"] == 1

    cleared = await client.delete("/api/analytics/%2Fapi%2Fitems")
    assert cleared.json() == {"endpoint": "/api/items", "keysDeleted": 2}


async def test_unknown_endpoint_returns_empty_statistics(client) -> None:
    response = await client.get("/api/analytics/nothing-here")
    assert response.status_code == 200
    assert response.json() == {"endpoint": "nothing-here", "statistics": {}}


async def test_all_analytics_groups_by_endpoint(client, clock) -> None:
    await client.post("/api/analytics/track", json={"endpoint": "a", "method": "GET"})
    for _ in range(2):
        clock.advance()
        await client.post("/api/analytics/track", json={"endpoint": "b", "method": "POST"})

    response = await client.get("/api/analytics")
    assert response.status_code == 200
    assert response.json() == {
        "a": {"GET": {"totalCalls": 1}},
        "b": {"POST": {"totalCalls": 2}},
    }


async def test_delete_clears_endpoint_and_is_idempotent(client) -> None:
    await client.post("/api/analytics/track", json={"endpoint": "items", "method": "GET"})
    await client.post("/api/analytics/track", json={"endpoint": "items", "method": "PURGE"})

    first = await client.delete("/api/analytics/items")
    assert first.status_code == 200
    assert first.json() == {"endpoint": "items", "keysDeleted": 4}

    detail = await client.get("/api/analytics/items")
    assert detail.json()["statistics"] == {}

    second = await client.delete("/api/analytics/items")
    assert second.json() == {"endpoint": "items", "keysDeleted": 0}


async def test_track_validates_body(client) -> None:
    missing = await client.post("/api/analytics/track", json={"endpoint": "orders"})
    assert missing.status_code == 422

    empty = await client.post("/api/analytics/track", json={"endpoint": "", "method": "GET"})
    assert empty.status_code == 422

    delimiter = await client.post(
        "/api/analytics/track",
        json={"endpoint": "orders", "method": "GET:HEAD"},
    )
    assert delimiter.status_code == 422


async def test_store_outage_maps_to_service_unavailable(client, unavailable_redis) -> None:
    main_module.app.state.tracker = CallTracker(unavailable_redis)

    track = await client.post("/api/analytics/track", json={"endpoint": "orders", "method": "GET"})
    assert track.status_code == 503
    assert track.json() == {"detail": "Analytics store is unavailable"}

    assert (await client.get("/api/analytics/orders")).status_code == 503
    assert (await client.get("/api/analytics")).status_code == 503
    assert (await client.delete("/api/analytics/orders")).status_code == 503


async def test_health_reports_store_status(client, unavailable_redis) -> None:
    healthy = await client.get("/api/health")
    assert healthy.status_code == 200
    assert healthy.json()["status"] == "healthy"
    assert healthy.json()["store"] == "ok"
    assert healthy.json()["version"] == main_module.settings.app_version
    assert isinstance(healthy.json()["uptime_seconds"], int)
    assert datetime.fromisoformat(healthy.json()["checked_at"]).tzinfo is not None

    main_module.app.state.tracker = CallTracker(unavailable_redis)
    unhealthy = await client.get("/api/health")
    assert unhealthy.status_code == 200
    assert unhealthy.json()["status"] == "unhealthy"
    assert unhealthy.json()["store"] == "unavailable"


async def test_self_tracking_records_route_templates(client, tracker, monkeypatch) -> None:
    monkeypatch.setattr(main_module.settings, "self_tracking_enabled", True)

    assert (await client.get("/")).status_code == 200
    assert (await client.get("/api/health")).status_code == 200
    assert (await client.get("/api/analytics")).status_code == 200

    assert await tracker.query_all() == {
        "/": {"GET": {"totalCalls": 1}},
        "/api/health": {"GET": {"totalCalls": 1}},
    }


async def test_self_tracking_ignores_store_outage(client, unavailable_redis, monkeypatch) -> None:
    monkeypatch.setattr(main_module.settings, "self_tracking_enabled", True)
    main_module.app.state.tracker = CallTracker(unavailable_redis)

    response = await client.get("/")
    assert response.status_code == 200


async def test_track_span_joins_inbound_trace(client, redis_client, clock) -> None:
    exporter = InMemorySpanExporter()
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    main_module.app.state.tracker = CallTracker(redis_client, clock=clock, tracer=provider.get_tracer("test"))

    response = await client.post(
        "/api/analytics/track",
        json={"endpoint": "orders", "method": "GET"},
        headers={"traceparent": "00-4bf92f3577b34da6a3ce929d0e0e4736-00f067aa0ba902b7-01"},
    )

    assert response.status_code == 200
    spans = [span for span in exporter.get_finished_spans() if span.name == "TrackApiCall"]
    assert len(spans) == 1
    assert spans[0].context.trace_id == 0x4BF92F3577B34DA6A3CE929D0E0E4736
    assert spans[0].parent is not None
