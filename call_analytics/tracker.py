"""Redis-backed API call counters with bounded per-endpoint timestamp ledgers."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
from time import time_ns
from typing import Any

from opentelemetry import trace
from redis.asyncio import Redis
from redis.exceptions import RedisError

from call_analytics.keys import (
    InvalidCallKeyError,
    all_counters_pattern,
    counter_key,
    endpoint_counters_pattern,
    endpoint_ledgers_pattern,
    is_ledger_key,
    ledger_key,
    methods_for_endpoint,
    parse_counter_key,
    validate_call_key,
)

__all__ = [
    "CallStoreUnavailableError",
    "CallTracker",
    "InvalidCallKeyError",
    "MethodStatistics",
    "TrackResult",
    "create_call_tracker",
]

MINUTE_MS = 60 * 1000
HOUR_MS = 60 * MINUTE_MS
DAY_MS = 24 * HOUR_MS
DEFAULT_LEDGER_MAX_ENTRIES = 1000
DEFAULT_RECENT_TIMESTAMPS_LIMIT = 10

logger = logging.getLogger("call_analytics.tracker")


class CallStoreUnavailableError(RuntimeError):
    """Raised when the analytics key-value store cannot serve a request."""


@dataclass(slots=True)
class TrackResult:
    """Outcome of recording a single call."""

    endpoint: str
    method: str
    total_calls: int

    def as_dict(self) -> dict[str, Any]:
        return {"endpoint": self.endpoint, "method": self.method, "totalCalls": self.total_calls}


@dataclass(slots=True)
class MethodStatistics:
    """All-time and windowed call counts for one endpoint/method pair."""

    total_calls: int
    last_minute: int
    last_hour: int
    last_day: int
    recent_timestamps: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "totalCalls": self.total_calls,
            "lastMinute": self.last_minute,
            "lastHour": self.last_hour,
            "lastDay": self.last_day,
            "recentTimestamps": list(self.recent_timestamps),
        }


def _now_ms() -> int:
    return time_ns() // 1_000_000


def format_timestamp_ms(timestamp_ms: int) -> str:
    """Render epoch milliseconds as an ISO-8601 UTC string with millisecond precision."""

    seconds, millis = divmod(timestamp_ms, 1000)
    moment = datetime.fromtimestamp(seconds, tz=timezone.utc).replace(microsecond=millis * 1000)
    return moment.isoformat(timespec="milliseconds")


def _parse_count(raw: Any) -> int | None:
    if raw is None:
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


@contextmanager
def _store_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except RedisError as exc:
        raise CallStoreUnavailableError(f"Analytics store unavailable during {operation}") from exc


class CallTracker:
    """
    Record API calls and answer windowed volume queries against Redis.

    Every call bumps an all-time counter and adds its millisecond timestamp to a
    sorted-set ledger trimmed to the newest ``ledger_max_entries`` members. The
    tracker keeps no in-process state; the store client is injected.
    """

    def __init__(
        self,
        client: Redis,
        *,
        ledger_max_entries: int = DEFAULT_LEDGER_MAX_ENTRIES,
        recent_timestamps_limit: int = DEFAULT_RECENT_TIMESTAMPS_LIMIT,
        clock: Callable[[], int] = _now_ms,
        tracer: trace.Tracer | None = None,
    ) -> None:
        if ledger_max_entries < 1:
            raise ValueError("ledger_max_entries must be >= 1")
        if recent_timestamps_limit < 0:
            raise ValueError("recent_timestamps_limit must be >= 0")
        self._client = client
        self._ledger_max_entries = ledger_max_entries
        self._recent_timestamps_limit = recent_timestamps_limit
        self._clock = clock
        self._tracer = tracer or trace.get_tracer(__name__)

    async def record(self, endpoint: str, method: str) -> TrackResult:
        """
        Count one call to ``method endpoint`` and return the new all-time total.

        Increment, ledger insert and trim run as one MULTI/EXEC transaction.

        Raises:
            InvalidCallKeyError: when the endpoint/method cannot be keyed.
            CallStoreUnavailableError: when the store rejects or drops the request.
        """

        validate_call_key(endpoint, method)
        with self._tracer.start_as_current_span("TrackApiCall") as span:
            span.set_attribute("endpoint", endpoint)
            span.set_attribute("method", method)
            logger.info("track_call method=%s endpoint=%s", method, endpoint)

            timestamp_ms = self._clock()
            timestamps_key = ledger_key(endpoint, method)
            with _store_errors("record"):
                async with self._client.pipeline(transaction=True) as pipe:
                    pipe.incr(counter_key(endpoint, method))
                    pipe.zadd(timestamps_key, {str(timestamp_ms): timestamp_ms})
                    # Negative stop index: keep the newest N members by score.
                    pipe.zremrangebyrank(timestamps_key, 0, -(self._ledger_max_entries + 1))
                    count, _added, _trimmed = await pipe.execute()

            total_calls = int(count)
            span.set_attribute("call.count", total_calls)
            logger.info(
                "track_call_counted method=%s endpoint=%s count=%s", method, endpoint, total_calls
            )
            return TrackResult(endpoint=endpoint, method=method, total_calls=total_calls)

    async def query_endpoint(self, endpoint: str) -> dict[str, MethodStatistics]:
        """Return statistics for every method recorded on ``endpoint``; zero-count methods are omitted."""

        with self._tracer.start_as_current_span("GetEndpointAnalytics") as span:
            span.set_attribute("endpoint", endpoint)
            logger.info("endpoint_analytics_requested endpoint=%s", endpoint)

            with _store_errors("query_endpoint"):
                methods = methods_for_endpoint(
                    await self._scan(endpoint_counters_pattern(endpoint)), endpoint
                )
                now_ms = self._clock()
                stats: dict[str, MethodStatistics] = {}
                for method in methods:
                    method_stats = await self._method_statistics(endpoint, method, now_ms)
                    if method_stats is not None:
                        stats[method] = method_stats

            span.set_attribute("methods.count", len(stats))
            logger.info(
                "endpoint_analytics_retrieved endpoint=%s methods_tracked=%s", endpoint, len(stats)
            )
            return stats

    async def _method_statistics(
        self, endpoint: str, method: str, now_ms: int
    ) -> MethodStatistics | None:
        timestamps_key = ledger_key(endpoint, method)
        async with self._client.pipeline(transaction=False) as pipe:
            pipe.get(counter_key(endpoint, method))
            pipe.zrevrangebyscore(
                timestamps_key,
                "+inf",
                "-inf",
                start=0,
                num=self._recent_timestamps_limit,
                withscores=True,
            )
            for window_ms in (MINUTE_MS, HOUR_MS, DAY_MS):
                pipe.zcount(timestamps_key, now_ms - window_ms, now_ms)
            raw_count, recent, last_minute, last_hour, last_day = await pipe.execute()

        total_calls = _parse_count(raw_count)
        if total_calls is None or total_calls <= 0:
            return None

        return MethodStatistics(
            total_calls=total_calls,
            last_minute=int(last_minute),
            last_hour=int(last_hour),
            last_day=int(last_day),
            recent_timestamps=[format_timestamp_ms(int(score)) for _member, score in recent],
        )

    async def query_all(self) -> dict[str, dict[str, dict[str, int]]]:
        """Snapshot all-time totals for every tracked endpoint/method."""

        with self._tracer.start_as_current_span("GetAllAnalytics") as span:
            logger.info("all_analytics_requested")

            with _store_errors("query_all"):
                parsed_keys: list[tuple[str, str, str]] = []
                for key in sorted(await self._scan(all_counters_pattern())):
                    if is_ledger_key(key):
                        continue
                    parsed = parse_counter_key(key)
                    if parsed is None:
                        continue
                    parsed_keys.append((key, *parsed))

                values: list[Any] = []
                if parsed_keys:
                    async with self._client.pipeline(transaction=False) as pipe:
                        for key, _endpoint, _method in parsed_keys:
                            pipe.get(key)
                        values = await pipe.execute()

            all_stats: dict[str, dict[str, dict[str, int]]] = {}
            for (_key, endpoint, method), raw in zip(parsed_keys, values):
                total_calls = _parse_count(raw)
                if total_calls is None:
                    # Deleted between scan and read.
                    continue
                all_stats.setdefault(endpoint, {})[method] = {"totalCalls": total_calls}

            span.set_attribute("endpoints.count", len(all_stats))
            logger.info("all_analytics_retrieved endpoints=%s", len(all_stats))
            return all_stats

    async def clear(self, endpoint: str) -> int:
        """Delete counters and ledgers for every method recorded on ``endpoint``."""

        with self._tracer.start_as_current_span("ClearEndpointAnalytics") as span:
            span.set_attribute("endpoint", endpoint)
            logger.info("clear_analytics_requested endpoint=%s", endpoint)

            keys_deleted = 0
            with _store_errors("clear"):
                scanned = await self._scan(endpoint_counters_pattern(endpoint))
                scanned.extend(await self._scan(endpoint_ledgers_pattern(endpoint)))
                for method in methods_for_endpoint(scanned, endpoint):
                    keys_deleted += int(await self._client.delete(counter_key(endpoint, method)))
                    keys_deleted += int(await self._client.delete(ledger_key(endpoint, method)))

            span.set_attribute("keys.deleted", keys_deleted)
            logger.info("clear_analytics_done endpoint=%s keys_deleted=%s", endpoint, keys_deleted)
            return keys_deleted

    async def ping(self) -> bool:
        with _store_errors("ping"):
            return bool(await self._client.ping())

    async def close(self) -> None:
        await self._client.aclose()

    async def _scan(self, pattern: str) -> list[str]:
        keys: list[str] = []
        async for key in self._client.scan_iter(match=pattern, count=1000):
            keys.append(str(key))
        return keys


def create_call_tracker(
    *,
    redis_url: str,
    socket_timeout_seconds: float | None = None,
    connect_timeout_seconds: float | None = None,
    ledger_max_entries: int = DEFAULT_LEDGER_MAX_ENTRIES,
    recent_timestamps_limit: int = DEFAULT_RECENT_TIMESTAMPS_LIMIT,
) -> CallTracker:
    """Create a tracker bound to a fresh Redis connection pool."""

    if not redis_url:
        raise RuntimeError("REDIS_URL is required for the analytics store")
    client = Redis.from_url(
        redis_url,
        encoding="utf-8",
        decode_responses=True,
        socket_timeout=socket_timeout_seconds,
        socket_connect_timeout=connect_timeout_seconds,
    )
    return CallTracker(
        client,
        ledger_max_entries=ledger_max_entries,
        recent_timestamps_limit=recent_timestamps_limit,
    )
