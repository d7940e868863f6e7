#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
from dataclasses import dataclass

import httpx


@dataclass(frozen=True)
class SampleCall:
    endpoint: str
    method: str
    repeat: int


def build_sample_calls() -> list[SampleCall]:
    return [
        SampleCall(endpoint="/api/data", method="GET", repeat=5),
        SampleCall(endpoint="/api/chain", method="GET", repeat=2),
        SampleCall(endpoint="/api/storage/items", method="GET", repeat=4),
        SampleCall(endpoint="/api/storage/items", method="POST", repeat=2),
        SampleCall(endpoint="/api/storage/items/1", method="PUT", repeat=1),
        SampleCall(endpoint="/api/storage/items/1", method="DELETE", repeat=1),
    ]


def track_call(client: httpx.Client, base_url: str, call: SampleCall) -> tuple[str, str]:
    try:
        response = client.post(
            f"{base_url.rstrip('/')}/api/analytics/track",
            json={"endpoint": call.endpoint, "method": call.method},
        )
    except httpx.HTTPError as exc:
        return ("error", f"request_failed: {exc}")

    if response.status_code == 200:
        return ("tracked", f"total_calls={response.json()['totalCalls']}")

    detail = response.text
    try:
        detail = json.dumps(response.json(), indent=2)
    except ValueError:
        pass
    return ("error", f"status={response.status_code} detail={detail}")


def main() -> int:
    parser = argparse.ArgumentParser(description="Record sample API calls in the analytics service")
    parser.add_argument(
        "--base-url",
        default="http://localhost:8000",
        help="Analytics API base URL (default: http://localhost:8000)",
    )
    args = parser.parse_args()

    calls = build_sample_calls()
    print(f"Tracking {sum(call.repeat for call in calls)} sample calls against {args.base_url}...")

    failures = 0
    with httpx.Client(timeout=10) as client:
        for call in calls:
            for _ in range(call.repeat):
                outcome, info = track_call(client, args.base_url, call)
                failures += outcome == "error"
            print(f"- {call.method} {call.endpoint}: {outcome} ({info})")

    return 1 if failures else 0


if __name__ == "__main__":
    raise SystemExit(main())
