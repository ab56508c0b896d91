#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
from dataclasses import dataclass

import httpx


@dataclass(frozen=True)
class SimulatedVisitor:
    ip: str
    user_agent: str
    waves: int


def build_visitors() -> list[SimulatedVisitor]:
    return [
        SimulatedVisitor(
            ip="50.50.50.1",
            user_agent="Mozilla/5.0 (X11; Linux x86_64) Gecko/20100101 Firefox/128.0",
            waves=3,
        ),
        SimulatedVisitor(
            ip="50.50.50.2",
            user_agent=(
                "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) "
                "AppleWebKit/605.1.15 (KHTML, like Gecko) Mobile/15E148 Safari/604.1"
            ),
            waves=2,
        ),
        SimulatedVisitor(
            ip="50.50.50.3",
            user_agent="curl/8.4.0",
            waves=1,
        ),
    ]


def visit(base_url: str, visitor: SimulatedVisitor) -> tuple[str, str]:
    headers = {"X-Forwarded-For": visitor.ip, "User-Agent": visitor.user_agent}
    # One client per visitor so its session cookie is replayed between waves.
    try:
        with httpx.Client(base_url=base_url, headers=headers, timeout=10) as client:
            for _ in range(visitor.waves):
                client.get("/healthz").raise_for_status()
    except httpx.HTTPError as exc:
        return ("error", f"request_failed: {exc}")
    return ("ok", f"waves={visitor.waves}")


def main() -> int:
    parser = argparse.ArgumentParser(description="Send sample visits to a visitor counter")
    parser.add_argument(
        "--base-url",
        default="http://localhost:8000",
        help="Visitor counter base URL (default: http://localhost:8000)",
    )
    args = parser.parse_args()

    visitors = build_visitors()
    print(f"Simulating {len(visitors)} visitors against {args.base_url}...")
    for visitor in visitors:
        outcome, info = visit(args.base_url, visitor)
        print(f"- {visitor.ip}: {outcome} ({info})")

    try:
        response = httpx.get(f"{args.base_url.rstrip('/')}/counters", timeout=10)
        print(json.dumps(response.json(), indent=2))
    except (httpx.HTTPError, ValueError) as exc:
        print(f"counters unavailable: {exc}")
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
