#!/usr/bin/env python3
"""formstats view traffic simulator.

Registers a handful of forms and posts view notifications at them with a
realistic mix of referrers, then prints the server's batcher statistics.

Usage:
    # 5 forms, 10 concurrent visitors, 60 seconds
    python -m tools.simulator.simulate --server http://localhost:8000 --forms 5 --visitors 10 --duration 60

    # Burst: 50 visitors hammering a single form
    python -m tools.simulator.simulate --server http://localhost:8000 --forms 1 --visitors 50 --views-per-minute 120
"""

from __future__ import annotations

import argparse
import asyncio
import random
import time
import uuid
from dataclasses import dataclass

import httpx

# Referrers and their relative weights; None means no referrer at all.
REFERRERS = {
    None: 40,
    "https://www.google.com/": 25,
    "https://twitter.com/": 10,
    "https://news.ycombinator.com/": 8,
    "https://blog.example.com/post/launch": 12,
    "https://www.linkedin.com/": 5,
}

USER_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 Chrome/124.0",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_4) AppleWebKit/605.1.15 Safari/17.4",
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_4 like Mac OS X) Mobile/15E148",
]


@dataclass
class SimVisitor:
    visitor_id: str
    user_agent: str
    views_sent: int = 0
    errors: int = 0


def pick_referrer() -> str | None:
    refs = list(REFERRERS)
    return random.choices(refs, weights=[REFERRERS[r] for r in refs])[0]


async def register_forms(client: httpx.AsyncClient, server_url: str, count: int) -> list[str]:
    """Create ``count`` forms on the server and return their keys."""
    keys = []
    for i in range(count):
        form_key = uuid.uuid4().hex[:12]
        resp = await client.post(f"{server_url}/api/v1/forms",
                                 json={"form_key": form_key, "name": f"Simulated form {i + 1}"})
        if resp.status_code == 201:
            keys.append(form_key)
        else:
            print(f"  could not register form {form_key}: HTTP {resp.status_code}")
    return keys


async def run_visitor(
    client: httpx.AsyncClient,
    visitor: SimVisitor,
    server_url: str,
    form_keys: list[str],
    views_per_minute: float,
    duration_seconds: float,
) -> None:
    """Simulate one visitor loading pages that embed forms."""
    interval = 60.0 / views_per_minute
    end_time = time.monotonic() + duration_seconds

    while time.monotonic() < end_time:
        form_key = random.choice(form_keys)
        referrer = pick_referrer()
        body = {"referrer": referrer} if referrer and random.random() < 0.5 else {}
        headers = {"user-agent": visitor.user_agent}
        if referrer and not body:
            headers["referer"] = referrer

        try:
            resp = await client.post(
                f"{server_url}/api/v1/public/forms/{form_key}/view",
                json=body,
                headers=headers,
            )
            if resp.status_code == 200:
                visitor.views_sent += 1
            else:
                visitor.errors += 1
        except httpx.RequestError:
            visitor.errors += 1

        # Jitter so visitors do not fire in lockstep.
        await asyncio.sleep(interval * random.uniform(0.5, 1.5))


async def run_simulation(args: argparse.Namespace) -> None:
    """Run the full simulation."""
    visitors = [
        SimVisitor(visitor_id=str(uuid.uuid4()), user_agent=random.choice(USER_AGENTS))
        for _ in range(args.visitors)
    ]

    print(f"Starting simulation: {args.visitors} visitors, {args.views_per_minute} views/min each")
    print(f"  Forms: {args.forms}")
    print(f"  Duration: {args.duration}s")
    print(f"  Server: {args.server}")
    print()

    start = time.monotonic()

    async with httpx.AsyncClient(timeout=10.0) as client:
        form_keys = await register_forms(client, args.server, args.forms)
        if not form_keys:
            print("No forms registered, aborting.")
            return

        tasks = [
            run_visitor(client, v, args.server, form_keys,
                        args.views_per_minute, args.duration)
            for v in visitors
        ]
        await asyncio.gather(*tasks)

        elapsed = time.monotonic() - start
        total_views = sum(v.views_sent for v in visitors)
        total_errors = sum(v.errors for v in visitors)

        print(f"\nSimulation complete in {elapsed:.1f}s")
        print(f"  Total views sent: {total_views}")
        print(f"  Total errors: {total_errors}")
        print(f"  Throughput: {total_views / elapsed:.1f} views/sec")

        # Check server stats
        try:
            resp = await client.get(f"{args.server}/api/v1/stats")
            if resp.status_code == 200:
                stats = resp.json()
                print("\nServer stats:")
                print(f"  Views received: {stats['views_received']}")
                print(f"  Views flushed: {stats['views_flushed']}")
                print(f"  Flushes: {stats['flushes']}")
                print(f"  Queue depth: {stats['queue_depth']}")
        except httpx.HTTPError as exc:
            print(f"\nCould not fetch server stats: {exc}")


def main():
    parser = argparse.ArgumentParser(description="formstats view traffic simulator")
    parser.add_argument("--server", default="http://localhost:8000", help="Server URL")
    parser.add_argument("--forms", type=int, default=3, help="Number of forms to register")
    parser.add_argument("--visitors", type=int, default=5, help="Number of concurrent visitors")
    parser.add_argument("--duration", type=int, default=60, help="Simulation duration in seconds")
    parser.add_argument("--views-per-minute", type=float, default=30,
                        help="Views per minute per visitor")

    args = parser.parse_args()
    asyncio.run(run_simulation(args))


if __name__ == "__main__":
    main()
