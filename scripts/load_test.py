"""
Load Test: /generate rate limiting
==================================
Fires requests at the API-key route of a deployed stage and reports how the
usage plan treated them:
  - Admitted (2xx) vs throttled (429) vs rejected (403)
  - Latency (avg, p50, p95, p99)
  - Achieved request rate

With the default plan (10 req/s sustained, burst 2) a concurrency well above
2 should show 429s; a paced run at or below 10 req/s should not.

Usage:
  python scripts/load_test.py --endpoint https://abc123.execute-api.us-east-1.amazonaws.com/prod \
      --api-key ... --requests 100 --concurrency 10
  python scripts/load_test.py ... --rate 8          # pace to 8 req/s
"""
from __future__ import annotations

import argparse
import threading
import time
from collections import Counter
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import List

import requests


@dataclass
class RequestResult:
    status: int
    error: str = ""
    latency_ms: float = 0.0


@dataclass
class LoadTestReport:
    total: int = 0
    statuses: Counter = field(default_factory=Counter)
    errors: int = 0
    latencies: List[float] = field(default_factory=list)

    def add(self, result: RequestResult) -> None:
        self.total += 1
        self.statuses[result.status] += 1
        if result.error:
            self.errors += 1
        self.latencies.append(result.latency_ms)

    @property
    def admitted(self) -> int:
        return sum(n for status, n in self.statuses.items() if 200 <= status < 300)

    @property
    def throttled(self) -> int:
        return self.statuses[429]

    @property
    def rejected(self) -> int:
        return self.statuses[403]

    def percentile(self, p: float) -> float:
        if not self.latencies:
            return 0.0
        sorted_l = sorted(self.latencies)
        idx = int(len(sorted_l) * p / 100)
        return sorted_l[min(idx, len(sorted_l) - 1)]

    def print_summary(self, elapsed_total: float) -> None:
        avg = sum(self.latencies) / len(self.latencies) if self.latencies else 0
        rate = self.total / elapsed_total if elapsed_total > 0 else 0

        print("\n" + "=" * 55)
        print("  /generate Load Test Results")
        print("=" * 55)
        print(f"  Total requests:    {self.total}")
        print(f"  Admitted (2xx):    {self.admitted}")
        print(f"  Throttled (429):   {self.throttled}")
        print(f"  Rejected (403):    {self.rejected}")
        print(f"  Transport errors:  {self.errors}")
        print(f"  Total time:        {elapsed_total:.2f}s")
        print(f"  Request rate:      {rate:.1f} req/s")
        print()
        print(f"  Latency (ms):")
        print(f"    Avg:             {avg:.1f}ms")
        print(f"    P50:             {self.percentile(50):.1f}ms")
        print(f"    P95:             {self.percentile(95):.1f}ms")
        print(f"    P99:             {self.percentile(99):.1f}ms")
        print("=" * 55)


class _Pacer:
    """Hands out send slots no faster than `rate` per second."""

    def __init__(self, rate: float | None):
        self.interval = 1.0 / rate if rate else 0.0
        self.next_slot = time.monotonic()
        self._lock = threading.Lock()

    def wait(self) -> None:
        if not self.interval:
            return
        with self._lock:
            slot = max(self.next_slot, time.monotonic())
            self.next_slot = slot + self.interval
        time.sleep(max(0.0, slot - time.monotonic()))


def _send(session: requests.Session, url: str, api_key: str | None, pacer: _Pacer) -> RequestResult:
    pacer.wait()
    headers = {"x-api-key": api_key} if api_key else {}
    start = time.time()
    try:
        resp = session.post(url, json={"url": "https://example.com/load-test"}, headers=headers, timeout=30)
        return RequestResult(status=resp.status_code, latency_ms=(time.time() - start) * 1000)
    except requests.RequestException as e:
        return RequestResult(status=0, error=str(e), latency_ms=(time.time() - start) * 1000)


def run_load_test(
    endpoint: str,
    api_key: str | None,
    total: int,
    concurrency: int,
    rate: float | None = None,
    session: requests.Session | None = None,
) -> LoadTestReport:
    url = f"{endpoint.rstrip('/')}/generate"
    print(f"\n/generate Load Test")
    print(f"  Target:      {url}")
    print(f"  Requests:    {total}")
    print(f"  Concurrency: {concurrency} threads")
    print(f"  Pacing:      {f'{rate} req/s' if rate else 'none'}")

    session = session or requests.Session()
    pacer = _Pacer(rate)
    report = LoadTestReport()
    wall_start = time.time()

    with ThreadPoolExecutor(max_workers=concurrency) as executor:
        futures = [executor.submit(_send, session, url, api_key, pacer) for _ in range(total)]
        for i, future in enumerate(as_completed(futures), 1):
            report.add(future.result())
            if i % 10 == 0 or i == total:
                print(f"  Progress: {i}/{total} ({100 * i / total:.0f}%)", end="\r")

    report.print_summary(time.time() - wall_start)
    return report


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="/generate rate-limit load test")
    parser.add_argument("--endpoint", required=True, help="Stage invoke URL")
    parser.add_argument("--api-key", help="API key value (omit to test rejection)")
    parser.add_argument("--requests", type=int, default=50, help="Number of requests to send")
    parser.add_argument("--concurrency", type=int, default=10, help="Number of concurrent threads")
    parser.add_argument("--rate", type=float, help="Pace requests to this many per second")
    args = parser.parse_args()

    run_load_test(args.endpoint, args.api_key, args.requests, args.concurrency, args.rate)
