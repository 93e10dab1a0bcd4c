"""
Usage-Plan Admission
====================
The admission rules a provisioned usage plan enforces in front of a route,
modelled in-process so they can be exercised without a live gateway.

For a key-requiring route:
  no key / unknown key / key not bound to a plan covering the route  -> 403
  bound key, bucket empty                                            -> 429
  bound key, token available                                         -> admitted

Token bucket per (plan, key):
  capacity  = burstLimit   (how many requests may arrive at once)
  refill    = rateLimit    tokens per second (sustained rate)

A route with a method throttle uses that instead of the plan-wide limits.
"""
from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Callable


class TokenBucket:
    """
    Parameters
    ----------
    rate:      tokens added per second
    capacity:  maximum tokens held; a full bucket admits `capacity` requests at once
    """

    def __init__(self, rate: float, capacity: int, now: float | None = None):
        self.rate = float(rate)
        self.capacity = float(capacity)
        self.tokens = float(capacity)
        self.updated_at = now
        self._lock = threading.Lock()

    def try_acquire(self, now: float) -> bool:
        with self._lock:
            if self.updated_at is not None and now > self.updated_at:
                self.tokens = min(self.capacity, self.tokens + (now - self.updated_at) * self.rate)
            if self.updated_at is None or now > self.updated_at:
                self.updated_at = now
            if self.tokens >= 1.0:
                self.tokens -= 1.0
                return True
            return False


@dataclass
class PlanBinding:
    plan_id: str
    rate_limit: float
    burst_limit: int
    method_throttles: dict[str, dict] = field(default_factory=dict)
    key_values: set[str] = field(default_factory=set)

    def limits_for(self, method_key: str) -> tuple[float, int]:
        throttle = self.method_throttles.get(method_key)
        if throttle:
            return throttle["rateLimit"], throttle["burstLimit"]
        return self.rate_limit, self.burst_limit


@dataclass
class Admission:
    status: int
    reason: str
    plan_id: str | None = None

    @property
    def admitted(self) -> bool:
        return self.status == 200


class UsagePlanGate:
    def __init__(self, plans: list[PlanBinding], clock: Callable[[], float] = time.monotonic):
        self.plans = plans
        self.clock = clock
        self._buckets: dict[tuple[str, str, str], TokenBucket] = {}
        self._lock = threading.Lock()

    def admit(self, method_key: str, api_key: str | None, now: float | None = None) -> Admission:
        now = self.clock() if now is None else now
        if not api_key:
            return Admission(403, "Missing API key")

        plan = next(
            (p for p in self.plans if api_key in p.key_values and method_key in p.method_throttles),
            None,
        )
        if plan is None:
            return Admission(403, "Invalid API key for this route")

        rate, burst = plan.limits_for(method_key)
        with self._lock:
            bucket = self._buckets.get((plan.plan_id, api_key, method_key))
            if bucket is None:
                bucket = TokenBucket(rate, burst, now)
                self._buckets[(plan.plan_id, api_key, method_key)] = bucket
        if not bucket.try_acquire(now):
            return Admission(429, "Too Many Requests", plan.plan_id)
        return Admission(200, "Admitted", plan.plan_id)
