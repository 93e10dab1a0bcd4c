"""
Local Gateway
=============
Serves requests against what an InMemoryEnvironment has provisioned: the
routes of one routing layer, the usage plans bound to its stage, and their
API keys. Key and throttle checks run before the compute handler, so a
rejected request never reaches it.

  gw = LocalGateway.from_environment(env, api_id)
  gw.request("POST", "/generate", api_key=key)  -> GatewayResponse(200, ...)
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Callable

from provisioner.binder import method_key
from provisioner.descriptors import ResourceKind
from provisioner.memory import InMemoryEnvironment
from provisioner.throttle import PlanBinding, UsagePlanGate


@dataclass
class GatewayResponse:
    status: int
    body: dict[str, Any] = field(default_factory=dict)


@dataclass
class _RouteEntry:
    path: str
    method: str
    function_name: str
    api_key_required: bool
    authorizer: dict | None
    pattern: re.Pattern

    def matches(self, method: str, path: str) -> bool:
        return self.method in (method, "ANY") and bool(self.pattern.fullmatch(path))


def _compile(template: str) -> re.Pattern:
    # /shortcodes/{code} -> /shortcodes/(?P<code>[^/]+)
    return re.compile(re.sub(r"\\\{(\w+)\\\}", r"(?P<\1>[^/]+)", re.escape(template)))


def _echo_handler(function_name: str, method: str, path: str, params: dict) -> dict:
    return {"function": function_name, "method": method, "path": path, "params": params}


class LocalGateway:
    def __init__(
        self,
        routes: list[_RouteEntry],
        gate: UsagePlanGate,
        handler: Callable[[str, str, str, dict], dict] = _echo_handler,
    ):
        self.routes = routes
        self.gate = gate
        self.handler = handler
        self.invocations: list[tuple[str, str]] = []

    @classmethod
    def from_environment(
        cls, env: InMemoryEnvironment, api_id: str, handler: Callable | None = None,
    ) -> "LocalGateway":
        routes = [
            _RouteEntry(
                path=e["inputs"]["path"],
                method=e["inputs"]["method"],
                function_name=e["inputs"]["functionName"],
                api_key_required=e["inputs"]["apiKeyRequired"],
                authorizer=e["inputs"]["authorizer"],
                pattern=_compile(e["inputs"]["path"]),
            )
            for e in env.entries(ResourceKind.ROUTE)
            if e["inputs"]["apiId"] == api_id
        ]
        key_values = {
            e["outputs"]["keyId"]: e["outputs"]["keyValue"]
            for e in env.entries(ResourceKind.API_KEY)
            if e["inputs"].get("enabled", True)
        }
        plans = [
            PlanBinding(
                plan_id=e["outputs"]["planId"],
                rate_limit=e["inputs"]["rateLimit"],
                burst_limit=e["inputs"]["burstLimit"],
                method_throttles=dict(e["inputs"]["methodThrottles"]),
                key_values={key_values[k] for k in e["inputs"]["keyIds"] if k in key_values},
            )
            for e in env.entries(ResourceKind.USAGE_PLAN)
            if e["inputs"]["apiId"] == api_id
        ]
        return cls(routes, UsagePlanGate(plans), handler or _echo_handler)

    def request(
        self,
        method: str,
        path: str,
        api_key: str | None = None,
        bearer_token: str | None = None,
        now: float | None = None,
    ) -> GatewayResponse:
        method = method.upper()
        route = next((r for r in self.routes if r.matches(method, path)), None)
        if route is None:
            return GatewayResponse(404, {"message": "Missing Authentication Token"})

        if route.api_key_required:
            admission = self.gate.admit(method_key(route.path, route.method), api_key, now)
            if not admission.admitted:
                return GatewayResponse(admission.status, {"message": admission.reason})

        # Token validation belongs to the identity provider; only presence is checked here.
        if route.authorizer and not bearer_token:
            return GatewayResponse(401, {"message": "Unauthorized"})

        params = route.pattern.fullmatch(path).groupdict()
        self.invocations.append((route.function_name, f"{method} {path}"))
        return GatewayResponse(200, self.handler(route.function_name, method, path, params))
