"""
In-Memory Target Environment
============================
A local stand-in for AWS with the same lookup/create/update/delete contract.
Used by `urlstack deploy --local` and throughout the tests.

Besides the resources themselves it keeps:
  calls      every (operation, logical_id) in call order
  fail_on    logical_id -> exception raised on that node's create/update
  hooks      (operation, logical_id) -> callable run after the call
  records    DNS records per (zone id, name, type)

Certificates become ISSUED once their validation CNAME is present in the
zone and `issue_after_polls` status checks have happened since
(None: never, for timeout scenarios).
"""
from __future__ import annotations

import copy
import hashlib
import itertools
import secrets
import threading
from collections import defaultdict
from typing import Any, Callable

from provisioner.binder import policy_document
from provisioner.descriptors import ResourceKind
from provisioner.environment import (
    CERTIFICATE_ISSUED, CERTIFICATE_PENDING, ResourceHandler, TargetEnvironment,
)
from provisioner.errors import ProvisioningFailure

K = ResourceKind

# Regional API Gateway endpoints live in this AWS-owned zone in us-east-1.
REGIONAL_API_HOSTED_ZONE = "Z1UJRXOUMOOFQ8"

_NATURAL_KEYS: dict[ResourceKind, Callable[[dict], Any]] = {
    K.DATA_STORE: lambda i: i["tableName"],
    K.COMPUTE_UNIT: lambda i: i["functionName"],
    K.ROUTING_LAYER: lambda i: i["apiName"],
    K.IDENTITY_PROVIDER: lambda i: i["poolName"],
    K.ROUTE: lambda i: (i["apiId"], i["path"], i["method"]),
    K.STAGE: lambda i: (i["apiId"], i["stageName"]),
    K.API_KEY: lambda i: i["keyName"],
    K.USAGE_PLAN: lambda i: i["planName"],
    K.CERTIFICATE: lambda i: i["domainName"],
    K.CUSTOM_DOMAIN: lambda i: i["domainName"],
    K.ALIAS_RECORD: lambda i: (i["hostedZoneId"], i["recordName"]),
    K.GRANT: lambda i: (i["roleName"], i["policyName"]),
}


class _MemoryHandler(ResourceHandler):
    def __init__(self, environment: "InMemoryEnvironment", kind: ResourceKind):
        super().__init__(environment)
        self.kind = kind

    @property
    def store(self) -> dict:
        return self.environment.resources[self.kind]

    def lookup(self, logical_id, inputs):
        self.environment.record("lookup", logical_id)
        entry = self.store.get(_NATURAL_KEYS[self.kind](inputs))
        if entry is None:
            return None
        outputs = dict(entry["outputs"])
        if self.kind == K.CERTIFICATE:
            outputs["status"] = self.environment.certificates[outputs["certificateArn"]]["status"]
        return outputs

    def create(self, logical_id, inputs):
        self.environment.record("create", logical_id)
        outputs = self.environment.build_outputs(self.kind, logical_id, inputs)
        self.store[_NATURAL_KEYS[self.kind](inputs)] = {
            "logical_id": logical_id,
            "inputs": copy.deepcopy(inputs),
            "outputs": outputs,
        }
        self.environment.after("create", logical_id)
        return dict(outputs)

    def update(self, logical_id, inputs, current):
        self.environment.record("update", logical_id)
        entry = self.store[_NATURAL_KEYS[self.kind](inputs)]
        entry["inputs"] = copy.deepcopy(inputs)
        if self.kind == K.ALIAS_RECORD:
            self.environment.write_alias(inputs)
        self.environment.after("update", logical_id)
        return dict(entry["outputs"])

    def delete(self, logical_id, inputs, current):
        self.environment.record("delete", logical_id)
        self.store.pop(_NATURAL_KEYS[self.kind](inputs), None)
        if self.kind == K.ALIAS_RECORD:
            self.environment.records.pop((inputs["hostedZoneId"], inputs["recordName"], "A"), None)


class _ZoneHandler(ResourceHandler):
    """Zones are looked up, never created or deleted."""

    kind = K.DNS_ZONE_LOOKUP

    def lookup(self, logical_id, inputs):
        self.environment.record("lookup", logical_id)
        name = inputs["domainName"].rstrip(".")
        zone_id = self.environment.zones.get(name)
        if zone_id is None:
            return None
        return {"hostedZoneId": zone_id, "zoneName": name}

    def create(self, logical_id, inputs):
        self.environment.record("create", logical_id)
        raise ProvisioningFailure(f"No hosted zone found for {inputs['domainName']}", logical_id)

    def delete(self, logical_id, inputs, current):
        self.environment.record("delete", logical_id)


class InMemoryEnvironment(TargetEnvironment):
    name = "memory"

    def __init__(
        self,
        region: str = "us-east-1",
        account_id: str = "123456789012",
        hosted_zones: tuple[str, ...] = ("example.com",),
        issue_after_polls: int | None = 0,
    ):
        self.region = region
        self.account_id = account_id
        self.issue_after_polls = issue_after_polls
        self.zones = {
            name: "Z" + hashlib.sha1(name.encode()).hexdigest()[:12].upper() for name in hosted_zones
        }
        self.resources: dict[ResourceKind, dict[Any, dict]] = defaultdict(dict)
        self.certificates: dict[str, dict[str, Any]] = {}
        self.records: dict[tuple[str, str, str], Any] = {}
        self.calls: list[tuple[str, str]] = []
        self.fail_on: dict[str, Exception] = {}
        self.hooks: dict[tuple[str, str], Callable[[], None]] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()
        self._handlers = {kind: _MemoryHandler(self, kind) for kind in _NATURAL_KEYS}
        self._handlers[K.DNS_ZONE_LOOKUP] = _ZoneHandler(self)

    def handler_for(self, kind):
        return self._handlers[kind]

    # ------------------------------------------------------------------
    # Call log and fault injection
    # ------------------------------------------------------------------

    def record(self, operation: str, logical_id: str) -> None:
        with self._lock:
            self.calls.append((operation, logical_id))
        if operation in ("create", "update") and logical_id in self.fail_on:
            raise self.fail_on[logical_id]

    def after(self, operation: str, logical_id: str) -> None:
        hook = self.hooks.get((operation, logical_id))
        if hook:
            hook()

    def calls_for(self, operation: str) -> list[str]:
        return [lid for op, lid in self.calls if op == operation]

    def entries(self, kind: ResourceKind) -> list[dict]:
        return list(self.resources[kind].values())

    def _next_id(self, prefix: str = "") -> str:
        with self._lock:
            n = next(self._ids)
        return f"{prefix}{hashlib.sha1(str(n).encode()).hexdigest()[:10]}"

    # ------------------------------------------------------------------
    # Output synthesis
    # ------------------------------------------------------------------

    def build_outputs(self, kind: ResourceKind, logical_id: str, inputs: dict) -> dict[str, Any]:
        arn = f"arn:aws:{{}}:{self.region}:{self.account_id}:{{}}"
        if kind == K.DATA_STORE:
            name = inputs["tableName"]
            return {"tableName": name, "tableArn": arn.format("dynamodb", f"table/{name}")}
        if kind == K.IDENTITY_PROVIDER:
            pool_id = f"{self.region}_{self._next_id()}"
            return {
                "userPoolId": pool_id,
                "userPoolArn": arn.format("cognito-idp", f"userpool/{pool_id}"),
                "userPoolClientId": self._next_id("client"),
            }
        if kind == K.COMPUTE_UNIT:
            name = inputs["functionName"]
            role = f"{name}-role"
            return {
                "functionName": name,
                "functionArn": arn.format("lambda", f"function:{name}"),
                "roleName": role,
                "roleArn": f"arn:aws:iam::{self.account_id}:role/{role}",
            }
        if kind == K.ROUTING_LAYER:
            api_id = self._next_id()
            return {
                "apiId": api_id,
                "rootResourceId": self._next_id("root"),
                "executionArn": arn.format("execute-api", api_id),
            }
        if kind == K.ROUTE:
            return {
                "resourceId": self._next_id("res"),
                "methodKey": f"{inputs['path']}/{inputs['method']}",
            }
        if kind == K.STAGE:
            return {
                "stageName": inputs["stageName"],
                "invokeUrl": (
                    f"https://{inputs['apiId']}.execute-api.{self.region}.amazonaws.com/"
                    f"{inputs['stageName']}/"
                ),
            }
        if kind == K.API_KEY:
            return {"keyId": self._next_id("key"), "keyValue": inputs.get("value") or secrets.token_urlsafe(30)}
        if kind == K.USAGE_PLAN:
            return {"planId": self._next_id("plan")}
        if kind == K.CERTIFICATE:
            return self._request_certificate(inputs["domainName"])
        if kind == K.CUSTOM_DOMAIN:
            certificate = self.certificates.get(inputs["certificateArn"])
            if certificate is None or certificate["status"] != CERTIFICATE_ISSUED:
                raise ProvisioningFailure(
                    f"Certificate {inputs['certificateArn']} is not ISSUED", logical_id
                )
            return {
                "domainName": inputs["domainName"],
                "regionalDomainName": f"d-{self._next_id()}.execute-api.{self.region}.amazonaws.com",
                "regionalHostedZoneId": REGIONAL_API_HOSTED_ZONE,
            }
        if kind == K.ALIAS_RECORD:
            self.write_alias(inputs)
            return {"fqdn": inputs["recordName"].rstrip(".")}
        if kind == K.GRANT:
            return {"policyName": inputs["policyName"]}
        raise ProvisioningFailure(f"Unsupported kind {kind.value}", logical_id)

    def write_alias(self, inputs: dict) -> None:
        self.records[(inputs["hostedZoneId"], inputs["recordName"], "A")] = {
            "DNSName": inputs["aliasDnsName"],
            "HostedZoneId": inputs["aliasHostedZoneId"],
        }

    def policy(self, role_name: str, policy_name: str) -> dict | None:
        entry = self.resources[K.GRANT].get((role_name, policy_name))
        if entry is None:
            return None
        return policy_document(entry["inputs"]["tableArn"], entry["inputs"]["actions"])

    # ------------------------------------------------------------------
    # Certificates and DNS
    # ------------------------------------------------------------------

    def _request_certificate(self, domain_name: str) -> dict[str, Any]:
        arn = f"arn:aws:acm:{self.region}:{self.account_id}:certificate/{self._next_id()}"
        token = hashlib.md5(domain_name.encode()).hexdigest()
        self.certificates[arn] = {
            "domainName": domain_name,
            "status": CERTIFICATE_PENDING,
            "polls": 0,
            "validation": {
                "name": f"_{token}.{domain_name}.",
                "type": "CNAME",
                "value": f"_{token[::-1]}.acm-validations.aws.",
            },
        }
        return {"certificateArn": arn, "status": CERTIFICATE_PENDING}

    def certificate_status(self, certificate_arn: str) -> str:
        self.record("certificate_status", certificate_arn)
        certificate = self.certificates[certificate_arn]
        if certificate["status"] == CERTIFICATE_PENDING and self.issue_after_polls is not None:
            validation = certificate["validation"]
            if any(
                name == validation["name"] and value == validation["value"]
                for (_, name, _), value in self.records.items()
            ):
                if certificate["polls"] >= self.issue_after_polls:
                    certificate["status"] = CERTIFICATE_ISSUED
                certificate["polls"] += 1
        return certificate["status"]

    def certificate_validation_records(self, certificate_arn: str) -> list[dict[str, str]]:
        return [dict(self.certificates[certificate_arn]["validation"])]

    def upsert_record(self, hosted_zone_id: str, name: str, record_type: str, value: str) -> None:
        self.record("upsert_record", name)
        self.records[(hosted_zone_id, name, record_type)] = value
