"""
Resource Descriptor Model
=========================
A deployment is a flat list of ResourceDescriptors. Each one is a tagged
record: a `kind` from a closed set, a deployment-scoped `logical_id`, and a
map of `inputs` whose values are literals or References to another
resource's output.

Two kinds of link between descriptors exist:
  Reference        a value ("the tableName output of Table") bound at apply time
  ordering hint    an input field whose literal value is another logical id
                   (Grant.principal, Route.target, ...); the binder and the
                   domain provisioner read the outputs they need from it

Descriptors are validated on construction (kind, logical id, required and
unknown inputs) and again as a set by `validate_deployment` (dangling links,
fields the target kind does not produce, route/usage-plan invariants).
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterator

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from provisioner.errors import InvalidDescriptor

_LOGICAL_ID = re.compile(r"^[A-Za-z][A-Za-z0-9]*$")
HTTP_METHODS = {"GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS", "ANY"}


class ResourceKind(str, Enum):
    DATA_STORE = "DataStore"
    COMPUTE_UNIT = "ComputeUnit"
    ROUTING_LAYER = "RoutingLayer"
    IDENTITY_PROVIDER = "IdentityProvider"
    DNS_ZONE_LOOKUP = "DnsZoneLookup"
    CERTIFICATE = "Certificate"
    CUSTOM_DOMAIN = "CustomDomain"
    GRANT = "Grant"
    ROUTE = "Route"
    USAGE_PLAN = "UsagePlan"
    API_KEY = "ApiKey"
    STAGE = "Stage"
    ALIAS_RECORD = "AliasRecord"


class Action(str, Enum):
    """Data-plane actions a Grant may carry. There is deliberately no wildcard member."""
    GET_ITEM = "dynamodb:GetItem"
    BATCH_GET_ITEM = "dynamodb:BatchGetItem"
    QUERY = "dynamodb:Query"
    SCAN = "dynamodb:Scan"
    CONDITION_CHECK_ITEM = "dynamodb:ConditionCheckItem"
    DESCRIBE_TABLE = "dynamodb:DescribeTable"
    PUT_ITEM = "dynamodb:PutItem"
    UPDATE_ITEM = "dynamodb:UpdateItem"
    DELETE_ITEM = "dynamodb:DeleteItem"
    BATCH_WRITE_ITEM = "dynamodb:BatchWriteItem"


READ_ACTIONS = (
    Action.GET_ITEM, Action.BATCH_GET_ITEM, Action.QUERY, Action.SCAN,
    Action.CONDITION_CHECK_ITEM, Action.DESCRIBE_TABLE,
)
WRITE_ACTIONS = (
    Action.PUT_ITEM, Action.UPDATE_ITEM, Action.DELETE_ITEM, Action.BATCH_WRITE_ITEM,
)
READ_WRITE_ACTIONS = READ_ACTIONS + WRITE_ACTIONS


class Reference(BaseModel):
    """A forward-declared dependency on another resource's not-yet-known output."""
    model_config = ConfigDict(frozen=True)

    target_logical_id: str
    output_field: str

    def __str__(self) -> str:
        return f"{self.target_logical_id}.{self.output_field}"


def ref(logical_id: str, output_field: str) -> Reference:
    return Reference(target_logical_id=logical_id, output_field=output_field)


# ---------------------------------------------------------------------------
# Per-kind schemas
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class KindSchema:
    required: tuple[str, ...]
    produces: tuple[str, ...]
    optional: tuple[str, ...] = ()
    # input field -> kinds the named logical id(s) may have
    hints: dict[str, tuple[ResourceKind, ...]] = field(default_factory=dict)

    @property
    def accepted(self) -> set[str]:
        return set(self.required) | set(self.optional)


K = ResourceKind

KIND_SCHEMAS: dict[ResourceKind, KindSchema] = {
    K.DATA_STORE: KindSchema(
        required=("tableName", "partitionKey"),
        optional=("sortKey", "indexes", "billingMode"),
        produces=("tableName", "tableArn"),
    ),
    K.IDENTITY_PROVIDER: KindSchema(
        required=("poolName",),
        optional=("clientName", "selfSignUp"),
        produces=("userPoolId", "userPoolArn", "userPoolClientId"),
    ),
    K.COMPUTE_UNIT: KindSchema(
        required=("functionName", "code", "runtime", "handler"),
        optional=("environment", "architecture", "memorySize", "timeout"),
        produces=("functionName", "functionArn", "roleName", "roleArn"),
    ),
    K.ROUTING_LAYER: KindSchema(
        required=("apiName",),
        optional=("description",),
        produces=("apiId", "rootResourceId", "executionArn"),
    ),
    K.ROUTE: KindSchema(
        required=("routingLayer", "path", "method", "target"),
        optional=("authorizer", "apiKeyRequired", "throttle"),
        produces=("resourceId", "methodKey"),
        hints={
            "routingLayer": (K.ROUTING_LAYER,),
            "target": (K.COMPUTE_UNIT,),
            "authorizer": (K.IDENTITY_PROVIDER,),
        },
    ),
    K.STAGE: KindSchema(
        required=("routingLayer", "stageName"),
        produces=("stageName", "invokeUrl"),
        hints={"routingLayer": (K.ROUTING_LAYER,)},
    ),
    K.API_KEY: KindSchema(
        required=("keyName",),
        optional=("value", "enabled"),
        produces=("keyId", "keyValue"),
    ),
    K.USAGE_PLAN: KindSchema(
        required=("planName", "stage", "rateLimit", "burstLimit"),
        optional=("routes", "apiKeys"),
        produces=("planId",),
        hints={"stage": (K.STAGE,), "routes": (K.ROUTE,), "apiKeys": (K.API_KEY,)},
    ),
    K.DNS_ZONE_LOOKUP: KindSchema(
        required=("domainName",),
        produces=("hostedZoneId", "zoneName"),
    ),
    K.CERTIFICATE: KindSchema(
        required=("domainName", "hostedZone"),
        produces=("certificateArn", "status"),
        hints={"hostedZone": (K.DNS_ZONE_LOOKUP,)},
    ),
    K.CUSTOM_DOMAIN: KindSchema(
        required=("domainName", "certificate", "stage", "hostedZone"),
        produces=("domainName", "regionalDomainName", "regionalHostedZoneId"),
        hints={
            "certificate": (K.CERTIFICATE,),
            "stage": (K.STAGE,),
            "hostedZone": (K.DNS_ZONE_LOOKUP,),
        },
    ),
    K.ALIAS_RECORD: KindSchema(
        required=("recordName", "hostedZone", "target"),
        produces=("fqdn",),
        hints={"hostedZone": (K.DNS_ZONE_LOOKUP,), "target": (K.CUSTOM_DOMAIN,)},
    ),
    K.GRANT: KindSchema(
        required=("principal", "resource", "actions"),
        produces=("policyName",),
        hints={"principal": (K.COMPUTE_UNIT,), "resource": (K.DATA_STORE,)},
    ),
}


def encode(value: Any) -> Any:
    """Canonical JSON-able form of an input value (References become {"$ref": [...]})."""
    if isinstance(value, Reference):
        return {"$ref": [value.target_logical_id, value.output_field]}
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {str(k): encode(v) for k, v in sorted(value.items())}
    if isinstance(value, (list, tuple)):
        return [encode(v) for v in value]
    return value


def iter_references(value: Any) -> Iterator[Reference]:
    if isinstance(value, Reference):
        yield value
    elif isinstance(value, dict):
        for v in value.values():
            yield from iter_references(v)
    elif isinstance(value, (list, tuple)):
        for v in value:
            yield from iter_references(v)


# ---------------------------------------------------------------------------
# Descriptor
# ---------------------------------------------------------------------------

class ResourceDescriptor(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: ResourceKind
    logical_id: str
    inputs: dict[str, Any] = Field(default_factory=dict)
    removable: bool = False

    @field_validator("kind", mode="before")
    @classmethod
    def _known_kind(cls, value: Any) -> Any:
        try:
            return ResourceKind(value)
        except ValueError:
            raise InvalidDescriptor(f"Unknown resource kind {value!r}") from None

    @field_validator("logical_id", mode="before")
    @classmethod
    def _well_formed_id(cls, value: Any) -> Any:
        if not isinstance(value, str) or not _LOGICAL_ID.match(value):
            raise InvalidDescriptor(f"Malformed logical id {value!r}")
        return value

    @model_validator(mode="after")
    def _check_inputs(self) -> "ResourceDescriptor":
        schema = KIND_SCHEMAS[self.kind]
        missing = [f for f in schema.required if self.inputs.get(f) is None]
        if missing:
            raise InvalidDescriptor(
                f"{self.kind.value} {self.logical_id} is missing required input(s): "
                f"{', '.join(missing)}",
                self.logical_id,
            )
        unknown = sorted(set(self.inputs) - schema.accepted)
        if unknown:
            raise InvalidDescriptor(
                f"{self.kind.value} {self.logical_id} does not accept input(s): "
                f"{', '.join(unknown)}",
                self.logical_id,
            )
        for name in schema.hints:
            for target in _as_ids(self.inputs.get(name)):
                if not isinstance(target, str):
                    raise InvalidDescriptor(
                        f"{self.logical_id}.{name} must name a logical id, got {target!r}",
                        self.logical_id,
                    )
        check = _KIND_CHECKS.get(self.kind)
        if check:
            check(self)
        return self

    @property
    def schema(self) -> KindSchema:
        return KIND_SCHEMAS[self.kind]

    @property
    def desired_state(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "inputs": encode(self.inputs),
            "removable": self.removable,
        }

    def references(self) -> list[Reference]:
        return list(iter_references(self.inputs))

    def hinted_ids(self) -> list[tuple[str, str]]:
        """(field, logical id) for every ordering-hint input."""
        return [
            (name, target)
            for name in self.schema.hints
            for target in _as_ids(self.inputs.get(name))
        ]


def _as_ids(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


# ---------------------------------------------------------------------------
# Kind-specific literal checks
# ---------------------------------------------------------------------------

def _check_route(d: ResourceDescriptor) -> None:
    path, method = d.inputs["path"], str(d.inputs["method"]).upper()
    if not isinstance(path, str) or not path.startswith("/"):
        raise InvalidDescriptor(f"Route {d.logical_id}: path must start with '/'", d.logical_id)
    if method not in HTTP_METHODS:
        raise InvalidDescriptor(f"Route {d.logical_id}: unsupported method {method}", d.logical_id)
    throttle = d.inputs.get("throttle")
    if throttle is not None:
        _check_throttle(d, throttle.get("rateLimit"), throttle.get("burstLimit"))


def _check_usage_plan(d: ResourceDescriptor) -> None:
    _check_throttle(d, d.inputs["rateLimit"], d.inputs["burstLimit"])


def _check_throttle(d: ResourceDescriptor, rate: Any, burst: Any) -> None:
    if isinstance(rate, bool) or not isinstance(rate, (int, float)) or rate <= 0:
        raise InvalidDescriptor(f"{d.logical_id}: rateLimit must be a positive number", d.logical_id)
    if isinstance(burst, bool) or not isinstance(burst, int) or burst < 0:
        raise InvalidDescriptor(f"{d.logical_id}: burstLimit must be a non-negative integer", d.logical_id)


def _check_grant(d: ResourceDescriptor) -> None:
    actions = d.inputs["actions"]
    if not isinstance(actions, (list, tuple, set, frozenset)) or not actions:
        raise InvalidDescriptor(f"Grant {d.logical_id}: actions must be a non-empty set", d.logical_id)
    for action in actions:
        try:
            Action(action)
        except ValueError:
            raise InvalidDescriptor(
                f"Grant {d.logical_id}: {action!r} is not a grantable action", d.logical_id
            ) from None


def _check_data_store(d: ResourceDescriptor) -> None:
    keys = {d.inputs["partitionKey"], d.inputs.get("sortKey")}
    for index in d.inputs.get("indexes") or []:
        if not index.get("name") or not index.get("partitionKey"):
            raise InvalidDescriptor(
                f"DataStore {d.logical_id}: every index needs a name and partitionKey",
                d.logical_id,
            )
        keys.update({index["partitionKey"], index.get("sortKey")})
    if any(k is not None and not isinstance(k, str) for k in keys):
        raise InvalidDescriptor(f"DataStore {d.logical_id}: key names must be strings", d.logical_id)


_KIND_CHECKS = {
    K.ROUTE: _check_route,
    K.USAGE_PLAN: _check_usage_plan,
    K.GRANT: _check_grant,
    K.DATA_STORE: _check_data_store,
}


# ---------------------------------------------------------------------------
# Deployment-set validation
# ---------------------------------------------------------------------------

def validate_deployment(descriptors: list[ResourceDescriptor]) -> dict[str, ResourceDescriptor]:
    """Check cross-descriptor invariants. Returns descriptors keyed by logical id,
    in declaration order."""
    by_id: dict[str, ResourceDescriptor] = {}
    for d in descriptors:
        if d.logical_id in by_id:
            raise InvalidDescriptor(f"Duplicate logical id {d.logical_id}", d.logical_id)
        by_id[d.logical_id] = d

    for d in descriptors:
        for reference in d.references():
            target = by_id.get(reference.target_logical_id)
            if target is None:
                raise InvalidDescriptor(
                    f"{d.logical_id} references unknown resource {reference.target_logical_id}",
                    d.logical_id,
                )
            if reference.output_field not in target.schema.produces:
                raise InvalidDescriptor(
                    f"{d.logical_id} references {reference}, but {target.kind.value} "
                    f"does not produce {reference.output_field!r}",
                    d.logical_id,
                )
        for name, target_id in d.hinted_ids():
            target = by_id.get(target_id)
            allowed = d.schema.hints[name]
            if target is None:
                raise InvalidDescriptor(
                    f"{d.logical_id}.{name} names unknown resource {target_id}", d.logical_id
                )
            if target.kind not in allowed:
                raise InvalidDescriptor(
                    f"{d.logical_id}.{name} must name a "
                    f"{'/'.join(k.value for k in allowed)}, {target_id} is a {target.kind.value}",
                    d.logical_id,
                )

    _check_route_bindings(by_id)
    return by_id


def _check_route_bindings(by_id: dict[str, ResourceDescriptor]) -> None:
    plans = [d for d in by_id.values() if d.kind == K.USAGE_PLAN]

    for plan in plans:
        stage = by_id[plan.inputs["stage"]]
        for route_id in _as_ids(plan.inputs.get("routes")):
            route = by_id[route_id]
            if route.inputs["routingLayer"] != stage.inputs["routingLayer"]:
                raise InvalidDescriptor(
                    f"UsagePlan {plan.logical_id} lists {route_id}, which is not served "
                    f"by stage {stage.logical_id}",
                    plan.logical_id,
                )

    for route in (d for d in by_id.values() if d.kind == K.ROUTE):
        covering = [p for p in plans if route.logical_id in _as_ids(p.inputs.get("routes"))]
        if route.inputs.get("apiKeyRequired") and not any(
            _as_ids(p.inputs.get("apiKeys")) for p in covering
        ):
            raise InvalidDescriptor(
                f"Route {route.logical_id} requires an API key but no usage plan binds "
                f"it together with a key",
                route.logical_id,
            )
        if route.inputs.get("throttle") and not covering:
            raise InvalidDescriptor(
                f"Route {route.logical_id} declares a throttle but belongs to no usage plan",
                route.logical_id,
            )
