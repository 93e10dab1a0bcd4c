"""
One constructor per resource kind. Each returns a validated ResourceDescriptor;
keyword names follow Python style and map onto the kind's input fields.
"""
from __future__ import annotations

from typing import Any, Iterable

from provisioner.descriptors import Action, ResourceDescriptor, ResourceKind


def _descriptor(kind: ResourceKind, logical_id: str, removable: bool = False, **inputs: Any) -> ResourceDescriptor:
    return ResourceDescriptor(
        kind=kind,
        logical_id=logical_id,
        inputs={k: v for k, v in inputs.items() if v is not None},
        removable=removable,
    )


def data_store(
    logical_id: str,
    *,
    table_name: Any,
    partition_key: str,
    sort_key: str | None = None,
    indexes: list[dict] | None = None,
    billing_mode: str = "PAY_PER_REQUEST",
    removable: bool = False,
) -> ResourceDescriptor:
    """indexes: [{"name": ..., "partitionKey": ..., "sortKey": ...}], projection is ALL."""
    return _descriptor(
        ResourceKind.DATA_STORE, logical_id, removable,
        tableName=table_name, partitionKey=partition_key, sortKey=sort_key,
        indexes=indexes, billingMode=billing_mode,
    )


def identity_provider(
    logical_id: str, *, pool_name: str, client_name: str | None = None, self_sign_up: bool = True,
) -> ResourceDescriptor:
    return _descriptor(
        ResourceKind.IDENTITY_PROVIDER, logical_id,
        poolName=pool_name, clientName=client_name or f"{pool_name}-client",
        selfSignUp=self_sign_up,
    )


def compute_unit(
    logical_id: str,
    *,
    function_name: str,
    code: str,
    runtime: str,
    handler: str,
    environment: dict[str, Any] | None = None,
    architecture: str | None = None,
    memory_size: int | None = None,
    timeout: int | None = None,
) -> ResourceDescriptor:
    return _descriptor(
        ResourceKind.COMPUTE_UNIT, logical_id,
        functionName=function_name, code=code, runtime=runtime, handler=handler,
        environment=environment, architecture=architecture,
        memorySize=memory_size, timeout=timeout,
    )


def grant(
    logical_id: str,
    *,
    principal: str,
    resource: str,
    actions: Iterable[Action | str],
    removable: bool = False,
) -> ResourceDescriptor:
    ordered = sorted({getattr(a, "value", a) for a in actions})
    return _descriptor(
        ResourceKind.GRANT, logical_id, removable, principal=principal, resource=resource, actions=ordered,
    )


def routing_layer(logical_id: str, *, api_name: str, description: str | None = None) -> ResourceDescriptor:
    return _descriptor(ResourceKind.ROUTING_LAYER, logical_id, apiName=api_name, description=description)


def route(
    logical_id: str,
    *,
    routing_layer: str,
    path: str,
    method: str,
    target: str,
    authorizer: str | None = None,
    api_key_required: bool = False,
    throttle: dict[str, Any] | None = None,
) -> ResourceDescriptor:
    return _descriptor(
        ResourceKind.ROUTE, logical_id,
        routingLayer=routing_layer, path=path, method=method.upper(), target=target,
        authorizer=authorizer, apiKeyRequired=api_key_required, throttle=throttle,
    )


def stage(logical_id: str, *, routing_layer: str, stage_name: str) -> ResourceDescriptor:
    return _descriptor(ResourceKind.STAGE, logical_id, routingLayer=routing_layer, stageName=stage_name)


def api_key(logical_id: str, *, key_name: str, value: str | None = None) -> ResourceDescriptor:
    return _descriptor(ResourceKind.API_KEY, logical_id, keyName=key_name, value=value, enabled=True)


def usage_plan(
    logical_id: str,
    *,
    plan_name: str,
    stage: str,
    rate_limit: float,
    burst_limit: int,
    routes: list[str] | None = None,
    api_keys: list[str] | None = None,
) -> ResourceDescriptor:
    return _descriptor(
        ResourceKind.USAGE_PLAN, logical_id,
        planName=plan_name, stage=stage, rateLimit=rate_limit, burstLimit=burst_limit,
        routes=routes, apiKeys=api_keys,
    )


def dns_zone_lookup(logical_id: str, *, domain_name: str) -> ResourceDescriptor:
    return _descriptor(ResourceKind.DNS_ZONE_LOOKUP, logical_id, domainName=domain_name)


def certificate(logical_id: str, *, domain_name: str, hosted_zone: str) -> ResourceDescriptor:
    return _descriptor(ResourceKind.CERTIFICATE, logical_id, domainName=domain_name, hostedZone=hosted_zone)


def custom_domain(
    logical_id: str, *, domain_name: str, certificate: str, stage: str, hosted_zone: str,
) -> ResourceDescriptor:
    return _descriptor(
        ResourceKind.CUSTOM_DOMAIN, logical_id,
        domainName=domain_name, certificate=certificate, stage=stage, hostedZone=hosted_zone,
    )


def alias_record(logical_id: str, *, record_name: str, hosted_zone: str, target: str) -> ResourceDescriptor:
    return _descriptor(
        ResourceKind.ALIAS_RECORD, logical_id,
        recordName=record_name, hostedZone=hosted_zone, target=target,
    )
