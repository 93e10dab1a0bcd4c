"""
Access & Routing Binder
=======================
Turns the cross-cutting descriptors (Grant, Route, Stage, UsagePlan) into
concrete provisioning inputs once the nodes they bind are Provisioned.

  Grant      principal role + table ARN -> one inline least-privilege policy
  Route      routing layer + target function (+ authorizer) -> method wiring
  Stage      routing layer -> deployment of everything routed so far
  UsagePlan  stage + routes + keys -> plan-wide and per-method throttles

Each prepare_* function reads outputs from the journal snapshot in the node
context; none of them calls the target environment.
"""
from __future__ import annotations

from typing import TYPE_CHECKING, Any, Iterable, Mapping

from provisioner.descriptors import ResourceDescriptor, ResourceKind
from provisioner.errors import PreconditionFailed
from provisioner.journal import NodeRecord, NodeState

if TYPE_CHECKING:
    from provisioner.executor import NodeContext


def require_provisioned(
    state: Mapping[str, NodeRecord], logical_ids: Iterable[str], owner: ResourceDescriptor,
) -> None:
    for logical_id in logical_ids:
        record = state.get(logical_id)
        if record is None or record.state != NodeState.PROVISIONED:
            current = record.state.value if record else "absent"
            raise PreconditionFailed(
                f"{owner.kind.value} {owner.logical_id} needs {logical_id} to be Provisioned, "
                f"it is {current}",
                owner.logical_id,
            )


def method_key(path: str, method: str) -> str:
    """Usage-plan method throttle key, e.g. "/generate/POST"."""
    return f"{path}/{method.upper()}"


def policy_document(table_arn: str, actions: list[str]) -> dict[str, Any]:
    return {
        "Version": "2012-10-17",
        "Statement": [
            {
                "Effect": "Allow",
                "Action": sorted(actions),
                "Resource": [table_arn, f"{table_arn}/index/*"],
            }
        ],
    }


# ---------------------------------------------------------------------------
# Grant
# ---------------------------------------------------------------------------

def prepare_grant(node: "NodeContext") -> dict[str, Any]:
    d = node.descriptor
    principal, resource = d.inputs["principal"], d.inputs["resource"]
    require_provisioned(node.state, (principal, resource), d)
    return {
        "policyName": f"{d.logical_id}Policy",
        "roleName": node.output(principal, "roleName"),
        "tableArn": node.output(resource, "tableArn"),
        "actions": sorted(node.inputs["actions"]),
    }


# ---------------------------------------------------------------------------
# Routes and stages
# ---------------------------------------------------------------------------

def prepare_route(node: "NodeContext") -> dict[str, Any]:
    d = node.descriptor
    layer, target = d.inputs["routingLayer"], d.inputs["target"]
    authorizer_id = d.inputs.get("authorizer")

    authorizer = None
    if authorizer_id:
        require_provisioned(node.state, (authorizer_id,), d)
        authorizer = {
            "name": f"{authorizer_id}Authorizer",
            "providerArns": [node.output(authorizer_id, "userPoolArn")],
        }

    return {
        "apiId": node.output(layer, "apiId"),
        "rootResourceId": node.output(layer, "rootResourceId"),
        "executionArn": node.output(layer, "executionArn"),
        "path": node.inputs["path"],
        "method": node.inputs["method"],
        "functionName": node.output(target, "functionName"),
        "functionArn": node.output(target, "functionArn"),
        "authorizer": authorizer,
        "apiKeyRequired": bool(node.inputs.get("apiKeyRequired", False)),
    }


def prepare_stage(node: "NodeContext") -> dict[str, Any]:
    layer = node.descriptor.inputs["routingLayer"]
    return {
        "apiId": node.output(layer, "apiId"),
        "stageName": node.inputs["stageName"],
    }


# ---------------------------------------------------------------------------
# Usage plans
# ---------------------------------------------------------------------------

def prepare_usage_plan(node: "NodeContext") -> dict[str, Any]:
    d = node.descriptor
    stage_id = d.inputs["stage"]
    stage = node.descriptors[stage_id]
    plan_throttle = {"rateLimit": node.inputs["rateLimit"], "burstLimit": node.inputs["burstLimit"]}

    method_throttles = {}
    for route_id in d.inputs.get("routes") or []:
        route = node.descriptors[route_id]
        key = method_key(route.inputs["path"], route.inputs["method"])
        method_throttles[key] = dict(route.inputs.get("throttle") or plan_throttle)

    return {
        "planName": node.inputs["planName"],
        "apiId": node.output(stage.inputs["routingLayer"], "apiId"),
        "stageName": node.output(stage_id, "stageName"),
        "rateLimit": plan_throttle["rateLimit"],
        "burstLimit": plan_throttle["burstLimit"],
        "methodThrottles": method_throttles,
        "keyIds": [node.output(k, "keyId") for k in d.inputs.get("apiKeys") or []],
    }


PREPARERS = {
    ResourceKind.GRANT: prepare_grant,
    ResourceKind.ROUTE: prepare_route,
    ResourceKind.STAGE: prepare_stage,
    ResourceKind.USAGE_PLAN: prepare_usage_plan,
}
