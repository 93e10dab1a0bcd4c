"""
API Gateway (REST) handlers:

  RoutingLayer  -> REST API (regional)
  Route         -> resource path + method + Lambda proxy integration + invoke permission,
                   Cognito authorizer found or created by name
  Stage         -> deployment of the API to a named stage
  ApiKey        -> API key
  UsagePlan     -> plan throttle, (api, stage) association with method throttles, plan keys
  CustomDomain  -> regional custom domain name + base path mapping to the stage
"""
from __future__ import annotations

import re
from typing import Any

from provisioner.descriptors import ResourceKind
from provisioner.environment import ResourceHandler

ROOT_PATH = "/"


def _pointer(segment: str) -> str:
    """JSON-pointer escape used in usage-plan patch paths."""
    return segment.replace("~", "~0").replace("/", "~1")


def _paginate(client, operation: str, key: str = "items", **kwargs) -> list[dict]:
    return [
        item
        for page in client.get_paginator(operation).paginate(**kwargs)
        for item in page.get(key, [])
    ]


class _ApiGatewayHandler(ResourceHandler):
    @property
    def client(self):
        return self.environment.client("apigateway")


# ---------------------------------------------------------------------------
# Routing layer
# ---------------------------------------------------------------------------

class RestApiHandler(_ApiGatewayHandler):
    kind = ResourceKind.ROUTING_LAYER

    def _outputs(self, api_id: str) -> dict[str, Any]:
        resources = _paginate(self.client, "get_resources", restApiId=api_id)
        root = next(r["id"] for r in resources if r["path"] == ROOT_PATH)
        env = self.environment
        return {
            "apiId": api_id,
            "rootResourceId": root,
            "executionArn": f"arn:aws:execute-api:{env.region}:{env.account_id}:{api_id}",
        }

    def lookup(self, logical_id, inputs):
        for api in _paginate(self.client, "get_rest_apis"):
            if api["name"] == inputs["apiName"]:
                return self._outputs(api["id"])
        return None

    def create(self, logical_id, inputs):
        api = self.client.create_rest_api(
            name=inputs["apiName"],
            description=inputs.get("description", ""),
            endpointConfiguration={"types": ["REGIONAL"]},
        )
        return self._outputs(api["id"])

    def update(self, logical_id, inputs, current):
        if inputs.get("description"):
            self.client.update_rest_api(
                restApiId=current["apiId"],
                patchOperations=[{"op": "replace", "path": "/description", "value": inputs["description"]}],
            )
        return current

    def delete(self, logical_id, inputs, current):
        self.client.delete_rest_api(restApiId=current["apiId"])


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

class RouteHandler(_ApiGatewayHandler):
    kind = ResourceKind.ROUTE

    @property
    def lambda_(self):
        return self.environment.client("lambda")

    def _resources(self, api_id: str) -> dict[str, str]:
        return {r["path"]: r["id"] for r in _paginate(self.client, "get_resources", restApiId=api_id)}

    def _ensure_resource(self, api_id: str, root_id: str, path: str) -> str:
        existing = self._resources(api_id)
        if path == ROOT_PATH:
            return root_id
        parent, current = root_id, ""
        for part in path.strip("/").split("/"):
            current = f"{current}/{part}"
            if current not in existing:
                existing[current] = self.client.create_resource(
                    restApiId=api_id, parentId=parent, pathPart=part
                )["id"]
            parent = existing[current]
        return parent

    def _ensure_authorizer(self, api_id: str, authorizer: dict) -> str:
        wanted = set(authorizer["providerArns"])
        for item in self.client.get_authorizers(restApiId=api_id).get("items", []):
            if item["name"] != authorizer["name"]:
                continue
            present = set(item.get("providerARNs") or ())
            # a recreated user pool has a new ARN
            operations = [{"op": "add", "path": f"/providerARNs/{arn}"} for arn in sorted(wanted - present)]
            operations += [{"op": "remove", "path": f"/providerARNs/{arn}"} for arn in sorted(present - wanted)]
            if operations:
                self.client.update_authorizer(
                    restApiId=api_id, authorizerId=item["id"], patchOperations=operations,
                )
            return item["id"]
        return self.client.create_authorizer(
            restApiId=api_id,
            name=authorizer["name"],
            type="COGNITO_USER_POOLS",
            providerARNs=authorizer["providerArns"],
            identitySource="method.request.header.Authorization",
        )["id"]

    def _integration_uri(self, function_arn: str) -> str:
        region = self.environment.region
        return f"arn:aws:apigateway:{region}:lambda:path/2015-03-31/functions/{function_arn}/invocations"

    def _grant_invoke(self, inputs: dict, resource_id: str) -> None:
        method = "*" if inputs["method"] == "ANY" else inputs["method"]
        source_path = re.sub(r"\{[^}]+\}", "*", inputs["path"])
        statement_id = f"apigw-{inputs['apiId']}-{resource_id}-{inputs['method']}"
        try:
            self.lambda_.add_permission(
                FunctionName=inputs["functionName"],
                StatementId=statement_id,
                Action="lambda:InvokeFunction",
                Principal="apigateway.amazonaws.com",
                SourceArn=f"{inputs['executionArn']}/*/{method}{source_path}",
            )
        except self.lambda_.exceptions.ResourceConflictException:
            # statement id already present from an earlier run
            return

    def _wire(self, inputs: dict, resource_id: str) -> None:
        self.client.put_integration(
            restApiId=inputs["apiId"],
            resourceId=resource_id,
            httpMethod=inputs["method"],
            type="AWS_PROXY",
            integrationHttpMethod="POST",
            uri=self._integration_uri(inputs["functionArn"]),
        )
        self._grant_invoke(inputs, resource_id)

    def _outputs(self, inputs: dict, resource_id: str) -> dict[str, Any]:
        return {"resourceId": resource_id, "methodKey": f"{inputs['path']}/{inputs['method']}"}

    def lookup(self, logical_id, inputs):
        resource_id = self._resources(inputs["apiId"]).get(inputs["path"])
        if resource_id is None:
            return None
        try:
            self.client.get_method(
                restApiId=inputs["apiId"], resourceId=resource_id, httpMethod=inputs["method"]
            )
        except self.client.exceptions.NotFoundException:
            return None
        return self._outputs(inputs, resource_id)

    def create(self, logical_id, inputs):
        api_id = inputs["apiId"]
        resource_id = self._ensure_resource(api_id, inputs["rootResourceId"], inputs["path"])
        method: dict[str, Any] = {
            "restApiId": api_id,
            "resourceId": resource_id,
            "httpMethod": inputs["method"],
            "authorizationType": "NONE",
            "apiKeyRequired": inputs["apiKeyRequired"],
        }
        if inputs.get("authorizer"):
            method["authorizationType"] = "COGNITO_USER_POOLS"
            method["authorizerId"] = self._ensure_authorizer(api_id, inputs["authorizer"])
        self.client.put_method(**method)
        self._wire(inputs, resource_id)
        return self._outputs(inputs, resource_id)

    def update(self, logical_id, inputs, current):
        api_id, resource_id = inputs["apiId"], current["resourceId"]
        operations = [
            {"op": "replace", "path": "/apiKeyRequired", "value": str(inputs["apiKeyRequired"]).lower()},
        ]
        if inputs.get("authorizer"):
            authorizer_id = self._ensure_authorizer(api_id, inputs["authorizer"])
            operations += [
                {"op": "replace", "path": "/authorizationType", "value": "COGNITO_USER_POOLS"},
                {"op": "replace", "path": "/authorizerId", "value": authorizer_id},
            ]
        else:
            operations.append({"op": "replace", "path": "/authorizationType", "value": "NONE"})
        self.client.update_method(
            restApiId=api_id, resourceId=resource_id, httpMethod=inputs["method"],
            patchOperations=operations,
        )
        self._wire(inputs, resource_id)
        return self._outputs(inputs, resource_id)

    def delete(self, logical_id, inputs, current):
        self.client.delete_method(
            restApiId=inputs["apiId"], resourceId=current["resourceId"], httpMethod=inputs["method"]
        )


# ---------------------------------------------------------------------------
# Stage
# ---------------------------------------------------------------------------

class StageHandler(_ApiGatewayHandler):
    kind = ResourceKind.STAGE

    def _outputs(self, inputs: dict) -> dict[str, Any]:
        return {
            "stageName": inputs["stageName"],
            "invokeUrl": (
                f"https://{inputs['apiId']}.execute-api.{self.environment.region}.amazonaws.com/"
                f"{inputs['stageName']}/"
            ),
        }

    def lookup(self, logical_id, inputs):
        try:
            self.client.get_stage(restApiId=inputs["apiId"], stageName=inputs["stageName"])
        except self.client.exceptions.NotFoundException:
            return None
        return self._outputs(inputs)

    def create(self, logical_id, inputs):
        self.client.create_deployment(
            restApiId=inputs["apiId"],
            stageName=inputs["stageName"],
            description=f"{logical_id} deployment",
        )
        return self._outputs(inputs)

    def update(self, logical_id, inputs, current):
        # a new deployment on an existing stage repoints the stage at it
        return self.create(logical_id, inputs)

    def delete(self, logical_id, inputs, current):
        self.client.delete_stage(restApiId=inputs["apiId"], stageName=inputs["stageName"])


# ---------------------------------------------------------------------------
# API keys and usage plans
# ---------------------------------------------------------------------------

class ApiKeyHandler(_ApiGatewayHandler):
    kind = ResourceKind.API_KEY

    def lookup(self, logical_id, inputs):
        for key in _paginate(self.client, "get_api_keys", nameQuery=inputs["keyName"], includeValues=True):
            if key["name"] == inputs["keyName"]:
                return {"keyId": key["id"], "keyValue": key["value"]}
        return None

    def create(self, logical_id, inputs):
        kwargs: dict[str, Any] = {"name": inputs["keyName"], "enabled": inputs.get("enabled", True)}
        if inputs.get("value"):
            kwargs["value"] = inputs["value"]
        key = self.client.create_api_key(**kwargs)
        return {"keyId": key["id"], "keyValue": key["value"]}

    def update(self, logical_id, inputs, current):
        self.client.update_api_key(
            apiKey=current["keyId"],
            patchOperations=[
                {"op": "replace", "path": "/enabled", "value": str(inputs.get("enabled", True)).lower()}
            ],
        )
        return current

    def delete(self, logical_id, inputs, current):
        self.client.delete_api_key(apiKey=current["keyId"])


class UsagePlanHandler(_ApiGatewayHandler):
    kind = ResourceKind.USAGE_PLAN

    @staticmethod
    def _throttle(inputs: dict) -> dict[str, Any]:
        return {"rateLimit": float(inputs["rateLimit"]), "burstLimit": int(inputs["burstLimit"])}

    @staticmethod
    def _method_throttles(inputs: dict) -> dict[str, dict]:
        return {
            key: {"rateLimit": float(t["rateLimit"]), "burstLimit": int(t["burstLimit"])}
            for key, t in inputs["methodThrottles"].items()
        }

    def _sync_keys(self, plan_id: str, key_ids: list[str]) -> None:
        bound = {
            k["id"] for k in _paginate(self.client, "get_usage_plan_keys", usagePlanId=plan_id)
        }
        for key_id in key_ids:
            if key_id not in bound:
                self.client.create_usage_plan_key(usagePlanId=plan_id, keyId=key_id, keyType="API_KEY")
        for key_id in bound - set(key_ids):
            self.client.delete_usage_plan_key(usagePlanId=plan_id, keyId=key_id)

    def lookup(self, logical_id, inputs):
        for plan in _paginate(self.client, "get_usage_plans"):
            if plan["name"] == inputs["planName"]:
                return {"planId": plan["id"]}
        return None

    def create(self, logical_id, inputs):
        plan = self.client.create_usage_plan(
            name=inputs["planName"],
            throttle=self._throttle(inputs),
            apiStages=[
                {
                    "apiId": inputs["apiId"],
                    "stage": inputs["stageName"],
                    "throttle": self._method_throttles(inputs),
                }
            ],
        )
        self._sync_keys(plan["id"], inputs["keyIds"])
        return {"planId": plan["id"]}

    def update(self, logical_id, inputs, current):
        plan_id = current["planId"]
        plan = self.client.get_usage_plan(usagePlanId=plan_id)
        stage_ref = f"{inputs['apiId']}:{inputs['stageName']}"
        throttle = self._throttle(inputs)

        operations = [
            {"op": "replace", "path": "/throttle/rateLimit", "value": str(throttle["rateLimit"])},
            {"op": "replace", "path": "/throttle/burstLimit", "value": str(throttle["burstLimit"])},
        ]
        stages = {f"{s['apiId']}:{s['stage']}" for s in plan.get("apiStages", [])}
        if stage_ref not in stages:
            operations.append({"op": "add", "path": "/apiStages", "value": stage_ref})
        for key, limits in self._method_throttles(inputs).items():
            resource_path, _, method = key.rpartition("/")
            base = f"/apiStages/{stage_ref}/throttle/{_pointer(resource_path)}/{method}"
            operations += [
                {"op": "replace", "path": f"{base}/rateLimit", "value": str(limits["rateLimit"])},
                {"op": "replace", "path": f"{base}/burstLimit", "value": str(limits["burstLimit"])},
            ]
        self.client.update_usage_plan(usagePlanId=plan_id, patchOperations=operations)
        self._sync_keys(plan_id, inputs["keyIds"])
        return current

    def delete(self, logical_id, inputs, current):
        plan_id = current["planId"]
        self._sync_keys(plan_id, [])
        self.client.update_usage_plan(
            usagePlanId=plan_id,
            patchOperations=[
                {"op": "remove", "path": "/apiStages", "value": f"{inputs['apiId']}:{inputs['stageName']}"}
            ],
        )
        self.client.delete_usage_plan(usagePlanId=plan_id)


# ---------------------------------------------------------------------------
# Custom domain
# ---------------------------------------------------------------------------

class CustomDomainHandler(_ApiGatewayHandler):
    kind = ResourceKind.CUSTOM_DOMAIN

    @staticmethod
    def _outputs(domain: dict) -> dict[str, Any]:
        return {
            "domainName": domain["domainName"],
            "regionalDomainName": domain["regionalDomainName"],
            "regionalHostedZoneId": domain["regionalHostedZoneId"],
        }

    def _map_stage(self, inputs: dict) -> None:
        mappings = self.client.get_base_path_mappings(domainName=inputs["domainName"]).get("items", [])
        for mapping in mappings:
            if mapping["restApiId"] == inputs["apiId"] and mapping.get("stage") == inputs["stageName"]:
                return
        if any(m["basePath"] == "(none)" for m in mappings):
            self.client.update_base_path_mapping(
                domainName=inputs["domainName"],
                basePath="(none)",
                patchOperations=[
                    {"op": "replace", "path": "/restapiId", "value": inputs["apiId"]},
                    {"op": "replace", "path": "/stage", "value": inputs["stageName"]},
                ],
            )
            return
        self.client.create_base_path_mapping(
            domainName=inputs["domainName"], restApiId=inputs["apiId"], stage=inputs["stageName"],
        )

    def lookup(self, logical_id, inputs):
        try:
            domain = self.client.get_domain_name(domainName=inputs["domainName"])
        except self.client.exceptions.NotFoundException:
            return None
        return self._outputs(domain)

    def create(self, logical_id, inputs):
        domain = self.client.create_domain_name(
            domainName=inputs["domainName"],
            regionalCertificateArn=inputs["certificateArn"],
            endpointConfiguration={"types": ["REGIONAL"]},
            securityPolicy="TLS_1_2",
        )
        self._map_stage(inputs)
        return self._outputs(domain)

    def update(self, logical_id, inputs, current):
        domain = self.client.update_domain_name(
            domainName=inputs["domainName"],
            patchOperations=[
                {"op": "replace", "path": "/regionalCertificateArn", "value": inputs["certificateArn"]}
            ],
        )
        self._map_stage(inputs)
        return self._outputs(domain)

    def delete(self, logical_id, inputs, current):
        for mapping in self.client.get_base_path_mappings(domainName=inputs["domainName"]).get("items", []):
            self.client.delete_base_path_mapping(domainName=inputs["domainName"], basePath=mapping["basePath"])
        self.client.delete_domain_name(domainName=inputs["domainName"])
