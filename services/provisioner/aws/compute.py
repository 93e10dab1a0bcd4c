"""
ComputeUnit -> IAM execution role + Lambda function
Grant       -> one inline policy on that role
"""
from __future__ import annotations

import base64
import hashlib
import json
import time
from pathlib import Path
from typing import Any

from botocore.exceptions import ClientError

from provisioner.binder import policy_document
from provisioner.descriptors import ResourceKind
from provisioner.environment import ResourceHandler
from provisioner.errors import ProvisioningFailure
from shared.logger import get_logger

logger = get_logger(__name__)

BASIC_EXECUTION_POLICY = "arn:aws:iam::aws:policy/service-role/AWSLambdaBasicExecutionRole"
ASSUME_ROLE_POLICY = {
    "Version": "2012-10-17",
    "Statement": [
        {
            "Effect": "Allow",
            "Principal": {"Service": "lambda.amazonaws.com"},
            "Action": "sts:AssumeRole",
        }
    ],
}
# A freshly created role takes a few seconds to become assumable by Lambda.
ROLE_PROPAGATION_ATTEMPTS = 10
ROLE_PROPAGATION_DELAY = 3.0


def role_name_for(function_name: str) -> str:
    return f"{function_name}-role"


def _code_location(code: str, logical_id: str) -> tuple[dict[str, Any], str | None]:
    """Lambda Code argument plus the local package's CodeSha256 (None for S3)."""
    if code.startswith("s3://"):
        bucket, _, key = code[len("s3://"):].partition("/")
        return {"S3Bucket": bucket, "S3Key": key}, None
    path = Path(code)
    if not path.is_file():
        raise ProvisioningFailure(f"Deployment package {code} does not exist", logical_id)
    data = path.read_bytes()
    return {"ZipFile": data}, base64.b64encode(hashlib.sha256(data).digest()).decode()


class FunctionHandler(ResourceHandler):
    kind = ResourceKind.COMPUTE_UNIT

    @property
    def lambda_(self):
        return self.environment.client("lambda")

    @property
    def iam(self):
        return self.environment.client("iam")

    def lookup(self, logical_id, inputs):
        try:
            config = self.lambda_.get_function(FunctionName=inputs["functionName"])["Configuration"]
        except self.lambda_.exceptions.ResourceNotFoundException:
            return None
        role_arn = config["Role"]
        return {
            "functionName": config["FunctionName"],
            "functionArn": config["FunctionArn"],
            "roleName": role_arn.rsplit("/", 1)[-1],
            "roleArn": role_arn,
            "codeSha256": config.get("CodeSha256"),
        }

    # ------------------------------------------------------------------
    # Role
    # ------------------------------------------------------------------

    def _ensure_role(self, function_name: str) -> str:
        name = role_name_for(function_name)
        try:
            return self.iam.get_role(RoleName=name)["Role"]["Arn"]
        except self.iam.exceptions.NoSuchEntityException:
            pass
        role = self.iam.create_role(
            RoleName=name,
            AssumeRolePolicyDocument=json.dumps(ASSUME_ROLE_POLICY),
            Description=f"Execution role for {function_name}",
        )["Role"]
        self.iam.attach_role_policy(RoleName=name, PolicyArn=BASIC_EXECUTION_POLICY)
        logger.info("Execution role created", extra={"role_name": name})
        return role["Arn"]

    def _function_config(self, inputs: dict, role_arn: str) -> dict[str, Any]:
        config: dict[str, Any] = {
            "FunctionName": inputs["functionName"],
            "Runtime": inputs["runtime"],
            "Handler": inputs["handler"],
            "Role": role_arn,
            "Environment": {"Variables": {k: str(v) for k, v in (inputs.get("environment") or {}).items()}},
        }
        if inputs.get("memorySize"):
            config["MemorySize"] = int(inputs["memorySize"])
        if inputs.get("timeout"):
            config["Timeout"] = int(inputs["timeout"])
        return config

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def create(self, logical_id, inputs):
        role_arn = self._ensure_role(inputs["functionName"])
        code, _ = _code_location(inputs["code"], logical_id)
        kwargs = {**self._function_config(inputs, role_arn), "Code": code}
        if inputs.get("architecture"):
            kwargs["Architectures"] = [inputs["architecture"]]

        for attempt in range(1, ROLE_PROPAGATION_ATTEMPTS + 1):
            try:
                self.lambda_.create_function(**kwargs)
                break
            except ClientError as e:
                error = e.response["Error"]
                retryable = error["Code"] == "InvalidParameterValueException" and "role" in error["Message"]
                if not retryable or attempt == ROLE_PROPAGATION_ATTEMPTS:
                    raise
                logger.info("Waiting for role propagation", extra={"attempt": attempt})
                time.sleep(ROLE_PROPAGATION_DELAY)

        self.lambda_.get_waiter("function_active_v2").wait(FunctionName=inputs["functionName"])
        return self.lookup(logical_id, inputs)

    def update(self, logical_id, inputs, current):
        name = inputs["functionName"]
        role_arn = self._ensure_role(name)
        self.lambda_.update_function_configuration(**self._function_config(inputs, role_arn))
        self.lambda_.get_waiter("function_updated_v2").wait(FunctionName=name)

        code, sha = _code_location(inputs["code"], logical_id)
        if sha is None or sha != current.get("codeSha256"):
            kwargs = {"FunctionName": name, **code}
            if inputs.get("architecture"):
                kwargs["Architectures"] = [inputs["architecture"]]
            self.lambda_.update_function_code(**kwargs)
            self.lambda_.get_waiter("function_updated_v2").wait(FunctionName=name)
        return self.lookup(logical_id, inputs)

    def delete(self, logical_id, inputs, current):
        name = inputs["functionName"]
        self.lambda_.delete_function(FunctionName=name)

        role = role_name_for(name)
        for policy in self.iam.list_attached_role_policies(RoleName=role)["AttachedPolicies"]:
            self.iam.detach_role_policy(RoleName=role, PolicyArn=policy["PolicyArn"])
        for policy_name in self.iam.list_role_policies(RoleName=role)["PolicyNames"]:
            self.iam.delete_role_policy(RoleName=role, PolicyName=policy_name)
        self.iam.delete_role(RoleName=role)


class GrantHandler(ResourceHandler):
    """All actions of a grant land in one PutRolePolicy call, so a grant is never half-applied."""

    kind = ResourceKind.GRANT

    @property
    def iam(self):
        return self.environment.client("iam")

    def lookup(self, logical_id, inputs):
        try:
            self.iam.get_role_policy(RoleName=inputs["roleName"], PolicyName=inputs["policyName"])
        except self.iam.exceptions.NoSuchEntityException:
            return None
        return {"policyName": inputs["policyName"]}

    def create(self, logical_id, inputs):
        self.iam.put_role_policy(
            RoleName=inputs["roleName"],
            PolicyName=inputs["policyName"],
            PolicyDocument=json.dumps(policy_document(inputs["tableArn"], inputs["actions"])),
        )
        return {"policyName": inputs["policyName"]}

    def update(self, logical_id, inputs, current):
        return self.create(logical_id, inputs)

    def delete(self, logical_id, inputs, current):
        self.iam.delete_role_policy(RoleName=inputs["roleName"], PolicyName=inputs["policyName"])
