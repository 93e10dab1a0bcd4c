"""IdentityProvider -> Cognito user pool (email sign-in, auto-verified) + app client."""
from __future__ import annotations

from typing import Any

from provisioner.descriptors import ResourceKind
from provisioner.environment import ResourceHandler

AUTH_FLOWS = ["ALLOW_USER_PASSWORD_AUTH", "ALLOW_USER_SRP_AUTH", "ALLOW_REFRESH_TOKEN_AUTH"]


class UserPoolHandler(ResourceHandler):
    kind = ResourceKind.IDENTITY_PROVIDER

    @property
    def client(self):
        return self.environment.client("cognito-idp")

    def _find_pool(self, name: str) -> str | None:
        paginator = self.client.get_paginator("list_user_pools")
        for page in paginator.paginate(MaxResults=60):
            for pool in page.get("UserPools", []):
                if pool["Name"] == name:
                    return pool["Id"]
        return None

    def _find_client(self, pool_id: str, name: str) -> str | None:
        paginator = self.client.get_paginator("list_user_pool_clients")
        for page in paginator.paginate(UserPoolId=pool_id, MaxResults=60):
            for app_client in page.get("UserPoolClients", []):
                if app_client["ClientName"] == name:
                    return app_client["ClientId"]
        return None

    def _outputs(self, pool_id: str, client_id: str | None) -> dict[str, Any]:
        pool = self.client.describe_user_pool(UserPoolId=pool_id)["UserPool"]
        return {"userPoolId": pool_id, "userPoolArn": pool["Arn"], "userPoolClientId": client_id}

    def _create_client(self, pool_id: str, name: str) -> str:
        return self.client.create_user_pool_client(
            UserPoolId=pool_id,
            ClientName=name,
            GenerateSecret=False,
            ExplicitAuthFlows=AUTH_FLOWS,
        )["UserPoolClient"]["ClientId"]

    def lookup(self, logical_id, inputs):
        pool_id = self._find_pool(inputs["poolName"])
        if pool_id is None:
            return None
        return self._outputs(pool_id, self._find_client(pool_id, inputs["clientName"]))

    def create(self, logical_id, inputs):
        pool_id = self.client.create_user_pool(
            PoolName=inputs["poolName"],
            UsernameAttributes=["email"],
            AutoVerifiedAttributes=["email"],
            AdminCreateUserConfig={"AllowAdminCreateUserOnly": not inputs.get("selfSignUp", True)},
        )["UserPool"]["Id"]
        return self._outputs(pool_id, self._create_client(pool_id, inputs["clientName"]))

    def update(self, logical_id, inputs, current):
        pool_id = current["userPoolId"]
        self.client.update_user_pool(
            UserPoolId=pool_id,
            AutoVerifiedAttributes=["email"],
            AdminCreateUserConfig={"AllowAdminCreateUserOnly": not inputs.get("selfSignUp", True)},
        )
        client_id = current.get("userPoolClientId") or self._create_client(pool_id, inputs["clientName"])
        return self._outputs(pool_id, client_id)

    def delete(self, logical_id, inputs, current):
        if current.get("userPoolClientId"):
            self.client.delete_user_pool_client(
                UserPoolId=current["userPoolId"], ClientId=current["userPoolClientId"]
            )
        self.client.delete_user_pool(UserPoolId=current["userPoolId"])
