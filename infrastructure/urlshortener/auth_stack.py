"""Cognito user pool with email sign-in and self sign-up, plus its app client."""
from __future__ import annotations

from provisioner.descriptors import ResourceDescriptor
from provisioner.resources import identity_provider

from urlshortener.config import DeploymentConfig

USER_POOL = "UserPool"


def auth_stack(config: DeploymentConfig) -> list[ResourceDescriptor]:
    if not config.auth_enabled:
        return []
    return [
        identity_provider(
            USER_POOL,
            pool_name=f"{config.stack_name}-users",
            client_name=f"{config.stack_name}-web",
            self_sign_up=True,
        )
    ]
