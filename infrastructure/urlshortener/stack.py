"""
URL Shortener Stack
===================
The full descriptor set, in declaration order:

  DatabaseStack -> AuthStack -> ApiStack -> DomainStack

Declaration order only breaks ties; the executor orders by dependencies.
"""
from __future__ import annotations

from provisioner.descriptors import ResourceDescriptor

from urlshortener.api_stack import api_stack
from urlshortener.auth_stack import auth_stack
from urlshortener.config import DeploymentConfig
from urlshortener.database_stack import database_stack
from urlshortener.domain_stack import domain_stack


def url_shortener_stack(config: DeploymentConfig) -> list[ResourceDescriptor]:
    return [
        *database_stack(config),
        *auth_stack(config),
        *api_stack(config),
        *domain_stack(config),
    ]
