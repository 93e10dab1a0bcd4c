"""
Domain Stack
============
Public endpoint `https://<subdomain>.<domainName>/` for the API stage:
zone lookup, DNS-validated certificate, regional custom domain, alias record.
"""
from __future__ import annotations

from provisioner.descriptors import ResourceDescriptor
from provisioner.resources import alias_record, certificate, custom_domain, dns_zone_lookup

from urlshortener.api_stack import STAGE
from urlshortener.config import DeploymentConfig

ZONE = "HostedZone"
CERTIFICATE = "ApiCertificate"
CUSTOM_DOMAIN = "ApiCustomDomain"
ALIAS = "ApiAliasRecord"


def domain_stack(config: DeploymentConfig) -> list[ResourceDescriptor]:
    fqdn = config.fqdn
    return [
        dns_zone_lookup(ZONE, domain_name=config.domain_name),
        certificate(CERTIFICATE, domain_name=fqdn, hosted_zone=ZONE),
        custom_domain(CUSTOM_DOMAIN, domain_name=fqdn, certificate=CERTIFICATE, stage=STAGE, hosted_zone=ZONE),
        alias_record(ALIAS, record_name=fqdn, hosted_zone=ZONE, target=CUSTOM_DOMAIN),
    ]
