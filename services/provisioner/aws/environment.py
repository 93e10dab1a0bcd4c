"""
AWS Target Environment
======================
boto3 implementation of the environment contract. One handler per resource
kind, grouped by service:

  provisioner.aws.dynamodb    DataStore
  provisioner.aws.compute     ComputeUnit (IAM role + Lambda), Grant
  provisioner.aws.cognito     IdentityProvider
  provisioner.aws.apigateway  RoutingLayer, Route, Stage, ApiKey, UsagePlan, CustomDomain
  provisioner.aws.dns         DnsZoneLookup, Certificate, AliasRecord

Clients are created lazily and cached per (service, region). Route53 is a
global service and always talks to us-east-1.
"""
from __future__ import annotations

import threading

import boto3

from provisioner.aws import apigateway, cognito, compute, dns, dynamodb
from provisioner.descriptors import ResourceKind
from provisioner.environment import ResourceHandler, TargetEnvironment


class AwsEnvironment(TargetEnvironment):
    name = "aws"

    def __init__(self, region: str = "us-east-1", account_id: str | None = None, session=None):
        self.region = region
        self._account_id = account_id
        self._session = session or boto3.session.Session()
        self._clients: dict[tuple[str, str], object] = {}
        self._lock = threading.Lock()

        handlers: list[ResourceHandler] = [
            dynamodb.TableHandler(self),
            compute.FunctionHandler(self),
            compute.GrantHandler(self),
            cognito.UserPoolHandler(self),
            apigateway.RestApiHandler(self),
            apigateway.RouteHandler(self),
            apigateway.StageHandler(self),
            apigateway.ApiKeyHandler(self),
            apigateway.UsagePlanHandler(self),
            apigateway.CustomDomainHandler(self),
            dns.HostedZoneHandler(self),
            dns.CertificateHandler(self),
            dns.AliasRecordHandler(self),
        ]
        self._handlers = {h.kind: h for h in handlers}

    def client(self, service: str, region: str | None = None):
        region = "us-east-1" if service == "route53" else (region or self.region)
        with self._lock:
            if (service, region) not in self._clients:
                self._clients[(service, region)] = self._session.client(service, region_name=region)
            return self._clients[(service, region)]

    @property
    def account_id(self) -> str:
        if self._account_id is None:
            self._account_id = self.client("sts").get_caller_identity()["Account"]
        return self._account_id

    def handler_for(self, kind: ResourceKind) -> ResourceHandler:
        return self._handlers[kind]

    # ------------------------------------------------------------------
    # Certificate validation
    # ------------------------------------------------------------------

    def certificate_status(self, certificate_arn: str) -> str:
        return dns.describe_certificate(self.client("acm"), certificate_arn)["Status"]

    def certificate_validation_records(self, certificate_arn: str) -> list[dict[str, str]]:
        return dns.validation_records(self.client("acm"), certificate_arn)

    def upsert_record(self, hosted_zone_id: str, name: str, record_type: str, value: str) -> None:
        dns.upsert_record(self.client("route53"), hosted_zone_id, name, record_type, value)
