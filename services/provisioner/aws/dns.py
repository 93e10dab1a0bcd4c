"""
Route53 and ACM:

  DnsZoneLookup  public hosted zone for the root domain (looked up, never created)
  Certificate    ACM certificate for the FQDN, DNS-validated; an existing ISSUED or
                 PENDING_VALIDATION certificate for the same name is reused
  AliasRecord    A-record alias to the custom domain's regional endpoint
"""
from __future__ import annotations

import hashlib
from typing import Any

from provisioner.descriptors import ResourceKind
from provisioner.environment import CERTIFICATE_ISSUED, CERTIFICATE_PENDING, ResourceHandler
from provisioner.errors import ProvisioningFailure

RECORD_TTL = 300


def _fqdn(name: str) -> str:
    return name if name.endswith(".") else f"{name}."


def describe_certificate(acm, certificate_arn: str) -> dict[str, Any]:
    return acm.describe_certificate(CertificateArn=certificate_arn)["Certificate"]


def validation_records(acm, certificate_arn: str) -> list[dict[str, str]]:
    options = describe_certificate(acm, certificate_arn).get("DomainValidationOptions", [])
    records = []
    for option in options:
        record = option.get("ResourceRecord")
        if record:
            records.append({"name": record["Name"], "type": record["Type"], "value": record["Value"]})
    return records


def upsert_record(route53, hosted_zone_id: str, name: str, record_type: str, value: str) -> None:
    route53.change_resource_record_sets(
        HostedZoneId=hosted_zone_id,
        ChangeBatch={
            "Changes": [
                {
                    "Action": "UPSERT",
                    "ResourceRecordSet": {
                        "Name": _fqdn(name),
                        "Type": record_type,
                        "TTL": RECORD_TTL,
                        "ResourceRecords": [{"Value": value}],
                    },
                }
            ]
        },
    )


class HostedZoneHandler(ResourceHandler):
    kind = ResourceKind.DNS_ZONE_LOOKUP

    @property
    def client(self):
        return self.environment.client("route53")

    def lookup(self, logical_id, inputs):
        name = _fqdn(inputs["domainName"])
        zones = self.client.list_hosted_zones_by_name(DNSName=name).get("HostedZones", [])
        for zone in zones:
            if zone["Name"] == name and not zone.get("Config", {}).get("PrivateZone", False):
                return {
                    "hostedZoneId": zone["Id"].rsplit("/", 1)[-1],
                    "zoneName": name.rstrip("."),
                }
        return None

    def create(self, logical_id, inputs):
        raise ProvisioningFailure(
            f"No public hosted zone found for {inputs['domainName']}; zones are never created",
            logical_id,
        )

    def delete(self, logical_id, inputs, current):
        return None


class CertificateHandler(ResourceHandler):
    kind = ResourceKind.CERTIFICATE

    @property
    def client(self):
        return self.environment.client("acm")

    def lookup(self, logical_id, inputs):
        paginator = self.client.get_paginator("list_certificates")
        pages = paginator.paginate(CertificateStatuses=[CERTIFICATE_ISSUED, CERTIFICATE_PENDING])
        for page in pages:
            for summary in page.get("CertificateSummaryList", []):
                if summary["DomainName"] == inputs["domainName"]:
                    arn = summary["CertificateArn"]
                    return {"certificateArn": arn, "status": describe_certificate(self.client, arn)["Status"]}
        return None

    def create(self, logical_id, inputs):
        token = hashlib.sha256(inputs["domainName"].encode()).hexdigest()[:32]
        arn = self.client.request_certificate(
            DomainName=inputs["domainName"],
            ValidationMethod="DNS",
            IdempotencyToken=token,
        )["CertificateArn"]
        return {"certificateArn": arn, "status": describe_certificate(self.client, arn)["Status"]}

    def delete(self, logical_id, inputs, current):
        self.client.delete_certificate(CertificateArn=current["certificateArn"])


class AliasRecordHandler(ResourceHandler):
    kind = ResourceKind.ALIAS_RECORD

    @property
    def client(self):
        return self.environment.client("route53")

    @staticmethod
    def _record_set(inputs: dict) -> dict[str, Any]:
        return {
            "Name": _fqdn(inputs["recordName"]),
            "Type": "A",
            "AliasTarget": {
                "HostedZoneId": inputs["aliasHostedZoneId"],
                "DNSName": inputs["aliasDnsName"],
                "EvaluateTargetHealth": False,
            },
        }

    def _change(self, action: str, inputs: dict) -> None:
        self.client.change_resource_record_sets(
            HostedZoneId=inputs["hostedZoneId"],
            ChangeBatch={"Changes": [{"Action": action, "ResourceRecordSet": self._record_set(inputs)}]},
        )

    def lookup(self, logical_id, inputs):
        name = _fqdn(inputs["recordName"])
        records = self.client.list_resource_record_sets(
            HostedZoneId=inputs["hostedZoneId"], StartRecordName=name, StartRecordType="A", MaxItems="1",
        ).get("ResourceRecordSets", [])
        for record in records:
            if record["Name"] == name and record["Type"] == "A":
                return {"fqdn": name.rstrip(".")}
        return None

    def create(self, logical_id, inputs):
        self._change("UPSERT", inputs)
        return {"fqdn": inputs["recordName"].rstrip(".")}

    def update(self, logical_id, inputs, current):
        return self.create(logical_id, inputs)

    def delete(self, logical_id, inputs, current):
        self._change("DELETE", inputs)
