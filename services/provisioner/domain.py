"""
Domain/Certificate Provisioner
==============================
Public endpoint chain, in dependency order:

  DnsZoneLookup -> Certificate -> (wait for ISSUED) -> CustomDomain -> AliasRecord

The zone is only ever looked up. The certificate is requested for the FQDN
and validated by DNS: its proof CNAMEs are UPSERTed into the looked-up zone,
then the status is polled until ISSUED or the configured bound elapses.
A custom domain is attached only to an ISSUED certificate.
"""
from __future__ import annotations

from typing import TYPE_CHECKING, Any

from provisioner.descriptors import ResourceKind
from provisioner.environment import CERTIFICATE_FAILED_STATES, CERTIFICATE_ISSUED
from provisioner.errors import CertificateValidationTimeout, PreconditionFailed, ProvisioningFailure
from shared.logger import get_logger

if TYPE_CHECKING:
    from provisioner.executor import NodeContext

logger = get_logger(__name__)


def prepare_certificate(node: "NodeContext") -> dict[str, Any]:
    return {
        "domainName": node.inputs["domainName"],
        "hostedZoneId": node.output(node.descriptor.inputs["hostedZone"], "hostedZoneId"),
    }


def await_certificate(node: "NodeContext", outputs: dict[str, Any]) -> dict[str, Any]:
    """Publish the DNS proof and block until the certificate is ISSUED."""
    env, ctx = node.environment, node.context
    logical_id = node.descriptor.logical_id
    arn = outputs["certificateArn"]
    zone_id = node.prepared["hostedZoneId"]

    started = ctx.clock()
    published = False
    while True:
        status = env.certificate_status(arn)
        if status == CERTIFICATE_ISSUED:
            node.log.info("Certificate issued", extra={"certificate_arn": arn})
            return {**outputs, "status": status}
        if status in CERTIFICATE_FAILED_STATES:
            raise ProvisioningFailure(f"Certificate {arn} is {status}", logical_id)

        if not published:
            records = env.certificate_validation_records(arn)
            for record in records:
                env.upsert_record(zone_id, record["name"], record["type"], record["value"])
            published = bool(records)
            if published:
                node.log.info(
                    "Validation records published",
                    extra={"certificate_arn": arn, "records": len(records)},
                )
                continue

        waited = ctx.clock() - started
        if waited >= ctx.certificate_timeout:
            raise CertificateValidationTimeout(arn, waited, logical_id)
        ctx.sleep(ctx.poll_interval)


def prepare_custom_domain(node: "NodeContext") -> dict[str, Any]:
    d = node.descriptor
    certificate_id, stage_id = d.inputs["certificate"], d.inputs["stage"]
    arn = node.output(certificate_id, "certificateArn")

    recorded = node.state[certificate_id].outputs.get("status")
    live = node.environment.certificate_status(arn)
    if recorded != CERTIFICATE_ISSUED or live != CERTIFICATE_ISSUED:
        raise PreconditionFailed(
            f"CustomDomain {d.logical_id}: certificate {arn} is {live}, not {CERTIFICATE_ISSUED}",
            d.logical_id,
        )

    stage = node.descriptors[stage_id]
    return {
        "domainName": node.inputs["domainName"],
        "certificateArn": arn,
        "apiId": node.output(stage.inputs["routingLayer"], "apiId"),
        "stageName": node.output(stage_id, "stageName"),
    }


def prepare_alias_record(node: "NodeContext") -> dict[str, Any]:
    d = node.descriptor
    target = d.inputs["target"]
    return {
        "hostedZoneId": node.output(d.inputs["hostedZone"], "hostedZoneId"),
        "recordName": node.inputs["recordName"],
        "aliasDnsName": node.output(target, "regionalDomainName"),
        "aliasHostedZoneId": node.output(target, "regionalHostedZoneId"),
    }


PREPARERS = {
    ResourceKind.CERTIFICATE: prepare_certificate,
    ResourceKind.CUSTOM_DOMAIN: prepare_custom_domain,
    ResourceKind.ALIAS_RECORD: prepare_alias_record,
}

FINALIZERS = {
    ResourceKind.CERTIFICATE: await_certificate,
}
