"""
Target Environment
==================
The executor talks to the outside world only through this interface. Every
call takes the node's *prepared* inputs: references resolved and ordering
hints replaced by the concrete values the binder/domain step read from the
journal (role names, API ids, certificate ARNs, ...).

  lookup   -> current outputs, or None if the resource does not exist
  create   -> outputs of the new resource
  update   -> outputs after converging the existing resource
  delete   -> remove (teardown only)

Existence is keyed on the resource's natural name (table name, function
name, API name, ...), never on cached identifiers, so a lookup is always a
fresh read of the environment.

Two implementations ship:
  provisioner.aws.environment.AwsEnvironment   boto3
  provisioner.memory.InMemoryEnvironment       local, for --local and tests
"""
from __future__ import annotations

from typing import Any

from provisioner.descriptors import ResourceKind

CERTIFICATE_ISSUED = "ISSUED"
CERTIFICATE_PENDING = "PENDING_VALIDATION"
CERTIFICATE_FAILED_STATES = {"FAILED", "REVOKED", "VALIDATION_TIMED_OUT", "EXPIRED", "INACTIVE"}


class ResourceHandler:
    """Lifecycle operations for one resource kind in one environment."""

    kind: ResourceKind

    def __init__(self, environment: "TargetEnvironment"):
        self.environment = environment

    def lookup(self, logical_id: str, inputs: dict[str, Any]) -> dict[str, Any] | None:
        raise NotImplementedError

    def create(self, logical_id: str, inputs: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    def update(self, logical_id: str, inputs: dict[str, Any], current: dict[str, Any]) -> dict[str, Any]:
        return current

    def delete(self, logical_id: str, inputs: dict[str, Any], current: dict[str, Any]) -> None:
        raise NotImplementedError


class TargetEnvironment:
    name = "base"
    region: str
    account_id: str | None

    def handler_for(self, kind: ResourceKind) -> ResourceHandler:
        raise NotImplementedError

    def lookup(self, kind: ResourceKind, logical_id: str, inputs: dict[str, Any]) -> dict[str, Any] | None:
        return self.handler_for(kind).lookup(logical_id, inputs)

    def create(self, kind: ResourceKind, logical_id: str, inputs: dict[str, Any]) -> dict[str, Any]:
        return self.handler_for(kind).create(logical_id, inputs)

    def update(
        self, kind: ResourceKind, logical_id: str, inputs: dict[str, Any], current: dict[str, Any],
    ) -> dict[str, Any]:
        return self.handler_for(kind).update(logical_id, inputs, current)

    def delete(
        self, kind: ResourceKind, logical_id: str, inputs: dict[str, Any], current: dict[str, Any],
    ) -> None:
        self.handler_for(kind).delete(logical_id, inputs, current)

    # ------------------------------------------------------------------
    # Certificate validation (used by the domain provisioner)
    # ------------------------------------------------------------------

    def certificate_status(self, certificate_arn: str) -> str:
        raise NotImplementedError

    def certificate_validation_records(self, certificate_arn: str) -> list[dict[str, str]]:
        """[{"name": ..., "type": "CNAME", "value": ...}]; may be empty right after the request."""
        raise NotImplementedError

    def upsert_record(self, hosted_zone_id: str, name: str, record_type: str, value: str) -> None:
        raise NotImplementedError
