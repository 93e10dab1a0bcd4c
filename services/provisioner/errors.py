"""
Provisioning Errors
===================
Every failure the provisioner can surface, in two families:

Planning errors (raised before any call reaches the target environment):
  InvalidDescriptor   malformed descriptor or broken deployment-set invariant
  CyclicDependency    no creation order exists

Apply errors (recorded on the node that failed; the run is resumable):
  UnresolvedReference            a reference could not be bound at apply time
  ProvisioningFailure            the external call for one node failed
  CertificateValidationTimeout   certificate not ISSUED within the bound
  GrantFailure                   permission attachment failed
  PreconditionFailed             a binding was attempted before its input was ready
"""
from __future__ import annotations


class ProvisioningError(Exception):
    """Base class. `logical_id` names the node involved, when there is one."""

    def __init__(self, message: str, logical_id: str | None = None):
        self.logical_id = logical_id
        super().__init__(message)


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------

class InvalidDescriptor(ProvisioningError):
    pass


class CyclicDependency(ProvisioningError):
    def __init__(self, cycle: list[str]):
        self.cycle = cycle
        super().__init__(f"Dependency cycle: {' -> '.join(cycle)}")


# ---------------------------------------------------------------------------
# Apply
# ---------------------------------------------------------------------------

class UnresolvedReference(ProvisioningError):
    """Raised when a dependent field cannot be bound. Never retried.

    `logical_id` is the node being provisioned, `target` the node it refers to.
    """

    def __init__(self, message: str, logical_id: str | None = None, target: str | None = None):
        super().__init__(message, logical_id)
        self.target = target


class ProvisioningFailure(ProvisioningError):
    pass


class CertificateValidationTimeout(ProvisioningFailure):
    def __init__(self, certificate_arn: str, waited_seconds: float, logical_id: str | None = None):
        self.certificate_arn = certificate_arn
        self.waited_seconds = waited_seconds
        super().__init__(
            f"Certificate {certificate_arn} not ISSUED after {waited_seconds:.0f}s",
            logical_id,
        )


class GrantFailure(ProvisioningFailure):
    pass


class PreconditionFailed(ProvisioningFailure):
    pass


class JournalConflict(ProvisioningError):
    """The stored journal changed since it was loaded (another run wrote it)."""
