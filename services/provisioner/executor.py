"""
Provisioning Executor
=====================
Walks the topological order and brings every node to Provisioned.

Per node:
  1. mark Provisioning in the journal
  2. resolve References against the journal (lazily, right now)
  3. binder/domain prepare step (grants, routes, certificate preconditions)
  4. re-check existence in the target environment
  5. skip   exists, journal says Provisioned, fingerprint unchanged
     create absent
     update present but new or changed
  6. finalize (certificate: publish DNS proof, wait for ISSUED)
  7. mark Provisioned with the outputs, or Failed with the error

A failure halts forward progress and leaves every earlier node as it is.
Running again resumes: unchanged Provisioned nodes cost one lookup each,
Pending/Failed nodes are retried in the same relative order.

With max_workers > 1 independent ready nodes run on a thread pool; a failure
or cancellation stops new submissions while in-flight calls finish.
"""
from __future__ import annotations

import hashlib
import json
import threading
import time
import uuid
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable

from botocore.exceptions import BotoCoreError, ClientError
from pydantic import BaseModel

from provisioner import binder, domain
from provisioner.descriptors import ResourceDescriptor, ResourceKind, validate_deployment
from provisioner.environment import TargetEnvironment
from provisioner.errors import GrantFailure, ProvisioningError, ProvisioningFailure
from provisioner.graph import DependencyGraph, build_graph
from provisioner.journal import DeploymentJournal, NodeRecord, NodeState, RunState
from provisioner.references import output_of, resolve_inputs
from shared.logger import bind, get_logger

logger = get_logger(__name__)

PREPARERS: dict[ResourceKind, Callable[["NodeContext"], dict[str, Any]]] = {
    **binder.PREPARERS,
    **domain.PREPARERS,
}
FINALIZERS: dict[ResourceKind, Callable[["NodeContext", dict[str, Any]], dict[str, Any]]] = {
    **domain.FINALIZERS,
}


# ---------------------------------------------------------------------------
# Run context
# ---------------------------------------------------------------------------

@dataclass
class DeploymentContext:
    """Everything one run needs, passed explicitly instead of held globally."""
    deployment_name: str
    environment: TargetEnvironment
    journal: DeploymentJournal
    max_workers: int = 1
    certificate_timeout: float = 1800.0
    poll_interval: float = 15.0
    clock: Callable[[], float] = time.monotonic
    sleep: Callable[[float], None] = time.sleep
    correlation_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    _cancelled: threading.Event = field(default_factory=threading.Event, repr=False)

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()


@dataclass
class NodeContext:
    descriptor: ResourceDescriptor
    inputs: dict[str, Any]
    state: dict[str, NodeRecord]
    descriptors: dict[str, ResourceDescriptor]
    environment: TargetEnvironment
    context: DeploymentContext
    log: Any
    prepared: dict[str, Any] = field(default_factory=dict)

    def output(self, logical_id: str, output_field: str) -> Any:
        return output_of(logical_id, output_field, self.state, owner=self.descriptor.logical_id)


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------

@dataclass
class DeploymentPlan:
    descriptors: dict[str, ResourceDescriptor]
    graph: DependencyGraph
    order: list[str]
    fingerprints: dict[str, str]


def fingerprint(descriptor: ResourceDescriptor, dependency_fingerprints: dict[str, str]) -> str:
    payload = {
        "desired": descriptor.desired_state,
        "dependencies": sorted(dependency_fingerprints.items()),
    }
    return hashlib.sha256(json.dumps(payload, sort_keys=True, default=str).encode()).hexdigest()


def inputs_digest(prepared: dict[str, Any]) -> str:
    """Hash of the inputs a node was applied with, references already resolved."""
    return hashlib.sha256(json.dumps(prepared, sort_keys=True, default=str).encode()).hexdigest()


def plan_deployment(descriptors: Iterable[ResourceDescriptor]) -> DeploymentPlan:
    """Validate, build the graph and order it. Raises before any external call."""
    by_id = validate_deployment(list(descriptors))
    graph = build_graph(by_id)
    order = graph.topological_order()

    fingerprints: dict[str, str] = {}
    for logical_id in order:
        deps = {dep: fingerprints[dep] for dep in graph.depends_on(logical_id)}
        fingerprints[logical_id] = fingerprint(by_id[logical_id], deps)
    return DeploymentPlan(descriptors=by_id, graph=graph, order=order, fingerprints=fingerprints)


# ---------------------------------------------------------------------------
# Report
# ---------------------------------------------------------------------------

class NodeReport(BaseModel):
    logical_id: str
    kind: str
    state: NodeState
    action: str | None = None
    error: str | None = None
    error_type: str | None = None


class DeploymentReport(BaseModel):
    deployment: str
    run_state: RunState
    nodes: list[NodeReport]
    first_failure: str | None = None
    cancelled: bool = False
    endpoint: str | None = None
    custom_domain_url: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.run_state == RunState.COMPLETED

    def render(self) -> str:
        lines = [f"Deployment {self.deployment}: {self.run_state.value}"]
        for n in self.nodes:
            line = f"  {n.logical_id:<32} {n.kind:<18} {n.state.value:<12}"
            if n.action:
                line += f" {n.action}"
            if n.error:
                line += f"  {n.error_type}: {n.error}"
            lines.append(line.rstrip())
        if self.endpoint:
            lines.append(f"Endpoint: {self.endpoint}")
        if self.custom_domain_url:
            lines.append(f"Custom domain: {self.custom_domain_url}")
        if self.first_failure:
            lines.append(f"First failed node: {self.first_failure}")
        if self.cancelled:
            lines.append("Run was cancelled")
        return "\n".join(lines)


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------

class ProvisioningExecutor:
    def __init__(self, plan: DeploymentPlan, context: DeploymentContext):
        self.plan = plan
        self.context = context
        self.journal = context.journal
        self.environment = context.environment
        self.actions: dict[str, str] = {}
        self.log = bind(
            logger,
            deployment=context.deployment_name,
            correlation_id=context.correlation_id,
            environment=context.environment.name,
        )

    # ------------------------------------------------------------------
    # Apply
    # ------------------------------------------------------------------

    def apply(self) -> DeploymentReport:
        self.journal.prepare((lid, self.plan.descriptors[lid].kind.value) for lid in self.plan.order)
        self.journal.set_run_state(RunState.APPLYING)
        self.log.info("Apply started", extra={"nodes": len(self.plan.order)})

        if self.context.max_workers > 1:
            self._apply_concurrently()
        else:
            for logical_id in self.plan.order:
                if self.context.cancelled:
                    self.log.warning("Cancellation requested, not starting further nodes")
                    break
                if not self._provision(logical_id):
                    break

        states = [self.journal.get(lid).state for lid in self.plan.order]
        run_state = (
            RunState.COMPLETED if all(s == NodeState.PROVISIONED for s in states) else RunState.FAILED
        )
        self.journal.set_run_state(run_state)
        report = self.report()
        self.log.info(
            "Apply finished",
            extra={"run_state": run_state.value, "first_failure": report.first_failure},
        )
        return report

    def _apply_concurrently(self) -> None:
        remaining = list(self.plan.order)
        done: set[str] = set()
        in_flight: dict = {}
        halted = False

        with ThreadPoolExecutor(max_workers=self.context.max_workers) as pool:
            while True:
                if self.context.cancelled:
                    halted = True
                if not halted:
                    for logical_id in list(remaining):
                        if len(in_flight) >= self.context.max_workers:
                            break
                        if self.plan.graph.depends_on(logical_id) <= done:
                            remaining.remove(logical_id)
                            in_flight[pool.submit(self._provision, logical_id)] = logical_id
                if not in_flight:
                    break
                finished, _ = wait(in_flight, return_when=FIRST_COMPLETED)
                for future in finished:
                    logical_id = in_flight.pop(future)
                    if future.result():
                        done.add(logical_id)
                    else:
                        halted = True

    def _provision(self, logical_id: str) -> bool:
        """Bring one node to Provisioned. Returns False if it ended Failed."""
        descriptor = self.plan.descriptors[logical_id]
        wanted = self.plan.fingerprints[logical_id]
        previous = self.journal.get(logical_id)
        log = bind(self.log, logical_id=logical_id, kind=descriptor.kind.value)

        self.journal.transition(logical_id, NodeState.PROVISIONING, error=None, error_type=None)
        try:
            state = self.journal.snapshot()
            node = NodeContext(
                descriptor=descriptor,
                inputs=resolve_inputs(descriptor.inputs, state, logical_id),
                state=state,
                descriptors=self.plan.descriptors,
                environment=self.environment,
                context=self.context,
                log=log,
            )
            preparer = PREPARERS.get(descriptor.kind)
            node.prepared = preparer(node) if preparer else dict(node.inputs)

            applied = inputs_digest(node.prepared)

            current = self.environment.lookup(descriptor.kind, logical_id, node.prepared)
            if (
                current is not None
                and previous is not None
                and previous.state == NodeState.PROVISIONED
                and previous.fingerprint == wanted
                and previous.inputs_digest == applied
            ):
                action, outputs = "unchanged", {**previous.outputs, **current}
            elif current is None:
                action = "created"
                outputs = self.environment.create(descriptor.kind, logical_id, node.prepared)
            else:
                action = "updated"
                outputs = self.environment.update(descriptor.kind, logical_id, node.prepared, current)

            finalizer = FINALIZERS.get(descriptor.kind)
            if finalizer and action != "unchanged":
                outputs = finalizer(node, outputs)
        except (ClientError, BotoCoreError) as e:
            failure_type = GrantFailure if descriptor.kind == ResourceKind.GRANT else ProvisioningFailure
            self._fail(logical_id, failure_type(str(e), logical_id), log)
            return False
        except ProvisioningError as e:
            self._fail(logical_id, e, log)
            return False
        except Exception as e:
            self._fail(logical_id, e, log)
            raise

        self.journal.transition(
            logical_id, NodeState.PROVISIONED, fingerprint=wanted, inputs_digest=applied, outputs=outputs,
        )
        self.actions[logical_id] = action
        log.info("Node provisioned", extra={"action": action})
        return True

    def _fail(self, logical_id: str, error: Exception, log) -> None:
        self.journal.transition(
            logical_id, NodeState.FAILED, error=str(error), error_type=type(error).__name__,
        )
        self.actions[logical_id] = "failed"
        log.error("Node failed", extra={"error": str(error), "error_type": type(error).__name__})

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def teardown(self) -> DeploymentReport:
        """
        Delete removable nodes in reverse topological order. Removable
        dependents go first; kept (non-removable) dependents only hold a
        reference such as a table name and do not stop the deletion.
        """
        self.journal.set_run_state(RunState.APPLYING)
        failed = False

        for logical_id in reversed(self.plan.order):
            descriptor = self.plan.descriptors[logical_id]
            record = self.journal.get(logical_id)
            if not descriptor.removable or record is None:
                continue
            if record.state not in (NodeState.PROVISIONED, NodeState.FAILED):
                continue
            log = bind(self.log, logical_id=logical_id, kind=descriptor.kind.value)

            referencing = sorted(
                dep for dep in self.plan.graph.dependents.get(logical_id, ())
                if (r := self.journal.get(dep)) is not None and r.state == NodeState.PROVISIONED
            )
            if referencing:
                log.warning(
                    "Removing node still referenced by kept nodes", extra={"dependents": referencing},
                )

            try:
                state = self.journal.snapshot()
                node = NodeContext(
                    descriptor=descriptor,
                    inputs=resolve_inputs(descriptor.inputs, state, logical_id),
                    state=state,
                    descriptors=self.plan.descriptors,
                    environment=self.environment,
                    context=self.context,
                    log=log,
                )
                preparer = PREPARERS.get(descriptor.kind)
                node.prepared = preparer(node) if preparer else dict(node.inputs)
                current = self.environment.lookup(descriptor.kind, logical_id, node.prepared)
                if current is not None:
                    self.environment.delete(descriptor.kind, logical_id, node.prepared, current)
                action = "deleted" if current is not None else "absent"
            except (ClientError, BotoCoreError) as e:
                self._fail(logical_id, ProvisioningFailure(str(e), logical_id), log)
                failed = True
                break
            except ProvisioningError as e:
                self._fail(logical_id, e, log)
                failed = True
                break

            self.journal.transition(logical_id, NodeState.ROLLED_BACK, outputs={})
            self.actions[logical_id] = action
            log.info("Node removed", extra={"action": action})

        self.journal.set_run_state(RunState.FAILED if failed else RunState.COMPLETED)
        return self.report()

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def report(self) -> DeploymentReport:
        nodes = []
        first_failure = None
        endpoint = custom_domain_url = None
        for logical_id in self.plan.order:
            record = self.journal.get(logical_id)
            descriptor = self.plan.descriptors[logical_id]
            state = record.state if record else NodeState.PENDING
            if state == NodeState.FAILED and first_failure is None:
                first_failure = logical_id
            if state == NodeState.PROVISIONED:
                if descriptor.kind == ResourceKind.STAGE and endpoint is None:
                    endpoint = record.outputs.get("invokeUrl")
                if descriptor.kind == ResourceKind.ALIAS_RECORD and custom_domain_url is None:
                    custom_domain_url = f"https://{record.outputs['fqdn']}/"
            nodes.append(
                NodeReport(
                    logical_id=logical_id,
                    kind=descriptor.kind.value,
                    state=state,
                    action=self.actions.get(logical_id),
                    error=record.error if record else None,
                    error_type=record.error_type if record else None,
                )
            )
        return DeploymentReport(
            deployment=self.context.deployment_name,
            run_state=self.journal.run_state,
            nodes=nodes,
            first_failure=first_failure,
            cancelled=self.context.cancelled,
            endpoint=endpoint,
            custom_domain_url=custom_domain_url,
        )


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------

def deploy(descriptors: Iterable[ResourceDescriptor], context: DeploymentContext) -> DeploymentReport:
    plan = plan_deployment(descriptors)
    return ProvisioningExecutor(plan, context).apply()


def teardown(descriptors: Iterable[ResourceDescriptor], context: DeploymentContext) -> DeploymentReport:
    plan = plan_deployment(descriptors)
    return ProvisioningExecutor(plan, context).teardown()
