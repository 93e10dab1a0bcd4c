"""
Reference Resolver
==================
Binds References to concrete values from the journal, lazily: the executor
calls `resolve_inputs` immediately before a node's provisioning call, never
during planning, so outputs that only exist after creation (generated ids,
ARNs) are read at the last moment.

`owner` is the node whose inputs are being resolved; an UnresolvedReference
carries it as `logical_id` and the referenced node as `target`.
"""
from __future__ import annotations

from typing import Any, Mapping

from provisioner.descriptors import Reference
from provisioner.errors import UnresolvedReference
from provisioner.journal import NodeRecord, NodeState


def resolve(reference: Reference, state: Mapping[str, NodeRecord], owner: str | None = None) -> Any:
    target = reference.target_logical_id
    record = state.get(target)
    if record is None or record.state != NodeState.PROVISIONED:
        current = record.state.value if record else "absent"
        raise UnresolvedReference(
            f"{owner or target}: cannot resolve {reference}, {target} is {current}", owner, target=target,
        )
    if reference.output_field not in record.outputs:
        raise UnresolvedReference(
            f"{owner or target}: cannot resolve {reference}, no output {reference.output_field!r}",
            owner,
            target=target,
        )
    return record.outputs[reference.output_field]


def resolve_inputs(value: Any, state: Mapping[str, NodeRecord], owner: str | None = None) -> Any:
    """Return `value` with every nested Reference replaced by its resolved output."""
    if isinstance(value, Reference):
        return resolve(value, state, owner)
    if isinstance(value, dict):
        return {k: resolve_inputs(v, state, owner) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [resolve_inputs(v, state, owner) for v in value]
    return value


def output_of(
    logical_id: str, output_field: str, state: Mapping[str, NodeRecord], owner: str | None = None,
) -> Any:
    """Read an ordering-hint target's output."""
    return resolve(Reference(target_logical_id=logical_id, output_field=output_field), state, owner)
