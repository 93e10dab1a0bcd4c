"""
Dependency graph: edges from references and ordering hints, Kahn ordering
with declaration-order tie-break, and cycle detection before any call.
"""
import random

import pytest

from provisioner.descriptors import ResourceDescriptor, ref, validate_deployment
from provisioner.errors import CyclicDependency
from provisioner.executor import deploy, plan_deployment
from provisioner.graph import DependencyGraph, build_graph
from provisioner.resources import routing_layer


def _layer(logical_id: str, *depends_on: str) -> ResourceDescriptor:
    """A routing layer whose description references the apiId of each dependency."""
    return routing_layer(
        logical_id,
        api_name=logical_id.lower(),
        description=[ref(dep, "apiId") for dep in depends_on] or None,
    )


def _random_dag(seed: int, size: int = 25) -> list[ResourceDescriptor]:
    rng = random.Random(seed)
    names = [f"Node{i}" for i in range(size)]
    descriptors = []
    for i, name in enumerate(names):
        parents = rng.sample(names[:i], k=min(i, rng.randint(0, 3)))
        descriptors.append(_layer(name, *parents))
    rng.shuffle(descriptors)
    return descriptors


@pytest.mark.parametrize("seed", range(20))
def test_order_respects_every_edge(seed):
    descriptors = _random_dag(seed)
    plan = plan_deployment(descriptors)

    position = {lid: i for i, lid in enumerate(plan.order)}
    assert sorted(plan.order) == sorted(d.logical_id for d in descriptors)
    for d in descriptors:
        for reference in d.references():
            assert position[reference.target_logical_id] < position[d.logical_id]


def test_order_is_deterministic():
    descriptors = _random_dag(7)
    assert plan_deployment(descriptors).order == plan_deployment(list(descriptors)).order


def test_ties_break_by_declaration_order():
    descriptors = [_layer("C"), _layer("A"), _layer("B", "C")]
    assert plan_deployment(descriptors).order == ["C", "A", "B"]


def test_two_node_cycle_is_named():
    descriptors = [_layer("A", "B"), _layer("B", "A")]
    with pytest.raises(CyclicDependency) as exc:
        plan_deployment(descriptors)
    assert set(exc.value.cycle) == {"A", "B"}
    assert exc.value.cycle[0] == exc.value.cycle[-1]


def test_cycle_behind_acyclic_prefix():
    descriptors = [_layer("Root"), _layer("X", "Root", "Z"), _layer("Y", "X"), _layer("Z", "Y")]
    with pytest.raises(CyclicDependency) as exc:
        plan_deployment(descriptors)
    assert set(exc.value.cycle) == {"X", "Y", "Z"}
    assert "Root" not in exc.value.cycle


def test_cycle_fails_before_any_external_call(make_context, memory_env):
    with pytest.raises(CyclicDependency):
        deploy([_layer("A", "B"), _layer("B", "A")], make_context())
    assert memory_env.calls == []


def test_self_reference_is_a_cycle():
    with pytest.raises(CyclicDependency):
        plan_deployment([_layer("A", "A")])


def test_stage_waits_for_every_route_on_its_layer(config):
    from urlshortener.stack import url_shortener_stack

    graph = build_graph(validate_deployment(url_shortener_stack(config)))
    routes = {lid for lid in graph.nodes if lid.startswith("Route")}
    assert routes <= graph.depends_on("ApiStage")


def test_hint_edges(config):
    from urlshortener.stack import url_shortener_stack

    graph = build_graph(validate_deployment(url_shortener_stack(config)))
    assert graph.depends_on("ShortcodesTableReadWrite") == {"URLShortenerHandler", "ShortcodesTable"}
    assert {"ApiCertificate", "ApiStage", "HostedZone"} <= graph.depends_on("ApiCustomDomain")
    assert graph.depends_on("ApiAliasRecord") == {"HostedZone", "ApiCustomDomain"}


def test_graph_without_edges():
    graph = DependencyGraph(nodes=["A", "B"])
    assert graph.topological_order() == ["A", "B"]
    assert graph.depends_on("A") == set()
