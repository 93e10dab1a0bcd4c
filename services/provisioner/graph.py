"""
Dependency Graph Builder
========================
Edges mean "A must be Provisioned before B". They come from:
  - every Reference inside B's inputs (target -> B)
  - every ordering-hint input of B (named id -> B): Grant principal/resource,
    Route routing layer/target/authorizer, UsagePlan stage/routes/keys,
    Certificate zone, CustomDomain certificate/stage/zone, AliasRecord zone/target
  - Stage: every Route served by the same routing layer -> Stage, so the stage
    is deployed only once its routes exist

Ordering is Kahn's algorithm; among ready nodes the one declared first wins,
so the same descriptor list always yields the same order.
"""
from __future__ import annotations

import heapq
from dataclasses import dataclass, field

from provisioner.descriptors import ResourceDescriptor, ResourceKind
from provisioner.errors import CyclicDependency


@dataclass
class DependencyGraph:
    nodes: list[str]
    dependencies: dict[str, set[str]] = field(default_factory=dict)
    dependents: dict[str, set[str]] = field(default_factory=dict)

    def add_edge(self, before: str, after: str) -> None:
        self.dependencies.setdefault(after, set()).add(before)
        self.dependents.setdefault(before, set()).add(after)

    def depends_on(self, logical_id: str) -> set[str]:
        return self.dependencies.get(logical_id, set())

    def topological_order(self) -> list[str]:
        position = {node: i for i, node in enumerate(self.nodes)}
        in_degree = {node: len(self.depends_on(node)) for node in self.nodes}
        ready = [position[n] for n in self.nodes if in_degree[n] == 0]
        heapq.heapify(ready)

        order: list[str] = []
        while ready:
            node = self.nodes[heapq.heappop(ready)]
            order.append(node)
            for child in self.dependents.get(node, ()):
                in_degree[child] -= 1
                if in_degree[child] == 0:
                    heapq.heappush(ready, position[child])

        if len(order) != len(self.nodes):
            remaining = [n for n in self.nodes if n not in set(order)]
            raise CyclicDependency(self._find_cycle(remaining))
        return order

    def _find_cycle(self, candidates: list[str]) -> list[str]:
        """Depth-first search for one concrete cycle among nodes Kahn could not order."""
        allowed = set(candidates)
        visiting: list[str] = []
        on_path: set[str] = set()
        finished: set[str] = set()

        def visit(node: str) -> list[str] | None:
            visiting.append(node)
            on_path.add(node)
            for dep in sorted(self.depends_on(node) & allowed, key=candidates.index):
                if dep in on_path:
                    start = visiting.index(dep)
                    # path follows "depends on"; report it in provisioning direction
                    return list(reversed(visiting[start:] + [dep]))
                if dep not in finished:
                    found = visit(dep)
                    if found:
                        return found
            visiting.pop()
            on_path.discard(node)
            finished.add(node)
            return None

        for node in candidates:
            if node not in finished:
                found = visit(node)
                if found:
                    return found
        return candidates  # unreachable for a graph Kahn rejected


def build_graph(descriptors: dict[str, ResourceDescriptor]) -> DependencyGraph:
    graph = DependencyGraph(nodes=list(descriptors))

    for d in descriptors.values():
        for reference in d.references():
            graph.add_edge(reference.target_logical_id, d.logical_id)
        for _, target in d.hinted_ids():
            graph.add_edge(target, d.logical_id)

    routes_by_layer: dict[str, list[str]] = {}
    for d in descriptors.values():
        if d.kind == ResourceKind.ROUTE:
            routes_by_layer.setdefault(d.inputs["routingLayer"], []).append(d.logical_id)
    for d in descriptors.values():
        if d.kind == ResourceKind.STAGE:
            for route_id in routes_by_layer.get(d.inputs["routingLayer"], []):
                graph.add_edge(route_id, d.logical_id)

    return graph
