"""
dagmesh Graph Validation
========================

Dependency graph construction, cycle detection, topological ordering and
execution tiers for DAG specs, plus a standalone resolver for ad-hoc
dependency lists.

The graph is an arena of node ids (a networkx DiGraph) with edges running
from a dependency to its dependent. `Edge` records on a spec are labels only
and never take part in ordering.
"""

from __future__ import annotations

import bisect
import logging
from collections import Counter
from typing import Iterable, Mapping, Optional, Sequence

import networkx as nx

from dagmesh.errors import GraphValidationError
from dagmesh.models import DAGSpec, DependencyResolution, ValidationResult

logger = logging.getLogger("dagmesh.graph")

_WHITE, _GREY, _BLACK = 0, 1, 2


def build_dependency_graph(spec: DAGSpec) -> nx.DiGraph:
    """Build a DiGraph with one node per spec node and an edge dep -> dependent.

    Dependencies that do not name a node in the spec are ignored here;
    `validate_dag` reports them.
    """
    G = nx.DiGraph()
    G.add_nodes_from(node.id for node in spec.nodes)
    for node in spec.nodes:
        for dep in node.dependencies:
            if G.has_node(dep):
                G.add_edge(dep, node.id)
    return G


def find_cycle(G: nx.DiGraph) -> Optional[list[str]]:
    """Return one cycle as a closed path (first == last), or None if G is acyclic.

    Iterative depth-first search with three colours. Reaching a grey node
    (one on the current path) closes a cycle. Roots and children are visited
    in ascending id order so the reported cycle is deterministic.
    """
    color = {n: _WHITE for n in G.nodes}
    for root in sorted(G.nodes):
        if color[root] != _WHITE:
            continue
        color[root] = _GREY
        path = [root]
        stack = [iter(sorted(G.successors(root)))]
        while stack:
            child = next(stack[-1], None)
            if child is None:
                color[path.pop()] = _BLACK
                stack.pop()
                continue
            if color[child] == _GREY:
                return path[path.index(child):] + [child]
            if color[child] == _WHITE:
                color[child] = _GREY
                path.append(child)
                stack.append(iter(sorted(G.successors(child))))
    return None


def validate_dag(spec: DAGSpec) -> ValidationResult:
    """Validate a DAG spec.

    Checks, in order: required fields, unique node ids, unique edge ids,
    dependency references, edge endpoint references, and acyclicity.

    Returns:
        ValidationResult; on failure `reason` explains the first problem found.
        For cycles the reason contains "circular" and `details["cycle"]` lists
        the nodes on the cycle.
    """
    if not spec.id:
        return ValidationResult.fail("DAG missing required fields: id", type="required_fields")

    node_ids = [node.id for node in spec.nodes]
    if any(not nid for nid in node_ids):
        return ValidationResult.fail("Node missing required field: id", type="node_validation")

    duplicates = sorted(nid for nid, count in Counter(node_ids).items() if count > 1)
    if duplicates:
        return ValidationResult.fail(
            f"Duplicate node ids: {', '.join(duplicates)}",
            type="duplicate_nodes",
            nodes=duplicates,
        )

    edge_dupes = sorted(eid for eid, count in Counter(e.id for e in spec.edges).items() if count > 1)
    if edge_dupes:
        return ValidationResult.fail(
            f"Duplicate edge ids: {', '.join(edge_dupes)}",
            type="duplicate_edges",
            edges=edge_dupes,
        )

    known = set(node_ids)
    for node in spec.nodes:
        for dep in node.dependencies:
            if dep not in known:
                return ValidationResult.fail(
                    f"Node '{node.id}' depends on unknown node '{dep}'",
                    type="unknown_dependency",
                    node=node.id,
                    dependency=dep,
                )

    for edge in spec.edges:
        for endpoint in (edge.source, edge.target):
            if endpoint not in known:
                return ValidationResult.fail(
                    f"Edge '{edge.id}' references unknown node '{endpoint}'",
                    type="unknown_edge_endpoint",
                    edge=edge.id,
                    node=endpoint,
                )

    cycle = find_cycle(build_dependency_graph(spec))
    if cycle:
        return ValidationResult.fail(
            f"circular dependency detected: {' -> '.join(cycle)}",
            type="circular_dependency",
            cycle=cycle,
        )

    return ValidationResult.ok("DAG validation passed", type="dag_validation")


def topological_order(G: nx.DiGraph) -> list[str]:
    """Kahn's algorithm with ascending-id tiebreaking for determinism."""
    in_deg = dict(G.in_degree())
    queue = sorted(n for n in G.nodes() if in_deg[n] == 0)
    result = []

    while queue:
        node = queue.pop(0)
        result.append(node)
        for succ in sorted(G.successors(node)):
            in_deg[succ] -= 1
            if in_deg[succ] == 0:
                bisect.insort(queue, succ)

    if len(result) != G.number_of_nodes():
        raise GraphValidationError("graph contains a cycle", cycle=find_cycle(G))
    return result


def compute_execution_order(spec: DAGSpec) -> list[str]:
    """Return node ids so that every node follows all of its dependencies.

    Raises:
        GraphValidationError: If the spec does not validate.
    """
    validation = validate_dag(spec)
    if not validation.result:
        raise GraphValidationError(
            validation.reason or "invalid DAG",
            cycle=validation.details.get("cycle"),
        )
    return topological_order(build_dependency_graph(spec))


def get_execution_tiers(G: nx.DiGraph, execution_order: list[str]) -> list[list[str]]:
    """Group nodes into tiers for parallel-within-tier execution.

    Tier 0: nodes with no dependencies.
    Tier N: nodes whose dependencies are all in tiers < N.

    Args:
        G: Directed acyclic dependency graph.
        execution_order: Topological ordering of its nodes.

    Returns:
        List of tiers, where each tier is a list of node ids.
    """
    if not execution_order:
        return []

    tier_of: dict[str, int] = {}
    for node_id in execution_order:
        predecessors = list(G.predecessors(node_id))
        if not predecessors:
            tier_of[node_id] = 0
        else:
            tier_of[node_id] = max(tier_of.get(p, 0) for p in predecessors) + 1

    tiers: list[list[str]] = [[] for _ in range(max(tier_of.values()) + 1)]
    for node_id in execution_order:
        tiers[tier_of[node_id]].append(node_id)
    return tiers


def get_downstream(G: nx.DiGraph, node_id: str) -> set[str]:
    """All transitive dependents of node_id."""
    if not G.has_node(node_id):
        return set()
    return nx.descendants(G, node_id)


def resolve_dependencies(
    dependencies: Sequence[str],
    dependency_map: Optional[Mapping[str, Iterable[str]]] = None,
    known_ids: Optional[Iterable[str]] = None,
) -> DependencyResolution:
    """Resolve a flat dependency list into an execution order.

    The list is read as one precedence path: an id that appears again while
    it is already on that path is circular, so ``["a", "b", "a"]`` fails with
    ``"a"`` in ``circular_dependencies``.

    Args:
        dependencies: Ids to resolve, in precedence order.
        dependency_map: Optional id -> prerequisite ids. Prerequisites are
            expanded transitively and ordered before their dependents.
        known_ids: Optional universe of ids. Anything outside it is reported
            in ``unresolved_dependencies``.

    Returns:
        DependencyResolution. ``execution_order`` is empty when resolution
        fails.
    """
    deps_of = dependency_map or {}
    known = set(known_ids) if known_ids is not None else None

    resolved: list[str] = []
    unresolved: list[str] = []
    circular: list[str] = []
    color: dict[str, int] = {}

    def mark_circular(dep: str) -> None:
        if dep not in circular:
            circular.append(dep)

    def enter(dep: str) -> bool:
        """Colour dep grey and return True if its prerequisites still need a walk."""
        state = color.get(dep, _WHITE)
        if state == _GREY:
            mark_circular(dep)
            return False
        if state == _BLACK:
            return False
        if known is not None and dep not in known:
            unresolved.append(dep)
            color[dep] = _BLACK
            return False
        color[dep] = _GREY
        return True

    def visit(root: str) -> None:
        # Explicit stack of (id, prerequisite iterator) so long chains do not recurse.
        if not enter(root):
            return
        stack = [(root, iter(deps_of.get(root, ())))]
        while stack:
            dep, prerequisites = stack[-1]
            for prerequisite in prerequisites:
                if enter(prerequisite):
                    stack.append((prerequisite, iter(deps_of.get(prerequisite, ()))))
                    break
            else:
                stack.pop()
                color[dep] = _BLACK
                resolved.append(dep)

    requested: set[str] = set()
    for dep in dependencies:
        if dep in requested:
            mark_circular(dep)
            continue
        requested.add(dep)
        visit(dep)

    success = not unresolved and not circular
    if not success:
        logger.debug(
            f"Dependency resolution failed: circular={circular} unresolved={unresolved}"
        )
    return DependencyResolution(
        success=success,
        resolved_dependencies=resolved,
        unresolved_dependencies=unresolved,
        circular_dependencies=circular,
        execution_order=list(resolved) if success else [],
    )
