"""
Graph operations using NetworkX.

This module handles:
- Building the dependency DAG from task snapshots
- Cycle reporting and topological layering for batch ordering
"""

from typing import Any, Iterable

import networkx as nx


def identity_of(item: Any) -> str:
    """Application identity of a batch item: ``path``, falling back to ``id``."""
    identity = getattr(item, "path", None) or getattr(item, "id", None)
    if identity is None and isinstance(item, dict):
        identity = item.get("path") or item.get("id")
    if identity is None:
        raise ValueError(f"Item has no identity: {item!r}")
    return str(identity)


def dependencies_of(item: Any) -> list[str]:
    if isinstance(item, dict):
        return list(item.get("dependencies") or [])
    return list(getattr(item, "dependencies", None) or [])


def build_dependency_graph(items: Iterable[Any]) -> nx.DiGraph:
    """
    Build a NetworkX DiGraph from task-like items.

    Returns a graph where:
    - Nodes are identities, added in input order
    - Edges go from dependency -> dependent
    - Referenced identities that are not items still appear as nodes
    """
    graph = nx.DiGraph()
    items = list(items)

    for item in items:
        graph.add_node(identity_of(item), item=item)

    for item in items:
        identity = identity_of(item)
        for dependency in dependencies_of(item):
            graph.add_edge(dependency, identity)

    return graph


def find_cycle(graph: nx.DiGraph, nodes: Iterable[str] | None = None) -> list[str] | None:
    """
    Members of one cycle in the graph (optionally restricted to ``nodes``),
    listed in dependency order, or None if the graph is acyclic.
    """
    subgraph = graph.subgraph(nodes) if nodes is not None else graph
    try:
        edges = nx.find_cycle(subgraph)
    except nx.NetworkXNoCycle:
        return None
    return [source for source, _target, *_ in edges]


def topological_layers(graph: nx.DiGraph) -> list[list[str]]:
    """
    Group nodes into layers such that every dependency of a node sits in an
    earlier layer. Within a layer, nodes keep the graph's insertion order.

    Raises nx.NetworkXUnfeasible if the graph has a cycle.
    """
    position = {node: index for index, node in enumerate(graph.nodes)}
    return [
        sorted(layer, key=position.__getitem__)
        for layer in nx.topological_generations(graph)
    ]


def topological_sort(graph: nx.DiGraph) -> list[str]:
    """
    Perform topological sort on the graph.

    Returns identities in order such that for every edge (u, v),
    u comes before v in the ordering.
    """
    return [node for layer in topological_layers(graph) for node in layer]
