"""Schemata relation graph — directed model -> relation-target graph.

Used to drop tables with dependents first, and by `schemata describe` to show
what a model points at and what points at it.
"""

import logging

import networkx as nx

from schemata.types import ModelDefinition

logger = logging.getLogger(__name__)


def build_relation_graph(definitions: list[ModelDefinition]) -> nx.DiGraph:
    """One node per model, one edge per relation field (model -> target).

    Edge attribute `fields` lists the relation fields behind the edge.
    """
    G = nx.DiGraph()
    for d in definitions:
        G.add_node(d.name)
    for d in definitions:
        for f in d.fields:
            if f.relation is None:
                continue
            target = f.relation.model
            if G.has_edge(d.name, target):
                G[d.name][target]['fields'].append(f.name)
            else:
                G.add_edge(d.name, target, fields=[f.name])
    logger.debug("relation graph: %d models, %d relations",
                 G.number_of_nodes(), G.number_of_edges())
    return G


def drop_order(definitions: list[ModelDefinition]) -> list[str]:
    """Models ordered so that every model comes before the models it references.

    Self-references are ignored. Cycles cannot be ordered; the models in them
    fall back to name order after everything that could be ordered. Relation
    targets without a definition are left out.
    """
    G = build_relation_graph(definitions)
    G.remove_edges_from(list(nx.selfloop_edges(G)))
    known = {d.name for d in definitions}
    try:
        ordered = list(nx.lexicographical_topological_sort(G))
    except nx.NetworkXUnfeasible:
        cyclic = set()
        for component in nx.strongly_connected_components(G):
            if len(component) > 1:
                cyclic |= component
        logger.warning("relation cycle among %s, dropping those in name order", sorted(cyclic))
        acyclic = G.subgraph(n for n in G.nodes if n not in cyclic)
        ordered = list(nx.lexicographical_topological_sort(acyclic)) + sorted(cyclic)
    return [n for n in ordered if n in known]


def dependents(definitions: list[ModelDefinition], model: str) -> list[str]:
    """Models holding a relation to `model`."""
    G = build_relation_graph(definitions)
    if model not in G:
        return []
    return sorted(n for n in G.predecessors(model) if n != model)
