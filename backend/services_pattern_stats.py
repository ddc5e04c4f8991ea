"""Pattern counters derived from nodes, edges and markers."""
from typing import List

from models_float_ast import FloatEdge, FloatNode, PatternStats
from services_edge_inference import roles_differ


def compute_pattern_stats(nodes: List[FloatNode], edges: List[FloatEdge]) -> PatternStats:
    """
    Count ctx annotations, dispatches, rituals, bridges and persona switches.

    `ctx_markers` counts nodes carrying a `ctx::` annotation and is kept apart
    from `float_dispatches`. Persona switches compare adjacent top-level nodes
    in index order. `bridge_creates` adds `bridges` edges to nodes carrying a
    `bridge::` marker, so a marker that also produced an inferred edge counts
    twice. Pure function: recomputing on the same input gives the same counters.
    """
    ordered = sorted(nodes, key=lambda n: n.position.index)

    ctx_markers = sum(
        1 for node in ordered
        if node.content.structured and node.content.structured.get("ctx_marker")
    )
    float_dispatches = sum(1 for node in ordered if node.has_marker("dispatch"))
    ritual_invocations = sum(1 for node in ordered if node.type == "ritual")
    bridge_creates = (
        sum(1 for edge in edges if edge.type == "bridges")
        + sum(1 for node in ordered if node.has_marker("bridge"))
    )
    persona_switches = sum(
        1 for previous, current in zip(ordered, ordered[1:]) if roles_differ(previous, current)
    )

    return PatternStats(
        ctx_markers=ctx_markers,
        float_dispatches=float_dispatches,
        ritual_invocations=ritual_invocations,
        bridge_creates=bridge_creates,
        persona_switches=persona_switches,
    )
