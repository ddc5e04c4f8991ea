"""
Edge inference over a parsed node sequence.

Rules are applied per node in index order; earlier rules win and an edge with
the same (type, source, target) is never emitted twice:

1. responds_to  i -> i-1 when the speaker changed (both roles known and different)
2. questions    i -> i-1 when node i asks something and rule 1 did not link the pair
3. elaborates   i -> i-1 when the same speaker continues (or i has no role)
4. references   i -> j   for earlier, non-adjacent nodes sharing enough terms
5. bridges      i -> j   for nodes carrying a bridge:: marker

Apart from freshly generated ids the output is identical for identical input.
"""
import logging
import uuid
from typing import Any, Dict, List, Optional, Set, Tuple

from models_float_ast import EdgeType, FloatEdge, FloatNode
from services_terms import term_set

logger = logging.getLogger("float_ast")

RESPONDS_TO_WEIGHT = 1.0
QUESTIONS_WEIGHT = 0.8
ELABORATES_WEIGHT = 0.5

REFERENCE_WINDOW = 20
MAX_REFERENCES_PER_NODE = 3
MIN_SHARED_TERMS = 2


def new_edge_id() -> str:
    return f"edge-{uuid.uuid4()}"


def roles_differ(a: FloatNode, b: FloatNode) -> bool:
    return a.role is not None and b.role is not None and a.role != b.role


def continues_speaker(previous: FloatNode, current: FloatNode) -> bool:
    return current.role is None or current.role == previous.role


class _EdgeCollector:
    def __init__(self) -> None:
        self.edges: List[FloatEdge] = []
        self._seen: Set[Tuple[str, str, str]] = set()

    def has(self, edge_type: EdgeType, source: str, target: str) -> bool:
        return (edge_type, source, target) in self._seen

    def add(
        self,
        edge_type: EdgeType,
        source: str,
        target: str,
        weight: Optional[float] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        key = (edge_type, source, target)
        if source == target or key in self._seen:
            return False
        self._seen.add(key)
        self.edges.append(
            FloatEdge(
                id=new_edge_id(),
                type=edge_type,
                source=source,
                target=target,
                weight=weight,
                metadata=metadata,
            )
        )
        return True


def infer_edges(
    nodes: List[FloatNode],
    *,
    reference_window: int = REFERENCE_WINDOW,
    max_references: int = MAX_REFERENCES_PER_NODE,
    min_shared_terms: int = MIN_SHARED_TERMS,
) -> List[FloatEdge]:
    """
    Derive FloatEdges between nodes.

    Args:
        nodes: Parsed nodes (ordered by position.index; sorted again here)
        reference_window: How many earlier nodes are scanned for `references`
        max_references: Cap on `references` edges leaving one node
        min_shared_terms: Shared significant terms required for `references`

    Returns:
        Edges in rule-then-index order
    """
    ordered = sorted(nodes, key=lambda n: n.position.index)
    terms = [term_set(node.content.raw) for node in ordered]
    collector = _EdgeCollector()

    for i in range(1, len(ordered)):
        current, previous = ordered[i], ordered[i - 1]

        if roles_differ(current, previous):
            collector.add("responds_to", current.id, previous.id, RESPONDS_TO_WEIGHT)

        if "?" in current.content.raw and not collector.has("responds_to", current.id, previous.id):
            collector.add("questions", current.id, previous.id, QUESTIONS_WEIGHT)

        if continues_speaker(previous, current):
            collector.add("elaborates", current.id, previous.id, ELABORATES_WEIGHT)

        _add_references(collector, ordered, terms, i, reference_window, max_references, min_shared_terms)

        if current.has_marker("bridge"):
            _add_bridge(collector, ordered, terms, i)

    logger.debug(f"[edges] inferred {len(collector.edges)} edges over {len(ordered)} nodes")
    return collector.edges


def _add_references(
    collector: _EdgeCollector,
    ordered: List[FloatNode],
    terms: List[Set[str]],
    i: int,
    window: int,
    max_references: int,
    min_shared: int,
) -> None:
    if not terms[i]:
        return
    added = 0
    # nearest first, skipping the adjacent node (covered by rules 1-3)
    for j in range(i - 2, max(-1, i - 1 - window), -1):
        if added >= max_references:
            break
        shared = terms[i] & terms[j]
        if len(shared) < min_shared:
            continue
        overlap = len(shared) / len(terms[i] | terms[j])
        if collector.add(
            "references",
            ordered[i].id,
            ordered[j].id,
            round(overlap, 3),
            {"shared_terms": sorted(shared)},
        ):
            added += 1


def _add_bridge(
    collector: _EdgeCollector,
    ordered: List[FloatNode],
    terms: List[Set[str]],
    i: int,
) -> None:
    target = i - 1
    for j in range(i - 1, -1, -1):
        if terms[i] & terms[j]:
            target = j
            break
    label = ordered[i].float_markers.bridge if ordered[i].float_markers else None
    collector.add("bridges", ordered[i].id, ordered[target].id, metadata={"label": label})
