"""
Concept extraction for FloatAST assembly.

Two interchangeable strategies share one output contract (title -> Concept):
- oracle-backed: the semantic oracle proposes concepts with node ids and weights;
  the reply is validated before anything is accepted
- deterministic: term frequency across node text, one concept per significant term

Oracle problems never escape this module; they degrade to the deterministic path.
"""
import logging
from collections import Counter
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, TypeAdapter

from config import CONCEPT_MAX_TERMS, CONCEPT_MIN_NODES
from models_float_ast import Concept, FloatNode, NodeReference
from services_logging import log_concept_event
from services_semantic_oracle import OracleDegrade, OracleOk, OracleResult, SemanticOracle, ask_oracle
from services_terms import tokens

logger = logging.getLogger("float_ast")

MAX_ORACLE_CONCEPTS = 10
CHUNK_CHARS = 120
VERBATIM_STRENGTH = 1.0
FOLDED_STRENGTH = 0.8


class OracleConcept(BaseModel):
    """Concept shape the oracle must answer with."""
    title: str = Field(..., min_length=1)
    description: Optional[str] = None
    node_ids: List[str] = Field(..., min_length=1)
    weight: float = Field(..., ge=0.0, le=1.0)


_ORACLE_CONCEPTS = TypeAdapter(List[OracleConcept])


def _excerpt(text: str, limit: int = CHUNK_CHARS) -> str:
    text = text.strip()
    return text if len(text) <= limit else text[: limit - 3].rstrip() + "..."


def _merge_refs(first: List[NodeReference], second: List[NodeReference]) -> List[NodeReference]:
    seen = {ref.node_id for ref in first}
    merged = list(first)
    for ref in second:
        if ref.node_id not in seen:
            seen.add(ref.node_id)
            merged.append(ref)
    return merged


def merge_concept(concepts: Dict[str, Concept], concept: Concept) -> None:
    """
    Insert `concept`, resolving case-insensitive title collisions.

    The first title seen is kept as the key; appearances and references are
    unioned by node id and the larger weight wins.
    """
    existing_key = next((key for key in concepts if key.lower() == concept.title.lower()), None)
    if existing_key is None:
        concepts[concept.title] = concept
        return

    existing = concepts[existing_key]
    concepts[existing_key] = Concept(
        title=existing.title,
        description=existing.description or concept.description,
        appearances=_merge_refs(existing.appearances, concept.appearances),
        references=_merge_refs(existing.references, concept.references),
        weight=max(existing.weight, concept.weight),
    )


def extract_concepts_deterministic(
    nodes: List[FloatNode],
    min_nodes: int = CONCEPT_MIN_NODES,
    max_terms: int = CONCEPT_MAX_TERMS,
) -> Dict[str, Concept]:
    """
    Term-frequency concepts.

    A term is significant when it occurs in at least `min_nodes` nodes. Terms
    are ranked by node count, then total frequency, then alphabetically, and
    the top `max_terms` become concepts titled by the term itself.
    """
    if not nodes:
        return {}

    ordered = sorted(nodes, key=lambda n: n.position.index)
    node_tokens = [(node, tokens(node.content.raw)) for node in ordered]

    node_freq: Counter = Counter()
    total_freq: Counter = Counter()
    for _, words in node_tokens:
        total_freq.update(words)
        node_freq.update(set(words))

    significant = [term for term, count in node_freq.items() if count >= max(1, min_nodes)]
    ranked = sorted(significant, key=lambda t: (-node_freq[t], -total_freq[t], t))[:max_terms]

    total_nodes = len(ordered)
    concepts: Dict[str, Concept] = {}
    for term in ranked:
        appearances = [
            NodeReference(
                node_id=node.id,
                chunk=_excerpt(node.content.raw),
                strength=VERBATIM_STRENGTH if term in node.content.raw else FOLDED_STRENGTH,
            )
            for node, words in node_tokens
            if term in words
        ]
        weight = min(1.0, max(0.0, node_freq[term] / total_nodes))
        merge_concept(
            concepts,
            Concept(
                title=term,
                description=f"Appears in {node_freq[term]} of {total_nodes} nodes",
                appearances=appearances,
                references=[],
                weight=round(weight, 4),
            ),
        )
    return concepts


def _concept_messages(nodes: List[FloatNode]) -> List[Dict[str, str]]:
    lines = "\n".join(
        f"[{node.id}] {node.role or 'unknown'}: {node.content.raw}"
        for node in sorted(nodes, key=lambda n: n.position.index)
    )
    prompt = f"""
Identify the 5 to 10 most important concepts discussed in this conversation.
Each line starts with the node id in brackets.

Conversation:
{lines}

Return ONLY a JSON array. Each item must have:
- title: short concept name
- description: one sentence describing the concept
- node_ids: ids of the nodes where the concept appears (copied exactly from the brackets)
- weight: relative importance between 0.0 and 1.0
"""
    return [
        {"role": "system", "content": "You are a concept extraction assistant. Return only valid JSON."},
        {"role": "user", "content": prompt},
    ]


def extract_concepts_with_oracle(
    nodes: List[FloatNode],
    oracle: Optional[SemanticOracle],
    timeout_s: Optional[float] = None,
) -> OracleResult:
    """
    Ask the oracle for concepts and map them onto the known nodes.

    Returns:
        OracleOk(Dict[str, Concept]) or OracleDegrade(reason)
    """
    result = ask_oracle(
        oracle,
        _concept_messages(nodes),
        _ORACLE_CONCEPTS,
        envelope_key="concepts",
        timeout_s=timeout_s,
        label="concept extraction",
    )
    if isinstance(result, OracleDegrade):
        return result

    by_id = {node.id: node for node in nodes}
    proposed: List[OracleConcept] = sorted(result.value, key=lambda c: -c.weight)

    concepts: Dict[str, Concept] = {}
    for item in proposed[:MAX_ORACLE_CONCEPTS]:
        known_ids = list(dict.fromkeys(nid for nid in item.node_ids if nid in by_id))
        if not known_ids:
            logger.debug(f"[concepts] dropping oracle concept '{item.title}': no known node ids")
            continue
        merge_concept(
            concepts,
            Concept(
                title=item.title.strip(),
                description=item.description,
                appearances=[
                    NodeReference(node_id=nid, chunk=_excerpt(by_id[nid].content.raw))
                    for nid in known_ids
                ],
                references=[],
                weight=item.weight,
            ),
        )

    if not concepts:
        return OracleDegrade("no oracle concepts referenced known nodes")
    return OracleOk(concepts)


def extract_concepts(
    nodes: List[FloatNode],
    oracle: Optional[SemanticOracle] = None,
    use_oracle: bool = False,
    timeout_s: Optional[float] = None,
) -> Dict[str, Concept]:
    """
    Build the concept map for a node sequence.

    Args:
        nodes: Parsed nodes
        oracle: Semantic oracle to consult when `use_oracle` is set
        use_oracle: Try the oracle first, falling back on any failure
        timeout_s: Oracle timeout override

    Returns:
        Mapping of concept title to Concept (empty for empty input)
    """
    if not nodes:
        return {}

    degrade_reason = None
    if use_oracle:
        result = extract_concepts_with_oracle(nodes, oracle, timeout_s=timeout_s)
        if isinstance(result, OracleOk):
            log_concept_event(len(nodes), len(result.value), "oracle")
            return result.value
        degrade_reason = result.reason

    concepts = extract_concepts_deterministic(nodes)
    log_concept_event(len(nodes), len(concepts), "deterministic", degrade_reason=degrade_reason)
    return concepts
