"""
Fragment Extraction Service

Finds query-relevant excerpts in a FloatAST. The semantic oracle is asked
first; whenever it is unavailable, slow, or answers with something that does
not validate as a list of fragments, the deterministic keyword fallback runs
instead. Both paths return the same `Fragment` shape and oracle failures are
never surfaced to the caller.
"""
import asyncio
import logging
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from config import DEFAULT_FRAGMENTS, ENABLE_ORACLE_FRAGMENTS, MAX_FRAGMENTS
from models_float_ast import FloatAST, FloatNode, Fragment
from models_floatql import WhereClause
from services_floatql import query_nodes
from services_logging import log_extraction_event
from services_model_router import TASK_FRAGMENTS
from services_semantic_oracle import (
    OracleDegrade,
    OracleOk,
    OracleResult,
    SemanticOracle,
    aask_oracle,
    ask_oracle,
    default_oracle,
)

logger = logging.getLogger("float_ast")

FALLBACK_CATEGORY = "General"


class OracleFragment(BaseModel):
    """Fragment shape the oracle must answer with; every field is required."""
    model_config = ConfigDict(extra="forbid")

    text: str = Field(..., min_length=1)
    relevance: Union[str, float]
    keywords: List[str]
    category: str

    def to_fragment(self) -> Fragment:
        return Fragment(**self.model_dump())


_ORACLE_FRAGMENTS = TypeAdapter(List[OracleFragment])

Where = Union[WhereClause, Dict[str, Any], None]


def clamp_max_fragments(max_fragments: Optional[int]) -> int:
    """Requested fragment count bounded to [0, MAX_FRAGMENTS] (None -> DEFAULT_FRAGMENTS)."""
    if max_fragments is None:
        max_fragments = DEFAULT_FRAGMENTS
    return max(0, min(int(max_fragments), MAX_FRAGMENTS))


def query_words(query: str) -> List[str]:
    """Lower-cased whitespace-separated words, first occurrence kept."""
    return list(dict.fromkeys((query or "").lower().split()))


def extract_fragments_fallback(nodes: List[FloatNode], query: str, max_fragments: int) -> List[Fragment]:
    """
    Deterministic keyword extraction.

    A node scores one point per query word found as a substring of its
    lower-cased raw text. Zero scores are dropped; the rest are ranked by
    score, then by position.index.
    """
    words = query_words(query)
    if not words or max_fragments <= 0:
        return []

    scored: List[Tuple[int, int, FloatNode, List[str]]] = []
    for node in nodes:
        text = node.content.raw.lower()
        matched = [word for word in words if word in text]
        if matched:
            scored.append((len(matched), node.position.index, node, matched))

    scored.sort(key=lambda item: (-item[0], item[1]))
    return [
        Fragment(
            text=node.content.raw,
            relevance=f"Contains {score} query term(s)",
            keywords=matched,
            category=FALLBACK_CATEGORY,
        )
        for score, _, node, matched in scored[:max_fragments]
    ]


def _fragment_messages(nodes: List[FloatNode], query: str, max_fragments: int) -> List[Dict[str, str]]:
    conversation_text = "\n".join(node.content.raw for node in nodes)
    prompt = f"""
Analyze this conversation and extract up to {max_fragments} meaningful fragments related to: "{query}"

Conversation:
{conversation_text}

For each fragment, provide:
- text: the exact text excerpt
- relevance: a brief explanation of its relevance to the query
- keywords: keywords or concepts it contains
- category: a suggested thread category

Return ONLY a JSON array of objects with the fields text, relevance, keywords, category.
Return an empty array [] if nothing in the conversation relates to the query.
"""
    return [
        {
            "role": "system",
            "content": "You are an expert at analyzing conversations and extracting meaningful insights. "
            "Focus on the fragments most relevant to the user's query. Return only valid JSON.",
        },
        {"role": "user", "content": prompt},
    ]


def _resolve_oracle(oracle: Optional[SemanticOracle], use_oracle: Optional[bool]) -> Tuple[bool, Optional[SemanticOracle]]:
    if use_oracle is None:
        use_oracle = ENABLE_ORACLE_FRAGMENTS
    if use_oracle and oracle is None:
        oracle = default_oracle(TASK_FRAGMENTS)
    return use_oracle, oracle


def _finish(
    ast: FloatAST,
    query: str,
    nodes: List[FloatNode],
    n: int,
    result: Optional[OracleResult],
) -> List[Fragment]:
    if isinstance(result, OracleOk):
        fragments = [item.to_fragment() for item in result.value[:n]]
        log_extraction_event(ast.id, query, "oracle", len(fragments), n)
        return fragments

    degrade_reason = result.reason if isinstance(result, OracleDegrade) else None
    fragments = extract_fragments_fallback(nodes, query, n)
    log_extraction_event(ast.id, query, "fallback", len(fragments), n, degrade_reason=degrade_reason)
    return fragments


def extract_fragments(
    ast: FloatAST,
    query: str,
    max_fragments: Optional[int] = None,
    *,
    oracle: Optional[SemanticOracle] = None,
    use_oracle: Optional[bool] = None,
    where: Where = None,
    timeout_s: Optional[float] = None,
) -> List[Fragment]:
    """
    Extract query-relevant fragments from a FloatAST.

    Args:
        ast: Assembled FloatAST (read only)
        query: Free-text query
        max_fragments: Requested count, clamped to [0, MAX_FRAGMENTS]
        oracle: Semantic oracle (default: model router when configured)
        use_oracle: Try the oracle first (default: ENABLE_ORACLE_FRAGMENTS)
        where: Optional FloatQL `where` clause scoping the nodes considered
        timeout_s: Oracle timeout override

    Returns:
        At most `max_fragments` fragments, best first

    Raises:
        QueryValidationError: `where` is not a valid FloatQL clause
    """
    n = clamp_max_fragments(max_fragments)
    nodes = query_nodes(ast, where)
    if n == 0 or not nodes:
        log_extraction_event(ast.id, query, "skipped", 0, n)
        return []

    result: Optional[OracleResult] = None
    use_oracle, oracle = _resolve_oracle(oracle, use_oracle)
    if use_oracle:
        result = ask_oracle(
            oracle,
            _fragment_messages(nodes, query, n),
            _ORACLE_FRAGMENTS,
            envelope_key="fragments",
            timeout_s=timeout_s,
            label="fragment extraction",
        )
    return _finish(ast, query, nodes, n, result)


async def aextract_fragments(
    ast: FloatAST,
    query: str,
    max_fragments: Optional[int] = None,
    *,
    oracle: Optional[SemanticOracle] = None,
    use_oracle: Optional[bool] = None,
    where: Where = None,
    timeout_s: Optional[float] = None,
) -> List[Fragment]:
    """
    Async variant of `extract_fragments`.

    Cancelling the awaiting task abandons the in-flight oracle call; nothing
    is written back to the document. Event-log appends run on a worker thread
    so file I/O stays off the event loop.
    """
    n = clamp_max_fragments(max_fragments)
    nodes = query_nodes(ast, where)
    if n == 0 or not nodes:
        await asyncio.to_thread(log_extraction_event, ast.id, query, "skipped", 0, n)
        return []

    result: Optional[OracleResult] = None
    use_oracle, oracle = _resolve_oracle(oracle, use_oracle)
    if use_oracle:
        result = await aask_oracle(
            oracle,
            _fragment_messages(nodes, query, n),
            _ORACLE_FRAGMENTS,
            envelope_key="fragments",
            timeout_s=timeout_s,
            label="fragment extraction",
        )
    return await asyncio.to_thread(_finish, ast, query, nodes, n, result)
