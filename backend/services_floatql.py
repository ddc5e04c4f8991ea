"""
FloatQL evaluation over an assembled FloatAST.

Pipeline: validate -> select -> where -> aggregate -> order_by -> offset -> limit
-> field projection. Validation is fail-fast: a bad query raises
QueryValidationError before anything is evaluated, never a partial result.

The engine only reads the document. Results are plain JSON-ready dicts built
from `model_dump`, so callers may mutate them freely.
"""
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import cmp_to_key
from typing import Any, Callable, Dict, List, Optional, Set, Tuple, Union

from pydantic import ValidationError

from models_float_ast import (
    EDGE_TYPES,
    INTENTS,
    MARKER_NAMES,
    NODE_TYPES,
    PREFERRED_OUTPUTS,
    ROLES,
    Concept,
    FloatAST,
    FloatEdge,
    FloatNode,
    PatternStats,
)
from models_floatql import COLLECTIONS, FloatQLQuery, NumericRange, WhereClause

logger = logging.getLogger("float_ast")

LIST_COLLECTIONS = ("nodes", "edges", "concepts")

Getter = Callable[[Any], Any]


class QueryValidationError(Exception):
    """A FloatQL request was rejected before evaluation."""

    def __init__(self, problems: List[str]):
        self.problems = problems
        super().__init__("Invalid FloatQL query: " + "; ".join(problems))


# -----------------------
# Field access
# -----------------------


def _path_getter(path: str) -> Getter:
    parts = path.split(".")

    def get(obj: Any) -> Any:
        for part in parts:
            if obj is None:
                return None
            obj = obj.get(part) if isinstance(obj, dict) else getattr(obj, part, None)
        return obj

    return get


def node_timestamp(node: FloatNode, ast: FloatAST) -> Optional[str]:
    """`content.structured["timestamp"]` when present, else the document's creation time."""
    structured = node.content.structured or {}
    return structured.get("timestamp") or ast.temporal.created


_NODE_FIELDS = (
    "id",
    "type",
    "role",
    "position.index",
    "position.depth",
    "position.parent",
    "semantic.intent",
    "semantic.emotional_tone",
    "semantic.certainty",
    "content.raw",
    "content.processed",
    "content.structured.author",
)
_EDGE_FIELDS = ("id", "type", "source", "target", "weight")
_CONCEPT_FIELDS = ("title", "description", "weight")


def _field_getters(ast: Optional[FloatAST] = None) -> Dict[str, Dict[str, Getter]]:
    nodes = {name: _path_getter(name) for name in _NODE_FIELDS}
    # parsed so offsets compare correctly; unparseable values become None and sort last
    nodes["timestamp"] = lambda n: _parse_timestamp(node_timestamp(n, ast)) if ast is not None else None
    concepts = {name: _path_getter(name) for name in _CONCEPT_FIELDS}
    concepts["appearances"] = lambda c: len(c.appearances)
    return {
        "nodes": nodes,
        "edges": {name: _path_getter(name) for name in _EDGE_FIELDS},
        "concepts": concepts,
    }


_PROJECTABLE = {
    "nodes": set(FloatNode.model_fields),
    "edges": set(FloatEdge.model_fields),
    "concepts": set(Concept.model_fields),
    "patterns": set(PatternStats.model_fields),
}


def _split_prefixed(dotted: str, default: str = "nodes") -> Tuple[str, str]:
    head, _, rest = dotted.partition(".")
    if head in LIST_COLLECTIONS and rest:
        return head, rest
    return default, dotted


def _as_list(value: Union[str, List[str], None]) -> List[str]:
    if value is None:
        return []
    return [value] if isinstance(value, str) else list(value)


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# -----------------------
# Validation
# -----------------------


def _describe_pydantic_error(err: Dict[str, Any]) -> str:
    path = ".".join(str(part) for part in err.get("loc", ())) or "query"
    if err.get("type") == "extra_forbidden":
        return f"unknown field '{path}'"
    return f"{path}: {err.get('msg', 'invalid value')}"


def _check_range(problems: List[str], name: str, bounds: Optional[NumericRange], lo: Optional[float] = None, hi: Optional[float] = None) -> None:
    if bounds is None:
        return
    for label, value in (("min", bounds.min), ("max", bounds.max)):
        if value is None:
            continue
        if hi is None and lo is not None and value < lo:
            problems.append(f"{name}.{label} must be >= {lo}")
        elif hi is not None and lo is not None and not lo <= value <= hi:
            problems.append(f"{name}.{label} must be within [{lo}, {hi}]")
    if bounds.min is not None and bounds.max is not None and bounds.min > bounds.max:
        problems.append(f"{name}: min ({bounds.min}) is greater than max ({bounds.max})")


def _validate_where(where: WhereClause, problems: List[str]) -> None:
    for value in _as_list(where.type):
        if value not in NODE_TYPES and value not in EDGE_TYPES:
            problems.append(f"where.type: unknown type '{value}'")
    for value in _as_list(where.role):
        if value not in ROLES:
            problems.append(f"where.role: unknown role '{value}'")

    if where.temporal:
        after = before = None
        for label in ("after", "before"):
            raw = getattr(where.temporal, label)
            if raw is None:
                continue
            parsed = _parse_timestamp(raw)
            if parsed is None:
                problems.append(f"where.temporal.{label}: '{raw}' is not an ISO-8601 timestamp")
            elif label == "after":
                after = parsed
            else:
                before = parsed
        if after and before and after > before:
            problems.append("where.temporal: after is later than before")
        _check_range(problems, "where.temporal.duration", where.temporal.duration, lo=0.0)

    if where.semantic:
        for value in where.semantic.intent or []:
            if value not in INTENTS:
                problems.append(f"where.semantic.intent: unknown intent '{value}'")
        _check_range(problems, "where.semantic.certainty", where.semantic.certainty, lo=0.0, hi=1.0)

    if where.contains:
        for value in where.contains.patterns or []:
            if value not in MARKER_NAMES:
                problems.append(f"where.contains.patterns: unknown marker '{value}'")


def validate_query(query: Union[FloatQLQuery, Dict[str, Any], None]) -> FloatQLQuery:
    """
    Parse and check a FloatQL request.

    Raises:
        QueryValidationError: with one message per problem found
    """
    if isinstance(query, FloatQLQuery):
        parsed = query
    else:
        try:
            parsed = FloatQLQuery.model_validate(query or {})
        except ValidationError as e:
            raise QueryValidationError([_describe_pydantic_error(err) for err in e.errors()])

    problems: List[str] = []
    selected = parsed.selected()
    for name, fields in selected.items():
        if name not in COLLECTIONS:
            problems.append(f"select: unknown collection '{name}'")
            continue
        for field_name in fields or []:
            if field_name not in _PROJECTABLE[name]:
                problems.append(f"select.{name}: unknown field '{field_name}'")

    if parsed.where:
        _validate_where(parsed.where, problems)

    getters = _field_getters()
    if parsed.aggregate:
        if isinstance(parsed.aggregate.count, list):
            for name in parsed.aggregate.count:
                if name not in LIST_COLLECTIONS:
                    problems.append(f"aggregate.count: unknown collection '{name}'")
        for dotted in parsed.aggregate.group_by or []:
            collection, field_name = _split_prefixed(dotted)
            if field_name not in getters[collection]:
                problems.append(f"aggregate.group_by: unknown field '{dotted}'")

    if parsed.transform and parsed.transform.target not in PREFERRED_OUTPUTS:
        problems.append(f"transform.target: unknown target '{parsed.transform.target}'")

    sortable = [name for name in selected if name in LIST_COLLECTIONS]
    for order in parsed.order_by or []:
        if not any(order.field in getters[name] for name in sortable):
            problems.append(f"order_by: unknown field '{order.field}' for {', '.join(sortable) or 'selection'}")

    if parsed.limit is not None and parsed.limit < 0:
        problems.append("limit must be >= 0")
    if parsed.offset is not None and parsed.offset < 0:
        problems.append("offset must be >= 0")

    if problems:
        raise QueryValidationError(problems)
    return parsed


# -----------------------
# Filtering
# -----------------------


@dataclass
class _Selection:
    nodes: List[FloatNode] = field(default_factory=list)
    edges: List[FloatEdge] = field(default_factory=list)
    concepts: List[Concept] = field(default_factory=list)
    patterns: Optional[PatternStats] = None


def _in_range(value: Optional[float], bounds: NumericRange) -> bool:
    if value is None:
        return False
    if bounds.min is not None and value < bounds.min:
        return False
    if bounds.max is not None and value > bounds.max:
        return False
    return True


def _document_matches(ast: FloatAST, where: WhereClause) -> bool:
    if where.personas is not None:
        personas = set(ast.metadata.personas or [])
        if not personas & set(where.personas):
            return False
    if where.mode is not None and ast.metadata.mode != where.mode:
        return False
    if where.temporal and where.temporal.duration is not None:
        if not _in_range(ast.temporal.duration, where.temporal.duration):
            return False
    return True


def _concept_node_ids(ast: FloatAST, titles: Set[str]) -> Set[str]:
    ids: Set[str] = set()
    for concept in ast.concepts.values():
        if concept.title.lower() in titles:
            ids.update(ref.node_id for ref in concept.appearances)
            ids.update(ref.node_id for ref in concept.references)
    return ids


def _node_predicates(ast: FloatAST, where: WhereClause) -> List[Callable[[FloatNode], bool]]:
    predicates: List[Callable[[FloatNode], bool]] = []

    node_types = [t for t in _as_list(where.type) if t in NODE_TYPES]
    if node_types:
        predicates.append(lambda n: n.type in node_types)

    roles = _as_list(where.role)
    if roles:
        predicates.append(lambda n: n.role in roles)

    temporal = where.temporal
    if temporal and (temporal.after or temporal.before):
        after = _parse_timestamp(temporal.after)
        before = _parse_timestamp(temporal.before)

        def in_window(n: FloatNode) -> bool:
            ts = _parse_timestamp(node_timestamp(n, ast))
            if ts is None:
                return False
            return (after is None or ts >= after) and (before is None or ts <= before)

        predicates.append(in_window)

    semantic = where.semantic
    if semantic:
        if semantic.intent is not None:
            intents = set(semantic.intent)
            predicates.append(lambda n: n.semantic is not None and n.semantic.intent in intents)
        if semantic.tone is not None:
            tones = {t.lower() for t in semantic.tone}
            predicates.append(
                lambda n: n.semantic is not None
                and n.semantic.emotional_tone is not None
                and n.semantic.emotional_tone.lower() in tones
            )
        if semantic.certainty is not None:
            bounds = semantic.certainty
            predicates.append(lambda n: n.semantic is not None and _in_range(n.semantic.certainty, bounds))

    contains = where.contains
    if contains:
        if contains.text is not None:
            needle = contains.text.lower()
            predicates.append(lambda n: needle in n.content.raw.lower())
        if contains.patterns is not None:
            markers = list(contains.patterns)
            predicates.append(lambda n: any(n.has_marker(m) for m in markers))
        if contains.concepts is not None:
            ids = _concept_node_ids(ast, {t.lower() for t in contains.concepts})
            predicates.append(lambda n: n.id in ids)

    return predicates


def _apply_where(ast: FloatAST, where: Optional[WhereClause]) -> _Selection:
    concepts = list(ast.concepts.values())
    if where is None:
        return _Selection(list(ast.nodes), list(ast.edges), concepts, ast.patterns)

    if not _document_matches(ast, where):
        return _Selection(patterns=None)

    predicates = _node_predicates(ast, where)
    nodes = [n for n in ast.nodes if all(p(n) for p in predicates)]

    edges = list(ast.edges)
    edge_types = [t for t in _as_list(where.type) if t in EDGE_TYPES]
    if edge_types:
        edges = [e for e in edges if e.type in edge_types]

    if where.contains and where.contains.concepts is not None:
        titles = {t.lower() for t in where.contains.concepts}
        concepts = [c for c in concepts if c.title.lower() in titles]

    if predicates:
        kept = {n.id for n in nodes}
        edges = [e for e in edges if e.source in kept and e.target in kept]
        concepts = [c for c in concepts if any(ref.node_id in kept for ref in c.appearances)]

    return _Selection(nodes, edges, concepts, ast.patterns)


# -----------------------
# Aggregation
# -----------------------


def _group_key(value: Any) -> str:
    if value is None:
        return "null"
    return value.isoformat() if isinstance(value, datetime) else str(value)


def _summarize(sel: _Selection) -> Dict[str, Any]:
    markers: Counter = Counter()
    for node in sel.nodes:
        if node.float_markers:
            markers.update(node.float_markers.present())
    top = sorted(sel.concepts, key=lambda c: (-c.weight, c.title))[:5]
    return {
        "nodes": len(sel.nodes),
        "edges": len(sel.edges),
        "concepts": len(sel.concepts),
        "roles": dict(Counter(_group_key(n.role) for n in sel.nodes)),
        "intents": dict(Counter(_group_key(n.semantic.intent if n.semantic else None) for n in sel.nodes)),
        "edge_types": dict(Counter(e.type for e in sel.edges)),
        "markers": dict(markers),
        "top_concepts": [c.title for c in top],
    }


def _aggregate(sel: _Selection, query: FloatQLQuery, getters: Dict[str, Dict[str, Getter]]) -> Dict[str, Any]:
    clause = query.aggregate
    out: Dict[str, Any] = {}

    if clause.count:
        if clause.count is True:
            names = [name for name in query.selected() if name in LIST_COLLECTIONS]
        else:
            names = list(clause.count)
        out["count"] = {name: len(getattr(sel, name)) for name in names}

    if clause.group_by:
        groups: Dict[str, Dict[str, int]] = {}
        for dotted in clause.group_by:
            collection, field_name = _split_prefixed(dotted)
            getter = getters[collection][field_name]
            counts = Counter(_group_key(getter(item)) for item in getattr(sel, collection))
            groups[f"{collection}.{field_name}"] = dict(sorted(counts.items()))
        out["group_by"] = groups

    if clause.summarize:
        out["summary"] = _summarize(sel)

    return out


# -----------------------
# Ordering, pagination, projection
# -----------------------

_TIE_BREAKERS = {
    "nodes": ("position.index", False),
    "edges": ("id", False),
    "concepts": ("title", False),
}
_DEFAULT_ORDER = {
    "nodes": [("position.index", False)],
    "edges": [("id", False)],
    "concepts": [("weight", True)],
}


def _compare(a: Any, b: Any, keys: List[Tuple[Getter, bool]]) -> int:
    for getter, descending in keys:
        va, vb = getter(a), getter(b)
        if va is None and vb is None:
            continue
        # missing values sort last in either direction
        if va is None:
            return 1
        if vb is None:
            return -1
        if type(va) is not type(vb) and not (isinstance(va, (int, float)) and isinstance(vb, (int, float))):
            # heterogeneous values from free-form fields order by type name first
            va, vb = (type(va).__name__, str(va)), (type(vb).__name__, str(vb))
        if va == vb:
            continue
        result = -1 if va < vb else 1
        return -result if descending else result
    return 0


def _order(items: List[Any], collection: str, query: FloatQLQuery, getters: Dict[str, Getter]) -> List[Any]:
    ordering = [(o.field, o.direction == "desc") for o in query.order_by or [] if o.field in getters]
    if not ordering:
        ordering = list(_DEFAULT_ORDER[collection])
    ordering.append(_TIE_BREAKERS[collection])
    keys = [(getters[name], descending) for name, descending in ordering]
    return sorted(items, key=cmp_to_key(lambda a, b: _compare(a, b, keys)))


def _paginate(items: List[Any], offset: Optional[int], limit: Optional[int]) -> List[Any]:
    start = offset or 0
    end = None if limit is None else start + limit
    return items[start:end]


def _project(item: Any, fields: Optional[List[str]]) -> Dict[str, Any]:
    data = item.model_dump(mode="json", exclude_none=True)
    if fields is None:
        return data
    return {key: data[key] for key in fields if key in data}


# -----------------------
# Entry points
# -----------------------


def evaluate_query(ast: FloatAST, query: Union[FloatQLQuery, Dict[str, Any], None]) -> Dict[str, Any]:
    """
    Evaluate a FloatQL request against one document.

    Args:
        ast: Assembled FloatAST (read only)
        query: FloatQL request as a dict or parsed model

    Returns:
        `{target, options}` when the query carries a transform, otherwise a
        view holding the selected collections and an optional `aggregate`

    Raises:
        QueryValidationError: the request is invalid
    """
    parsed = validate_query(query)

    if parsed.transform is not None:
        logger.debug(f"[floatql] routing {ast.id} to {parsed.transform.target}")
        return {"target": parsed.transform.target, "options": dict(parsed.transform.options)}

    getters = _field_getters(ast)
    sel = _apply_where(ast, parsed.where)
    selected = parsed.selected()

    result: Dict[str, Any] = {}
    for name, fields in selected.items():
        if name == "patterns":
            result["patterns"] = _project(sel.patterns, fields) if sel.patterns is not None else {}
            continue
        ordered = _order(getattr(sel, name), name, parsed, getters[name])
        page = _paginate(ordered, parsed.offset, parsed.limit)
        result[name] = [_project(item, fields) for item in page]

    if parsed.aggregate is not None:
        result["aggregate"] = _aggregate(sel, parsed, getters)

    return result


def query_nodes(ast: FloatAST, where: Union[WhereClause, Dict[str, Any], None] = None) -> List[FloatNode]:
    """
    Nodes matching `where`, in `position.index` order.

    Used by consumers that need the node models rather than a JSON view.

    Raises:
        QueryValidationError: `where` is invalid
    """
    request: Dict[str, Any] = {"select": ["nodes"]}
    if where is not None:
        request["where"] = where.model_dump(exclude_none=True) if isinstance(where, WhereClause) else where
    parsed = validate_query(request)
    sel = _apply_where(ast, parsed.where)
    return _order(sel.nodes, "nodes", parsed, _field_getters(ast)["nodes"])
