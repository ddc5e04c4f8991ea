"""
FloatAST assembly, validation and (de)serialisation.

`parse_conversation_to_float_ast` runs the whole pass (nodes -> edges ->
concepts -> patterns) and validates the result before handing it out. After
assembly a document is treated as read-only by every consumer.

Validation problems are collected as `ValidationIssue`s that point at the
offending entity (`nodes[3]`, `edges[7].target`, `concepts[memory]...`) and
raised together as one `FloatASTValidationError`.
"""
import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set, Tuple, Union

from pydantic import BaseModel, ValidationError

from config import ENABLE_ORACLE_CONCEPTS
from models_float_ast import FLOAT_AST_VERSION, ASTMetadata, FloatAST, FloatNode, Temporal, Transforms
from services_concept_extraction import extract_concepts
from services_edge_inference import infer_edges
from services_float_parser import RoleClassifier, parse_conversation
from services_model_router import TASK_EXTRACT
from services_pattern_stats import compute_pattern_stats
from services_semantic_oracle import SemanticOracle, default_oracle
from storage import FloatStorage

logger = logging.getLogger("float_ast")

SUPPORTED_MAJOR_VERSION = FLOAT_AST_VERSION.split(".")[0]


class ValidationIssue(BaseModel):
    path: str
    entity_id: Optional[str] = None
    message: str


class FloatASTValidationError(Exception):
    """An assembled or loaded document violates a FloatAST invariant."""

    def __init__(self, issues: List[ValidationIssue], message: Optional[str] = None):
        self.issues = issues
        summary = "; ".join(f"{i.path}: {i.message}" for i in issues[:5])
        super().__init__(message or f"Invalid FloatAST ({len(issues)} issue(s)): {summary}")

    def to_dict(self) -> Dict[str, Any]:
        return {"detail": str(self), "issues": [issue.model_dump() for issue in self.issues]}


class UnsupportedVersionError(FloatASTValidationError):
    """The document's major version is not one this code understands."""


def new_ast_id() -> str:
    return f"ast-{uuid.uuid4()}"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# -----------------------
# Validation
# -----------------------


def check_version(version: Any) -> None:
    major = str(version).split(".")[0] if version is not None else ""
    if major != SUPPORTED_MAJOR_VERSION:
        raise UnsupportedVersionError(
            [ValidationIssue(path="version", message=f"unsupported version {version!r} (expected {SUPPORTED_MAJOR_VERSION}.x)")]
        )


def _walk_nodes(
    nodes: List[FloatNode], prefix: str = "nodes", container: Optional[FloatNode] = None
) -> List[Tuple[str, FloatNode, Optional[FloatNode]]]:
    out = []
    for i, node in enumerate(nodes):
        path = f"{prefix}[{i}]"
        out.append((path, node, container))
        if node.children:
            out.extend(_walk_nodes(node.children, f"{path}.children", node))
    return out


def validate_float_ast(ast: FloatAST) -> List[ValidationIssue]:
    """
    Check cross-entity invariants that the schema alone cannot express.

    Returns:
        Non-fatal warnings (self-loop edges from external input)

    Raises:
        FloatASTValidationError: duplicate ids, dangling references,
            non-monotonic indices, depth/parent mismatches
        UnsupportedVersionError: unknown major version
    """
    check_version(ast.version)

    issues: List[ValidationIssue] = []
    warnings: List[ValidationIssue] = []

    walked = _walk_nodes(ast.nodes)
    by_id: Dict[str, FloatNode] = {}
    for path, node, _ in walked:
        if node.id in by_id:
            issues.append(ValidationIssue(path=path, entity_id=node.id, message="duplicate node id"))
        else:
            by_id[node.id] = node

    last_index = -1
    for i, node in enumerate(ast.nodes):
        if node.position.index <= last_index:
            issues.append(
                ValidationIssue(
                    path=f"nodes[{i}].position.index",
                    entity_id=node.id,
                    message=f"index {node.position.index} is not greater than previous index {last_index}",
                )
            )
        last_index = max(last_index, node.position.index)

    for path, node, container in walked:
        parent_id = node.position.parent or (container.id if container else None)
        if parent_id is None:
            continue
        parent = by_id.get(parent_id)
        if parent is None:
            issues.append(
                ValidationIssue(path=f"{path}.position.parent", entity_id=node.id, message=f"unknown parent {parent_id}")
            )
        elif node.position.depth != parent.position.depth + 1:
            issues.append(
                ValidationIssue(
                    path=f"{path}.position.depth",
                    entity_id=node.id,
                    message=f"depth {node.position.depth} should be {parent.position.depth + 1} (parent {parent_id})",
                )
            )

    edge_ids: Set[str] = set()
    edge_keys: Set[Tuple[str, str, str]] = set()
    for i, edge in enumerate(ast.edges):
        path = f"edges[{i}]"
        if edge.id in edge_ids:
            issues.append(ValidationIssue(path=path, entity_id=edge.id, message="duplicate edge id"))
        edge_ids.add(edge.id)
        key = (edge.type, edge.source, edge.target)
        if key in edge_keys:
            issues.append(ValidationIssue(path=path, entity_id=edge.id, message=f"duplicate {edge.type} edge"))
        edge_keys.add(key)
        for end in ("source", "target"):
            ref = getattr(edge, end)
            if ref not in by_id:
                issues.append(ValidationIssue(path=f"{path}.{end}", entity_id=edge.id, message=f"dangling reference {ref}"))
        if edge.source == edge.target:
            warnings.append(ValidationIssue(path=path, entity_id=edge.id, message="self-loop edge"))

    for key, concept in ast.concepts.items():
        path = f"concepts[{key}]"
        if key != concept.title:
            issues.append(ValidationIssue(path=f"{path}.title", entity_id=key, message=f"key does not match title {concept.title!r}"))
        for field_name in ("appearances", "references"):
            for j, ref in enumerate(getattr(concept, field_name)):
                if ref.node_id not in by_id:
                    issues.append(
                        ValidationIssue(
                            path=f"{path}.{field_name}[{j}].node_id",
                            entity_id=key,
                            message=f"dangling reference {ref.node_id}",
                        )
                    )

    if issues:
        raise FloatASTValidationError(issues)

    for warning in warnings:
        logger.warning(f"[float_ast] {ast.id} {warning.path}: {warning.message}")
    return warnings


# -----------------------
# Serialisation
# -----------------------


def dump_float_ast(ast: FloatAST) -> Dict[str, Any]:
    """JSON-ready dict of the document (absent optional fields omitted)."""
    return ast.model_dump(mode="json", exclude_none=True)


def float_ast_to_json(ast: FloatAST, indent: Optional[int] = None) -> str:
    return json.dumps(dump_float_ast(ast), ensure_ascii=False, indent=indent)


def _issues_from_pydantic(error: ValidationError, data: Dict[str, Any]) -> List[ValidationIssue]:
    issues = []
    for err in error.errors():
        loc = err.get("loc", ())
        path = ""
        for pos, part in enumerate(loc):
            if isinstance(part, int) or (pos == 1 and loc[0] == "concepts"):
                path += f"[{part}]"
            else:
                path += f".{part}" if path else str(part)
        entity_id = None
        if len(loc) >= 2 and loc[0] in ("nodes", "edges") and isinstance(loc[1], int):
            items = data.get(loc[0]) or []
            if loc[1] < len(items) and isinstance(items[loc[1]], dict):
                entity_id = items[loc[1]].get("id")
        elif len(loc) >= 2 and loc[0] == "concepts":
            entity_id = str(loc[1])
        issues.append(ValidationIssue(path=path or "document", entity_id=entity_id, message=err.get("msg", "invalid")))
    return issues


def load_float_ast(data: Union[str, bytes, Dict[str, Any]]) -> FloatAST:
    """
    Parse and validate a FloatAST document.

    Args:
        data: JSON text or an already-decoded dict

    Raises:
        UnsupportedVersionError: the major version is not understood
        FloatASTValidationError: the document is malformed or violates an invariant
    """
    if isinstance(data, (str, bytes)):
        try:
            data = json.loads(data)
        except json.JSONDecodeError as e:
            raise FloatASTValidationError([ValidationIssue(path="document", message=f"invalid JSON: {e.msg}")])
    if not isinstance(data, dict):
        raise FloatASTValidationError([ValidationIssue(path="document", message="expected a JSON object")])

    check_version(data.get("version"))

    try:
        ast = FloatAST.model_validate(data)
    except ValidationError as e:
        raise FloatASTValidationError(_issues_from_pydantic(e, data))

    validate_float_ast(ast)
    return ast


# -----------------------
# Assembly
# -----------------------


def parse_conversation_to_float_ast(
    content: str,
    title: str,
    *,
    role_classifier: Optional[RoleClassifier] = None,
    oracle: Optional[SemanticOracle] = None,
    use_oracle_concepts: Optional[bool] = None,
    source: str = "local",
    mode: Optional[str] = None,
    tags: Optional[List[str]] = None,
    continuity_id: Optional[str] = None,
) -> FloatAST:
    """
    Parse conversation text into a validated FloatAST.

    Args:
        content: Raw conversation text
        title: Conversation title (stored as metadata.project)
        role_classifier: Author label -> role classifier for the node builder
        oracle: Semantic oracle for concept extraction
        use_oracle_concepts: Consult the oracle for concepts (default: ENABLE_ORACLE_CONCEPTS)
        source: Origin of the conversation (claude, chatgpt, gemini, local, composite)
        mode: Optional mode label
        tags: Optional tag list
        continuity_id: Id of a prior FloatAST this one continues

    Returns:
        The assembled document; `nodes` is empty when the text had no content lines

    Raises:
        FloatASTValidationError: the assembled document violates an invariant
    """
    parsed = parse_conversation(content, role_classifier=role_classifier)
    nodes = parsed.nodes
    if parsed.warnings:
        logger.info(f"[float_ast] {len(parsed.warnings)} line(s) without author label in '{title}'")

    edges = infer_edges(nodes)

    if use_oracle_concepts is None:
        use_oracle_concepts = ENABLE_ORACLE_CONCEPTS
    if use_oracle_concepts and oracle is None:
        oracle = default_oracle(TASK_EXTRACT)
    concepts = extract_concepts(nodes, oracle=oracle, use_oracle=use_oracle_concepts)

    now = _now_iso()
    ast = FloatAST(
        id=new_ast_id(),
        version=FLOAT_AST_VERSION,
        type="conversation",
        temporal=Temporal(
            created=now,
            modified=now,
            ctx_marker=parsed.ctx_marker,
            continuity_id=continuity_id,
        ),
        metadata=ASTMetadata(
            source=source,
            mode=mode,
            project=title,
            personas=parsed.personas,
            tags=list(tags or []),
        ),
        nodes=nodes,
        edges=edges,
        concepts=concepts,
        patterns=compute_pattern_stats(nodes, edges),
        transforms=Transforms(preferred_output="zine", depth_level=2),
    )

    validate_float_ast(ast)
    logger.info(
        f"[float_ast] assembled {ast.id}: {len(nodes)} nodes, {len(edges)} edges, {len(concepts)} concepts"
    )
    return ast


def parse_and_store(conversation_id: str, storage: FloatStorage, **kwargs: Any) -> Optional[FloatAST]:
    """
    Fetch a conversation, parse it and persist the document.

    Returns:
        The stored FloatAST, or None when the conversation does not exist
    """
    record = storage.fetch_conversation(conversation_id)
    if record is None:
        return None

    ast = parse_conversation_to_float_ast(record.content, record.title, **kwargs)
    storage.save_float_ast(ast.id, dump_float_ast(ast))
    return ast
