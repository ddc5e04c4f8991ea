"""
FloatAST document models.

A FloatAST is the versioned graph representation of one parsed conversation:
ordered nodes, typed edges between them, weighted concepts, pattern counters
and routing hints for downstream renderers. Documents are exchanged as JSON
(`model_dump(mode="json")`) tagged with `version`.
"""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional, Union, get_args

from pydantic import BaseModel, ConfigDict, Field, field_validator


FLOAT_AST_VERSION = "1.0"

ASTType = Literal["conversation", "artifact", "bridge", "dispatch"]
NodeType = Literal["message", "artifact", "annotation", "dispatch", "ritual"]
Role = Literal["human", "assistant", "system"]
Intent = Literal["question", "statement", "command", "reflection"]
EdgeType = Literal[
    "responds_to",
    "references",
    "contradicts",
    "elaborates",
    "summarizes",
    "questions",
    "implements",
    "bridges",
]
MarkerName = Literal["dispatch", "bridge", "highlight", "eureka", "decision"]
Source = Literal["claude", "chatgpt", "gemini", "local", "composite"]
Domain = Literal["concept", "framework", "metaphor"]
PreferredOutput = Literal["thread_reader", "zine", "microsite", "knowledge_base"]

NODE_TYPES = get_args(NodeType)
EDGE_TYPES = get_args(EdgeType)
ROLES = get_args(Role)
INTENTS = get_args(Intent)
MARKER_NAMES = get_args(MarkerName)
PREFERRED_OUTPUTS = get_args(PreferredOutput)


# -----------------------
# Nodes
# -----------------------


class NodeContent(BaseModel):
    raw: str
    processed: Optional[str] = None
    structured: Optional[Dict[str, Any]] = None


class NodeSemantic(BaseModel):
    intent: Optional[Intent] = None
    emotional_tone: Optional[str] = None
    certainty: Optional[float] = Field(default=None, ge=0.0, le=1.0)


class FloatMarkers(BaseModel):
    """Sparse inline annotations (`eureka:: it clicked`), each a short label."""

    dispatch: Optional[str] = None
    bridge: Optional[str] = None
    highlight: Optional[str] = None
    eureka: Optional[str] = None
    decision: Optional[str] = None

    def present(self) -> List[str]:
        return [name for name in MARKER_NAMES if getattr(self, name) is not None]


class NodePosition(BaseModel):
    index: int = Field(..., ge=0)
    depth: int = Field(default=0, ge=0)
    parent: Optional[str] = None


class FloatNode(BaseModel):
    id: str
    type: NodeType = "message"
    role: Optional[Role] = None
    content: NodeContent
    semantic: Optional[NodeSemantic] = None
    float_markers: Optional[FloatMarkers] = None
    children: Optional[List["FloatNode"]] = None
    position: NodePosition

    def has_marker(self, name: str) -> bool:
        return self.float_markers is not None and getattr(self.float_markers, name, None) is not None


FloatNode.model_rebuild()


# -----------------------
# Edges
# -----------------------


class FloatEdge(BaseModel):
    id: str
    type: EdgeType
    source: str
    target: str
    weight: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    metadata: Optional[Dict[str, Any]] = None


# -----------------------
# Concepts
# -----------------------


class NodeReference(BaseModel):
    node_id: str
    chunk: Optional[str] = None
    context: Optional[str] = None
    strength: Optional[float] = Field(default=None, ge=0.0, le=1.0)


class Concept(BaseModel):
    title: str
    description: Optional[str] = None
    appearances: List[NodeReference] = []
    references: List[NodeReference] = []
    weight: float = Field(..., ge=0.0, le=1.0)


class PatternStats(BaseModel):
    ctx_markers: int = Field(default=0, ge=0)
    float_dispatches: int = Field(default=0, ge=0)
    ritual_invocations: int = Field(default=0, ge=0)
    bridge_creates: int = Field(default=0, ge=0)
    persona_switches: int = Field(default=0, ge=0)


# -----------------------
# Document
# -----------------------


class Temporal(BaseModel):
    created: str
    modified: Optional[str] = None
    ctx_marker: Optional[str] = None
    duration: Optional[float] = Field(default=None, ge=0.0)  # seconds
    continuity_id: Optional[str] = None


class ASTMetadata(BaseModel):
    source: Source = "local"
    mode: Optional[str] = None
    project: Optional[str] = None
    personas: Optional[List[str]] = None
    sigils: Optional[List[str]] = None
    tags: Optional[List[str]] = None
    domain: Optional[Domain] = None


class Transforms(BaseModel):
    preferred_output: PreferredOutput = "zine"
    imprint_routing: Optional[List[str]] = None
    depth_level: int = Field(default=2, ge=1, le=5)


class FloatAST(BaseModel):
    id: str
    version: str = FLOAT_AST_VERSION
    type: ASTType = "conversation"
    temporal: Temporal
    metadata: ASTMetadata = ASTMetadata()
    nodes: List[FloatNode] = []
    edges: List[FloatEdge] = []
    concepts: Dict[str, Concept] = {}
    patterns: PatternStats = PatternStats()
    transforms: Transforms = Transforms()

    def node_ids(self) -> List[str]:
        return [node.id for node in self.nodes]


# -----------------------
# Extraction output
# -----------------------


class Fragment(BaseModel):
    """
    One ranked excerpt returned by fragment extraction.

    `relevance` is an explanation string on both built-in paths, but oracles
    may answer with a numeric score; callers should not depend on either.
    """

    model_config = ConfigDict(frozen=True)

    text: str = Field(..., min_length=1)
    relevance: Union[str, float]
    keywords: List[str] = []
    category: str

    @field_validator("keywords")
    @classmethod
    def _unique_keywords(cls, value: List[str]) -> List[str]:
        return list(dict.fromkeys(value))


# -----------------------
# API payloads
# -----------------------


class ParseOptions(BaseModel):
    source: Source = "local"
    mode: Optional[str] = None
    tags: Optional[List[str]] = None
    continuity_id: Optional[str] = None
    use_oracle_concepts: Optional[bool] = None


class ParseTextRequest(ParseOptions):
    title: str = Field(..., min_length=1)
    content: str


class ExtractFragmentsRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    query: str = Field(..., min_length=1)
    max_fragments: Optional[int] = Field(default=None, alias="maxFragments")
    where: Optional[Dict[str, Any]] = None


class ExtractFragmentsResponse(BaseModel):
    fragments: List[Fragment]
