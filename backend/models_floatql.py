"""
FloatQL request models.

Every clause rejects unknown keys so that a misspelled predicate fails
validation instead of silently matching everything.
"""
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict

COLLECTIONS = ("nodes", "concepts", "patterns", "edges")


class _Clause(BaseModel):
    model_config = ConfigDict(extra="forbid")


class NumericRange(_Clause):
    min: Optional[float] = None
    max: Optional[float] = None


class TemporalWhere(_Clause):
    after: Optional[str] = None
    before: Optional[str] = None
    duration: Optional[NumericRange] = None


class SemanticWhere(_Clause):
    intent: Optional[List[str]] = None
    tone: Optional[List[str]] = None
    certainty: Optional[NumericRange] = None


class ContainsWhere(_Clause):
    text: Optional[str] = None
    patterns: Optional[List[str]] = None
    concepts: Optional[List[str]] = None


class WhereClause(_Clause):
    type: Optional[Union[str, List[str]]] = None
    role: Optional[Union[str, List[str]]] = None
    temporal: Optional[TemporalWhere] = None
    semantic: Optional[SemanticWhere] = None
    contains: Optional[ContainsWhere] = None
    personas: Optional[List[str]] = None
    mode: Optional[str] = None


class AggregateClause(_Clause):
    count: Optional[Union[bool, List[str]]] = None
    group_by: Optional[List[str]] = None
    summarize: bool = False


class TransformClause(_Clause):
    target: str
    options: Dict[str, Any] = {}


class OrderBy(_Clause):
    field: str
    direction: Literal["asc", "desc"] = "asc"


class FloatQLQuery(_Clause):
    """A FloatQL request. Every clause is optional."""

    select: Optional[Union[List[str], Dict[str, Optional[List[str]]]]] = None
    where: Optional[WhereClause] = None
    aggregate: Optional[AggregateClause] = None
    transform: Optional[TransformClause] = None
    order_by: Optional[List[OrderBy]] = None
    limit: Optional[int] = None
    offset: Optional[int] = None

    def selected(self) -> Dict[str, Optional[List[str]]]:
        """Collection -> field allow-list (None means all fields)."""
        if self.select is None:
            return {name: None for name in COLLECTIONS}
        if isinstance(self.select, list):
            return {name: None for name in self.select}
        return dict(self.select)
