"""
Conversation text -> FloatNode parser.

Splits raw dialogue into utterances, matches the "Author: message" form, and
emits one node per non-blank line in text order. Lines without an author
label still become nodes (without a role); they are reported as ParseWarnings
and never fail the parse.

Role inference is a pluggable `RoleClassifier` (label -> role) so the
substring heuristic can be swapped for a lookup table or a model.
"""
import logging
import re
import uuid
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

from models_float_ast import (
    FloatMarkers,
    FloatNode,
    Intent,
    NodeContent,
    NodePosition,
    NodeSemantic,
    Role,
)

logger = logging.getLogger("float_ast")

RoleClassifier = Callable[[str], Optional[Role]]

MESSAGE_PATTERN = re.compile(r"^([^:]+):\s*(.+)$")

_MARKER_KEYS = ("ctx", "dispatch", "bridge", "highlight", "eureka", "decision")
_MARKER_ALT = "|".join(_MARKER_KEYS)
# `name:: label` runs until the next annotation or the end of the line.
MARKER_PATTERN = re.compile(
    rf"\b({_MARKER_ALT})::\s*(.*?)(?=\s*\b(?:{_MARKER_ALT})::|$)",
    re.IGNORECASE,
)
MAX_MARKER_LABEL = 80

IMPERATIVE_VERBS = {
    "add", "build", "check", "create", "describe", "draft", "explain", "find",
    "fix", "generate", "give", "help", "list", "make", "please", "run", "show",
    "summarize", "tell", "write",
}
REFLECTIVE_OPENERS = ("i think", "i feel", "i wonder", "i guess", "i believe", "maybe", "perhaps")


@dataclass
class ParseWarning:
    """A line that did not match `Author: message`; recovered as a generic node."""
    line_number: int
    line: str
    reason: str


@dataclass
class ParsedConversation:
    nodes: List[FloatNode] = field(default_factory=list)
    warnings: List[ParseWarning] = field(default_factory=list)
    personas: List[str] = field(default_factory=list)  # author labels, first-seen order
    ctx_marker: Optional[str] = None  # label of the first ctx:: annotation


def default_role_classifier(label: str) -> Optional[Role]:
    """Substring heuristic: any label mentioning "assistant" is the assistant."""
    return "assistant" if "assistant" in label.lower() else "human"


def lookup_role_classifier(
    mapping: Dict[str, Role],
    default: Optional[RoleClassifier] = None,
) -> RoleClassifier:
    """
    Build a table-driven classifier.

    Labels are matched case-insensitively after stripping; unknown labels go
    to `default` (the substring heuristic when not given).
    """
    table = {key.strip().lower(): role for key, role in mapping.items()}
    fallback = default or default_role_classifier

    def classify(label: str) -> Optional[Role]:
        return table.get(label.strip().lower()) or fallback(label)

    return classify


def new_node_id() -> str:
    return f"node-{uuid.uuid4()}"


def split_utterances(text: str) -> List[Tuple[int, str]]:
    """Return (1-based line number, line) for every non-blank line."""
    return [
        (number, line)
        for number, line in enumerate((text or "").splitlines(), start=1)
        if line.strip()
    ]


def match_author_line(line: str) -> Optional[Tuple[str, str]]:
    """Split `Author: message` into (author, message), or None when it is not one."""
    match = MESSAGE_PATTERN.match(line)
    if not match:
        return None
    author, message = match.group(1), match.group(2)
    # `ctx:: ...` style annotations are not author labels
    if message.startswith(":") or not message.strip() or not author.strip():
        return None
    return author.strip(), message


def extract_markers(text: str) -> Tuple[Optional[FloatMarkers], Optional[str]]:
    """
    Find inline `name:: label` annotations.

    Returns:
        (float markers or None, ctx marker label or None)
    """
    markers: Dict[str, str] = {}
    ctx_marker: Optional[str] = None
    for match in MARKER_PATTERN.finditer(text):
        name = match.group(1).lower()
        label = match.group(2).strip()[:MAX_MARKER_LABEL] or name
        if name == "ctx":
            ctx_marker = ctx_marker or label
        else:
            markers.setdefault(name, label)
    return (FloatMarkers(**markers) if markers else None), ctx_marker


def infer_intent(text: str) -> Intent:
    lowered = text.strip().lower()
    if "?" in lowered:
        return "question"
    if lowered.startswith(REFLECTIVE_OPENERS):
        return "reflection"
    first_word = re.split(r"[\s,.!:;]+", lowered, maxsplit=1)[0] if lowered else ""
    if first_word in IMPERATIVE_VERBS:
        return "command"
    return "statement"


def parse_conversation(
    text: str,
    role_classifier: Optional[RoleClassifier] = None,
    annotate: bool = True,
) -> ParsedConversation:
    """
    Parse raw conversation text into ordered FloatNodes.

    Args:
        text: Raw dialogue, one utterance per line
        role_classifier: Maps an author label to a role (default: substring heuristic)
        annotate: Attach markers and inferred intent to each node

    Returns:
        ParsedConversation; `nodes` is empty when the text has no non-blank lines
    """
    classify = role_classifier or default_role_classifier
    parsed = ParsedConversation()

    for index, (line_number, line) in enumerate(split_utterances(text)):
        structured: Dict[str, str] = {}
        role: Optional[Role] = None

        author_line = match_author_line(line)
        if author_line:
            author, message = author_line
            role = classify(author)
            raw = message
            structured["author"] = author
            if author not in parsed.personas:
                parsed.personas.append(author)
        else:
            raw = line
            warning = ParseWarning(line_number=line_number, line=line, reason="no author label")
            parsed.warnings.append(warning)
            logger.debug(f"[parser] line {line_number}: {warning.reason}; emitting generic node")

        markers = None
        semantic = None
        if annotate:
            markers, ctx_marker = extract_markers(raw)
            if ctx_marker:
                structured["ctx_marker"] = ctx_marker
                parsed.ctx_marker = parsed.ctx_marker or ctx_marker
            semantic = NodeSemantic(intent=infer_intent(raw))

        parsed.nodes.append(
            FloatNode(
                id=new_node_id(),
                type="message",
                role=role,
                content=NodeContent(
                    raw=raw,
                    processed=raw.strip(),
                    structured=structured or None,
                ),
                semantic=semantic,
                float_markers=markers,
                position=NodePosition(index=index, depth=0),
            )
        )

    return parsed


def build_nodes(text: str, role_classifier: Optional[RoleClassifier] = None) -> List[FloatNode]:
    """Convenience wrapper returning only the node sequence."""
    return parse_conversation(text, role_classifier=role_classifier).nodes
