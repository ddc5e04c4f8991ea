"""
Logging service for extraction events.
Logs to JSONL files for analysis and debugging (which path answered, why the
oracle degraded, how many results came back).
"""
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Any, Optional, List

from config import EVENT_LOG_DIR

logger = logging.getLogger("float_ast")

LOG_DIR = Path(EVENT_LOG_DIR)
EXTRACTION_LOG_FILE = LOG_DIR / "fragment_extractions.jsonl"
CONCEPT_LOG_FILE = LOG_DIR / "concept_extractions.jsonl"


def structured_log_line(payload: dict) -> str:
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False)


def _append_event(path: Path, event: Dict[str, Any]) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            f.write(json.dumps(event, ensure_ascii=False) + "\n")
    except Exception as e:
        # Don't fail the request if logging fails
        logger.warning(f"[event log] Failed to log event to {path.name}: {e}")


def log_extraction_event(
    ast_id: str,
    query: str,
    path: str,
    fragment_count: int,
    requested: int,
    degrade_reason: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> None:
    """
    Log a fragment extraction to JSONL file.

    Args:
        ast_id: FloatAST id the fragments were extracted from
        query: Free-text query
        path: "oracle" or "fallback"
        fragment_count: Number of fragments returned
        requested: Clamped maximum that was honoured
        degrade_reason: Why the oracle path was abandoned (fallback only)
        metadata: Optional additional metadata
    """
    event = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "ast_id": ast_id,
        "query": query,
        "path": path,
        "fragment_count": fragment_count,
        "requested": requested,
    }

    if degrade_reason is not None:
        event["degrade_reason"] = degrade_reason

    if metadata:
        event["metadata"] = metadata

    _append_event(EXTRACTION_LOG_FILE, event)


def log_concept_event(
    node_count: int,
    concept_count: int,
    path: str,
    degrade_reason: Optional[str] = None,
) -> None:
    """Log which concept strategy produced the concepts of a parse."""
    event = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "node_count": node_count,
        "concept_count": concept_count,
        "path": path,
    }
    if degrade_reason is not None:
        event["degrade_reason"] = degrade_reason

    _append_event(CONCEPT_LOG_FILE, event)


def get_recent_events(limit: int = 100, log_file: Optional[Path] = None) -> List[Dict[str, Any]]:
    """
    Get recent events from a JSONL log file.

    Args:
        limit: Maximum number of events to return
        log_file: Which event log to read (defaults to the extraction log)

    Returns:
        List of event dicts, most recent first
    """
    log_file = log_file or EXTRACTION_LOG_FILE
    if not log_file.exists():
        return []

    events = []
    try:
        with open(log_file, "r", encoding="utf-8") as f:
            lines = f.readlines()
            for line in lines[-limit:]:
                try:
                    events.append(json.loads(line.strip()))
                except json.JSONDecodeError:
                    continue

        events.sort(key=lambda e: e.get("timestamp", ""), reverse=True)
        return events
    except Exception as e:
        logger.error(f"[event log] Failed to read events: {e}")
        return []
