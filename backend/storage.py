"""
Storage collaborator for conversations and FloatAST documents.

The parse pipeline only needs two operations:
- fetch_conversation(conversation_id) -> ConversationRecord | None
- save_float_ast(ast_id, document) -> None

Backends:
- memory (default, process-local dicts)
- sqlite (single file, for local persistence)

Documents are stored as JSON-ready dicts; decoding them back into a FloatAST
(and validating them) is the caller's job.
"""
import json
import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel

from config import FLOAT_AST_DB_PATH, STORAGE_BACKEND

logger = logging.getLogger("float_ast")


class ConversationRecord(BaseModel):
    id: str
    title: str
    content: str
    created_at: Optional[str] = None


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class FloatStorage(ABC):
    """Interface the FloatAST pipeline depends on."""

    @abstractmethod
    def fetch_conversation(self, conversation_id: str) -> Optional[ConversationRecord]:
        ...

    @abstractmethod
    def save_float_ast(self, ast_id: str, document: Dict[str, Any]) -> None:
        ...


class DocumentStorage(FloatStorage):
    """Storage that can also seed conversations and read documents back (HTTP layer)."""

    @abstractmethod
    def add_conversation(self, conversation_id: str, title: str, content: str) -> ConversationRecord:
        ...

    @abstractmethod
    def get_float_ast(self, ast_id: str) -> Optional[Dict[str, Any]]:
        ...


class MemoryStorage(DocumentStorage):
    def __init__(self) -> None:
        self._conversations: Dict[str, ConversationRecord] = {}
        self._documents: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def add_conversation(self, conversation_id: str, title: str, content: str) -> ConversationRecord:
        record = ConversationRecord(id=conversation_id, title=title, content=content, created_at=_now_iso())
        with self._lock:
            self._conversations[conversation_id] = record
        return record

    def fetch_conversation(self, conversation_id: str) -> Optional[ConversationRecord]:
        with self._lock:
            return self._conversations.get(conversation_id)

    def save_float_ast(self, ast_id: str, document: Dict[str, Any]) -> None:
        # json round trip detaches the stored copy from the caller's dict
        with self._lock:
            self._documents[ast_id] = json.loads(json.dumps(document))

    def get_float_ast(self, ast_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            document = self._documents.get(ast_id)
        return json.loads(json.dumps(document)) if document is not None else None


class SQLiteStorage(DocumentStorage):
    """
    SQLite-backed storage.

    One connection per call (as sqlite3 connections are not shared across
    threads); tables are created on first use.
    """

    def __init__(self, db_path: Optional[str] = None) -> None:
        self.db_path = db_path or FLOAT_AST_DB_PATH
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        conn = self._connect()
        try:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS conversations (
                    id TEXT PRIMARY KEY,
                    title TEXT NOT NULL,
                    content TEXT NOT NULL,
                    created_at TEXT
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS float_asts (
                    id TEXT PRIMARY KEY,
                    document TEXT NOT NULL,
                    saved_at TEXT NOT NULL
                )
                """
            )
            conn.commit()
        finally:
            conn.close()

    def _execute(self, query: str, params: tuple = (), fetch: bool = False) -> Optional[list]:
        conn = self._connect()
        try:
            cur = conn.execute(query, params)
            if fetch:
                return [dict(row) for row in cur.fetchall()]
            conn.commit()
            return None
        except sqlite3.Error as e:
            logger.error(f"SQLite query failed: {e}")
            conn.rollback()
            raise
        finally:
            conn.close()

    def add_conversation(self, conversation_id: str, title: str, content: str) -> ConversationRecord:
        record = ConversationRecord(id=conversation_id, title=title, content=content, created_at=_now_iso())
        self._execute(
            "INSERT OR REPLACE INTO conversations (id, title, content, created_at) VALUES (?, ?, ?, ?)",
            (record.id, record.title, record.content, record.created_at),
        )
        return record

    def fetch_conversation(self, conversation_id: str) -> Optional[ConversationRecord]:
        rows = self._execute(
            "SELECT id, title, content, created_at FROM conversations WHERE id = ?",
            (conversation_id,),
            fetch=True,
        )
        return ConversationRecord(**rows[0]) if rows else None

    def save_float_ast(self, ast_id: str, document: Dict[str, Any]) -> None:
        self._execute(
            "INSERT OR REPLACE INTO float_asts (id, document, saved_at) VALUES (?, ?, ?)",
            (ast_id, json.dumps(document, ensure_ascii=False), _now_iso()),
        )

    def get_float_ast(self, ast_id: str) -> Optional[Dict[str, Any]]:
        rows = self._execute("SELECT document FROM float_asts WHERE id = ?", (ast_id,), fetch=True)
        return json.loads(rows[0]["document"]) if rows else None


_storage: Optional[DocumentStorage] = None


def get_storage() -> DocumentStorage:
    """Process-wide storage backend selected by STORAGE_BACKEND."""
    global _storage
    if _storage is None:
        if STORAGE_BACKEND == "sqlite":
            _storage = SQLiteStorage()
        else:
            if STORAGE_BACKEND != "memory":
                logger.warning(f"Unknown STORAGE_BACKEND '{STORAGE_BACKEND}', using memory")
            _storage = MemoryStorage()
        logger.info(f"Storage backend: {type(_storage).__name__}")
    return _storage
