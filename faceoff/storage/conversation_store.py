"""Conversation store backed by SQLite.

Stores conversations, their messages, API call logs and model presets in a
single database file. A connection is opened per operation, so the store
can be used from any thread.
"""

import json
import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional, Tuple

from . import (
    ApiLogRecord,
    ApiStats,
    ConversationRecord,
    MessageRecord,
    ModelStats,
    PresetRecord,
    now_ms,
)
from ..errors import PersistenceError


logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS conversations (
    id TEXT PRIMARY KEY,
    title TEXT,
    models TEXT NOT NULL,
    created_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS messages (
    id TEXT PRIMARY KEY,
    conversation_id TEXT NOT NULL,
    role TEXT NOT NULL,
    content TEXT NOT NULL,
    model_id TEXT,
    panel_index INTEGER,
    tokens_prompt INTEGER,
    tokens_completion INTEGER,
    latency_ms INTEGER,
    cost REAL,
    created_at INTEGER NOT NULL,
    FOREIGN KEY (conversation_id) REFERENCES conversations(id) ON DELETE CASCADE
);
CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages(conversation_id);

CREATE TABLE IF NOT EXISTS api_logs (
    id TEXT PRIMARY KEY,
    conversation_id TEXT,
    model_id TEXT NOT NULL,
    provider TEXT,
    request_tokens INTEGER,
    response_tokens INTEGER,
    total_tokens INTEGER,
    latency_ms INTEGER NOT NULL,
    cost REAL,
    status TEXT NOT NULL,
    error_message TEXT,
    created_at INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_api_logs_created ON api_logs(created_at);
CREATE INDEX IF NOT EXISTS idx_api_logs_model ON api_logs(model_id);

CREATE TABLE IF NOT EXISTS presets (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    models TEXT NOT NULL,
    created_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL
);
"""


class ConversationStore:
    """Persistence gateway for conversations, messages, logs and presets.

    Every failing operation raises PersistenceError wrapping the
    underlying sqlite3 error.
    """

    def __init__(self, db_path: Path) -> None:
        """Initialize the store and create the schema if needed.

        Args:
            db_path: Path to the SQLite database file
        """
        self._db_path = db_path
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._transaction("initialize schema") as conn:
            conn.executescript(SCHEMA)

    @property
    def db_path(self) -> Path:
        return self._db_path

    @contextmanager
    def _transaction(self, operation: str) -> Iterator[sqlite3.Connection]:
        """Open a connection, commit on success and always close it."""
        conn = None
        try:
            conn = sqlite3.connect(self._db_path, timeout=30)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys = ON")
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            if conn is not None:
                conn.rollback()
            logger.error("Storage operation '%s' failed: %s", operation, e)
            raise PersistenceError(operation, e) from e
        finally:
            if conn is not None:
                conn.close()

    # ==================== Conversations ====================

    def create_conversation(
        self,
        conversation_id: str,
        title: Optional[str],
        models: List[str],
    ) -> ConversationRecord:
        """Create a conversation.

        Args:
            conversation_id: New conversation ID
            title: Optional title
            models: Ordered model IDs, one per dispatched panel

        Returns:
            The stored ConversationRecord
        """
        timestamp = now_ms()
        record = ConversationRecord(
            id=conversation_id,
            title=title,
            models=list(models),
            created_at=timestamp,
            updated_at=timestamp,
        )
        with self._transaction("create conversation") as conn:
            conn.execute(
                "INSERT INTO conversations (id, title, models, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (record.id, record.title, json.dumps(record.models), timestamp, timestamp),
            )
        return record

    def update_conversation_title(self, conversation_id: str, title: str) -> None:
        with self._transaction("update conversation title") as conn:
            conn.execute(
                "UPDATE conversations SET title = ?, updated_at = ? WHERE id = ?",
                (title, now_ms(), conversation_id),
            )

    def delete_conversation(self, conversation_id: str) -> bool:
        """Delete a conversation and its messages.

        Returns:
            True if deleted, False if not found
        """
        with self._transaction("delete conversation") as conn:
            conn.execute("DELETE FROM messages WHERE conversation_id = ?", (conversation_id,))
            cursor = conn.execute("DELETE FROM conversations WHERE id = ?", (conversation_id,))
            return cursor.rowcount > 0

    def get_conversation(
        self, conversation_id: str
    ) -> Optional[Tuple[ConversationRecord, List[MessageRecord]]]:
        """Get a conversation with its messages in creation order.

        Returns:
            (conversation, messages) or None if not found
        """
        with self._transaction("get conversation") as conn:
            row = conn.execute(
                "SELECT * FROM conversations WHERE id = ?", (conversation_id,)
            ).fetchone()
            if row is None:
                return None
            rows = conn.execute(
                "SELECT * FROM messages WHERE conversation_id = ? "
                "ORDER BY created_at, rowid",
                (conversation_id,),
            ).fetchall()
        return self._row_to_conversation(row), [self._row_to_message(r) for r in rows]

    def list_conversations(self, limit: Optional[int] = None) -> List[ConversationRecord]:
        """List conversations, most recently updated first."""
        query = "SELECT * FROM conversations ORDER BY updated_at DESC, rowid DESC"
        params: tuple = ()
        if limit is not None:
            query += " LIMIT ?"
            params = (limit,)
        with self._transaction("list conversations") as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_conversation(r) for r in rows]

    # ==================== Messages ====================

    def add_message(self, message: MessageRecord) -> None:
        """Append a message and touch its conversation's updated_at."""
        with self._transaction("add message") as conn:
            conn.execute(
                "INSERT INTO messages (id, conversation_id, role, content, model_id, "
                "panel_index, tokens_prompt, tokens_completion, latency_ms, cost, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    message.id,
                    message.conversation_id,
                    message.role,
                    message.content,
                    message.model_id,
                    message.panel_index,
                    message.tokens_prompt,
                    message.tokens_completion,
                    message.latency_ms,
                    message.cost,
                    message.created_at,
                ),
            )
            conn.execute(
                "UPDATE conversations SET updated_at = ? WHERE id = ?",
                (message.created_at, message.conversation_id),
            )

    # ==================== API Logs ====================

    def add_api_log(self, log: ApiLogRecord) -> None:
        with self._transaction("add api log") as conn:
            conn.execute(
                "INSERT INTO api_logs (id, conversation_id, model_id, provider, request_tokens, "
                "response_tokens, total_tokens, latency_ms, cost, status, error_message, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    log.id,
                    log.conversation_id,
                    log.model_id,
                    log.provider,
                    log.request_tokens,
                    log.response_tokens,
                    log.total_tokens,
                    log.latency_ms,
                    log.cost,
                    log.status,
                    log.error_message,
                    log.created_at,
                ),
            )

    def get_api_logs(self, limit: int = 100, offset: int = 0) -> Tuple[List[ApiLogRecord], int]:
        """Get a page of API logs, newest first.

        Returns:
            (logs, total number of logs)
        """
        with self._transaction("get api logs") as conn:
            rows = conn.execute(
                "SELECT * FROM api_logs ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?",
                (limit or 100, offset or 0),
            ).fetchall()
            total = conn.execute("SELECT COUNT(*) FROM api_logs").fetchone()[0]
        return [self._row_to_api_log(r) for r in rows], total

    def get_api_stats(self) -> ApiStats:
        with self._transaction("get api stats") as conn:
            row = conn.execute(
                """
                SELECT
                    COUNT(*) AS total_calls,
                    SUM(CASE WHEN status = 'success' THEN 1 ELSE 0 END) AS successful_calls,
                    SUM(CASE WHEN status = 'error' THEN 1 ELSE 0 END) AS failed_calls,
                    SUM(total_tokens) AS total_tokens,
                    SUM(cost) AS total_cost,
                    AVG(latency_ms) AS avg_latency
                FROM api_logs
                """
            ).fetchone()
        return ApiStats(
            total_calls=row["total_calls"] or 0,
            successful_calls=row["successful_calls"] or 0,
            failed_calls=row["failed_calls"] or 0,
            total_tokens=row["total_tokens"] or 0,
            total_cost=row["total_cost"] or 0.0,
            avg_latency=row["avg_latency"],
        )

    def get_stats_by_model(self) -> List[ModelStats]:
        with self._transaction("get model stats") as conn:
            rows = conn.execute(
                """
                SELECT
                    model_id,
                    COUNT(*) AS call_count,
                    SUM(total_tokens) AS total_tokens,
                    SUM(cost) AS total_cost,
                    AVG(latency_ms) AS avg_latency
                FROM api_logs
                GROUP BY model_id
                ORDER BY call_count DESC, model_id
                """
            ).fetchall()
        return [
            ModelStats(
                model_id=r["model_id"],
                call_count=r["call_count"],
                total_tokens=r["total_tokens"] or 0,
                total_cost=r["total_cost"] or 0.0,
                avg_latency=r["avg_latency"],
            )
            for r in rows
        ]

    # ==================== Presets ====================

    def list_presets(self) -> List[PresetRecord]:
        with self._transaction("list presets") as conn:
            rows = conn.execute(
                "SELECT * FROM presets ORDER BY updated_at DESC, rowid DESC"
            ).fetchall()
        return [
            PresetRecord(
                id=r["id"],
                name=r["name"],
                models=json.loads(r["models"]),
                created_at=r["created_at"],
                updated_at=r["updated_at"],
            )
            for r in rows
        ]

    def save_preset(self, preset: PresetRecord) -> None:
        """Insert a preset or update the one with the same id."""
        timestamp = now_ms()
        with self._transaction("save preset") as conn:
            conn.execute(
                "INSERT INTO presets (id, name, models, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?) "
                "ON CONFLICT(id) DO UPDATE SET name = excluded.name, "
                "models = excluded.models, updated_at = excluded.updated_at",
                (preset.id, preset.name, json.dumps(preset.models), preset.created_at, timestamp),
            )
        preset.updated_at = timestamp

    def delete_preset(self, preset_id: str) -> bool:
        with self._transaction("delete preset") as conn:
            cursor = conn.execute("DELETE FROM presets WHERE id = ?", (preset_id,))
            return cursor.rowcount > 0

    # ==================== Row mapping ====================

    def _row_to_conversation(self, row: sqlite3.Row) -> ConversationRecord:
        try:
            models = json.loads(row["models"])
        except (json.JSONDecodeError, TypeError):
            logger.warning("Conversation %s has unreadable model list", row["id"])
            models = []
        return ConversationRecord(
            id=row["id"],
            title=row["title"],
            models=models,
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _row_to_message(self, row: sqlite3.Row) -> MessageRecord:
        return MessageRecord(
            id=row["id"],
            conversation_id=row["conversation_id"],
            role=row["role"],
            content=row["content"],
            model_id=row["model_id"],
            panel_index=row["panel_index"],
            tokens_prompt=row["tokens_prompt"],
            tokens_completion=row["tokens_completion"],
            latency_ms=row["latency_ms"],
            cost=row["cost"],
            created_at=row["created_at"],
        )

    def _row_to_api_log(self, row: sqlite3.Row) -> ApiLogRecord:
        return ApiLogRecord(
            id=row["id"],
            conversation_id=row["conversation_id"],
            model_id=row["model_id"],
            provider=row["provider"],
            request_tokens=row["request_tokens"],
            response_tokens=row["response_tokens"],
            total_tokens=row["total_tokens"],
            latency_ms=row["latency_ms"],
            cost=row["cost"],
            status=row["status"],
            error_message=row["error_message"],
            created_at=row["created_at"],
        )
