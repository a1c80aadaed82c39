"""
SQLite persistence store for SecondBrain Memory System
Copyright 2025 Jurden Bruce
"""

import json
import logging
import threading
import traceback
import uuid
from typing import List, Dict, Any, Optional
from datetime import datetime
from pathlib import Path

from ..models import EmbeddingRecord

logger = logging.getLogger("secondbrain-memory.sqlite")

# Columns stored as JSON text, decoded back to lists/dicts on read
JSON_COLUMNS = {
    "projects": {"tech_stack"},
    "observations": {"files", "tags"},
    "decisions": {"options", "tags"},
    "bugs_and_fixes": {"files_affected", "tags"},
    "patterns": {"when_to_use", "when_not_to_use", "related_patterns", "tags"},
    "code_snippets": {"use_cases", "tags"},
    "workflows": {"steps", "tools_used", "tags"},
    "user_preferences": {"examples"},
}

BOOL_COLUMNS = {
    "decisions": {"would_do_again"},
}

COLLECTIONS = tuple(JSON_COLUMNS.keys())


class SQLiteStore:
    """Handles all SQLite database operations"""

    def __init__(self, db_path: Path, db_conn, db_lock: threading.RLock, error_log: List[Dict[str, Any]]):
        self.db_path = db_path
        self.conn = db_conn  # Use external connection
        self._lock = db_lock  # Use external lock
        self.error_log = error_log
        self._columns: Dict[str, List[str]] = {}

    def _log_error(self, operation: str, error: Exception):
        """Log detailed error information"""
        error_entry = {
            "timestamp": datetime.now().isoformat(),
            "operation": operation,
            "error_type": type(error).__name__,
            "error_msg": str(error),
            "traceback": traceback.format_exc(),
        }
        self.error_log.append(error_entry)
        if len(self.error_log) > 100:
            del self.error_log[:-100]

    def initialize(self):
        """Create schema (uses external connection)"""
        if not self.conn:
            raise RuntimeError("Cannot initialize - no database connection provided")

        with self._lock:
            self.conn.executescript("""
                CREATE TABLE IF NOT EXISTS projects (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL UNIQUE,
                    description TEXT,
                    tech_stack TEXT,
                    status TEXT DEFAULT 'active',
                    created TIMESTAMP NOT NULL,
                    updated TIMESTAMP NOT NULL
                );

                CREATE TABLE IF NOT EXISTS observations (
                    id TEXT PRIMARY KEY,
                    session TEXT,
                    project TEXT,
                    type TEXT NOT NULL,
                    category TEXT,
                    title TEXT NOT NULL,
                    content TEXT NOT NULL,
                    files TEXT,
                    tags TEXT,
                    importance INTEGER DEFAULT 3,
                    created TIMESTAMP NOT NULL,
                    updated TIMESTAMP NOT NULL
                );

                CREATE TABLE IF NOT EXISTS decisions (
                    id TEXT PRIMARY KEY,
                    session TEXT,
                    project TEXT,
                    title TEXT NOT NULL,
                    context TEXT NOT NULL,
                    options TEXT,
                    chosen TEXT NOT NULL,
                    rationale TEXT NOT NULL,
                    outcome TEXT,
                    would_do_again INTEGER,
                    outcome_notes TEXT,
                    outcome_recorded_at TIMESTAMP,
                    tags TEXT,
                    created TIMESTAMP NOT NULL,
                    updated TIMESTAMP NOT NULL
                );

                CREATE TABLE IF NOT EXISTS bugs_and_fixes (
                    id TEXT PRIMARY KEY,
                    session TEXT,
                    project TEXT,
                    error_type TEXT NOT NULL,
                    error_message TEXT NOT NULL,
                    root_cause TEXT,
                    solution TEXT NOT NULL,
                    prevention TEXT,
                    time_to_fix REAL,
                    files_affected TEXT,
                    tags TEXT,
                    created TIMESTAMP NOT NULL,
                    updated TIMESTAMP NOT NULL
                );

                CREATE TABLE IF NOT EXISTS patterns (
                    id TEXT PRIMARY KEY,
                    project TEXT,
                    name TEXT NOT NULL,
                    category TEXT NOT NULL,
                    problem TEXT NOT NULL,
                    solution TEXT NOT NULL,
                    example_code TEXT,
                    when_to_use TEXT,
                    when_not_to_use TEXT,
                    related_patterns TEXT,
                    tags TEXT,
                    created TIMESTAMP NOT NULL,
                    updated TIMESTAMP NOT NULL
                );

                CREATE TABLE IF NOT EXISTS code_snippets (
                    id TEXT PRIMARY KEY,
                    session TEXT,
                    project TEXT,
                    title TEXT NOT NULL,
                    language TEXT NOT NULL,
                    code TEXT NOT NULL,
                    description TEXT,
                    use_cases TEXT,
                    tags TEXT,
                    reuse_count INTEGER DEFAULT 0,
                    created TIMESTAMP NOT NULL,
                    updated TIMESTAMP NOT NULL
                );

                CREATE TABLE IF NOT EXISTS workflows (
                    id TEXT PRIMARY KEY,
                    project TEXT,
                    name TEXT NOT NULL,
                    description TEXT,
                    "trigger" TEXT NOT NULL,
                    steps TEXT NOT NULL,
                    tools_used TEXT,
                    estimated_duration REAL,
                    success_criteria TEXT,
                    execution_count INTEGER DEFAULT 0,
                    avg_duration REAL,
                    last_executed TIMESTAMP,
                    tags TEXT,
                    created TIMESTAMP NOT NULL,
                    updated TIMESTAMP NOT NULL
                );

                CREATE TABLE IF NOT EXISTS user_preferences (
                    id TEXT PRIMARY KEY,
                    category TEXT NOT NULL,
                    preference TEXT NOT NULL,
                    reason TEXT,
                    examples TEXT,
                    strength INTEGER DEFAULT 3,
                    created TIMESTAMP NOT NULL,
                    updated TIMESTAMP NOT NULL
                );

                CREATE TABLE IF NOT EXISTS embeddings (
                    id TEXT PRIMARY KEY,
                    source_type TEXT NOT NULL,
                    source_id TEXT NOT NULL,
                    content_hash TEXT NOT NULL,
                    vector TEXT,
                    model TEXT NOT NULL,
                    created TIMESTAMP NOT NULL
                );

                CREATE TABLE IF NOT EXISTS command_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp TIMESTAMP NOT NULL,
                    tool_name TEXT NOT NULL,
                    args TEXT,
                    result_summary TEXT,
                    record_id TEXT,
                    success INTEGER DEFAULT 1
                );

                CREATE INDEX IF NOT EXISTS idx_obs_project ON observations(project, created DESC);
                CREATE INDEX IF NOT EXISTS idx_dec_project ON decisions(project, created DESC);
                CREATE INDEX IF NOT EXISTS idx_bug_project ON bugs_and_fixes(project, created DESC);
                CREATE INDEX IF NOT EXISTS idx_snippet_project ON code_snippets(project, created DESC);
                CREATE INDEX IF NOT EXISTS idx_workflow_name ON workflows(name, project);
                CREATE INDEX IF NOT EXISTS idx_preference_category ON user_preferences(category);
                CREATE INDEX IF NOT EXISTS idx_embedding_source ON embeddings(source_id, source_type);
                CREATE INDEX IF NOT EXISTS idx_embedding_hash ON embeddings(content_hash);
                CREATE INDEX IF NOT EXISTS idx_command_timestamp ON command_history(timestamp DESC);
                CREATE INDEX IF NOT EXISTS idx_command_tool ON command_history(tool_name);
            """)
            self.conn.commit()

            for collection in COLLECTIONS:
                cursor = self.conn.execute(f"PRAGMA table_info({collection})")
                self._columns[collection] = [row[1] for row in cursor.fetchall()]

        logger.info("SQLite initialized successfully")

    # ===== GENERIC RECORD OPERATIONS =====

    def _check_collection(self, collection: str) -> List[str]:
        if collection not in self._columns:
            raise ValueError(f"Unknown collection: {collection}")
        return self._columns[collection]

    def _check_fields(self, collection: str, fields: Dict[str, Any]):
        columns = self._check_collection(collection)
        unknown = [name for name in fields if name not in columns]
        if unknown:
            raise ValueError(f"Unknown fields for {collection}: {', '.join(sorted(unknown))}")

    def _encode(self, collection: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        json_columns = JSON_COLUMNS.get(collection, set())
        bool_columns = BOOL_COLUMNS.get(collection, set())
        encoded = {}
        for name, value in fields.items():
            if name in json_columns and value is not None:
                value = json.dumps(value)
            elif name in bool_columns and value is not None:
                value = 1 if value else 0
            encoded[name] = value
        return encoded

    def _row_to_record(self, collection: str, row) -> Dict[str, Any]:
        json_columns = JSON_COLUMNS.get(collection, set())
        bool_columns = BOOL_COLUMNS.get(collection, set())
        record = {}
        for name in row.keys():
            value = row[name]
            if name in json_columns:
                try:
                    value = json.loads(value) if value else []
                except (TypeError, ValueError):
                    logger.warning(f"Malformed JSON in {collection}.{name} for {row['id']}")
                    value = []
            elif name in bool_columns and value is not None:
                value = bool(value)
            record[name] = value
        return record

    def _write(self, operation: str, sql: str, params):
        """Run a write statement, rolling back and re-raising on failure"""
        with self._lock:
            try:
                cursor = self.conn.execute(sql, params)
                self.conn.commit()
                return cursor
            except Exception as e:
                logger.error(f"SQLite {operation} failed: {e}")
                self._log_error(operation, e)
                self.conn.rollback()
                raise

    def create_record(self, collection: str, data: Dict[str, Any]) -> Dict[str, Any]:
        """Insert a record; id/created/updated are filled in when absent"""
        self._check_fields(collection, data)
        now = datetime.now()
        fields = dict(data)
        fields.setdefault("id", str(uuid.uuid4()))
        fields.setdefault("created", now)
        fields.setdefault("updated", fields["created"])

        encoded = self._encode(collection, fields)
        columns = ", ".join(f'"{name}"' for name in encoded)
        placeholders = ", ".join("?" for _ in encoded)
        self._write(
            f"create_{collection}",
            f"INSERT INTO {collection} ({columns}) VALUES ({placeholders})",
            list(encoded.values()),
        )
        logger.debug(f"Created {collection} record {fields['id']}")
        return self.get_record(collection, fields["id"])

    def get_record(self, collection: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Fetch one record by id, None if it doesn't exist"""
        self._check_collection(collection)
        with self._lock:
            cursor = self.conn.execute(f"SELECT * FROM {collection} WHERE id = ?", (record_id,))
            row = cursor.fetchone()
        return self._row_to_record(collection, row) if row else None

    def update_record(self, collection: str, record_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Update selected fields; returns the fresh record or None if missing"""
        self._check_fields(collection, fields)
        fields = {name: value for name, value in fields.items() if name not in ("id", "created")}
        fields["updated"] = datetime.now()

        encoded = self._encode(collection, fields)
        assignments = ", ".join(f'"{name}" = ?' for name in encoded)
        cursor = self._write(
            f"update_{collection}",
            f"UPDATE {collection} SET {assignments} WHERE id = ?",
            list(encoded.values()) + [record_id],
        )
        if cursor.rowcount == 0:
            return None
        return self.get_record(collection, record_id)

    def delete_record(self, collection: str, record_id: str) -> bool:
        self._check_collection(collection)
        cursor = self._write(f"delete_{collection}", f"DELETE FROM {collection} WHERE id = ?", (record_id,))
        return cursor.rowcount > 0

    def list_records(self, collection: str, where: Optional[Dict[str, Any]] = None,
                     order_by: str = "created DESC", limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """List records matching simple equality filters

        Only AND-of-equalities is pushed into SQL; anything richer is filtered
        by the caller in Python.
        """
        columns = self._check_collection(collection)
        where = where or {}
        self._check_fields(collection, where)

        order_column, _, direction = order_by.partition(" ")
        if order_column not in columns or direction.upper() not in ("", "ASC", "DESC"):
            raise ValueError(f"Invalid ordering for {collection}: {order_by}")

        conditions = []
        params = []
        for name, value in where.items():
            if value is None:
                conditions.append(f'"{name}" IS NULL')
            else:
                conditions.append(f'"{name}" = ?')
                params.append(value)

        sql = f"SELECT * FROM {collection}"
        if conditions:
            sql += f" WHERE {' AND '.join(conditions)}"
        sql += f' ORDER BY "{order_column}" {direction.upper() or "ASC"}'
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))

        with self._lock:
            rows = self.conn.execute(sql, params).fetchall()
        return [self._row_to_record(collection, row) for row in rows]

    def find_first(self, collection: str, where: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        records = self.list_records(collection, where=where, order_by="created ASC", limit=1)
        return records[0] if records else None

    def count_records(self, collection: str) -> int:
        self._check_collection(collection)
        with self._lock:
            return self.conn.execute(f"SELECT COUNT(*) FROM {collection}").fetchone()[0]

    # ===== EMBEDDINGS =====

    def _row_to_embedding(self, row) -> EmbeddingRecord:
        vector = None
        if row["vector"]:
            try:
                vector = json.loads(row["vector"])
            except (TypeError, ValueError):
                logger.warning(f"Embedding {row['id']} has a malformed vector")
        return EmbeddingRecord(
            id=row["id"],
            source_type=row["source_type"],
            source_id=row["source_id"],
            content_hash=row["content_hash"],
            vector=vector,
            model=row["model"],
            created_at=row["created"],
        )

    def create_embedding(self, embedding: EmbeddingRecord):
        self._write(
            "create_embedding",
            """
            INSERT INTO embeddings (id, source_type, source_id, content_hash, vector, model, created)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                embedding.id,
                embedding.source_type,
                embedding.source_id,
                embedding.content_hash,
                json.dumps(embedding.vector) if embedding.vector is not None else None,
                embedding.model,
                embedding.created_at or datetime.now(),
            ),
        )

    def find_embedding(self, source_type: str, source_id: str,
                       content_hash: Optional[str] = None) -> Optional[EmbeddingRecord]:
        """Most recent embedding for a source, optionally with a given hash"""
        sql = "SELECT * FROM embeddings WHERE source_id = ? AND source_type = ?"
        params = [source_id, source_type]
        if content_hash is not None:
            sql += " AND content_hash = ?"
            params.append(content_hash)
        sql += " ORDER BY created DESC LIMIT 1"

        with self._lock:
            row = self.conn.execute(sql, params).fetchone()
        return self._row_to_embedding(row) if row else None

    def delete_embeddings(self, source_type: str, source_id: str) -> int:
        """Remove every embedding for a source; returns rows deleted"""
        cursor = self._write(
            "delete_embeddings",
            "DELETE FROM embeddings WHERE source_id = ? AND source_type = ?",
            (source_id, source_type),
        )
        return cursor.rowcount

    def delete_embedding(self, embedding_id: str) -> bool:
        cursor = self._write("delete_embedding", "DELETE FROM embeddings WHERE id = ?", (embedding_id,))
        return cursor.rowcount > 0

    def list_embeddings(self) -> List[EmbeddingRecord]:
        """Every stored embedding; type filtering happens in the caller"""
        with self._lock:
            rows = self.conn.execute("SELECT * FROM embeddings ORDER BY created ASC").fetchall()
        return [self._row_to_embedding(row) for row in rows]

    def count_embeddings(self) -> int:
        with self._lock:
            return self.conn.execute("SELECT COUNT(*) FROM embeddings").fetchone()[0]

    # ===== COMMAND HISTORY =====

    def log_command(self, tool_name: str, args: Dict[str, Any], result_summary: str = None,
                    record_id: str = None, success: bool = True):
        """Log a command to the history table"""
        if not self.conn:
            return

        try:
            with self._lock:
                self.conn.execute("""
                    INSERT INTO command_history (timestamp, tool_name, args, result_summary, record_id, success)
                    VALUES (?, ?, ?, ?, ?, ?)
                """, (
                    datetime.now().isoformat(),
                    tool_name,
                    json.dumps(args, default=str) if args else None,
                    result_summary,
                    record_id,
                    1 if success else 0
                ))
                self.conn.commit()
        except Exception as e:
            logger.error(f"Failed to log command: {e}")
            self._log_error("log_command", e)

    def get_command_history(self, limit: int = 20, tool_name: str = None) -> List[Dict[str, Any]]:
        """Get command history, optionally filtered by tool name"""
        if not self.conn:
            return []

        conditions = []
        params: List[Any] = []
        if tool_name:
            conditions.append("tool_name = ?")
            params.append(tool_name)

        where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        params.append(limit)

        with self._lock:
            rows = self.conn.execute(f"""
                SELECT id, timestamp, tool_name, args, result_summary, record_id, success
                FROM command_history
                {where_clause}
                ORDER BY id DESC
                LIMIT ?
            """, params).fetchall()

        return [{
            "id": row["id"],
            "timestamp": row["timestamp"],
            "tool_name": row["tool_name"],
            "args": json.loads(row["args"]) if row["args"] else None,
            "result_summary": row["result_summary"],
            "record_id": row["record_id"],
            "success": bool(row["success"])
        } for row in rows]

    def close(self):
        """Close database connection"""
        if self.conn:
            try:
                with self._lock:
                    self.conn.close()
                logger.info("SQLite connection closed")
            except Exception as e:
                logger.error(f"Error closing SQLite: {e}")
            self.conn = None
