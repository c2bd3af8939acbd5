"""Ordered, idempotent schema migrations for the memory database."""

import re
import sqlite3
import time
from dataclasses import dataclass

from loguru import logger

_ALTER_ADD_COLUMN = re.compile(r"^\s*ALTER\s+TABLE\s+(\w+)\s+ADD\s+COLUMN\s+(\w+)", re.IGNORECASE)


@dataclass(frozen=True)
class Migration:
    version: int
    name: str
    statements: tuple[str, ...]

    @property
    def standalone(self) -> bool:
        """Virtual-table DDL runs outside the transaction used for ordinary DDL."""
        return any("CREATE VIRTUAL TABLE" in s.upper() for s in self.statements)


MIGRATIONS: tuple[Migration, ...] = (
    Migration(1, "memories", (
        """
        CREATE TABLE IF NOT EXISTS memories (
            seq INTEGER PRIMARY KEY,
            id TEXT NOT NULL UNIQUE,
            kind TEXT NOT NULL CHECK (kind IN ('fact', 'episode', 'procedure')),
            title TEXT NOT NULL,
            content TEXT NOT NULL CHECK (length(trim(content)) > 0),
            summary TEXT NOT NULL,
            scope_type TEXT NOT NULL DEFAULT 'global',
            scope_id TEXT NOT NULL DEFAULT '',
            entity_refs TEXT NOT NULL DEFAULT '[]',
            source_type TEXT NOT NULL DEFAULT 'system'
                CHECK (source_type IN ('user_message', 'assistant_message', 'tool_result', 'system')),
            source_id TEXT,
            source_conversation_id TEXT,
            importance REAL NOT NULL DEFAULT 0.5 CHECK (importance BETWEEN 0 AND 1),
            confidence REAL NOT NULL DEFAULT 0.7 CHECK (confidence BETWEEN 0 AND 1),
            status TEXT NOT NULL DEFAULT 'active'
                CHECK (status IN ('candidate', 'active', 'archived', 'superseded')),
            superseded_by TEXT,
            tags TEXT NOT NULL DEFAULT '[]',
            content_hash TEXT NOT NULL,
            occurred_at INTEGER,
            procedure_subtype TEXT
                CHECK (procedure_subtype IS NULL OR procedure_subtype IN ('behavioral', 'workflow', 'constraint')),
            created_at INTEGER NOT NULL,
            updated_at INTEGER NOT NULL,
            last_seen_at INTEGER NOT NULL,
            expires_at INTEGER,
            CHECK ((kind = 'episode') = (occurred_at IS NOT NULL)),
            CHECK ((kind = 'procedure') = (procedure_subtype IS NOT NULL)),
            CHECK (status != 'superseded' OR superseded_by IS NOT NULL)
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_memories_status_kind ON memories(status, kind)",
        "CREATE INDEX IF NOT EXISTS idx_memories_updated ON memories(updated_at DESC)",
        "CREATE INDEX IF NOT EXISTS idx_memories_expires ON memories(expires_at)",
        "CREATE INDEX IF NOT EXISTS idx_memories_superseded_by ON memories(superseded_by)",
        # Exact dedup among live records; retired ones may repeat.
        """
        CREATE UNIQUE INDEX IF NOT EXISTS idx_memories_live_hash
            ON memories(content_hash, kind, scope_type, scope_id)
            WHERE status IN ('active', 'candidate')
        """,
    )),
    Migration(2, "memories_fts", (
        """
        CREATE VIRTUAL TABLE IF NOT EXISTS memories_fts USING fts5(
            title, content, summary, content='memories', content_rowid='seq'
        )
        """,
        """
        CREATE TRIGGER IF NOT EXISTS memories_ai AFTER INSERT ON memories BEGIN
            INSERT INTO memories_fts(rowid, title, content, summary)
            VALUES (new.seq, new.title, new.content, new.summary);
        END
        """,
        """
        CREATE TRIGGER IF NOT EXISTS memories_ad AFTER DELETE ON memories BEGIN
            INSERT INTO memories_fts(memories_fts, rowid, title, content, summary)
            VALUES ('delete', old.seq, old.title, old.content, old.summary);
        END
        """,
        """
        CREATE TRIGGER IF NOT EXISTS memories_au AFTER UPDATE OF title, content, summary ON memories BEGIN
            INSERT INTO memories_fts(memories_fts, rowid, title, content, summary)
            VALUES ('delete', old.seq, old.title, old.content, old.summary);
            INSERT INTO memories_fts(rowid, title, content, summary)
            VALUES (new.seq, new.title, new.content, new.summary);
        END
        """,
    )),
    Migration(3, "vector_meta", (
        "CREATE TABLE IF NOT EXISTS vec_memories_meta (key TEXT PRIMARY KEY, value TEXT NOT NULL)",
    )),
    Migration(4, "memories_source_tool", (
        "ALTER TABLE memories ADD COLUMN source_tool_name TEXT",
    )),
)


def _column_exists(conn: sqlite3.Connection, table: str, column: str) -> bool:
    return any(row[1] == column for row in conn.execute(f"PRAGMA table_info({table})"))


def _execute(conn: sqlite3.Connection, statement: str) -> None:
    match = _ALTER_ADD_COLUMN.match(statement)
    if match and _column_exists(conn, match.group(1), match.group(2)):
        logger.debug(f"Column {match.group(1)}.{match.group(2)} already exists, skipping")
        return
    conn.execute(statement)


def current_version(conn: sqlite3.Connection) -> int:
    row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
    return row[0] or 0


def apply_migrations(conn: sqlite3.Connection, migrations: tuple[Migration, ...] = MIGRATIONS) -> list[int]:
    """Apply pending migrations in version order. Expects an autocommit connection."""
    conn.execute(
        "CREATE TABLE IF NOT EXISTS schema_version ("
        "version INTEGER PRIMARY KEY, name TEXT NOT NULL, applied_at INTEGER NOT NULL)"
    )
    done = {row[0] for row in conn.execute("SELECT version FROM schema_version")}
    applied: list[int] = []

    for migration in sorted(migrations, key=lambda m: m.version):
        if migration.version in done:
            continue
        record = (
            "INSERT INTO schema_version (version, name, applied_at) VALUES (?, ?, ?)",
            (migration.version, migration.name, int(time.time() * 1000)),
        )
        if migration.standalone:
            for statement in migration.statements:
                _execute(conn, statement)
            conn.execute(*record)
        else:
            conn.execute("BEGIN IMMEDIATE")
            try:
                for statement in migration.statements:
                    _execute(conn, statement)
                conn.execute(*record)
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise
        applied.append(migration.version)
        logger.info(f"Applied memory schema migration {migration.version} ({migration.name})")

    return applied
