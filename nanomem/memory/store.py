"""SQLite-backed memory store: records, lexical index, vectors and lifecycle."""

from __future__ import annotations

import functools
import json
import sqlite3
import threading
import uuid
from pathlib import Path
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Sequence

from loguru import logger

from nanomem.config.schema import Config
from nanomem.errors import NanomemError, NotFoundError, Result, StorageError, ValidationError
from nanomem.memory.migrations import apply_migrations
from nanomem.memory.records import RECORD_COLUMNS, filter_clause, qualified_columns, row_to_record
from nanomem.memory.retrieval import RetrievalEngine
from nanomem.memory.types import (
    LIVE_STATUSES,
    MEMORY_KINDS,
    PROCEDURE_SUBTYPES,
    SCOPE_TYPES,
    SOURCE_TYPES,
    MemoryFilter,
    MemoryInput,
    MemoryPatch,
    MemoryRecord,
    MemoryScope,
    RecallOptions,
    ScoredMemory,
    compute_content_hash,
    to_millis,
    utcnow,
)
from nanomem.memory.vectors import VectorIndex, reconcile_vector_index
from nanomem.providers.base import EmbeddingProvider, check_vector

if TYPE_CHECKING:
    from nanomem.memory.consistency import ConsistencyManager

INSERT_SQL = (
    "INSERT INTO memories (id, kind, title, content, summary, scope_type, scope_id, entity_refs, "
    "source_type, source_id, source_conversation_id, source_tool_name, importance, confidence, "
    "status, tags, content_hash, occurred_at, procedure_subtype, created_at, updated_at, "
    "last_seen_at, expires_at) "
    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?) "
    "ON CONFLICT DO NOTHING"
)
STORABLE_STATUSES = ("candidate", "active", "archived")


def open_connection(db_path: Path | str) -> sqlite3.Connection:
    """Autocommit connection with WAL and foreign keys; transactions are explicit."""
    conn = sqlite3.connect(str(db_path), check_same_thread=False, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA foreign_keys=ON;")
    return conn


def _returns_result(method: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Result]]:
    """Convert raised errors into ``Result.failure`` at the public boundary."""

    @functools.wraps(method)
    async def wrapper(self: "SqliteMemoryStore", *args: Any, **kwargs: Any) -> Result:
        try:
            return Result.success(await method(self, *args, **kwargs))
        except NanomemError as e:
            logger.debug(f"{method.__name__} failed: {e}")
            return Result.failure(e)
        except sqlite3.Error as e:
            logger.error(f"{method.__name__} storage failure: {e}")
            return Result.failure(StorageError(str(e)))

    return wrapper


class SqliteMemoryStore:
    """
    Durable memory store.

    Exact duplicates are collapsed by a unique index on the normalised content
    hash, so identical concurrent writes resolve to one row. Every public
    operation returns a ``Result``.
    """

    def __init__(
        self,
        db_path: Path | str,
        *,
        config: Config | None = None,
        embedding: EmbeddingProvider | None = None,
        consistency: "ConsistencyManager | None" = None,
    ):
        self.config = config or Config()
        self.embedding = embedding
        self.consistency = consistency
        self.db_path = None if str(db_path) == ":memory:" else Path(db_path).expanduser()
        if self.db_path is not None:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._lock = threading.RLock()
        self._conn: sqlite3.Connection | None = open_connection(self.db_path or ":memory:")
        with self._lock:
            apply_migrations(self._conn)
        self.vectors = VectorIndex(self._conn, self._lock)
        self.vector_rebuilt = reconcile_vector_index(
            self.vectors, embedding, self.db_path, self.config.store.max_backups
        )
        self.retrieval = RetrievalEngine(self._conn, self._lock, self.vectors, embedding, self.config.retrieval)
        logger.info(f"Memory store opened at {self.db_path or ':memory:'}")

    def close(self) -> None:
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    # ── Public interface ────────────────────────────────────────

    @_returns_result
    async def store(self, memory: MemoryInput) -> MemoryRecord:
        """Persist a memory, resolving exact and semantic duplicates first."""
        self._validate(memory)
        summary = self._summary_for(memory.content, memory.summary)

        existing = self._find_live_duplicate(compute_content_hash(memory.content), memory.kind, memory.scope)
        if existing is not None:
            logger.debug(f"Exact duplicate of {existing.id}, touching")
            return self._touch(existing.id)

        vector = None
        if self.consistency is not None:
            decision = await self.consistency.resolve(self, memory, summary)
            vector = decision.vector
            if decision.action == "dedup":
                logger.debug(f"Near duplicate of {decision.existing.id} ({decision.similarity:.3f}), touching")
                return self._touch(decision.existing.id)
            if decision.action == "supersede":
                return await self._supersede(decision.existing, memory, summary, vector)

        record, created = self._insert(memory, summary)
        if not created:
            return self._touch(record.id)
        await self._index(record, vector)
        logger.debug(f"Stored {record.kind} {record.id}: {record.content[:60]}")
        return record

    @_returns_result
    async def get(self, memory_id: str) -> MemoryRecord | None:
        return self._get(memory_id)

    @_returns_result
    async def list(self, memory_filter: MemoryFilter | None = None) -> list[MemoryRecord]:
        f = memory_filter or MemoryFilter()
        where, params = filter_clause(
            "m",
            kinds=f.kinds,
            status=f.status,
            scope=f.scope,
            tags=f.tags,
            min_importance=f.min_importance,
            min_confidence=f.min_confidence,
        )
        sql = f"SELECT {qualified_columns('m')} FROM memories m WHERE {where} ORDER BY m.updated_at DESC, m.seq DESC"
        if f.limit is not None:
            sql += " LIMIT ?"
            params.append(f.limit)
        with self._lock:
            rows = self._db.execute(sql, params).fetchall()
        return [row_to_record(row) for row in rows]

    @_returns_result
    async def update(self, memory_id: str, patch: MemoryPatch) -> MemoryRecord:
        current = self._require(memory_id)
        if patch.status == "superseded":
            raise ValidationError("status 'superseded' is set by supersede(), not update()")
        if patch.status is not None and patch.status not in STORABLE_STATUSES:
            raise ValidationError(f"Invalid status: {patch.status!r}")
        for name in ("importance", "confidence"):
            value = getattr(patch, name)
            if value is not None and not 0.0 <= value <= 1.0:
                raise ValidationError(f"{name} must be within [0, 1], got {value}")

        changes: dict[str, Any] = {}
        reembed = False
        if patch.title is not None:
            if not patch.title.strip():
                raise ValidationError("title must not be empty")
            changes["title"] = patch.title.strip()
        if patch.content is not None and patch.content.strip() != current.content:
            content = patch.content.strip()
            if not content:
                raise ValidationError("content must not be empty")
            changes["content"] = content
            changes["content_hash"] = compute_content_hash(content)
            changes["summary"] = self._summary_for(content, patch.summary)
            reembed = True
        elif patch.summary is not None:
            changes["summary"] = self._summary_for(current.content, patch.summary)
            reembed = changes["summary"] != current.summary
        if patch.tags is not None:
            changes["tags"] = json.dumps(list(patch.tags))
        if patch.entity_refs is not None:
            changes["entity_refs"] = json.dumps(list(patch.entity_refs))
        if patch.importance is not None:
            changes["importance"] = patch.importance
        if patch.confidence is not None:
            changes["confidence"] = patch.confidence
        if patch.status is not None:
            changes["status"] = patch.status
        if patch.clear_expiry:
            changes["expires_at"] = None
        elif patch.expires_at is not None:
            changes["expires_at"] = to_millis(patch.expires_at)
        if not changes:
            return current

        changes["updated_at"] = to_millis(utcnow())
        assignments = ", ".join(f"{column} = ?" for column in changes)
        with self._lock:
            self._db.execute(f"UPDATE memories SET {assignments} WHERE id = ?", [*changes.values(), memory_id])
        record = self._require(memory_id)
        if reembed:
            await self._index(record)
        logger.debug(f"Updated {memory_id}: {', '.join(k for k in changes if k != 'updated_at')}")
        return record

    @_returns_result
    async def supersede(self, old_id: str, memory: MemoryInput) -> MemoryRecord:
        """Retire ``old_id`` in favour of a new active record."""
        old = self._require(old_id)
        self._validate(memory)
        if old.kind != memory.kind:
            raise ValidationError(f"Cannot supersede a {old.kind} with a {memory.kind}")
        if old.status == "superseded":
            raise ValidationError(f"{old_id} is already superseded by {old.superseded_by}")
        return await self._supersede(old, memory, self._summary_for(memory.content, memory.summary))

    @_returns_result
    async def archive(self, memory_id: str) -> None:
        self._require(memory_id)
        with self._lock:
            self._db.execute(
                "UPDATE memories SET status = 'archived', updated_at = ? WHERE id = ?",
                (to_millis(utcnow()), memory_id),
            )
        logger.debug(f"Archived {memory_id}")

    @_returns_result
    async def delete(self, memory_id: str) -> None:
        """Remove a record and its vector. Records it superseded are archived."""
        self._require(memory_id)
        with self._lock, self._transaction():
            self._db.execute(
                "UPDATE memories SET status = 'archived', superseded_by = NULL, updated_at = ? "
                "WHERE superseded_by = ?",
                (to_millis(utcnow()), memory_id),
            )
            self.vectors.delete(memory_id)
            self._db.execute("DELETE FROM memories WHERE id = ?", (memory_id,))
        logger.debug(f"Deleted {memory_id}")

    @_returns_result
    async def recall(self, query: str, options: RecallOptions | None = None) -> list[ScoredMemory]:
        return await self.retrieval.recall(query, options)

    @_returns_result
    async def reindex(self, batch_size: int = 32) -> int:
        """Embed records that have no vector (after a rebuild or failed embeds)."""
        if self.embedding is None or not self.vectors.exists():
            return 0
        with self._lock:
            rows = self._db.execute(
                f"SELECT {qualified_columns('m')} FROM memories m "
                "WHERE NOT EXISTS (SELECT 1 FROM memory_vectors v WHERE v.memory_id = m.id)"
            ).fetchall()
        records = [row_to_record(row) for row in rows]
        indexed = 0
        for start in range(0, len(records), batch_size):
            batch = records[start:start + batch_size]
            vectors = await self.embedding.embed_batch([r.summary for r in batch])
            for record, vector in zip(batch, vectors):
                self.vectors.upsert(record.id, check_vector(vector, self.embedding.dimensions))
                indexed += 1
        logger.info(f"Reindexed {indexed} memories")
        return indexed

    # ── Helpers used by retrieval and consistency ───────────────

    def nearest(
        self,
        vector: Sequence[float],
        kind: str,
        scope: MemoryScope,
        k: int,
    ) -> list[tuple[MemoryRecord, float]]:
        """Live, unexpired records of ``kind`` in ``scope`` by cosine similarity."""
        where, params = filter_clause(
            "m",
            kinds=[kind],
            status=list(LIVE_STATUSES),
            scope=scope,
            not_expired_at=to_millis(utcnow()),
        )
        hits = self.vectors.search(vector, k, where, params)
        records = self.retrieval.fetch([memory_id for memory_id, _ in hits])
        return [(records[mid], 1.0 - distance) for mid, distance in hits if mid in records]

    # ── Internals ───────────────────────────────────────────────

    @property
    def _db(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StorageError("Memory store is closed")
        return self._conn

    def _transaction(self):
        return _Transaction(self._db)

    def _summary_for(self, content: str, summary: str | None) -> str:
        summary = (summary or "").strip()
        return summary or content.strip()[:self.config.store.summary_length]

    def _validate(self, memory: MemoryInput) -> None:
        if getattr(memory, "kind", None) not in MEMORY_KINDS:
            raise ValidationError(f"Unknown memory kind: {getattr(memory, 'kind', None)!r}")
        if not memory.content or not memory.content.strip():
            raise ValidationError("content must not be empty")
        if not memory.title or not memory.title.strip():
            raise ValidationError("title must not be empty")
        for name in ("importance", "confidence"):
            value = getattr(memory, name)
            if not isinstance(value, (int, float)) or not 0.0 <= value <= 1.0:
                raise ValidationError(f"{name} must be within [0, 1], got {value!r}")
        if memory.status is not None and memory.status not in STORABLE_STATUSES:
            raise ValidationError(f"Cannot store a memory with status {memory.status!r}")
        if memory.scope.type not in SCOPE_TYPES:
            raise ValidationError(f"Unknown scope type: {memory.scope.type!r}")
        if memory.scope.type != "global" and not memory.scope.id:
            raise ValidationError(f"{memory.scope.type} scope requires an id")
        if memory.source.type not in SOURCE_TYPES:
            raise ValidationError(f"Unknown source type: {memory.source.type!r}")
        if memory.kind == "procedure" and memory.procedure_subtype not in PROCEDURE_SUBTYPES:
            raise ValidationError(f"Invalid procedure_subtype: {memory.procedure_subtype!r}")

    def _initial_status(self, memory: MemoryInput) -> str:
        if memory.status is not None:
            return memory.status
        threshold = self.config.extraction.active_confidence_threshold
        return "active" if memory.confidence >= threshold else "candidate"

    def _insert(
        self,
        memory: MemoryInput,
        summary: str,
        status: str | None = None,
    ) -> tuple[MemoryRecord, bool]:
        """Insert a row, or return the live duplicate the unique index kept."""
        now = to_millis(utcnow())
        content = memory.content.strip()
        content_hash = compute_content_hash(content)
        record_id = uuid.uuid4().hex
        occurred_at = None
        procedure_subtype = None
        if memory.kind == "episode":
            occurred_at = to_millis(memory.occurred_at) or now
        elif memory.kind == "procedure":
            procedure_subtype = memory.procedure_subtype
        row = (
            record_id, memory.kind, memory.title.strip(), content, summary,
            memory.scope.type, memory.scope.scope_id, json.dumps(list(memory.entity_refs)),
            memory.source.type, memory.source.id, memory.source.conversation_id, memory.source.tool_name,
            float(memory.importance), float(memory.confidence), status or self._initial_status(memory),
            json.dumps(list(memory.tags)), content_hash, occurred_at, procedure_subtype,
            now, now, now, to_millis(memory.expires_at),
        )
        with self._lock:
            cursor = self._db.execute(INSERT_SQL, row)
            if cursor.rowcount == 0:
                existing = self._find_live_duplicate(content_hash, memory.kind, memory.scope)
                if existing is None:
                    raise StorageError(f"Insert of {memory.kind} was ignored without a live duplicate")
                return existing, False
            return self._require(record_id), True

    def _find_live_duplicate(self, content_hash: str, kind: str, scope: MemoryScope) -> MemoryRecord | None:
        with self._lock:
            row = self._db.execute(
                f"SELECT {RECORD_COLUMNS} FROM memories WHERE content_hash = ? AND kind = ? "
                "AND scope_type = ? AND scope_id = ? AND status IN ('active', 'candidate')",
                (content_hash, kind, scope.type, scope.scope_id),
            ).fetchone()
        return row_to_record(row) if row else None

    def _get(self, memory_id: str) -> MemoryRecord | None:
        with self._lock:
            row = self._db.execute(f"SELECT {RECORD_COLUMNS} FROM memories WHERE id = ?", (memory_id,)).fetchone()
        return row_to_record(row) if row else None

    def _require(self, memory_id: str) -> MemoryRecord:
        record = self._get(memory_id)
        if record is None:
            raise NotFoundError(f"Memory {memory_id} not found")
        return record

    def _touch(self, memory_id: str) -> MemoryRecord:
        """Advance last_seen_at, strictly, even within the same millisecond."""
        with self._lock:
            self._db.execute(
                "UPDATE memories SET last_seen_at = MAX(?, last_seen_at + 1) WHERE id = ?",
                (to_millis(utcnow()), memory_id),
            )
        return self._require(memory_id)

    async def _supersede(
        self,
        old: MemoryRecord,
        memory: MemoryInput,
        summary: str,
        vector: list[float] | None = None,
    ) -> MemoryRecord:
        with self._lock, self._transaction():
            new, created = self._insert(memory, summary, status="active")
            if new.id == old.id:
                raise ValidationError(f"Replacement for {old.id} has identical content")
            self._db.execute(
                "UPDATE memories SET status = 'superseded', superseded_by = ?, updated_at = ? WHERE id = ?",
                (new.id, to_millis(utcnow()), old.id),
            )
        if created:
            await self._index(new, vector)
        else:
            new = self._touch(new.id)
        logger.info(f"Superseded {old.kind} {old.id} -> {new.id}")
        return new

    async def _index(self, record: MemoryRecord, vector: list[float] | None = None) -> bool:
        """Embed and store the record's vector; failures leave it lexical-only."""
        if self.embedding is None or not self.vectors.exists():
            return False
        try:
            if vector is None:
                vector = check_vector(await self.embedding.embed(record.summary), self.embedding.dimensions)
            self.vectors.upsert(record.id, vector)
            return True
        except Exception as e:
            logger.warning(f"Embedding failed for {record.id}, kept without vector: {e}")
            return False


class _Transaction:
    """BEGIN IMMEDIATE / COMMIT, rolling back on error."""

    def __init__(self, conn: sqlite3.Connection):
        self._conn = conn

    def __enter__(self):
        self._conn.execute("BEGIN IMMEDIATE")
        return self._conn

    def __exit__(self, exc_type, exc_val, exc_tb):
        self._conn.execute("ROLLBACK" if exc_type else "COMMIT")
        return False
