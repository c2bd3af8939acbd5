"""Vector index over memory embeddings and embedding fingerprint reconciliation."""

import shutil
import sqlite3
import threading
import time
from pathlib import Path
from typing import Any, Sequence

import numpy as np
from loguru import logger

from nanomem.errors import EmbeddingError
from nanomem.providers.base import EmbeddingProvider

VECTOR_TABLE = "memory_vectors"
META_TABLE = "vec_memories_meta"
FINGERPRINT_KEYS = ("provider", "model", "dimensions")


def distance_to_score(distance: float) -> float:
    """Cosine distance (0..2) to a 0..1 score."""
    return min(1.0, max(0.0, 1.0 - distance / 2))


class VectorIndex:
    """Fixed-dimension float32 vectors keyed by memory id, searched exactly."""

    def __init__(self, conn: sqlite3.Connection, lock: threading.RLock):
        self._conn = conn
        self._lock = lock

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    @property
    def dimensions(self) -> int | None:
        """Dimension the table was built for, or None when there is no table."""
        if not self.exists():
            return None
        value = self.read_fingerprint().get("dimensions")
        return int(value) if value else None

    def exists(self) -> bool:
        with self._lock:
            row = self._conn.execute(
                "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?", (VECTOR_TABLE,)
            ).fetchone()
        return row is not None

    def create(self, dimensions: int) -> None:
        """(Re)create the vector table at ``dimensions``, discarding stored vectors."""
        with self._lock:
            self._conn.execute(f"DROP TABLE IF EXISTS {VECTOR_TABLE}")
            self._conn.execute(
                f"CREATE TABLE {VECTOR_TABLE} ("
                "memory_id TEXT PRIMARY KEY REFERENCES memories(id) ON DELETE CASCADE, "
                f"embedding BLOB NOT NULL CHECK (length(embedding) = {4 * dimensions}))"
            )

    def read_fingerprint(self) -> dict[str, str]:
        with self._lock:
            rows = self._conn.execute(f"SELECT key, value FROM {META_TABLE}").fetchall()
        return {row[0]: row[1] for row in rows}

    def write_fingerprint(self, fingerprint: dict[str, str]) -> None:
        with self._lock:
            self._conn.executemany(
                f"INSERT OR REPLACE INTO {META_TABLE} (key, value) VALUES (?, ?)",
                [(key, fingerprint[key]) for key in FINGERPRINT_KEYS],
            )

    def upsert(self, memory_id: str, vector: Sequence[float]) -> None:
        dims = self.dimensions
        arr = np.asarray(vector, dtype=np.float32)
        if dims is None:
            raise EmbeddingError("Vector index is not initialised")
        if arr.shape != (dims,):
            raise EmbeddingError(f"Vector for {memory_id} has {arr.size} dimensions, index expects {dims}")
        with self._lock:
            self._conn.execute(
                f"INSERT OR REPLACE INTO {VECTOR_TABLE} (memory_id, embedding) VALUES (?, ?)",
                (memory_id, sqlite3.Binary(arr.tobytes())),
            )

    def delete(self, memory_id: str) -> None:
        if not self.exists():
            return
        with self._lock:
            self._conn.execute(f"DELETE FROM {VECTOR_TABLE} WHERE memory_id = ?", (memory_id,))

    def get(self, memory_id: str) -> list[float] | None:
        if not self.exists():
            return None
        with self._lock:
            row = self._conn.execute(
                f"SELECT embedding FROM {VECTOR_TABLE} WHERE memory_id = ?", (memory_id,)
            ).fetchone()
        return np.frombuffer(row[0], dtype=np.float32).tolist() if row else None

    def count(self) -> int:
        if not self.exists():
            return 0
        with self._lock:
            return self._conn.execute(f"SELECT COUNT(*) FROM {VECTOR_TABLE}").fetchone()[0]

    def search(
        self,
        query: Sequence[float],
        limit: int,
        where: str = "1=1",
        params: Sequence[Any] = (),
    ) -> list[tuple[str, float]]:
        """
        Nearest memories by cosine distance, ascending.

        ``where`` filters the joined ``memories`` row (alias ``m``) before any
        distance is computed, so excluded records never take a slot.
        """
        dims = self.dimensions
        q = np.asarray(query, dtype=np.float32)
        if dims is None:
            raise EmbeddingError("Vector index is not initialised")
        if q.shape != (dims,):
            raise EmbeddingError(f"Query vector has {q.size} dimensions, index expects {dims}")

        with self._lock:
            rows = self._conn.execute(
                f"SELECT v.memory_id, v.embedding FROM {VECTOR_TABLE} v "
                f"JOIN memories m ON m.id = v.memory_id WHERE {where}",
                list(params),
            ).fetchall()
        if not rows:
            return []

        matrix = np.vstack([np.frombuffer(row[1], dtype=np.float32) for row in rows])
        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(q)
        with np.errstate(divide="ignore", invalid="ignore"):
            similarity = np.where(norms > 0, matrix @ q / norms, 0.0)
        distances = 1.0 - similarity
        order = np.argsort(distances, kind="stable")[:limit]
        return [(rows[i][0], float(distances[i])) for i in order]


# ── Fingerprint reconciliation ─────────────────────────────────────


def backup_database(conn: sqlite3.Connection, db_path: Path, max_backups: int = 3) -> Path | None:
    """Copy the live database next to itself and keep only the newest backups."""
    if max_backups <= 0 or not db_path.exists():
        return None
    target = db_path.with_name(f"{db_path.name}.bak-{time.time_ns()}")
    dest = sqlite3.connect(target)
    try:
        conn.backup(dest)
    finally:
        dest.close()
    logger.info(f"Backed up memory database to {target}")

    backups = sorted(db_path.parent.glob(f"{db_path.name}.bak-*"), key=lambda p: p.name)
    for old in backups[:-max_backups]:
        if old.is_dir():
            shutil.rmtree(old)
        else:
            old.unlink()
        logger.debug(f"Pruned old backup {old}")
    return target


def reconcile_vector_index(
    index: VectorIndex,
    embedding: EmbeddingProvider | None,
    db_path: Path | None = None,
    max_backups: int = 3,
) -> bool:
    """
    Make the vector index match the configured embedding provider.

    Rebuilds (after a backup) when the stored fingerprint is missing or differs
    from the provider's name/model/dimensions. Returns True when rebuilt.
    """
    if embedding is None:
        return False
    wanted = embedding.fingerprint
    stored = index.read_fingerprint()
    if index.exists() and all(stored.get(k) == wanted[k] for k in FINGERPRINT_KEYS):
        return False

    if stored:
        logger.info(
            f"Embedding changed ({stored.get('provider')}/{stored.get('model')}/{stored.get('dimensions')} -> "
            f"{wanted['provider']}/{wanted['model']}/{wanted['dimensions']}), rebuilding vector index"
        )
    else:
        logger.info(f"Initialising vector index for {wanted['provider']}/{wanted['model']} ({wanted['dimensions']} dims)")
    if db_path is not None and stored:
        backup_database(index.connection, db_path, max_backups)
    index.create(embedding.dimensions)
    index.write_fingerprint(wanted)
    return True
