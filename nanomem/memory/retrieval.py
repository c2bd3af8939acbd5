"""Hybrid recall: vector similarity + BM25, fused with RRF and recency decay."""

import math
import re
import sqlite3
import threading
from collections.abc import Sequence
from datetime import datetime

from loguru import logger

from nanomem.config.schema import RetrievalConfig
from nanomem.errors import StorageError
from nanomem.memory.records import RECORD_COLUMNS, filter_clause, row_to_record
from nanomem.memory.types import MemoryRecord, RecallOptions, ScoredMemory, to_millis, utcnow
from nanomem.memory.vectors import VectorIndex, distance_to_score
from nanomem.providers.base import EmbeddingProvider, check_vector

MIN_FETCH = 30
MAX_FETCH = 200
_FTS_STRIP = re.compile(r"[\"*()+,\-.:;^?{}!@#$%&|~`\[\]\\/<>=']")


def fetch_limit(top_k: int) -> int:
    """Candidates fetched from each sub-strategy."""
    return max(MIN_FETCH, min(MAX_FETCH, top_k * 3))


def build_fts_query(query: str) -> str:
    """OR together the sanitised words longer than two characters."""
    words = (_FTS_STRIP.sub("", word) for word in query.lower().split())
    return " OR ".join(f'"{word}"' for word in words if len(word) > 2)


def rrf_fuse(ranked: dict[str, Sequence[str]], k: int = 60) -> dict[str, tuple[float, set[str]]]:
    """
    Reciprocal Rank Fusion over several ranked id lists.

    Ranks are 1-based; a list that does not contain an id adds nothing.
    Returns id -> (fused score, names of the lists that contained it).
    """
    fused: dict[str, tuple[float, set[str]]] = {}
    for name, ids in ranked.items():
        for rank, memory_id in enumerate(ids, start=1):
            score, sources = fused.get(memory_id, (0.0, set()))
            fused[memory_id] = (score + 1.0 / (k + rank), sources | {name})
    return fused


def recency_decay(updated_at: datetime, half_life_days: float, now: datetime | None = None) -> float:
    age_days = max(0.0, ((now or utcnow()) - updated_at).total_seconds() / 86400)
    return math.exp(-math.log(2) / half_life_days * age_days)


class RetrievalEngine:
    """Ranks stored memories for a query."""

    def __init__(
        self,
        conn: sqlite3.Connection,
        lock: threading.RLock,
        vectors: VectorIndex,
        embedding: EmbeddingProvider | None,
        config: RetrievalConfig | None = None,
    ):
        self._conn = conn
        self._lock = lock
        self.vectors = vectors
        self.embedding = embedding
        self.config = config or RetrievalConfig()

    @property
    def vector_ready(self) -> bool:
        return self.embedding is not None and self.vectors.exists()

    async def recall(self, query: str, options: RecallOptions | None = None) -> list[ScoredMemory]:
        options = options or RecallOptions()
        top_k = options.top_k or self.config.default_top_k
        strategy = options.strategy or ("hybrid" if self.vector_ready else "fts")
        limit = fetch_limit(top_k)
        now = utcnow()

        # Expired and status-filtered rows never enter the candidate pools.
        where, params = filter_clause(
            "m",
            kinds=options.kinds,
            status=options.status,
            scope=options.scope,
            not_expired_at=to_millis(now),
        )

        if strategy == "vector":
            try:
                results = await self._vector_results(query, limit, where, params, options.min_score)
            except Exception as e:
                logger.warning(f"Vector recall failed, falling back to lexical: {e}")
                results = self._fts_results(query, limit, where, params)
        elif strategy == "fts":
            results = self._fts_results(query, limit, where, params)
        elif strategy == "hybrid":
            half_life = options.half_life_days or self.config.half_life_days
            results = await self._hybrid_results(query, limit, where, params, options.min_score, half_life, now)
        else:
            raise StorageError(f"Unknown recall strategy: {strategy!r}")

        min_confidence = self.config.confidence_floor if options.min_confidence is None else options.min_confidence
        results = [r for r in results if r.memory.confidence >= min_confidence]
        logger.debug(f"Recall '{query[:40]}' ({strategy}) -> {min(len(results), top_k)} result(s)")
        return results[:top_k]

    # ── Sub-strategies ──────────────────────────────────────────

    async def _vector_ranked(
        self,
        query: str,
        limit: int,
        where: str,
        params: list,
        min_score: float | None,
    ) -> list[tuple[str, float]]:
        if not self.vector_ready:
            raise StorageError("No embedding provider configured")
        vector = check_vector(await self.embedding.embed(query), self.embedding.dimensions)
        hits = [(mid, distance_to_score(d)) for mid, d in self.vectors.search(vector, limit, where, params)]
        if min_score is not None:
            hits = [(mid, score) for mid, score in hits if score >= min_score]
        return hits

    def _fts_ranked(self, query: str, limit: int, where: str, params: list) -> list[str]:
        match = build_fts_query(query)
        if not match:
            return []
        # bm25() is more negative for better matches: ascending order.
        with self._lock:
            rows = self._conn.execute(
                "SELECT m.id, bm25(memories_fts) AS score FROM memories_fts "
                "JOIN memories m ON m.seq = memories_fts.rowid "
                f"WHERE memories_fts MATCH ? AND {where} ORDER BY score ASC LIMIT ?",
                [match, *params, limit],
            ).fetchall()
        return [row[0] for row in rows]

    async def _vector_results(self, query, limit, where, params, min_score) -> list[ScoredMemory]:
        hits = await self._vector_ranked(query, limit, where, params, min_score)
        records = self.fetch([mid for mid, _ in hits])
        return [ScoredMemory(records[mid], score, "vector") for mid, score in hits if mid in records]

    def _fts_results(self, query, limit, where, params) -> list[ScoredMemory]:
        ids = self._fts_ranked(query, limit, where, params)
        records = self.fetch(ids)
        return [ScoredMemory(records[mid], 1.0 / rank, "fts") for rank, mid in enumerate(ids, start=1) if mid in records]

    async def _hybrid_results(
        self,
        query: str,
        limit: int,
        where: str,
        params: list,
        min_score: float | None,
        half_life_days: float,
        now: datetime,
    ) -> list[ScoredMemory]:
        vector_ids: list[str] = []
        if self.vector_ready:
            try:
                vector_ids = [mid for mid, _ in await self._vector_ranked(query, limit, where, params, min_score)]
            except Exception as e:
                logger.warning(f"Vector search failed, using lexical results only: {e}")
        lexical_ids = self._fts_ranked(query, limit, where, params)

        fused = rrf_fuse({"vector": vector_ids, "fts": lexical_ids}, self.config.rrf_k)
        records = self.fetch(list(fused))
        results = []
        for mid, (rrf, sources) in fused.items():
            record = records.get(mid)
            if record is None:
                continue
            score = rrf * recency_decay(record.updated_at, half_life_days, now)
            source = "hybrid" if len(sources) > 1 else next(iter(sources))
            results.append(ScoredMemory(record, score, source))
        results.sort(key=lambda r: (r.score, r.memory.updated_at), reverse=True)
        return results

    def fetch(self, ids: Sequence[str]) -> dict[str, MemoryRecord]:
        if not ids:
            return {}
        with self._lock:
            rows = self._conn.execute(
                f"SELECT {RECORD_COLUMNS} FROM memories WHERE id IN ({', '.join('?' * len(ids))})",
                list(ids),
            ).fetchall()
        return {row["id"]: row_to_record(row) for row in rows}
