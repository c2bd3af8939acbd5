"""Mapping between ``memories`` rows and record types, plus shared filter SQL."""

import json
import sqlite3
from typing import Any

from nanomem.memory.types import (
    EpisodeRecord,
    FactRecord,
    MemoryRecord,
    MemoryScope,
    MemorySource,
    ProcedureRecord,
    from_millis,
)

RECORD_COLUMNS = (
    "id, kind, title, content, summary, scope_type, scope_id, entity_refs, source_type, "
    "source_id, source_conversation_id, source_tool_name, importance, confidence, status, "
    "superseded_by, tags, content_hash, occurred_at, procedure_subtype, created_at, "
    "updated_at, last_seen_at, expires_at"
)


def qualified_columns(alias: str) -> str:
    return ", ".join(f"{alias}.{c.strip()}" for c in RECORD_COLUMNS.split(","))


def row_to_record(row: sqlite3.Row) -> MemoryRecord:
    common: dict[str, Any] = dict(
        id=row["id"],
        title=row["title"],
        content=row["content"],
        summary=row["summary"],
        scope=MemoryScope(type=row["scope_type"], id=row["scope_id"] or None),
        entity_refs=json.loads(row["entity_refs"] or "[]"),
        source=MemorySource(
            type=row["source_type"],
            id=row["source_id"],
            conversation_id=row["source_conversation_id"],
            tool_name=row["source_tool_name"],
        ),
        importance=row["importance"],
        confidence=row["confidence"],
        status=row["status"],
        tags=json.loads(row["tags"] or "[]"),
        content_hash=row["content_hash"],
        created_at=from_millis(row["created_at"]),
        updated_at=from_millis(row["updated_at"]),
        last_seen_at=from_millis(row["last_seen_at"]),
        expires_at=from_millis(row["expires_at"]),
        superseded_by=row["superseded_by"],
    )
    kind = row["kind"]
    if kind == "episode":
        return EpisodeRecord(occurred_at=from_millis(row["occurred_at"]), **common)
    if kind == "procedure":
        return ProcedureRecord(procedure_subtype=row["procedure_subtype"], **common)
    return FactRecord(**common)


def filter_clause(
    alias: str = "m",
    *,
    kinds: list[str] | None = None,
    status: list[str] | None = None,
    scope: MemoryScope | None = None,
    tags: list[str] | None = None,
    min_importance: float | None = None,
    min_confidence: float | None = None,
    not_expired_at: int | None = None,
) -> tuple[str, list[Any]]:
    """Build a WHERE fragment (``1=1`` when unfiltered) and its parameters."""
    where = ["1=1"]
    params: list[Any] = []

    def in_list(column: str, values: list[str]) -> None:
        where.append(f"{alias}.{column} IN ({', '.join('?' * len(values))})")
        params.extend(values)

    if kinds:
        in_list("kind", kinds)
    if status:
        in_list("status", status)
    if scope is not None:
        where.append(f"{alias}.scope_type = ? AND {alias}.scope_id = ?")
        params.extend([scope.type, scope.scope_id])
    if tags:
        where.append(
            f"EXISTS (SELECT 1 FROM json_each({alias}.tags) AS t WHERE t.value IN ({', '.join('?' * len(tags))}))"
        )
        params.extend(tags)
    if min_importance is not None:
        where.append(f"{alias}.importance >= ?")
        params.append(min_importance)
    if min_confidence is not None:
        where.append(f"{alias}.confidence >= ?")
        params.append(min_confidence)
    if not_expired_at is not None:
        where.append(f"({alias}.expires_at IS NULL OR {alias}.expires_at > ?)")
        params.append(not_expired_at)
    return " AND ".join(where), params
