"""Types for the memory system."""

import hashlib
import re
import unicodedata
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import ClassVar, Literal, get_args

MemoryKind = Literal["fact", "episode", "procedure"]
MemoryStatus = Literal["candidate", "active", "archived", "superseded"]
ProcedureSubtype = Literal["behavioral", "workflow", "constraint"]
SourceType = Literal["user_message", "assistant_message", "tool_result", "system"]
ScopeType = Literal["global", "project", "thread", "entity"]
RecallStrategy = Literal["vector", "fts", "hybrid"]
MatchSource = Literal["vector", "fts", "hybrid"]

MEMORY_KINDS: tuple[str, ...] = get_args(MemoryKind)
MEMORY_STATUSES: tuple[str, ...] = get_args(MemoryStatus)
PROCEDURE_SUBTYPES: tuple[str, ...] = get_args(ProcedureSubtype)
SOURCE_TYPES: tuple[str, ...] = get_args(SourceType)
SCOPE_TYPES: tuple[str, ...] = get_args(ScopeType)

LIVE_STATUSES: tuple[str, ...] = ("active", "candidate")


class RetentionReason(str, Enum):
    """Why a classified memory was (or was not) kept."""

    DURABLE_FACT = "durable_fact"
    RELEVANT_EPISODE = "relevant_episode"
    BEHAVIORAL_INSTRUCTION = "behavioral_instruction"
    WORKFLOW_PROCEDURE = "workflow_procedure"
    CONSTRAINT_PROCEDURE = "constraint_procedure"
    EPHEMERAL_NOISE = "ephemeral_noise"
    DUPLICATE_CANDIDATE = "duplicate_candidate"
    LOW_CONFIDENCE = "low_confidence"
    AMBIGUOUS = "ambiguous"


# ── Time and hashing helpers ────────────────────────────────────────


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_millis(value: datetime | None) -> int | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


def from_millis(value: int | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


_QUOTE_FOLD = str.maketrans({"‘": "'", "’": "'", "′": "'", "“": '"', "”": '"'})


def normalize_for_hash(text: str) -> str:
    """NFC, straight quotes, lowercase, collapsed whitespace."""
    text = unicodedata.normalize("NFC", text).translate(_QUOTE_FOLD).lower()
    return re.sub(r"\s+", " ", text).strip()


def compute_content_hash(text: str) -> str:
    return hashlib.sha256(normalize_for_hash(text).encode("utf-8")).hexdigest()


# ── Scope and provenance ────────────────────────────────────────────


@dataclass(frozen=True)
class MemoryScope:
    """Applicability tag. Filters recall, never changes ranking."""

    type: ScopeType = "global"
    id: str | None = None

    @classmethod
    def global_scope(cls) -> "MemoryScope":
        return cls()

    @classmethod
    def project(cls, project_id: str) -> "MemoryScope":
        return cls(type="project", id=project_id)

    @classmethod
    def thread(cls, thread_id: str) -> "MemoryScope":
        return cls(type="thread", id=thread_id)

    @classmethod
    def entity(cls, entity_id: str) -> "MemoryScope":
        return cls(type="entity", id=entity_id)

    @property
    def scope_id(self) -> str:
        """Column value; global scope stores an empty id."""
        return self.id or ""


@dataclass(frozen=True)
class MemorySource:
    """Where a memory came from."""

    type: SourceType = "system"
    id: str | None = None
    conversation_id: str | None = None
    tool_name: str | None = None


# ── Inputs (one variant per kind) ───────────────────────────────────


@dataclass(kw_only=True)
class BaseMemoryInput:
    """Fields shared by every kind of new memory."""

    kind: ClassVar[MemoryKind]

    title: str
    content: str
    summary: str | None = None
    scope: MemoryScope = field(default_factory=MemoryScope)
    entity_refs: list[str] = field(default_factory=list)
    source: MemorySource = field(default_factory=MemorySource)
    importance: float = 0.5
    confidence: float = 0.7
    status: MemoryStatus | None = None  # None: derived from confidence
    tags: list[str] = field(default_factory=list)
    expires_at: datetime | None = None


@dataclass(kw_only=True)
class FactInput(BaseMemoryInput):
    kind: ClassVar[MemoryKind] = "fact"


@dataclass(kw_only=True)
class EpisodeInput(BaseMemoryInput):
    kind: ClassVar[MemoryKind] = "episode"

    occurred_at: datetime | None = None  # None: time of storage


@dataclass(kw_only=True)
class ProcedureInput(BaseMemoryInput):
    kind: ClassVar[MemoryKind] = "procedure"

    procedure_subtype: ProcedureSubtype


MemoryInput = FactInput | EpisodeInput | ProcedureInput


def make_input(
    kind: str,
    *,
    occurred_at: datetime | None = None,
    procedure_subtype: str | None = None,
    **fields,
) -> MemoryInput:
    """Build the input variant for ``kind``, keeping only its own extra field."""
    if kind == "fact":
        return FactInput(**fields)
    if kind == "episode":
        return EpisodeInput(occurred_at=occurred_at, **fields)
    if kind == "procedure":
        return ProcedureInput(procedure_subtype=procedure_subtype, **fields)
    raise ValueError(f"Unknown memory kind: {kind!r}")


# ── Records (one variant per kind) ──────────────────────────────────


@dataclass(kw_only=True)
class BaseMemoryRecord:
    """A persisted memory."""

    kind: ClassVar[MemoryKind]

    id: str
    title: str
    content: str
    summary: str
    scope: MemoryScope
    entity_refs: list[str]
    source: MemorySource
    importance: float
    confidence: float
    status: MemoryStatus
    tags: list[str]
    content_hash: str
    created_at: datetime
    updated_at: datetime
    last_seen_at: datetime
    expires_at: datetime | None = None
    superseded_by: str | None = None

    def is_expired(self, now: datetime | None = None) -> bool:
        return self.expires_at is not None and self.expires_at <= (now or utcnow())


@dataclass(kw_only=True)
class FactRecord(BaseMemoryRecord):
    kind: ClassVar[MemoryKind] = "fact"


@dataclass(kw_only=True)
class EpisodeRecord(BaseMemoryRecord):
    kind: ClassVar[MemoryKind] = "episode"

    occurred_at: datetime


@dataclass(kw_only=True)
class ProcedureRecord(BaseMemoryRecord):
    kind: ClassVar[MemoryKind] = "procedure"

    procedure_subtype: ProcedureSubtype


MemoryRecord = FactRecord | EpisodeRecord | ProcedureRecord


# ── Query types ─────────────────────────────────────────────────────


@dataclass
class MemoryPatch:
    """Partial update. ``None`` leaves a field unchanged."""

    title: str | None = None
    content: str | None = None
    summary: str | None = None
    tags: list[str] | None = None
    entity_refs: list[str] | None = None
    importance: float | None = None
    confidence: float | None = None
    status: MemoryStatus | None = None
    expires_at: datetime | None = None
    clear_expiry: bool = False


@dataclass
class MemoryFilter:
    kinds: list[MemoryKind] | None = None
    status: list[MemoryStatus] | None = None
    scope: MemoryScope | None = None
    tags: list[str] | None = None  # any of
    min_importance: float | None = None
    min_confidence: float | None = None
    limit: int | None = None


@dataclass
class RecallOptions:
    kinds: list[MemoryKind] | None = None
    status: list[MemoryStatus] = field(default_factory=lambda: ["active"])
    top_k: int | None = None
    strategy: RecallStrategy | None = None
    min_confidence: float | None = None
    min_score: float | None = None
    half_life_days: float | None = None
    scope: MemoryScope | None = None


@dataclass
class ScoredMemory:
    memory: MemoryRecord
    score: float
    match_source: MatchSource


# ── Extraction results ──────────────────────────────────────────────


@dataclass
class FactCandidate:
    """A pattern match from message text, not yet persisted."""

    content: str
    slot: Literal["name", "age", "location", "other"]
    slot_value: str
    lang: str
    kind: MemoryKind = "fact"
    source: str = "regex"


@dataclass
class RetentionDecision:
    should_store: bool
    reason: RetentionReason
    initial_status: MemoryStatus


@dataclass
class ClassifiedMemory:
    """A memory proposal plus the decision about keeping it."""

    input: MemoryInput
    decision: RetentionDecision
    origin: Literal["classifier", "regex"] = "classifier"
    slot: str | None = None
