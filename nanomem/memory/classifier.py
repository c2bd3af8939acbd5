"""LLM classification of a message into typed memories, behind a steel gate."""

import asyncio
import json
import re
from datetime import datetime, timedelta
from typing import Any

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from nanomem.config.schema import ExtractionConfig
from nanomem.errors import ClassificationError, ProviderCallError
from nanomem.memory.guard import guard, has_episode_verb
from nanomem.memory.types import (
    MEMORY_KINDS,
    PROCEDURE_SUBTYPES,
    ClassifiedMemory,
    MemorySource,
    RetentionDecision,
    RetentionReason,
    make_input,
    utcnow,
)
from nanomem.providers.base import Provider, complete_text

CLASSIFY_PROMPT = """You decide what a personal assistant should remember long-term from one message.

<message role="{role}">
{message}
</message>

Return a JSON array (possibly empty). Each element:
{{"kind": "fact|episode|procedure",
  "title": "short label",
  "content": "one self-contained sentence, third person ('User ...')",
  "summary": "optional shorter form",
  "importance": "trivial|standard|significant|core|critical",
  "confidence": "speculative|likely|stated|certain",
  "tags": ["up to 4 lowercase tags"],
  "should_store": true,
  "rejection_reason": "ephemeral_noise|duplicate_candidate|low_confidence|ambiguous (only when should_store is false)",
  "procedure_subtype": "behavioral|workflow|constraint (procedures only)",
  "occurred_at_hint": "now|recent|past (episodes only)"}}

- fact: a durable truth about the user or their world.
- episode: something that happened (deployed, fixed, decided ...).
- procedure: how the assistant should behave or work (always/never/must ...).
Skip greetings, questions and small talk.

JSON:"""

IMPORTANCE_BUCKETS = {"trivial": 0.3, "standard": 0.5, "significant": 0.7, "core": 0.85, "critical": 1.0}
CONFIDENCE_BUCKETS = {"speculative": 0.4, "likely": 0.6, "stated": 0.8, "certain": 0.95}
DEFAULT_IMPORTANCE = 0.5
DEFAULT_CONFIDENCE = 0.7

MIN_CONTENT_LENGTH = 5
MIN_TITLE_LENGTH = 2
MAX_TITLE_LENGTH = 80
MAX_SUMMARY_LENGTH = 200
MAX_TAGS = 4

REJECTION_REASONS = {
    RetentionReason.EPHEMERAL_NOISE,
    RetentionReason.DUPLICATE_CANDIDATE,
    RetentionReason.LOW_CONFIDENCE,
    RetentionReason.AMBIGUOUS,
}

PROCEDURE_REASONS = {
    "behavioral": RetentionReason.BEHAVIORAL_INSTRUCTION,
    "workflow": RetentionReason.WORKFLOW_PROCEDURE,
    "constraint": RetentionReason.CONSTRAINT_PROCEDURE,
}

OCCURRED_OFFSETS = {"now": timedelta(0), "recent": timedelta(days=1), "past": timedelta(days=7)}


class ClassifiedItemSchema(BaseModel):
    """Pydantic schema for one element of the classifier's JSON array."""

    model_config = ConfigDict(extra="ignore")

    kind: str = ""
    title: str = ""
    content: str = ""
    summary: str | None = None
    importance: str | None = None
    confidence: str | None = None
    tags: list[str] = Field(default_factory=list)
    should_store: bool = True
    rejection_reason: str | None = None
    procedure_subtype: str | None = None
    occurred_at_hint: str | None = None

    @field_validator("kind", "title", "content", mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> str:
        return "" if value is None else str(value).strip()

    @field_validator(
        "summary", "importance", "confidence", "rejection_reason", "procedure_subtype", "occurred_at_hint",
        mode="before",
    )
    @classmethod
    def _coerce_optional(cls, value: Any) -> str | None:
        if value is None or isinstance(value, (dict, list)):
            return None
        return str(value).strip() or None

    @field_validator("tags", mode="before")
    @classmethod
    def _coerce_tags(cls, value: Any) -> list[str]:
        if not isinstance(value, list):
            return []
        return [str(tag).strip() for tag in value if str(tag).strip()]


def parse_classifier_output(raw: str) -> list[Any]:
    """
    Pull the JSON array out of a model reply.

    Tolerates markdown fences, prose around the array and trailing commas.
    Returns an empty list when nothing parseable is found.
    """
    text = raw.strip()
    fence = re.search(r"```(?:json)?\s*(.*?)```", text, re.DOTALL | re.IGNORECASE)
    if fence:
        text = fence.group(1).strip()
    start, end = text.find("["), text.rfind("]")
    if start == -1 or end <= start:
        return []
    text = re.sub(r",\s*([\]}])", r"\1", text[start:end + 1])
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        logger.warning(f"Unparseable classifier output: {e}")
        return []
    return data if isinstance(data, list) else []


class MemoryClassifier:
    """Turns one message into classified memories with a single LLM call."""

    def __init__(self, provider: Provider, config: ExtractionConfig | None = None):
        self.provider = provider
        self.config = config or ExtractionConfig()

    def should_classify(self, text: str, role: str) -> bool:
        """Role-dependent length bar: user facts are often short."""
        minimum = self.config.min_user_length if role == "user" else self.config.min_assistant_length
        return len(text.strip()) >= minimum

    async def classify(
        self,
        text: str,
        role: str = "user",
        source: MemorySource | None = None,
        signal: asyncio.Event | None = None,
    ) -> list[ClassifiedMemory]:
        """Classify a message. Never raises: failures yield no candidates."""
        if not self.should_classify(text, role):
            return []
        try:
            raw = await self._call_model(text, role, signal)
        except ClassificationError as e:
            logger.warning(f"Classification skipped: {e}")
            return []

        source = source or MemorySource(type="user_message" if role == "user" else "assistant_message")
        now = utcnow()
        results: list[ClassifiedMemory] = []
        for item in parse_classifier_output(raw)[:self.config.max_candidates]:
            if not isinstance(item, dict):
                continue
            try:
                schema = ClassifiedItemSchema(**item)
            except ValidationError as e:
                logger.debug(f"Dropping malformed classifier item: {e.errors()[0].get('msg')}")
                continue
            classified = self.steel_gate(schema, source, now)
            if classified is not None:
                results.append(classified)
        logger.debug(f"Classifier produced {len(results)} item(s) from {role} message")
        return results

    async def _call_model(self, text: str, role: str, signal: asyncio.Event | None) -> str:
        messages = [{"role": "user", "content": CLASSIFY_PROMPT.format(role=role, message=self._sanitize_for_prompt(text))}]
        try:
            return await complete_text(self.provider, messages, timeout=self.config.timeout_seconds, signal=signal)
        except ProviderCallError as e:
            raise ClassificationError(str(e)) from e

    def _sanitize_for_prompt(self, text: str) -> str:
        """Sanitize user content before embedding in prompts."""
        text = text.replace("```", "'''").replace("<", "&lt;").replace(">", "&gt;")
        return text[:4000] + "..." if len(text) > 4000 else text

    def steel_gate(
        self,
        item: ClassifiedItemSchema,
        source: MemorySource,
        now: datetime | None = None,
    ) -> ClassifiedMemory | None:
        """Deterministic validation; the model's claims are untrusted input."""
        now = now or utcnow()
        kind = item.kind.lower()
        if kind not in MEMORY_KINDS:
            logger.debug(f"Steel gate: unknown kind {item.kind!r}")
            return None
        if len(item.content) < MIN_CONTENT_LENGTH or len(item.title) < MIN_TITLE_LENGTH:
            logger.debug("Steel gate: empty or undersized content/title")
            return None

        subtype = (item.procedure_subtype or "").lower()
        importance = IMPORTANCE_BUCKETS.get((item.importance or "").lower(), DEFAULT_IMPORTANCE)
        confidence = CONFIDENCE_BUCKETS.get((item.confidence or "").lower(), DEFAULT_CONFIDENCE)
        fields = dict(
            title=item.title[:MAX_TITLE_LENGTH],
            content=item.content,
            summary=item.summary[:MAX_SUMMARY_LENGTH] if item.summary else None,
            source=source,
            importance=importance,
            confidence=confidence,
            tags=item.tags[:MAX_TAGS],
        )

        if not item.should_store:
            reason = _rejection_reason(item.rejection_reason)
            memory = make_input(
                kind,
                occurred_at=now if kind == "episode" else None,
                procedure_subtype=subtype if subtype in PROCEDURE_SUBTYPES else "behavioral",
                **fields,
            )
            return ClassifiedMemory(memory, RetentionDecision(False, reason, "candidate"))

        if kind == "procedure" and subtype not in PROCEDURE_SUBTYPES:
            logger.debug(f"Steel gate: invalid procedure_subtype {item.procedure_subtype!r}")
            return None
        if kind == "episode" and not has_episode_verb(item.content):
            logger.debug(f"Steel gate: episode without action verb: {item.content[:60]}")
            return None
        verdict = guard(item.content, kind, now)
        if not verdict.passed:
            logger.debug(f"Steel gate: firewall rejected ({verdict.reason}): {item.content[:60]}")
            return None

        occurred_at = None
        if kind == "episode":
            occurred_at = now - OCCURRED_OFFSETS.get((item.occurred_at_hint or "").lower(), timedelta(0))
        status = "active" if confidence >= self.config.active_confidence_threshold else "candidate"
        memory = make_input(
            kind,
            occurred_at=occurred_at,
            procedure_subtype=subtype or None,
            status=status,
            expires_at=verdict.expires_at,
            **fields,
        )
        return ClassifiedMemory(memory, RetentionDecision(True, _retention_reason(kind, subtype), status))


def _rejection_reason(value: str | None) -> RetentionReason:
    try:
        reason = RetentionReason((value or "").lower())
    except ValueError:
        return RetentionReason.EPHEMERAL_NOISE
    return reason if reason in REJECTION_REASONS else RetentionReason.EPHEMERAL_NOISE


def _retention_reason(kind: str, subtype: str) -> RetentionReason:
    if kind == "episode":
        return RetentionReason.RELEVANT_EPISODE
    if kind == "procedure":
        return PROCEDURE_REASONS[subtype]
    return RetentionReason.DURABLE_FACT
