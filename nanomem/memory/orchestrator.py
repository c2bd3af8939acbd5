"""Extraction pipeline: conversation events in, consistent memories out."""

from __future__ import annotations

import asyncio
from collections import OrderedDict
from dataclasses import dataclass, field

from loguru import logger

from nanomem.bus.events import ConversationEvent
from nanomem.bus.queue import MemoryEventBus
from nanomem.config.schema import ExtractionConfig
from nanomem.memory.candidates import extract_candidates
from nanomem.memory.classifier import MemoryClassifier
from nanomem.memory.guard import guard
from nanomem.memory.store import SqliteMemoryStore
from nanomem.memory.types import (
    ClassifiedMemory,
    FactCandidate,
    FactInput,
    MemoryFilter,
    MemoryRecord,
    MemorySource,
    RetentionDecision,
    RetentionReason,
    compute_content_hash,
)

SLOT_TITLES = {"name": "User name", "age": "User age", "location": "User location"}
REGEX_IMPORTANCE = 0.7
REGEX_CONFIDENCE = 0.85


@dataclass
class ConversationMarker:
    last_message_id: str | None = None
    hashes: OrderedDict[str, None] = field(default_factory=OrderedDict)


class ConversationCache:
    """Bounded LRU of conversation id -> last processed message and recent content hashes."""

    def __init__(self, max_conversations: int = 256, max_hashes: int = 128):
        self.max_conversations = max_conversations
        self.max_hashes = max_hashes
        self._entries: OrderedDict[str, ConversationMarker] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def _marker(self, conversation_id: str) -> ConversationMarker:
        marker = self._entries.get(conversation_id)
        if marker is None:
            marker = self._entries[conversation_id] = ConversationMarker()
            while len(self._entries) > self.max_conversations:
                self._entries.popitem(last=False)
        else:
            self._entries.move_to_end(conversation_id)
        return marker

    def is_processed(self, conversation_id: str, message_id: str) -> bool:
        marker = self._entries.get(conversation_id)
        return marker is not None and marker.last_message_id == message_id

    def mark_processed(self, conversation_id: str, message_id: str) -> None:
        self._marker(conversation_id).last_message_id = message_id

    def seen_content(self, conversation_id: str, content_hash: str) -> bool:
        marker = self._entries.get(conversation_id)
        return marker is not None and content_hash in marker.hashes

    def remember_content(self, conversation_id: str, content_hash: str) -> None:
        hashes = self._marker(conversation_id).hashes
        hashes[content_hash] = None
        hashes.move_to_end(content_hash)
        while len(hashes) > self.max_hashes:
            hashes.popitem(last=False)


class MemoryExtractionOrchestrator:
    """
    Consumes conversation events and persists what is worth remembering.

    Runs the pattern extractor and the LLM classifier concurrently, merges
    their output (classifier wins on identical content) and stores the
    survivors. Nothing raised in here reaches the producer of the event.
    """

    def __init__(
        self,
        store: SqliteMemoryStore,
        classifier: MemoryClassifier | None = None,
        config: ExtractionConfig | None = None,
    ):
        self.store = store
        self.classifier = classifier
        self.config = config or ExtractionConfig()
        self.cache = ConversationCache(self.config.cache_conversations, self.config.cache_hashes_per_conversation)
        self._bus: MemoryEventBus | None = None
        self._dispatcher: asyncio.Task | None = None
        self._background: set[asyncio.Task] = set()

    # ── Event plumbing ──────────────────────────────────────────

    def start(self, bus: MemoryEventBus) -> asyncio.Task:
        """Subscribe to ``bus`` and run its dispatcher as a background task."""
        self._bus = bus
        bus.subscribe(self.handle)
        self._dispatcher = asyncio.create_task(bus.dispatch())
        logger.info("Memory extraction orchestrator started")
        return self._dispatcher

    async def stop(self) -> None:
        if self._bus is not None:
            self._bus.stop()
        if self._dispatcher is not None:
            self._dispatcher.cancel()
            await asyncio.gather(self._dispatcher, return_exceptions=True)
            self._dispatcher = None
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        logger.info("Memory extraction orchestrator stopped")

    def observe(self, event: ConversationEvent) -> None:
        """Fire-and-forget: publish to the bus, or spawn a task when there is none."""
        if self._bus is not None:
            self._bus.publish_nowait(event)
            return
        task = asyncio.create_task(self.handle(event))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def handle(self, event: ConversationEvent) -> None:
        """Process one event; every error is logged and contained."""
        try:
            await self.process(event)
        except Exception:
            logger.exception(f"Memory extraction failed for message {event.message_id} in {event.conversation_id}")

    # ── Pipeline ────────────────────────────────────────────────

    async def process(self, event: ConversationEvent) -> list[MemoryRecord]:
        if self.cache.is_processed(event.conversation_id, event.message_id):
            logger.debug(f"Message {event.message_id} already processed, skipping")
            return []
        self.cache.mark_processed(event.conversation_id, event.message_id)

        source = MemorySource(type=event.source_type, id=event.message_id, conversation_id=event.conversation_id)
        candidates, classified = await asyncio.gather(
            self._extract(event),
            self._classify(event, source),
        )
        merged = self.merge(classified, candidates, event.role, source)

        to_store: list[ClassifiedMemory] = []
        for item in merged:
            if not item.decision.should_store:
                logger.debug(f"Not storing '{item.input.content[:60]}': {item.decision.reason.value}")
                continue
            content_hash = compute_content_hash(item.input.content)
            if self.cache.seen_content(event.conversation_id, content_hash):
                logger.debug(f"Recently stored in this conversation, skipping: {item.input.content[:60]}")
                continue
            to_store.append(item)

        outcomes = await asyncio.gather(*(self._persist(item) for item in to_store), return_exceptions=True)
        stored: list[MemoryRecord] = []
        for item, outcome in zip(to_store, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(f"Failed to store {item.origin} {item.input.kind} '{item.input.content[:60]}': {outcome}")
                continue
            self.cache.remember_content(event.conversation_id, outcome.content_hash)
            self.cache.remember_content(event.conversation_id, compute_content_hash(item.input.content))
            logger.info(f"Remembered {outcome.kind} {outcome.id} ({item.decision.reason.value}): {outcome.content[:60]}")
            stored.append(outcome)
        return stored

    async def _extract(self, event: ConversationEvent) -> list[FactCandidate]:
        if event.role != "user":
            return []
        return await asyncio.to_thread(extract_candidates, event.content, event.role)

    async def _classify(self, event: ConversationEvent, source: MemorySource) -> list[ClassifiedMemory]:
        if self.classifier is None:
            return []
        return await self.classifier.classify(event.content, event.role, source)

    def merge(
        self,
        classified: list[ClassifiedMemory],
        candidates: list[FactCandidate],
        role: str,
        source: MemorySource,
    ) -> list[ClassifiedMemory]:
        """Classifier output first; pattern facts fill in content it did not produce."""
        # Facts about the user only come from the user.
        merged = [c for c in classified if not (role == "assistant" and c.input.kind == "fact")]
        claimed = {c.input.content.strip().lower() for c in merged}

        for candidate in candidates:
            key = candidate.content.strip().lower()
            if key in claimed:
                continue
            verdict = guard(candidate.content, "fact")
            if not verdict.passed:
                logger.debug(f"Pattern candidate rejected ({verdict.reason}): {candidate.content}")
                continue
            slot = candidate.slot if candidate.slot != "other" else None
            memory = FactInput(
                title=SLOT_TITLES.get(candidate.slot, candidate.content[:80]),
                content=candidate.content,
                source=source,
                importance=REGEX_IMPORTANCE,
                confidence=REGEX_CONFIDENCE,
                tags=[slot] if slot else [],
                status="active",
                expires_at=verdict.expires_at,
            )
            decision = RetentionDecision(True, RetentionReason.DURABLE_FACT, "active")
            merged.append(ClassifiedMemory(memory, decision, origin="regex", slot=slot))
            claimed.add(key)
        return merged

    async def _persist(self, item: ClassifiedMemory) -> MemoryRecord:
        if item.slot is None:
            return (await self.store.store(item.input)).unwrap()
        return await self._store_slot(item)

    async def _store_slot(self, item: ClassifiedMemory) -> MemoryRecord:
        """One active fact per identity slot: a new value supersedes the old ones."""
        current = (await self.store.list(MemoryFilter(
            kinds=["fact"], status=["active"], tags=[item.slot], scope=item.input.scope,
        ))).unwrap()
        new_hash = compute_content_hash(item.input.content)
        stale = [record for record in current if record.content_hash != new_hash]
        if not stale:
            return (await self.store.store(item.input)).unwrap()

        record = None
        for old in stale:
            record = (await self.store.supersede(old.id, item.input)).unwrap()
            logger.info(f"Slot '{item.slot}' changed: {old.content!r} -> {record.content!r}")
        return record
