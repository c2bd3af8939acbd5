"""Tests for the extraction orchestrator."""

import asyncio
import json
from unittest.mock import AsyncMock, Mock

from nanomem.bus.events import ConversationEvent
from nanomem.bus.queue import MemoryEventBus
from nanomem.errors import Result, StorageError
from nanomem.memory.classifier import MemoryClassifier
from nanomem.memory.orchestrator import ConversationCache, MemoryExtractionOrchestrator
from nanomem.memory.types import MemoryFilter
from tests.fakes import ScriptedProvider


def user(content, conversation_id="c1", message_id=None):
    kwargs = {"message_id": message_id} if message_id else {}
    return ConversationEvent(role="user", content=content, conversation_id=conversation_id, **kwargs)


def classifier_replying(*items, error=None):
    return MemoryClassifier(ScriptedProvider([json.dumps(list(items))], error=error))


def item(content, kind="fact", **extra):
    data = {"kind": kind, "title": content[:30], "content": content, "confidence": "stated", "should_store": True}
    data.update(extra)
    return data


async def active_facts(store):
    return (await store.list(MemoryFilter(kinds=["fact"], status=["active"]))).unwrap()


# ============================================================================
# Pipeline
# ============================================================================


class TestProcess:

    async def test_pattern_fact_stored_with_slot_tag(self, lexical_store):
        orch = MemoryExtractionOrchestrator(lexical_store)
        stored = await orch.process(user("Hi there, my name is Alice"))
        assert [r.content for r in stored] == ["User's name is Alice"]
        record = stored[0]
        assert record.tags == ["name"]
        assert record.status == "active"
        assert record.confidence == 0.85
        assert record.source.type == "user_message"
        assert record.source.conversation_id == "c1"

    async def test_slot_value_change_supersedes(self, lexical_store):
        orch = MemoryExtractionOrchestrator(lexical_store)
        first = (await orch.process(user("My name is Alice")))[0]
        second = (await orch.process(user("Actually, call me Bob")))[0]

        facts = await active_facts(lexical_store)
        assert [f.content for f in facts] == ["User's name is Bob"]
        old = (await lexical_store.get(first.id)).unwrap()
        assert old.status == "superseded"
        assert old.superseded_by == second.id

    async def test_repeated_slot_value_is_idempotent(self, lexical_store):
        orch = MemoryExtractionOrchestrator(lexical_store)
        first = (await orch.process(user("I live in Lisbon", conversation_id="a")))[0]
        again = (await orch.process(user("I live in Lisbon", conversation_id="b")))[0]
        assert again.id == first.id
        assert len(await active_facts(lexical_store)) == 1

    async def test_same_message_processed_once(self, lexical_store):
        orch = MemoryExtractionOrchestrator(lexical_store)
        event = user("My name is Alice", message_id="m1")
        assert len(await orch.process(event)) == 1
        assert await orch.process(event) == []

    async def test_recent_content_skipped_in_conversation(self, lexical_store):
        orch = MemoryExtractionOrchestrator(lexical_store)
        first = (await orch.process(user("Remember that the office wifi is called Basement")))[0]
        assert await orch.process(user("Remember that the office wifi is called Basement")) == []
        record = (await lexical_store.get(first.id)).unwrap()
        assert record.last_seen_at == first.last_seen_at

    async def test_classifier_wins_on_identical_content(self, lexical_store):
        classifier = classifier_replying(item("User's name is Alice", confidence="certain", tags=["identity"]))
        orch = MemoryExtractionOrchestrator(lexical_store, classifier)
        stored = await orch.process(user("My name is Alice"))
        assert len(stored) == 1
        assert stored[0].confidence == 0.95
        assert stored[0].tags == ["identity"]

    async def test_classifier_and_patterns_combine(self, lexical_store):
        classifier = classifier_replying(
            item("Always answer in British English", kind="procedure", procedure_subtype="behavioral"),
        )
        orch = MemoryExtractionOrchestrator(lexical_store, classifier)
        stored = await orch.process(user("My name is Alice. Always answer me in British English."))
        assert sorted(r.kind for r in stored) == ["fact", "procedure"]

    async def test_rejected_items_not_stored(self, lexical_store):
        classifier = classifier_replying(item("User said hello", should_store=False, rejection_reason="ephemeral_noise"))
        orch = MemoryExtractionOrchestrator(lexical_store, classifier)
        assert await orch.process(user("Hello there assistant")) == []
        assert (await lexical_store.list()).unwrap() == []

    async def test_assistant_cannot_assert_user_facts(self, lexical_store):
        classifier = classifier_replying(
            item("User's name is Claude"),
            item("Always answer in British English", kind="procedure", procedure_subtype="behavioral"),
        )
        orch = MemoryExtractionOrchestrator(lexical_store, classifier)
        event = ConversationEvent(
            role="assistant",
            content="My name is Claude. From now on I will always answer your questions in British English, as agreed.",
            conversation_id="c1",
        )
        stored = await orch.process(event)
        assert [r.kind for r in stored] == ["procedure"]
        assert stored[0].source.type == "assistant_message"
        assert await active_facts(lexical_store) == []


# ============================================================================
# Error isolation
# ============================================================================


class TestErrorIsolation:

    async def test_classifier_failure_keeps_pattern_facts(self, lexical_store):
        classifier = classifier_replying(error=RuntimeError("provider down"))
        orch = MemoryExtractionOrchestrator(lexical_store, classifier)
        stored = await orch.process(user("My name is Alice"))
        assert [r.content for r in stored] == ["User's name is Alice"]

    async def test_one_failed_write_does_not_block_others(self, lexical_store, monkeypatch):
        original = lexical_store.store

        async def flaky(memory):
            if "boom" in memory.content:
                return Result.failure(StorageError("disk full"))
            return await original(memory)

        monkeypatch.setattr(lexical_store, "store", flaky)
        classifier = classifier_replying(item("User keeps a boom box at home"), item("User keeps bees in the garden"))
        orch = MemoryExtractionOrchestrator(lexical_store, classifier)
        stored = await orch.process(user("I have a boom box and some bees"))
        assert [r.content for r in stored] == ["User keeps bees in the garden"]

    async def test_handle_never_raises(self, lexical_store):
        classifier = Mock()
        classifier.classify = AsyncMock(side_effect=RuntimeError("unexpected"))
        orch = MemoryExtractionOrchestrator(lexical_store, classifier)
        await orch.handle(user("My name is Alice"))
        assert (await lexical_store.list()).unwrap() == []


# ============================================================================
# Event plumbing
# ============================================================================


class TestEventPlumbing:

    async def test_bus_dispatch(self, lexical_store):
        bus = MemoryEventBus()
        orch = MemoryExtractionOrchestrator(lexical_store)
        orch.start(bus)
        orch.observe(user("My name is Alice"))
        orch.observe(user("I live in Lisbon"))
        await asyncio.wait_for(bus.drain(), timeout=5.0)
        await orch.stop()
        assert len(await active_facts(lexical_store)) == 2

    async def test_observe_without_bus(self, lexical_store):
        orch = MemoryExtractionOrchestrator(lexical_store)
        orch.observe(user("My name is Alice"))
        await orch.stop()
        assert len(await active_facts(lexical_store)) == 1


class TestConversationCache:

    def test_conversations_are_bounded(self):
        cache = ConversationCache(max_conversations=2)
        for conversation in ("a", "b", "c"):
            cache.mark_processed(conversation, "m1")
        assert len(cache) == 2
        assert not cache.is_processed("a", "m1")
        assert cache.is_processed("c", "m1")

    def test_recently_used_conversation_survives(self):
        cache = ConversationCache(max_conversations=2)
        cache.mark_processed("a", "m1")
        cache.mark_processed("b", "m1")
        cache.mark_processed("a", "m2")
        cache.mark_processed("c", "m1")
        assert cache.is_processed("a", "m2")
        assert not cache.is_processed("b", "m1")

    def test_hashes_are_bounded(self):
        cache = ConversationCache(max_hashes=2)
        for h in ("h1", "h2", "h3"):
            cache.remember_content("a", h)
        assert not cache.seen_content("a", "h1")
        assert cache.seen_content("a", "h3")
