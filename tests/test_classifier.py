"""Tests for the LLM classifier and its steel gate."""

import asyncio
import json
from datetime import datetime, timedelta, timezone

from nanomem.config.schema import ExtractionConfig
from nanomem.memory.classifier import (
    ClassifiedItemSchema,
    MemoryClassifier,
    parse_classifier_output,
)
from nanomem.memory.types import EpisodeInput, FactInput, MemorySource, ProcedureInput, RetentionReason
from tests.fakes import ScriptedProvider

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
SOURCE = MemorySource(type="user_message", id="m1", conversation_id="c1")


def item(**overrides):
    data = {
        "kind": "fact",
        "title": "Editor",
        "content": "User edits code in Neovim",
        "importance": "significant",
        "confidence": "stated",
        "tags": ["tools"],
        "should_store": True,
    }
    data.update(overrides)
    return data


# ============================================================================
# Output parsing
# ============================================================================


class TestParseClassifierOutput:

    def test_plain_array(self):
        assert parse_classifier_output('[{"kind": "fact"}]') == [{"kind": "fact"}]

    def test_markdown_fence_and_prose(self):
        raw = 'Here you go:\n```json\n[{"kind": "fact"}]\n```\nDone.'
        assert parse_classifier_output(raw) == [{"kind": "fact"}]

    def test_trailing_commas(self):
        raw = '[{"kind": "fact", "tags": ["a", "b",],},]'
        assert parse_classifier_output(raw) == [{"kind": "fact", "tags": ["a", "b"]}]

    def test_garbage_yields_empty(self):
        assert parse_classifier_output("I cannot help with that") == []
        assert parse_classifier_output("[not json]") == []
        assert parse_classifier_output("") == []


# ============================================================================
# Steel gate
# ============================================================================


class TestSteelGate:

    def setup_method(self):
        self.classifier = MemoryClassifier(ScriptedProvider())

    def gate(self, **overrides):
        return self.classifier.steel_gate(ClassifiedItemSchema(**item(**overrides)), SOURCE, NOW)

    def test_fact_maps_buckets_and_status(self):
        result = self.gate()
        assert isinstance(result.input, FactInput)
        assert result.input.importance == 0.7
        assert result.input.confidence == 0.8
        assert result.input.status == "active"
        assert result.decision.should_store
        assert result.decision.reason == RetentionReason.DURABLE_FACT
        assert result.input.source == SOURCE

    def test_low_confidence_starts_as_candidate(self):
        result = self.gate(confidence="speculative")
        assert result.input.status == "candidate"
        assert result.decision.initial_status == "candidate"

    def test_unknown_buckets_use_defaults(self):
        result = self.gate(importance="enormous", confidence=None)
        assert result.input.importance == 0.5
        assert result.input.confidence == 0.7

    def test_unknown_kind_dropped(self):
        assert self.gate(kind="opinion") is None

    def test_short_content_or_title_dropped(self):
        assert self.gate(content="Hi") is None
        assert self.gate(title="") is None
        assert self.gate(title="  E ") is None
        assert self.gate(title="Ed") is not None

    def test_procedure_requires_subtype(self):
        content = "Always answer in British English"
        assert self.gate(kind="procedure", content=content) is None
        assert self.gate(kind="procedure", content=content, procedure_subtype="ritual") is None
        result = self.gate(kind="procedure", content=content, procedure_subtype="behavioral")
        assert isinstance(result.input, ProcedureInput)
        assert result.decision.reason == RetentionReason.BEHAVIORAL_INSTRUCTION

    def test_episode_requires_action_verb(self):
        assert self.gate(kind="episode", content="User had a chat about databases") is None
        result = self.gate(kind="episode", content="User migrated the database to Postgres", occurred_at_hint="recent")
        assert isinstance(result.input, EpisodeInput)
        assert result.input.occurred_at == NOW - timedelta(days=1)

    def test_firewall_sets_expiry(self):
        result = self.gate(content="User is currently learning Rust")
        assert result.input.expires_at == NOW + timedelta(days=3)

    def test_firewall_rejects_questions(self):
        assert self.gate(content="Does the user like Rust?") is None

    def test_rejected_item_keeps_reason(self):
        result = self.gate(should_store=False, rejection_reason="ambiguous")
        assert not result.decision.should_store
        assert result.decision.reason == RetentionReason.AMBIGUOUS
        assert result.decision.initial_status == "candidate"

    def test_unknown_rejection_reason_defaults_to_noise(self):
        result = self.gate(should_store=False, rejection_reason="durable_fact")
        assert result.decision.reason == RetentionReason.EPHEMERAL_NOISE

    def test_limits_title_and_tags(self):
        result = self.gate(title="T" * 200, tags=["a", "b", "c", "d", "e", "f"])
        assert len(result.input.title) == 80
        assert result.input.tags == ["a", "b", "c", "d"]


# ============================================================================
# classify()
# ============================================================================


class TestClassify:

    async def test_classifies_message(self):
        provider = ScriptedProvider([json.dumps([item(), item(kind="opinion")])])
        results = await MemoryClassifier(provider).classify("I use Neovim for everything", "user", SOURCE)
        assert len(results) == 1
        assert results[0].input.content == "User edits code in Neovim"
        assert "Neovim for everything" in provider.calls[0][0]["content"]

    async def test_short_assistant_message_not_classified(self):
        provider = ScriptedProvider([json.dumps([item()])])
        results = await MemoryClassifier(provider).classify("Sure, done.", "assistant")
        assert results == []
        assert provider.calls == []

    async def test_provider_error_yields_nothing(self):
        provider = ScriptedProvider(error=RuntimeError("rate limited"))
        assert await MemoryClassifier(provider).classify("I use Neovim for everything") == []

    async def test_timeout_yields_nothing(self):
        provider = ScriptedProvider([json.dumps([item()])], delay=5.0)
        classifier = MemoryClassifier(provider, ExtractionConfig(timeout_seconds=0.05))
        assert await classifier.classify("I use Neovim for everything") == []

    async def test_abort_signal_yields_nothing(self):
        provider = ScriptedProvider([json.dumps([item()])], delay=5.0)
        signal = asyncio.Event()
        task = asyncio.create_task(MemoryClassifier(provider).classify("I use Neovim for everything", signal=signal))
        await asyncio.sleep(0.01)
        signal.set()
        assert await asyncio.wait_for(task, timeout=1.0) == []

    async def test_caps_number_of_items(self):
        items = [item(content=f"User owns {n} vintage synthesizers") for n in range(12)]
        provider = ScriptedProvider([json.dumps(items)])
        classifier = MemoryClassifier(provider, ExtractionConfig(max_candidates=3))
        assert len(await classifier.classify("I collect synthesizers")) == 3

    async def test_malformed_items_skipped(self):
        provider = ScriptedProvider([json.dumps(["just a string", item()])])
        assert len(await MemoryClassifier(provider).classify("I use Neovim for everything")) == 1
