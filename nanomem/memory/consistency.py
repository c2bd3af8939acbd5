"""Semantic dedup and contradiction resolution on write."""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Literal

from loguru import logger

from nanomem.config.schema import ConsistencyConfig
from nanomem.errors import ProviderCallError
from nanomem.memory.types import MemoryInput, MemoryRecord
from nanomem.providers.base import EmbeddingProvider, Provider, check_vector, complete_text

if TYPE_CHECKING:
    from nanomem.memory.store import SqliteMemoryStore

Verdict = Literal["contradicting", "consistent", "unrelated"]

ARBITER_PROMPT = """Two statements were recorded about the same user at different times.

<existing>
{existing}
</existing>
<new>
{new}
</new>

Can both be true at once? Answer with exactly one word:
- contradicting: the new statement replaces or negates the existing one
- consistent: both can be true together
- unrelated: they are about different things

Answer:"""

_VERDICT_RE = re.compile(r"contradict\w*|inconsistent|consistent|unrelated")
_MARKUP_RE = re.compile(r"[^\w\s']+")
NEGATIONS = frozenset({"no", "not", "never", "nor", "neither", "without", "isn't", "aren't", "don't", "doesn't"})
NEGATION_WINDOW = 2


def parse_verdict(reply: str) -> Verdict:
    """
    First verdict word in the reply that is not negated.

    Markdown and punctuation are ignored. A verdict closely preceded by a
    negation ("no contradiction", "not consistent") is skipped. Anything
    else counts as unrelated.
    """
    words = _MARKUP_RE.sub(" ", (reply or "").lower().replace("\u2019", "'")).split()
    for i, word in enumerate(words):
        if _VERDICT_RE.fullmatch(word) is None:
            continue
        if NEGATIONS.intersection(words[max(0, i - NEGATION_WINDOW):i]):
            continue
        return "contradicting" if word.startswith(("contradict", "inconsistent")) else word  # type: ignore[return-value]
    return "unrelated"


class ContradictionArbiter:
    """Asks an LLM whether a new memory contradicts an existing one."""

    def __init__(self, provider: Provider, timeout: float = 10.0):
        self.provider = provider
        self.timeout = timeout

    async def judge(self, new: str, existing: str, signal: asyncio.Event | None = None) -> Verdict:
        messages = [{"role": "user", "content": ARBITER_PROMPT.format(existing=existing, new=new)}]
        try:
            reply = await complete_text(self.provider, messages, timeout=self.timeout, signal=signal)
        except ProviderCallError as e:
            logger.warning(f"Contradiction arbiter unavailable, keeping both memories: {e}")
            return "unrelated"
        verdict = parse_verdict(reply)
        logger.debug(f"Arbiter verdict {verdict!r} for '{new[:40]}' vs '{existing[:40]}'")
        return verdict


@dataclass
class ConsistencyDecision:
    action: Literal["insert", "dedup", "supersede"]
    existing: MemoryRecord | None = None
    similarity: float = 0.0
    vector: list[float] | None = None


class ConsistencyManager:
    """
    Compares a new memory with its nearest live neighbours of the same kind.

    Similarity at or above ``dedup_threshold`` means the same memory unless
    the arbiter calls it a contradiction. Between ``contradiction_threshold``
    and ``dedup_threshold`` the arbiter decides whether the new memory
    supersedes the old one or is stored alongside it.
    """

    def __init__(
        self,
        embedding: EmbeddingProvider | None,
        arbiter: ContradictionArbiter | None = None,
        config: ConsistencyConfig | None = None,
    ):
        self.embedding = embedding
        self.arbiter = arbiter
        self.config = config or ConsistencyConfig()

    async def resolve(self, store: "SqliteMemoryStore", memory: MemoryInput, summary: str) -> ConsistencyDecision:
        """Never raises: any failure falls back to a plain insert."""
        if self.embedding is None or not store.vectors.exists():
            return ConsistencyDecision("insert")
        try:
            vector = check_vector(await self.embedding.embed(summary), self.embedding.dimensions)
        except Exception as e:
            logger.warning(f"Consistency check skipped, embedding failed: {e}")
            return ConsistencyDecision("insert")

        try:
            neighbours = store.nearest(vector, memory.kind, memory.scope, self.config.neighbor_k)
        except Exception as e:
            logger.warning(f"Consistency check skipped, neighbour search failed: {e}")
            return ConsistencyDecision("insert", vector=vector)

        for record, similarity in neighbours:
            if similarity < self.config.contradiction_threshold:
                break
            # Near-duplicates are judged too: one changed value ("Alice" -> "Bob") still scores high.
            if self.arbiter is not None:
                verdict = await self.arbiter.judge(memory.content, record.content)
                if verdict == "contradicting":
                    logger.info(f"New {memory.kind} contradicts {record.id} ({similarity:.3f})")
                    return ConsistencyDecision("supersede", record, similarity, vector)
            if similarity >= self.config.dedup_threshold:
                return ConsistencyDecision("dedup", record, similarity, vector)

        return ConsistencyDecision("insert", vector=vector)
