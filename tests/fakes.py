"""Test doubles for providers and embeddings."""

import asyncio
import math

from nanomem.memory.types import FactInput
from nanomem.providers.base import EmbeddingProvider, Provider, TextChunk


class CharEmbedding(EmbeddingProvider):
    """Deterministic bag-of-characters embedding, L2-normalised."""

    name = "test"

    def __init__(self, dimensions: int = 32, model: str = "char-freq"):
        self.model = model
        self.dimensions = dimensions
        self.calls = 0

    async def embed(self, text):
        self.calls += 1
        vec = [0.0] * self.dimensions
        for ch in text.lower():
            if ch.isalnum():
                vec[ord(ch) % self.dimensions] += 1.0
        norm = math.sqrt(sum(v * v for v in vec)) or 1.0
        return [v / norm for v in vec]


class MappedEmbedding(CharEmbedding):
    """Fixed vectors for known texts, character frequencies for the rest."""

    def __init__(self, vectors, dimensions: int = 4):
        super().__init__(dimensions=dimensions, model="mapped")
        self.vectors = vectors

    async def embed(self, text):
        if text in self.vectors:
            self.calls += 1
            return list(self.vectors[text])
        return await super().embed(text)


class FailingEmbedding(CharEmbedding):
    """Embeds fine until ``failing`` is switched on."""

    def __init__(self, dimensions: int = 32):
        super().__init__(dimensions=dimensions)
        self.failing = False

    async def embed(self, text):
        if self.failing:
            raise RuntimeError("embedding backend down")
        return await super().embed(text)


class WrongSizeEmbedding(CharEmbedding):
    """Advertises one dimension, returns another."""

    async def embed(self, text):
        return [0.5] * (self.dimensions + 3)


class ScriptedProvider(Provider):
    """Chat provider that replays canned replies."""

    name = "scripted"

    def __init__(self, replies=None, delay: float = 0.0, error: Exception | None = None):
        self.replies = list(replies or [])
        self.delay = delay
        self.error = error
        self.calls = []

    async def chat(self, messages, *, tools=None, signal=None):
        self.calls.append(messages)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        reply = self.replies.pop(0) if self.replies else ""
        yield TextChunk(text=reply)


def fact(content: str, **kwargs) -> FactInput:
    kwargs.setdefault("title", content[:40])
    return FactInput(content=content, **kwargs)
