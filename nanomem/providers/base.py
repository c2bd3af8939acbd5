"""Abstract LLM and embedding capabilities consumed by the memory engine."""

import asyncio
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass, field
from typing import Any

from nanomem.errors import EmbeddingError, ProviderCallError

# ── Chunk types ─────────────────────────────────────────────────────


@dataclass
class TextChunk:
    """A piece of streamed assistant text."""

    text: str


@dataclass
class ToolCallChunk:
    """A tool call request from the LLM."""

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass
class UsageChunk:
    """Token accounting reported at the end of a response."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


ProviderChunk = TextChunk | ToolCallChunk | UsageChunk


# ── Capabilities ────────────────────────────────────────────────────


class Provider(ABC):
    """Chat capability used for classification and contradiction arbitration."""

    name: str = "provider"

    @abstractmethod
    def chat(
        self,
        messages: list[dict[str, Any]],
        *,
        tools: list[dict[str, Any]] | None = None,
        signal: asyncio.Event | None = None,
    ) -> AsyncIterator[ProviderChunk]:
        """Stream chunks for a message list. Stops early once ``signal`` is set."""


async def collect_text(
    provider: Provider,
    messages: list[dict[str, Any]],
    signal: asyncio.Event | None = None,
) -> str:
    """Drain a chat stream and return the concatenated text."""
    parts: list[str] = []
    async for chunk in provider.chat(messages, signal=signal):
        if signal is not None and signal.is_set():
            break
        if isinstance(chunk, TextChunk):
            parts.append(chunk.text)
    return "".join(parts)


async def complete_text(
    provider: Provider,
    messages: list[dict[str, Any]],
    *,
    timeout: float,
    signal: asyncio.Event | None = None,
) -> str:
    """
    ``collect_text`` bounded by a timeout and an abort signal.

    Either one stops the stream cooperatively (the signal is set) and cancels
    the pending call; both surface as ``ProviderCallError``.
    """
    signal = signal or asyncio.Event()
    call = asyncio.ensure_future(collect_text(provider, messages, signal))
    aborted = asyncio.ensure_future(signal.wait())
    try:
        done, _ = await asyncio.wait({call, aborted}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        signal.set()
        call.cancel()
        raise
    finally:
        aborted.cancel()
    if call not in done:
        reason = "aborted" if signal.is_set() else f"timed out after {timeout}s"
        signal.set()
        call.cancel()
        await asyncio.gather(call, return_exceptions=True)
        raise ProviderCallError(f"{provider.name} call {reason}")
    try:
        return call.result()
    except ProviderCallError:
        raise
    except Exception as e:
        raise ProviderCallError(str(e)) from e


class EmbeddingProvider(ABC):
    """Fixed-dimension text embedding capability."""

    name: str = "embedding"
    model: str = ""
    dimensions: int = 0

    @abstractmethod
    async def embed(self, text: str) -> list[float]:
        """Embed one text."""

    async def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        """Embed several texts. Adapters override this when the backend batches."""
        return [await self.embed(text) for text in texts]

    @property
    def fingerprint(self) -> dict[str, str]:
        """Identity recorded alongside the vector index."""
        return {"provider": self.name, "model": self.model, "dimensions": str(self.dimensions)}


def check_vector(vector: Sequence[float], dimensions: int) -> list[float]:
    """Reject vectors whose length does not match the provider's dimension."""
    if len(vector) != dimensions:
        raise EmbeddingError(f"Embedding has {len(vector)} dimensions, expected {dimensions}")
    return list(vector)
