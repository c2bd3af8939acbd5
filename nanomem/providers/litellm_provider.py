"""litellm adapters for the chat and embedding capabilities.

Passes ``api_key`` directly to litellm; no env var setup needed. Only adds a
routing prefix when ``api_base`` points to a known gateway.
"""

import asyncio
import json
from collections import OrderedDict
from collections.abc import AsyncIterator, Sequence
from typing import Any

import litellm
from litellm import acompletion, aembedding
from loguru import logger

from nanomem.config.schema import EmbeddingConfig, ProviderConfig
from nanomem.errors import EmbeddingError, ProviderCallError
from nanomem.providers.base import (
    EmbeddingProvider,
    Provider,
    ProviderChunk,
    TextChunk,
    ToolCallChunk,
    UsageChunk,
    check_vector,
)

# ── Gateway detection (data-driven) ────────────────────────────────

# Known provider domains; litellm handles them natively.
_KNOWN_PROVIDERS = [
    "deepseek",
    "anthropic",
    "openai.com",
    "googleapis",
    "bigmodel.cn",
    "groq",
    "moonshot",
    "dashscope",
    "together",
]


def _detect_gateway(api_base: str | None) -> str | None:
    """Return the litellm routing prefix for known gateways, or None."""
    if not api_base:
        return None
    base = api_base.lower()
    if "openrouter" in base:
        return "openrouter/"
    if "aihubmix" in base:
        return "openai/"
    if any(d in base for d in _KNOWN_PROVIDERS):
        return None
    # Unknown custom endpoint → assume vLLM / OpenAI-compatible
    return "hosted_vllm/"


def _resolve_model(model: str, gateway: str | None) -> str:
    if gateway and not model.startswith(gateway):
        if gateway == "openai/":
            model = model.split("/")[-1]
        model = f"{gateway}{model}"
    return model


# ── Chat ────────────────────────────────────────────────────────────


class LiteLLMProvider(Provider):
    """Streaming chat provider over ``litellm.acompletion``."""

    name = "litellm"

    def __init__(self, config: ProviderConfig):
        self.config = config
        self._gateway = _detect_gateway(config.api_base)
        self.model = _resolve_model(config.model, self._gateway)
        litellm.suppress_debug_info = True
        litellm.drop_params = True

    def _kwargs(self, messages: list[dict[str, Any]]) -> dict[str, Any]:
        """Build kwargs for litellm.acompletion()."""
        kw: dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "max_tokens": self.config.max_tokens,
            "temperature": self.config.temperature,
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if self.config.api_key:
            kw["api_key"] = self.config.api_key
        if self.config.api_base:
            kw["api_base"] = self.config.api_base
        if self.config.extra_headers:
            kw["extra_headers"] = self.config.extra_headers
        return kw

    async def chat(
        self,
        messages: list[dict[str, Any]],
        *,
        tools: list[dict[str, Any]] | None = None,
        signal: asyncio.Event | None = None,
    ) -> AsyncIterator[ProviderChunk]:
        kw = self._kwargs(messages)
        if tools:
            kw["tools"] = tools
            kw["tool_choice"] = "auto"

        # Streamed tool calls arrive as fragments keyed by index.
        pending_tools: dict[int, dict[str, str]] = {}
        try:
            stream = await acompletion(**kw)
            async for chunk in stream:
                if signal is not None and signal.is_set():
                    logger.debug(f"Chat stream for {self.model} aborted")
                    return
                usage = getattr(chunk, "usage", None)
                if usage:
                    yield UsageChunk(
                        prompt_tokens=usage.prompt_tokens or 0,
                        completion_tokens=usage.completion_tokens or 0,
                        total_tokens=usage.total_tokens or 0,
                    )
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta
                text = getattr(delta, "content", None)
                if text:
                    yield TextChunk(text=text)
                for tc in getattr(delta, "tool_calls", None) or []:
                    slot = pending_tools.setdefault(tc.index, {"id": "", "name": "", "arguments": ""})
                    if tc.id:
                        slot["id"] = tc.id
                    if tc.function and tc.function.name:
                        slot["name"] = tc.function.name
                    if tc.function and tc.function.arguments:
                        slot["arguments"] += tc.function.arguments
        except Exception as e:
            raise ProviderCallError(str(e)) from e

        for slot in pending_tools.values():
            try:
                args = json.loads(slot["arguments"]) if slot["arguments"] else {}
            except json.JSONDecodeError:
                args = {"raw": slot["arguments"]}
            yield ToolCallChunk(id=slot["id"], name=slot["name"], arguments=args)


# ── Embeddings ──────────────────────────────────────────────────────


class LiteLLMEmbeddingProvider(EmbeddingProvider):
    """Embedding provider over ``litellm.aembedding`` with an LRU cache."""

    name = "litellm"

    def __init__(self, config: EmbeddingConfig):
        self.config = config
        self.model = config.model
        self.dimensions = config.dimensions
        self._cache: OrderedDict[str, list[float]] = OrderedDict()
        self._cache_size = config.cache_size
        litellm.suppress_debug_info = True
        litellm.drop_params = True

    def _kwargs(self, texts: list[str]) -> dict[str, Any]:
        kw: dict[str, Any] = {"model": self.model, "input": texts, "dimensions": self.dimensions}
        if self.config.api_key:
            kw["api_key"] = self.config.api_key
        if self.config.api_base:
            kw["api_base"] = self.config.api_base
        return kw

    async def embed(self, text: str) -> list[float]:
        return (await self.embed_batch([text]))[0]

    async def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        results: dict[int, list[float]] = {}
        missing: list[tuple[int, str]] = []
        for i, text in enumerate(texts):
            if text in self._cache:
                self._cache.move_to_end(text)
                results[i] = self._cache[text]
            else:
                missing.append((i, text))

        if missing:
            try:
                response = await aembedding(**self._kwargs([t for _, t in missing]))
            except Exception as e:
                raise EmbeddingError(f"Embedding call to {self.model} failed: {e}") from e
            for (i, text), item in zip(missing, response.data):
                vector = check_vector(item["embedding"], self.dimensions)
                results[i] = vector
                self._remember(text, vector)

        return [results[i] for i in range(len(texts))]

    def _remember(self, text: str, vector: list[float]) -> None:
        if self._cache_size <= 0:
            return
        self._cache[text] = vector
        if len(self._cache) > self._cache_size:
            self._cache.popitem(last=False)
