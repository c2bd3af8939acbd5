"""LLM and embedding provider abstractions."""

from nanomem.providers.base import (
    EmbeddingProvider,
    Provider,
    ProviderChunk,
    TextChunk,
    ToolCallChunk,
    UsageChunk,
    check_vector,
    collect_text,
    complete_text,
)
from nanomem.providers.litellm_provider import LiteLLMEmbeddingProvider, LiteLLMProvider

__all__ = [
    "EmbeddingProvider",
    "LiteLLMEmbeddingProvider",
    "LiteLLMProvider",
    "Provider",
    "ProviderChunk",
    "TextChunk",
    "ToolCallChunk",
    "UsageChunk",
    "check_vector",
    "collect_text",
    "complete_text",
]
