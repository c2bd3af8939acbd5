"""Long-term memory: extraction, consistent storage and hybrid recall."""

from pathlib import Path

from loguru import logger

from nanomem.config.schema import Config
from nanomem.memory.candidates import extract_candidates
from nanomem.memory.classifier import MemoryClassifier
from nanomem.memory.consistency import ConsistencyManager, ContradictionArbiter
from nanomem.memory.guard import guard
from nanomem.memory.orchestrator import MemoryExtractionOrchestrator
from nanomem.memory.retrieval import RetrievalEngine
from nanomem.memory.store import SqliteMemoryStore
from nanomem.memory.types import (
    ClassifiedMemory,
    EpisodeInput,
    FactCandidate,
    FactInput,
    MemoryFilter,
    MemoryInput,
    MemoryPatch,
    MemoryRecord,
    MemoryScope,
    MemorySource,
    ProcedureInput,
    RecallOptions,
    RetentionDecision,
    RetentionReason,
    ScoredMemory,
)
from nanomem.providers.base import EmbeddingProvider, Provider


def create_memory_store(
    config: Config | None = None,
    provider: Provider | None = None,
    embedding: EmbeddingProvider | None = None,
    db_path: Path | str | None = None,
) -> SqliteMemoryStore:
    """
    Wire a store from configuration.

    Missing providers are built from the litellm adapters; embeddings are
    only built when enabled. Without an embedding provider the store runs
    lexical-only and skips semantic consistency checks.
    """
    config = config or Config()
    provider = provider or _default_provider(config)
    if embedding is None and config.embedding.enabled:
        from nanomem.providers.litellm_provider import LiteLLMEmbeddingProvider

        embedding = LiteLLMEmbeddingProvider(config.embedding)

    consistency = None
    if embedding is not None:
        arbiter = ContradictionArbiter(provider, config.consistency.arbiter_timeout_seconds)
        consistency = ConsistencyManager(embedding, arbiter, config.consistency)
    else:
        logger.info("No embedding provider: recall is lexical-only")
    return SqliteMemoryStore(db_path or config.db_path, config=config, embedding=embedding, consistency=consistency)


def create_orchestrator(
    store: SqliteMemoryStore,
    config: Config | None = None,
    provider: Provider | None = None,
) -> MemoryExtractionOrchestrator:
    """Orchestrator with an LLM classifier sharing ``store``'s configuration."""
    config = config or store.config
    classifier = MemoryClassifier(provider or _default_provider(config), config.extraction)
    return MemoryExtractionOrchestrator(store, classifier, config.extraction)


def _default_provider(config: Config) -> Provider:
    from nanomem.providers.litellm_provider import LiteLLMProvider

    return LiteLLMProvider(config.provider)


__all__ = [
    "ClassifiedMemory",
    "ConsistencyManager",
    "ContradictionArbiter",
    "EpisodeInput",
    "FactCandidate",
    "FactInput",
    "MemoryClassifier",
    "MemoryExtractionOrchestrator",
    "MemoryFilter",
    "MemoryInput",
    "MemoryPatch",
    "MemoryRecord",
    "MemoryScope",
    "MemorySource",
    "ProcedureInput",
    "RecallOptions",
    "RetentionDecision",
    "RetentionReason",
    "RetrievalEngine",
    "ScoredMemory",
    "SqliteMemoryStore",
    "create_memory_store",
    "create_orchestrator",
    "extract_candidates",
    "guard",
]
