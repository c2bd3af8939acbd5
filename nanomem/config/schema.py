"""Configuration schema using Pydantic."""

from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class StoreConfig(BaseModel):
    """SQLite store configuration."""
    db_path: str = "~/.nanomem/memory.db"
    max_backups: int = Field(default=3, ge=0, le=50, description="Database backups kept before a vector index rebuild")
    summary_length: int = Field(default=500, ge=50, le=4000, description="Default summary is this prefix of content")


class ExtractionConfig(BaseModel):
    """Candidate extraction and classification configuration."""
    min_user_length: int = Field(default=5, ge=1, description="Minimum user message length to classify")
    min_assistant_length: int = Field(default=80, ge=1, description="Minimum assistant message length to classify")
    max_candidates: int = Field(default=8, ge=1, le=50, description="Classified items kept per message")
    timeout_seconds: float = Field(default=15.0, gt=0, le=300, description="Classifier call timeout")
    active_confidence_threshold: float = Field(default=0.7, ge=0.0, le=1.0, description="Confidence at which new memories start active")
    cache_conversations: int = Field(default=256, ge=1, description="Conversations tracked by the orchestrator cache")
    cache_hashes_per_conversation: int = Field(default=128, ge=1, description="Recent content hashes kept per conversation")


class RetrievalConfig(BaseModel):
    """Recall ranking configuration."""
    default_top_k: int = Field(default=10, ge=1, le=200)
    rrf_k: int = Field(default=60, ge=1, description="Reciprocal rank fusion constant")
    half_life_days: float = Field(default=90.0, gt=0, description="Recency decay half-life")
    confidence_floor: float = Field(default=0.35, ge=0.0, le=1.0, description="Default minimum confidence in recall results")


class ConsistencyConfig(BaseModel):
    """Semantic dedup and contradiction detection thresholds."""
    dedup_threshold: float = Field(default=0.92, ge=0.0, le=1.0, description="Similarity at which two memories are the same")
    contradiction_threshold: float = Field(default=0.60, ge=0.0, le=1.0, description="Similarity at which the arbiter is consulted")
    neighbor_k: int = Field(default=5, ge=1, le=100, description="Nearest neighbours compared on write")
    arbiter_timeout_seconds: float = Field(default=10.0, gt=0, le=300, description="Contradiction arbiter call timeout")

    @model_validator(mode="after")
    def _check_bands(self) -> "ConsistencyConfig":
        if self.contradiction_threshold >= self.dedup_threshold:
            raise ValueError("contradiction_threshold must be below dedup_threshold")
        return self


class ProviderConfig(BaseModel):
    """LLM provider configuration (classifier and arbiter)."""
    model: str = "gpt-4o-mini"
    api_key: str = ""
    api_base: str | None = None
    extra_headers: dict[str, str] | None = None
    max_tokens: int = Field(default=1024, ge=1)
    temperature: float = Field(default=0.1, ge=0.0, le=2.0)


class EmbeddingConfig(BaseModel):
    """Embedding provider configuration."""
    model_config = ConfigDict(extra="ignore")

    enabled: bool = True
    model: str = Field(default="text-embedding-3-small", description="Model for generating embeddings")
    dimensions: int = Field(default=1536, ge=1, le=8192)
    api_key: str = ""
    api_base: str | None = None
    cache_size: int = Field(default=1000, ge=0)


class Config(BaseSettings):
    """Root configuration for nanomem."""
    model_config = SettingsConfigDict(env_prefix="NANOMEM_", env_nested_delimiter="__")

    store: StoreConfig = Field(default_factory=StoreConfig)
    extraction: ExtractionConfig = Field(default_factory=ExtractionConfig)
    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)
    consistency: ConsistencyConfig = Field(default_factory=ConsistencyConfig)
    provider: ProviderConfig = Field(default_factory=ProviderConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)

    @property
    def db_path(self) -> Path:
        """Get expanded database path."""
        return Path(self.store.db_path).expanduser()
