"""Configuration settings for the engram MCP server.

This module provides Pydantic Settings for configuration management with:
- Environment variable support (ENGRAM_ prefix)
- Legacy key fallbacks for the scoring weights
- CLI argument override support
- Type validation and defaults
"""

from pathlib import Path
from typing import Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from engram.memory.types import EngineConfig, ScoringWeights


class EngramSettings(BaseSettings):
    """Configuration settings for the engram MCP server.

    Settings are loaded from environment variables with the ENGRAM_ prefix.
    CLI arguments can override these settings when provided.

    Scoring weights accept a new key and a legacy key; the new key wins:
    ``ENGRAM_WEIGHT_SIMILARITY`` > ``ENGRAM_SCORING_WEIGHT_SIMILARITY`` > 0.5.

    Example:
        >>> settings = EngramSettings()
        >>> settings.min_similarity_score
        0.5

        >>> # ENGRAM_WEIGHT_RECENCY=0.4
        >>> EngramSettings().engine_config().weights.recency
        0.4
    """

    model_config = SettingsConfigDict(
        env_prefix="ENGRAM_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        populate_by_name=True,
        extra="ignore",
    )

    # Storage paths
    sqlite_path: Optional[Path] = Field(
        default=None,
        description="Path to SQLite database (default: ~/.engram/engram.db)",
    )
    chroma_path: Optional[Path] = Field(
        default=None,
        description="Path to ChromaDB storage (default: ~/.engram/chroma_db)",
    )
    collection_name: str = Field(
        default="memories",
        description="ChromaDB collection name",
    )
    use_vector_index: bool = Field(
        default=True,
        description="Index embeddings in ChromaDB (exact SQLite scan otherwise)",
    )

    # Embeddings
    embeddings_enabled: bool = Field(
        default=False,
        description="Generate embeddings for stored memories and queries",
    )
    embedding_provider: str = Field(
        default="ollama",
        description="Embedding backend (ollama, openai)",
    )
    embedding_timeout: float = Field(
        default=10.0,
        gt=0,
        description="Embedding request timeout in seconds",
    )
    ollama_host: str = Field(
        default="http://localhost:11434",
        description="Ollama server host URL",
    )
    ollama_model: str = Field(
        default="mxbai-embed-large",
        description="Ollama embedding model name",
    )
    openai_api_key: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("ENGRAM_OPENAI_API_KEY", "OPENAI_API_KEY"),
        description="OpenAI API key",
    )
    openai_model: str = Field(
        default="text-embedding-3-small",
        description="OpenAI embedding model name",
    )
    openai_dimensions: Optional[int] = Field(
        default=512,
        description="Requested OpenAI embedding dimensions",
    )
    openai_base_url: str = Field(
        default="https://api.openai.com/v1",
        description="OpenAI API base URL",
    )
    require_embeddings: bool = Field(
        default=False,
        description="Fail store/retrieve when no embedding can be produced",
    )

    # Scoring
    weight_similarity: float = Field(
        default=0.5,
        ge=0.0,
        validation_alias=AliasChoices("ENGRAM_WEIGHT_SIMILARITY", "ENGRAM_SCORING_WEIGHT_SIMILARITY"),
        description="Hybrid score weight of similarity",
    )
    weight_recency: float = Field(
        default=0.2,
        ge=0.0,
        validation_alias=AliasChoices("ENGRAM_WEIGHT_RECENCY", "ENGRAM_SCORING_WEIGHT_RECENCY"),
        description="Hybrid score weight of recency",
    )
    weight_importance: float = Field(
        default=0.3,
        ge=0.0,
        validation_alias=AliasChoices("ENGRAM_WEIGHT_IMPORTANCE", "ENGRAM_SCORING_WEIGHT_IMPORTANCE"),
        description="Hybrid score weight of importance",
    )
    min_similarity_score: float = Field(
        default=0.5,
        ge=-1.0,
        le=1.0,
        description="Similarity floor for retrieval results",
    )
    recency_half_life_hours: float = Field(
        default=24.0,
        gt=0,
        description="Hours after which recency decays to 0.5",
    )

    # Text handling
    max_text_length: int = Field(
        default=4000,
        gt=0,
        description="Stored text is truncated to this many characters",
    )

    # Duplicate guard
    duplicate_threshold: float = Field(
        default=0.95,
        ge=0.0,
        le=1.0,
        description="Similarity above which a new memory merges into an existing one",
    )
    duplicate_window_hours: float = Field(
        default=24.0,
        gt=0,
        description="Only memories created within this window are duplicate candidates",
    )

    # Retrieval
    default_result_limit: int = Field(
        default=5,
        ge=1,
        description="Results returned when no limit is given",
    )
    max_result_limit: int = Field(
        default=50,
        ge=1,
        description="Largest accepted retrieval limit",
    )
    default_token_budget: int = Field(
        default=1000,
        ge=1,
        description="Default token budget for retrieval results",
    )
    candidate_limit: int = Field(
        default=200,
        ge=1,
        description="Candidates fetched from the store before scoring",
    )

    # Pruning
    prune_max_age_days: float = Field(
        default=90.0,
        gt=0,
        description="Memories created earlier than this are prune candidates",
    )
    prune_inactive_days: float = Field(
        default=30.0,
        gt=0,
        description="Memories not accessed for this long are prune candidates",
    )
    prune_importance_threshold: float = Field(
        default=0.3,
        ge=0.0,
        le=1.0,
        description="Memories at or below this importance are prune candidates",
    )
    prune_batch_size: int = Field(
        default=500,
        ge=1,
        le=1000,
        description="Default number of memories pruned per call",
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )

    def get_sqlite_path(self) -> Optional[Path]:
        """Get the SQLite path, resolving to default if not set."""
        if self.sqlite_path:
            return self.sqlite_path.expanduser().resolve()
        return None

    def get_chroma_path(self) -> Optional[Path]:
        """Get the ChromaDB path, resolving to default if not set."""
        if self.chroma_path:
            return self.chroma_path.expanduser().resolve()
        return None

    def engine_config(self) -> EngineConfig:
        """Resolve the settings the engine operations consume."""
        return EngineConfig(
            weights=ScoringWeights(
                similarity=self.weight_similarity,
                recency=self.weight_recency,
                importance=self.weight_importance,
            ),
            min_similarity_score=self.min_similarity_score,
            max_text_length=self.max_text_length,
            recency_half_life_hours=self.recency_half_life_hours,
            duplicate_threshold=self.duplicate_threshold,
            duplicate_window_hours=self.duplicate_window_hours,
            default_result_limit=self.default_result_limit,
            max_result_limit=self.max_result_limit,
            default_token_budget=self.default_token_budget,
            candidate_limit=self.candidate_limit,
            require_embeddings=self.require_embeddings,
            prune_max_age_days=self.prune_max_age_days,
            prune_inactive_days=self.prune_inactive_days,
            prune_importance_threshold=self.prune_importance_threshold,
            prune_batch_size=self.prune_batch_size,
        )
