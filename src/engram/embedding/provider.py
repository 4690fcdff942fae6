"""Configuration-driven selection of the embedding backend."""

import logging
from typing import TYPE_CHECKING

from engram.embedding.base import DisabledEmbeddingProvider, EmbeddingProvider
from engram.embedding.ollama import OllamaClient
from engram.embedding.openai import OpenAIClient

if TYPE_CHECKING:
    from engram.config import EngramSettings

logger = logging.getLogger(__name__)

PROVIDERS = ("ollama", "openai")


def create_embedding_provider(settings: "EngramSettings") -> EmbeddingProvider:
    """Build the embedding provider described by settings.

    Returns a DisabledEmbeddingProvider unless embeddings are enabled; an
    OpenAI provider without an API key reports itself disabled.

    Raises:
        ValueError: If settings name an unknown provider
    """
    if not settings.embeddings_enabled:
        logger.info("Embeddings disabled, using lexical retrieval only")
        return DisabledEmbeddingProvider()

    provider = settings.embedding_provider.lower()
    if provider == "ollama":
        logger.info(f"Using Ollama embeddings ({settings.ollama_model} at {settings.ollama_host})")
        return OllamaClient(
            host=settings.ollama_host,
            model=settings.ollama_model,
            timeout=settings.embedding_timeout,
        )
    if provider == "openai":
        client = OpenAIClient(
            api_key=settings.openai_api_key,
            model=settings.openai_model,
            dimensions=settings.openai_dimensions,
            base_url=settings.openai_base_url,
            timeout=settings.embedding_timeout,
        )
        if not client.is_enabled():
            logger.warning("OpenAI embeddings selected but no API key configured")
        else:
            logger.info(f"Using OpenAI embeddings ({settings.openai_model})")
        return client

    raise ValueError(
        f"Invalid embedding provider '{settings.embedding_provider}'. Must be one of {PROVIDERS}"
    )
