"""Embedding layer for engram."""

from engram.embedding.base import (
    DisabledEmbeddingProvider,
    EmbeddingError,
    EmbeddingProvider,
)
from engram.embedding.ollama import EMBED_PREFIX, OllamaClient
from engram.embedding.openai import OpenAIClient
from engram.embedding.provider import create_embedding_provider

__all__ = [
    "DisabledEmbeddingProvider",
    "EMBED_PREFIX",
    "EmbeddingError",
    "EmbeddingProvider",
    "OllamaClient",
    "OpenAIClient",
    "create_embedding_provider",
]
