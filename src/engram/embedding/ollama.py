"""Ollama embedding client with async httpx and mxbai query prefix support.

Talks to the Ollama ``/api/embed`` endpoint. Query embeddings for
mxbai-embed-large get the model's retrieval prefix; stored memories do not.
"""

import logging

from engram.embedding.base import EmbeddingError, HttpEmbeddingClient

logger = logging.getLogger(__name__)

# Query prefix for mxbai-embed-large model
# Documents do NOT get this prefix, only queries
EMBED_PREFIX = "Represent this sentence for searching relevant passages: "


class OllamaClient(HttpEmbeddingClient):
    """Async HTTP client for Ollama embeddings API.

    Args:
        host: Ollama server host URL (default: "http://localhost:11434")
        model: Embedding model name (default: "mxbai-embed-large")
        timeout: Request timeout in seconds (default: 10)
        max_retries: Attempts for connection failures (default: 2)
        enabled: Whether the provider reports itself enabled (default: True)

    Example:
        >>> async with OllamaClient() as client:
        ...     query_emb = await client.embed("What did the user buy?", is_query=True)
        ...     doc_emb = await client.embed("User bought an iPhone 15.")
    """

    name = "Ollama"

    def __init__(
        self,
        host: str = "http://localhost:11434",
        model: str = "mxbai-embed-large",
        timeout: float = 10.0,
        max_retries: int = 2,
        enabled: bool = True,
    ):
        super().__init__(timeout=timeout, max_retries=max_retries, enabled=enabled)
        self.host = host.rstrip("/")
        self.model = model

    def _prepare(self, text: str, is_query: bool) -> str:
        if is_query and "mxbai" in self.model.lower():
            return f"{EMBED_PREFIX}{text}"
        return text

    async def embed(self, text: str, is_query: bool = False) -> list[float]:
        """Generate an embedding for a single text.

        Args:
            text: Input text to embed
            is_query: If True, apply mxbai query prefix for search queries

        Returns:
            Embedding vector as list of floats

        Raises:
            EmbeddingError: If the provider is disabled or the request fails
            ValueError: If text is empty
        """
        self._require_enabled(text)

        payload = {
            "model": self.model,
            "input": self._prepare(text, is_query),
        }

        data = await self._post_with_retry(f"{self.host}/api/embed", payload)
        embeddings = data.get("embeddings")

        if not embeddings or not isinstance(embeddings[0], list):
            raise EmbeddingError("No embedding returned from Ollama API")

        embedding: list[float] = embeddings[0]
        return embedding
