"""OpenAI embeddings client over async httpx."""

import logging
from typing import Optional

from engram.embedding.base import EmbeddingError, HttpEmbeddingClient

logger = logging.getLogger(__name__)

OPENAI_BASE_URL = "https://api.openai.com/v1"


class OpenAIClient(HttpEmbeddingClient):
    """Async HTTP client for the OpenAI ``/embeddings`` endpoint.

    The provider reports itself disabled when no API key is configured.

    Args:
        api_key: OpenAI API key
        model: Embedding model (default: "text-embedding-3-small")
        dimensions: Requested vector size (default: 512)
        base_url: API base URL (default: https://api.openai.com/v1)
        timeout: Request timeout in seconds (default: 10)
        max_retries: Attempts for connection failures (default: 2)
        enabled: Whether embeddings are switched on (default: True)
    """

    name = "OpenAI"

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = "text-embedding-3-small",
        dimensions: Optional[int] = 512,
        base_url: str = OPENAI_BASE_URL,
        timeout: float = 10.0,
        max_retries: int = 2,
        enabled: bool = True,
    ):
        super().__init__(timeout=timeout, max_retries=max_retries, enabled=enabled)
        self.api_key = api_key
        self.model = model
        self.dimensions = dimensions
        self.base_url = base_url.rstrip("/")

    def is_enabled(self) -> bool:
        return bool(self.api_key) and self.enabled

    async def embed(self, text: str, is_query: bool = False) -> list[float]:
        """Generate an embedding for a single text.

        OpenAI models use the same embedding space for queries and
        documents, so ``is_query`` has no effect.

        Raises:
            EmbeddingError: If the provider is disabled or the request fails
            ValueError: If text is empty
        """
        self._require_enabled(text)

        payload: dict = {"model": self.model, "input": text}
        if self.dimensions:
            payload["dimensions"] = self.dimensions

        data = await self._post_with_retry(
            f"{self.base_url}/embeddings",
            payload,
            headers={"Authorization": f"Bearer {self.api_key}"},
        )

        try:
            embedding = data["data"][0]["embedding"]
        except (KeyError, IndexError, TypeError) as e:
            raise EmbeddingError("Invalid embedding response from OpenAI") from e
        if not isinstance(embedding, list) or not embedding:
            raise EmbeddingError("Invalid embedding response from OpenAI")
        return embedding
