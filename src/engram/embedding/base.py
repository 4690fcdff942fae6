"""Embedding provider capability interface and shared HTTP plumbing.

Backends implement the two-method capability ``{is_enabled, embed}``:
- OllamaClient (local model server)
- OpenAIClient (hosted embeddings API)
- DisabledEmbeddingProvider (embeddings switched off)

Callers check ``is_enabled()`` before calling ``embed()``; a disabled or
failing provider raises EmbeddingError and never touches stored data.
"""

import asyncio
import logging
from typing import Any, Optional, Protocol, runtime_checkable

import httpx

logger = logging.getLogger(__name__)


class EmbeddingError(Exception):
    """Custom exception for embedding-related errors."""

    pass


@runtime_checkable
class EmbeddingProvider(Protocol):
    """Capability interface every embedding backend satisfies."""

    def is_enabled(self) -> bool:
        ...

    async def embed(self, text: str, is_query: bool = False) -> list[float]:
        ...

    async def close(self) -> None:
        ...


class DisabledEmbeddingProvider:
    """No-op provider used when embeddings are switched off."""

    def is_enabled(self) -> bool:
        return False

    async def embed(self, text: str, is_query: bool = False) -> list[float]:
        raise EmbeddingError("Embedding provider is disabled")

    async def close(self) -> None:
        return None


class HttpEmbeddingClient:
    """Async httpx client lifecycle plus POST-with-retry for HTTP backends.

    Connection-level failures are retried with exponential backoff; timeouts
    and HTTP status errors fail immediately so retrieval is never blocked
    for long.

    Args:
        timeout: Request timeout in seconds
        max_retries: Attempts for connection-level failures
        base_delay: Initial backoff delay in seconds
        enabled: Whether the provider should report itself enabled
    """

    name = "http"

    def __init__(
        self,
        timeout: float = 10.0,
        max_retries: int = 2,
        base_delay: float = 0.5,
        enabled: bool = True,
    ):
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.base_delay = base_delay
        self.enabled = enabled
        self._client: httpx.AsyncClient | None = None

    def is_enabled(self) -> bool:
        return self.enabled

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the async HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "HttpEmbeddingClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def _require_enabled(self, text: str) -> None:
        if not self.is_enabled():
            raise EmbeddingError(f"{self.name} embedding provider is not enabled")
        if not text or not text.strip():
            raise ValueError("Text cannot be empty")

    async def _post_with_retry(
        self,
        url: str,
        payload: dict[str, Any],
        headers: Optional[dict[str, str]] = None,
    ) -> dict[str, Any]:
        """POST a JSON payload, retrying connection failures.

        Args:
            url: Endpoint URL
            payload: JSON body
            headers: Optional extra headers

        Returns:
            Decoded JSON response

        Raises:
            EmbeddingError: If the request fails or all retries are exhausted
        """
        client = await self._get_client()

        for attempt in range(self.max_retries):
            try:
                response = await client.post(url, json=payload, headers=headers)
                response.raise_for_status()
                result: dict[str, Any] = response.json()
                return result

            except httpx.TimeoutException as e:
                raise EmbeddingError(
                    f"{self.name} request timeout after {self.timeout}s"
                ) from e

            except httpx.HTTPStatusError as e:
                raise EmbeddingError(
                    f"{self.name} API error: {e.response.status_code} - {e.response.text}"
                ) from e

            except httpx.RequestError as e:
                if attempt < self.max_retries - 1:
                    delay = self.base_delay * (2**attempt)
                    logger.warning(
                        f"{self.name} request error (attempt {attempt + 1}/{self.max_retries}), "
                        f"retrying in {delay}s: {e}"
                    )
                    await asyncio.sleep(delay)
                else:
                    raise EmbeddingError(
                        f"{self.name} request failed after {self.max_retries} attempts: {e}"
                    ) from e

            except ValueError as e:
                raise EmbeddingError(f"{self.name} returned invalid JSON: {e}") from e

        raise EmbeddingError(f"{self.name} request failed")
