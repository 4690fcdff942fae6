"""Error taxonomy for the engram memory engine.

Every error raised by the engine carries a stable machine-readable ``code``
plus a human message, so the outer surface (MCP tools, CLI) can render it
without inspecting exception types:

- SessionNotFound: retrieval/summary against an unknown session
- EmbeddingProviderUnavailable: embeddings are required but the provider is
  disabled or failing
- ValidationError: malformed input, with the offending field in ``details``
- StoreUnavailable: any persistence failure (adapters subclass this)
"""

from typing import Any, Optional


class EngramError(Exception):
    """Base class for all engine errors.

    Attributes:
        code: Stable machine-readable error code
        message: Human-readable description
        details: Optional structured context (field names, ids, ...)
    """

    code = "ENGRAM_ERROR"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details: dict[str, Any] = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Render the error as a JSON-serializable dict."""
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class SessionNotFound(EngramError):
    """Raised when an operation targets a session that does not exist."""

    code = "SESSION_NOT_FOUND"

    def __init__(self, session_id: str):
        super().__init__(
            f"Session '{session_id}' not found",
            details={"session_id": session_id},
        )
        self.session_id = session_id


class EmbeddingProviderUnavailable(EngramError):
    """Raised when embeddings are mandatory but cannot be produced."""

    code = "EMBEDDING_PROVIDER_UNAVAILABLE"


class ValidationError(EngramError):
    """Raised for malformed caller input."""

    code = "VALIDATION_ERROR"

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message, details={"field": field} if field else None)
        self.field = field


class StoreUnavailable(EngramError):
    """Raised for any persistence failure. Never retried by the engine."""

    code = "STORE_UNAVAILABLE"
