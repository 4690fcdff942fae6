"""engram - session memory retrieval and lifecycle engine.

This package provides the engram MCP server, which stores short memories per
session and retrieves the most relevant ones for a query under a token
budget, merging near-duplicates and pruning stale, unimportant memories.

Main components:
- memory.operations / retrieval / pruning: write, read and maintenance paths
- memory.text / scoring: pure normalization, importance and ranking functions
- storage.hybrid: Coordinated SQLite + ChromaDB storage layer
- embedding: Ollama / OpenAI embedding providers
- config: Pydantic Settings for configuration management

Usage:
    # Run as MCP server
    python -m engram

    # Or use the CLI
    engram --help
"""

__all__ = ["main"]
__version__ = "0.1.0"


def main() -> None:
    """Main entry point for the engram MCP server."""
    from engram.__main__ import main as _main
    _main()
