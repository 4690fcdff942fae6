"""Storage layer for engram."""

from engram.storage.base import MemoryStore
from engram.storage.chromadb import ChromaStore, StorageError
from engram.storage.hybrid import HybridStore, HybridStoreError
from engram.storage.sqlite import SQLiteStore, SQLiteStoreError

__all__ = [
    "ChromaStore",
    "HybridStore",
    "HybridStoreError",
    "MemoryStore",
    "SQLiteStore",
    "SQLiteStoreError",
    "StorageError",
]
