"""Storage backends and the adapter that composes them."""

from .adapter import StorageAdapter
from .backends import (
    Capability,
    GraphBackend,
    MemoryCacheBackend,
    RedisCacheBackend,
    SQLiteBackend,
    StorageBackend,
    VectorBackend,
)

__all__ = [
    "StorageAdapter",
    "Capability",
    "StorageBackend",
    "SQLiteBackend",
    "MemoryCacheBackend",
    "RedisCacheBackend",
    "GraphBackend",
    "VectorBackend",
]
