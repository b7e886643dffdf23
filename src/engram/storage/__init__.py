"""Persistent store and in-memory vector index."""

from engram.storage.sqlite_store import SQLiteStore
from engram.storage.vector_index import VectorIndex, cosine_similarity

__all__ = ["SQLiteStore", "VectorIndex", "cosine_similarity"]
