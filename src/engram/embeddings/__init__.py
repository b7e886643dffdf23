"""Embedding providers and the embedding cache."""

from engram.embeddings.backends import (
    EmbeddingProvider,
    HashEmbedder,
    OllamaEmbedder,
    OpenAIEmbedder,
    SentenceTransformerEmbedder,
    create_embedder,
)
from engram.embeddings.cache import EmbeddingCache

__all__ = [
    "EmbeddingCache",
    "EmbeddingProvider",
    "HashEmbedder",
    "OllamaEmbedder",
    "OpenAIEmbedder",
    "SentenceTransformerEmbedder",
    "create_embedder",
]
