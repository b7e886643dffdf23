"""Engram - persistent long-term and episodic memory engine."""

__version__ = "0.1.0"

from engram.config import Config
from engram.engine import MemoryEngine
from engram.exceptions import (
    DimensionMismatch,
    EngramError,
    NotFoundError,
    PersistenceError,
    ProviderError,
    ValidationError,
)
from engram.types import (
    EpisodeDraft,
    MemoryCandidate,
    MemoryContext,
    MemoryItem,
    MemoryKind,
    MemoryPatch,
    MemoryQuery,
    SearchResult,
)

__all__ = [
    "__version__",
    "Config",
    "DimensionMismatch",
    "EngramError",
    "EpisodeDraft",
    "MemoryCandidate",
    "MemoryContext",
    "MemoryEngine",
    "MemoryItem",
    "MemoryKind",
    "MemoryPatch",
    "MemoryQuery",
    "NotFoundError",
    "PersistenceError",
    "ProviderError",
    "SearchResult",
    "ValidationError",
]
