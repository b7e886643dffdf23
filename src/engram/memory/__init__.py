"""Long-term, episodic and consolidation layers."""

from engram.memory.consolidation import ConsolidationEngine
from engram.memory.episodic import EpisodicStore
from engram.memory.locks import KeyedLocks
from engram.memory.long_term import LongTermStore

__all__ = ["ConsolidationEngine", "EpisodicStore", "KeyedLocks", "LongTermStore"]
