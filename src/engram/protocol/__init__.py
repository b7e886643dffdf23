"""Structural contracts for stores and engine integrations."""

from engram.protocol.types import MemoryEngineProtocol, MemoryStore

__all__ = ["MemoryEngineProtocol", "MemoryStore"]
