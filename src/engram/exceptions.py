"""Engram error taxonomy.

Callers can tell bad input (``ValidationError``, ``NotFoundError``) apart from
collaborator failures (``ProviderError``, ``PersistenceError``), which are
usually transient and worth retrying.
"""

from __future__ import annotations


class EngramError(Exception):
    """Base class for all engine errors."""


class ValidationError(EngramError):
    """Input to ``store``/``record_episode`` violated one or more rules."""

    def __init__(self, errors: list[str]) -> None:
        self.errors = list(errors)
        super().__init__("Invalid memory: " + ", ".join(self.errors))


class NotFoundError(EngramError):
    def __init__(self, memory_id: str) -> None:
        self.memory_id = memory_id
        super().__init__(f"Memory not found: {memory_id}")


class DimensionMismatch(EngramError):
    """Vectors from different models or dimensions were compared."""

    def __init__(self, expected: int, actual: int, detail: str = "") -> None:
        self.expected = expected
        self.actual = actual
        msg = f"Vector dimension mismatch: expected {expected}, got {actual}"
        if detail:
            msg = f"{msg} ({detail})"
        super().__init__(msg)


class ProviderError(EngramError):
    """The embedding provider failed or timed out."""


class PersistenceError(EngramError):
    """The persistent store backend failed."""
