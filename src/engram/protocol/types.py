"""Structural contracts for the engine's collaborators and callers."""

from __future__ import annotations

from collections.abc import Iterator
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

import numpy as np

from engram.types import (
    EpisodeDraft,
    MemoryCandidate,
    MemoryFilter,
    MemoryItem,
    MemoryKind,
    MemoryQuery,
    Pattern,
    SearchResult,
)


@runtime_checkable
class MemoryStore(Protocol):
    """Durable CRUD + filtered listing. The single source of truth."""

    def insert_memory(self, item: MemoryItem, vector: np.ndarray, model: str) -> str: ...

    def get_memory(self, memory_id: str) -> MemoryItem | None: ...

    def get_memories(self, memory_ids: list[str]) -> dict[str, MemoryItem]: ...

    def replace_memory(
        self,
        item: MemoryItem,
        vector: np.ndarray | None = None,
        model: str | None = None,
    ) -> bool: ...

    def delete_memory(self, memory_id: str) -> bool: ...

    def list_memories(
        self,
        flt: MemoryFilter | None = None,
        limit: int | None = None,
        offset: int = 0,
        order: str = "importance",
    ) -> list[MemoryItem]: ...

    def count_memories(self, kind: MemoryKind | None = None) -> int: ...

    def touch_memories(self, memory_ids: list[str], at: datetime | None = None) -> list[str]: ...

    def find_referencing(self, memory_ids: list[str]) -> list[MemoryItem]: ...

    def get_vector(self, memory_id: str, model: str | None = None) -> np.ndarray | None: ...

    def iter_vectors(self, model: str) -> Iterator[tuple[str, np.ndarray]]: ...

    def list_ids_without_vector(self, model: str) -> list[str]: ...

    def upsert_pattern(self, pattern: Pattern) -> str: ...

    def list_patterns(self, limit: int = 100) -> list[Pattern]: ...

    def close(self) -> None: ...


@runtime_checkable
class MemoryEngineProtocol(Protocol):
    """Caller-facing surface consumed by chat/orchestration layers."""

    async def store(self, item: MemoryCandidate) -> str: ...

    async def retrieve(self, query: MemoryQuery) -> list[SearchResult]: ...

    async def record_episode(self, draft: EpisodeDraft) -> str: ...

    async def predict_outcome(self, scenario: str) -> str: ...

    async def consolidate(self, threshold: float | None = None) -> dict[str, Any]: ...

    async def delete(self, memory_id: str) -> None: ...

    async def resolve_conflicts(self, memory_id: str) -> list[str]: ...
