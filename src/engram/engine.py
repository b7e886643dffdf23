"""MemoryEngine: wires the stores together behind one async facade."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from loguru import logger

from engram.config import Config
from engram.embeddings.backends import EmbeddingProvider, create_embedder
from engram.embeddings.cache import EmbeddingCache
from engram.exceptions import EngramError
from engram.memory.consolidation import ConsolidationEngine
from engram.memory.episodic import EpisodicStore
from engram.memory.locks import KeyedLocks
from engram.memory.long_term import LongTermStore
from engram.protocol.types import MemoryStore
from engram.storage.sqlite_store import SQLiteStore
from engram.storage.vector_index import VectorIndex
from engram.types import (
    Episode,
    EpisodeDraft,
    MemoryCandidate,
    MemoryItem,
    MemoryKind,
    MemoryPatch,
    MemoryQuery,
    Pattern,
    SearchResult,
    TimeRange,
)


class MemoryEngine:
    """Persistent memory engine.

    The embedding provider, persistent store and cache are injectable; any
    left out are built from ``config``. The vector index is rebuilt from the
    store's persisted vectors on construction.
    """

    def __init__(
        self,
        config: Config | None = None,
        *,
        embedder: EmbeddingProvider | None = None,
        store: MemoryStore | None = None,
        cache: EmbeddingCache | None = None,
    ) -> None:
        self.config = config or Config()
        if store is None:
            self.config.ensure_dirs()
            store = SQLiteStore(self.config.db_path)
        self.db = store
        self.embedder = embedder or create_embedder(self.config.embedding)
        self.cache = cache or EmbeddingCache(self.embedder.model, self.config.cache.capacity)
        self.index = VectorIndex(self.embedder.dims, self.embedder.model)
        self.locks = KeyedLocks()

        self.long_term = LongTermStore(
            self.db, self.index, self.embedder, self.cache, self.config, self.locks
        )
        self.episodic = EpisodicStore(self.long_term, self.config)
        self.consolidation = ConsolidationEngine(self.long_term, self.config)

        loaded = self.index.rebuild(self.db.iter_vectors(self.index.model))
        logger.info("Vector index loaded {} vectors for model {}", loaded, self.index.model)

    # --- Long-term ---

    async def store(self, item: MemoryCandidate) -> str:
        return await self.long_term.store(item)

    async def retrieve(self, query: MemoryQuery) -> list[SearchResult]:
        return await self.long_term.retrieve(query)

    def get(self, memory_id: str) -> MemoryItem:
        return self.long_term.get(memory_id)

    async def update(self, memory_id: str, patch: MemoryPatch) -> MemoryItem:
        return await self.long_term.update(memory_id, patch)

    async def delete(self, memory_id: str) -> None:
        await self.long_term.delete(memory_id)

    async def resolve_conflicts(self, memory_id: str) -> list[str]:
        return await self.long_term.resolve_conflicts(memory_id)

    # --- Episodic ---

    async def record_episode(self, draft: EpisodeDraft) -> str:
        return await self.episodic.record_episode(draft)

    async def predict_outcome(self, scenario: str) -> str:
        return self.episodic.predict_outcome(scenario)

    def find_similar_experiences(self, description: str, limit: int | None = None) -> list[Episode]:
        return self.episodic.find_similar_experiences(description, limit=limit)

    def extract_patterns(self, episodes: list[Episode]) -> list[Pattern]:
        return self.episodic.extract_patterns(episodes)

    async def learn_from_experience(self, episode_id: str) -> list[Pattern]:
        return await self.episodic.learn_from_experience(episode_id)

    def get_timeline(self, user_id: str, time_range: TimeRange | None = None) -> list[Episode]:
        return self.episodic.get_timeline(user_id, time_range)

    def list_patterns(self, limit: int = 100) -> list[Pattern]:
        return self.episodic.list_patterns(limit)

    # --- Maintenance ---

    async def consolidate(self, threshold: float | None = None) -> dict[str, Any]:
        return await self.consolidation.consolidate(threshold)

    async def forget_expired(self, now: datetime | None = None, dry_run: bool = False) -> dict[str, Any]:
        return await self.long_term.forget_expired(now=now, dry_run=dry_run)

    def compression_candidates(self, limit: int = 100, now: datetime | None = None) -> list[MemoryItem]:
        return self.long_term.list_compression_candidates(limit=limit, now=now)

    async def rebuild_index(self, reembed_missing: bool = True) -> dict[str, Any]:
        """Reload the index from persisted vectors, optionally embedding records that lack one."""
        loaded = self.index.rebuild(self.db.iter_vectors(self.index.model))
        reembedded = 0
        failed: list[str] = []
        if reembed_missing:
            missing = self.db.list_ids_without_vector(self.index.model)
            for memory_id, item in self.db.get_memories(missing).items():
                try:
                    vector = await self.long_term.embed(item.content)
                except EngramError as exc:
                    logger.warning("Could not embed {} during rebuild: {}", memory_id, exc)
                    failed.append(memory_id)
                    continue
                async with self.locks.hold(memory_id):
                    current = self.db.get_memory(memory_id)
                    if current is None or current.content != item.content:
                        continue
                    self.db.replace_memory(current, vector, self.index.model)
                    self.index.upsert(memory_id, vector)
                    reembedded += 1
        logger.info("Index rebuilt: {} loaded, {} re-embedded, {} failed", loaded, reembedded, len(failed))
        return {"loaded": loaded, "reembedded": reembedded, "failed": failed, "size": len(self.index)}

    def status(self) -> dict[str, Any]:
        by_kind = {kind.value: self.db.count_memories(kind) for kind in MemoryKind}
        return {
            "memories": self.db.count_memories(),
            "by_kind": {k: v for k, v in by_kind.items() if v},
            "patterns": len(self.db.list_patterns(limit=1_000_000)),
            "index": self.index.stats(),
            "cache": self.cache.stats(),
            "embedder": {"model": self.embedder.model, "dims": self.embedder.dims},
        }

    async def close(self) -> None:
        await self.embedder.close()
        self.db.close()

    async def __aenter__(self) -> MemoryEngine:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()
