"""Consolidation: collapse clusters of near-duplicate memories."""

from __future__ import annotations

import asyncio
from typing import Any

import numpy as np
from loguru import logger

from engram.config import Config
from engram.memory.long_term import LongTermStore
from engram.types import MemoryKind


class ConsolidationEngine:
    """Merges each vector cluster into a single representative memory.

    Every pass clusters a point-in-time snapshot of the index, one kind at a
    time, and merges cluster by cluster, so no global lock is held.
    Experiences are never consolidated: each episode is a separate outcome.
    Passes repeat until one merges nothing. Every merging pass removes at
    least one memory, so the loop terminates, and a second call with no
    writes in between is a no-op.
    """

    def __init__(self, long_term: LongTermStore, config: Config | None = None) -> None:
        self.long_term = long_term
        self.config = config or long_term.config

    def _partition(self, snapshot: dict[str, np.ndarray]) -> list[dict[str, np.ndarray]]:
        items = self.long_term.db.get_memories(list(snapshot))
        by_kind: dict[MemoryKind, dict[str, np.ndarray]] = {}
        for memory_id, vector in snapshot.items():
            item = items.get(memory_id)
            if item is None or item.kind is MemoryKind.EXPERIENCE:
                continue
            by_kind.setdefault(item.kind, {})[memory_id] = vector
        return [by_kind[kind] for kind in sorted(by_kind, key=lambda k: k.value)]

    async def consolidate(self, threshold: float | None = None) -> dict[str, Any]:
        cfg = self.config.consolidation
        index = self.long_term.index
        stats: dict[str, Any] = {
            "enabled": cfg.enabled,
            "passes": 0,
            "clusters_merged": 0,
            "memories_removed": 0,
            "remaining": len(index),
        }
        if not cfg.enabled:
            return stats
        limit = cfg.threshold if threshold is None else threshold

        while True:
            clusters = [
                c
                for part in self._partition(index.snapshot())
                for c in index.cluster(limit, part)
                if len(c) > 1
            ]
            stats["passes"] += 1
            removed_this_pass = 0
            for members in clusters:
                rep_id, removed = await self.long_term.merge_cluster(members)
                if removed:
                    stats["clusters_merged"] += 1
                    removed_this_pass += removed
                    logger.debug("Consolidated {} memories into {}", removed + 1, rep_id)
                await asyncio.sleep(0)
            stats["memories_removed"] += removed_this_pass
            if removed_this_pass == 0:
                break

        stats["remaining"] = len(index)
        if stats["memories_removed"]:
            logger.info(
                "Consolidation merged {} clusters, removed {} memories ({} remaining)",
                stats["clusters_merged"], stats["memories_removed"], stats["remaining"],
            )
        return stats
