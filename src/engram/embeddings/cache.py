"""Bounded LRU cache of text embeddings keyed by content hash."""

from __future__ import annotations

from collections import OrderedDict
from typing import Any

import numpy as np

from engram.utils import content_hash


class EmbeddingCache:
    """In-process LRU memo of ``text -> vector`` for one embedding model.

    Keys hash the model name together with the text, so swapping providers
    never serves a vector of the wrong width.
    """

    def __init__(self, model: str, capacity: int = 10_000) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.model = model
        self.capacity = capacity
        self._entries: OrderedDict[str, np.ndarray] = OrderedDict()
        self.hits = 0
        self.misses = 0

    def _key(self, text: str) -> str:
        return content_hash(f"{self.model}\x00{text}".encode("utf-8"))

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, text: str) -> np.ndarray | None:
        key = self._key(text)
        vec = self._entries.get(key)
        if vec is None:
            self.misses += 1
            return None
        self._entries.move_to_end(key)
        self.hits += 1
        return vec.copy()

    def put(self, text: str, vector: np.ndarray) -> None:
        key = self._key(text)
        self._entries[key] = np.asarray(vector, dtype=np.float32).copy()
        self._entries.move_to_end(key)
        while len(self._entries) > self.capacity:
            self._entries.popitem(last=False)

    def get_batch(self, texts: list[str]) -> tuple[list[np.ndarray | None], list[int]]:
        """Return cached vectors (None for misses) and the indices that missed."""
        results: list[np.ndarray | None] = []
        misses: list[int] = []
        for i, text in enumerate(texts):
            vec = self.get(text)
            results.append(vec)
            if vec is None:
                misses.append(i)
        return results, misses

    def clear(self) -> None:
        self._entries.clear()

    def stats(self) -> dict[str, Any]:
        total = self.hits + self.misses
        return {
            "model": self.model,
            "size": len(self._entries),
            "capacity": self.capacity,
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": (self.hits / total) if total else 0.0,
        }
