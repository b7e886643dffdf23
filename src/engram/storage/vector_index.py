"""In-memory FAISS vector index keyed by memory id."""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

import faiss
import numpy as np

from engram.exceptions import DimensionMismatch

# Similarities closer than this are treated as ties.
_TIE_DECIMALS = 6


class VectorIndex:
    """Cosine-similarity index over L2-normalized vectors of one model.

    This is a derived cache: the persistent store holds the authoritative
    vectors and ``rebuild`` repopulates the index from them.
    """

    def __init__(self, dims: int, model: str) -> None:
        self.dims = int(dims)
        self.model = model
        self._reset()

    def _reset(self) -> None:
        self._index = faiss.IndexIDMap2(faiss.IndexFlatIP(self.dims))
        # external id <-> faiss int64 id
        self._ext_to_int: dict[str, int] = {}
        self._int_to_ext: dict[int, str] = {}
        self._next_id = 0

    def __len__(self) -> int:
        return len(self._ext_to_int)

    def __contains__(self, memory_id: object) -> bool:
        return memory_id in self._ext_to_int

    def ids(self) -> list[str]:
        return sorted(self._ext_to_int)

    def _prepare(self, vector: np.ndarray, model: str | None = None) -> np.ndarray:
        if model is not None and model != self.model:
            raise DimensionMismatch(self.dims, int(np.asarray(vector).size),
                                    detail=f"model {model!r} != index model {self.model!r}")
        vec = np.ascontiguousarray(np.asarray(vector, dtype=np.float32).reshape(1, -1))
        if vec.shape[1] != self.dims:
            raise DimensionMismatch(self.dims, vec.shape[1])
        faiss.normalize_L2(vec)
        return vec

    def upsert(self, memory_id: str, vector: np.ndarray, model: str | None = None) -> None:
        """Insert or replace the vector for ``memory_id``."""
        vec = self._prepare(vector, model)
        iid = self._ext_to_int.get(memory_id)
        if iid is None:
            iid = self._next_id
            self._next_id += 1
            self._ext_to_int[memory_id] = iid
            self._int_to_ext[iid] = memory_id
        else:
            self._index.remove_ids(np.array([iid], dtype=np.int64))
        self._index.add_with_ids(vec, np.array([iid], dtype=np.int64))

    def remove(self, memory_id: str) -> bool:
        iid = self._ext_to_int.pop(memory_id, None)
        if iid is None:
            return False
        del self._int_to_ext[iid]
        self._index.remove_ids(np.array([iid], dtype=np.int64))
        return True

    def get(self, memory_id: str) -> np.ndarray | None:
        """Stored (normalized) vector, or None."""
        iid = self._ext_to_int.get(memory_id)
        if iid is None:
            return None
        return np.asarray(self._index.reconstruct(iid), dtype=np.float32)

    def query(
        self,
        vector: np.ndarray,
        threshold: float = 0.0,
        limit: int = 10,
    ) -> list[tuple[str, float]]:
        """Ids with cosine similarity >= threshold, best first.

        Ties are broken by ascending id so results are deterministic.
        """
        vec = self._prepare(vector)
        n = self._index.ntotal
        if n == 0 or limit <= 0:
            return []
        scores, iids = self._index.search(vec, n)
        hits: list[tuple[str, float]] = []
        for score, iid in zip(scores[0], iids[0]):
            if iid < 0:
                continue
            sim = float(np.clip(score, -1.0, 1.0))
            if round(sim, _TIE_DECIMALS) < round(threshold, _TIE_DECIMALS):
                continue
            hits.append((self._int_to_ext[int(iid)], sim))
        hits.sort(key=lambda h: (-round(h[1], _TIE_DECIMALS), h[0]))
        return hits[:limit]

    def nearest(self, memory_id: str, k: int = 5) -> list[tuple[str, float]]:
        """Top-k neighbors of a stored id, excluding the id itself."""
        vec = self.get(memory_id)
        if vec is None:
            return []
        hits = self.query(vec, threshold=-1.0, limit=k + 1)
        return [h for h in hits if h[0] != memory_id][:k]

    def snapshot(self) -> dict[str, np.ndarray]:
        """Point-in-time copy of every id and vector."""
        return {mid: np.asarray(self._index.reconstruct(iid), dtype=np.float32)
                for mid, iid in self._ext_to_int.items()}

    def cluster(
        self,
        threshold: float,
        snapshot: dict[str, np.ndarray] | None = None,
    ) -> list[list[str]]:
        """Greedy one-hop partition.

        Ids are visited in ascending order. The first unclustered id seeds a
        cluster and absorbs every other unclustered id whose similarity to the
        seed is >= threshold. Membership is not expanded transitively.
        """
        snap = snapshot if snapshot is not None else self.snapshot()
        if not snap:
            return []
        ids = sorted(snap)
        mat = np.stack([snap[i] for i in ids]).astype(np.float32)
        if mat.shape[1] != self.dims:
            raise DimensionMismatch(self.dims, mat.shape[1])
        norms = np.linalg.norm(mat, axis=1, keepdims=True)
        norms[norms == 0.0] = 1.0
        mat = mat / norms

        assigned = np.zeros(len(ids), dtype=bool)
        clusters: list[list[str]] = []
        for seed in range(len(ids)):
            if assigned[seed]:
                continue
            assigned[seed] = True
            sims = mat @ mat[seed]
            members = [ids[seed]]
            for j in range(seed + 1, len(ids)):
                if not assigned[j] and round(float(sims[j]), _TIE_DECIMALS) >= round(threshold, _TIE_DECIMALS):
                    assigned[j] = True
                    members.append(ids[j])
            clusters.append(members)
        return clusters

    def rebuild(self, source: Iterable[tuple[str, np.ndarray]]) -> int:
        """Drop everything and repopulate from ``(id, vector)`` pairs."""
        self._reset()
        count = 0
        for memory_id, vector in source:
            self.upsert(memory_id, vector)
            count += 1
        return count

    def stats(self) -> dict[str, Any]:
        return {"size": len(self), "model": self.model, "dims": self.dims}


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    a = np.asarray(a, dtype=np.float32).ravel()
    b = np.asarray(b, dtype=np.float32).ravel()
    if a.shape != b.shape:
        raise DimensionMismatch(a.shape[0], b.shape[0])
    na = float(np.linalg.norm(a))
    nb = float(np.linalg.norm(b))
    if na == 0.0 or nb == 0.0:
        return 0.0
    return float(np.clip(np.dot(a, b) / (na * nb), -1.0, 1.0))
