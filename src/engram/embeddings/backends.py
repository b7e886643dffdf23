"""Embedding providers.

Every provider exposes ``model`` and ``dims`` and embeds batches in input
order. ``create_embedder`` picks one from ``EmbeddingConfig``.
"""

from __future__ import annotations

import asyncio
import hashlib
import os
import re
from typing import Any, Protocol, runtime_checkable

import httpx
import numpy as np

from engram.config import EmbeddingConfig


@runtime_checkable
class EmbeddingProvider(Protocol):
    """Anything that turns text into fixed-width vectors.

    A given ``model`` always yields vectors of width ``dims``.
    """

    model: str
    dims: int

    async def embed(self, texts: list[str]) -> np.ndarray: ...
    async def embed_single(self, text: str) -> np.ndarray: ...
    async def close(self) -> None: ...


def _empty(dims: int) -> np.ndarray:
    return np.zeros((0, dims), dtype=np.float32)


class _HTTPEmbedder:
    """Shared client lifecycle and batching for HTTP embedding APIs."""

    def __init__(self, model: str, dims: int, base_url: str, timeout: float, batch_size: int) -> None:
        self.model = model
        self.dims = int(dims)
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.batch_size = max(1, int(batch_size))
        self._client: httpx.AsyncClient | None = None

    def _headers(self) -> dict[str, str]:
        return {}

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url, headers=self._headers(), timeout=self.timeout
            )
        return self._client

    async def _request(self, client: httpx.AsyncClient, batch: list[str]) -> list[list[float]]:
        raise NotImplementedError

    async def embed(self, texts: list[str]) -> np.ndarray:
        if not texts:
            return _empty(self.dims)
        client = await self._get_client()
        rows: list[list[float]] = []
        for start in range(0, len(texts), self.batch_size):
            batch = texts[start:start + self.batch_size]
            got = await self._request(client, batch)
            if len(got) != len(batch):
                raise RuntimeError(f"{self.model} returned {len(got)} vectors for {len(batch)} inputs")
            rows.extend(got)
        return np.asarray(rows, dtype=np.float32)

    async def embed_single(self, text: str) -> np.ndarray:
        return (await self.embed([text]))[0]

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None


class OpenAIEmbedder(_HTTPEmbedder):
    """OpenAI-compatible ``/embeddings`` endpoint."""

    def __init__(
        self,
        api_key: str | None = None,
        model: str = "text-embedding-3-small",
        dims: int = 1536,
        base_url: str = "https://api.openai.com/v1",
        timeout: float = 30.0,
        batch_size: int = 32,
    ) -> None:
        super().__init__(model, dims, base_url, timeout, batch_size)
        self.api_key = api_key or os.environ.get("OPENAI_API_KEY", "")

    def _headers(self) -> dict[str, str]:
        if not self.api_key:
            raise RuntimeError("OPENAI_API_KEY is required")
        return {"Authorization": f"Bearer {self.api_key}"}

    async def _request(self, client: httpx.AsyncClient, batch: list[str]) -> list[list[float]]:
        payload: dict[str, Any] = {"model": self.model, "input": batch, "dimensions": self.dims}
        resp = await client.post("/embeddings", json=payload)
        resp.raise_for_status()
        data = sorted(resp.json().get("data", []), key=lambda row: row.get("index", 0))
        return [row["embedding"] for row in data]


class OllamaEmbedder(_HTTPEmbedder):
    """Local Ollama server (``/api/embed``)."""

    def __init__(
        self,
        model: str = "nomic-embed-text",
        dims: int = 768,
        base_url: str = "http://127.0.0.1:11434",
        timeout: float = 30.0,
        batch_size: int = 32,
    ) -> None:
        super().__init__(model, dims, base_url, timeout, batch_size)

    async def _request(self, client: httpx.AsyncClient, batch: list[str]) -> list[list[float]]:
        resp = await client.post("/api/embed", json={"model": self.model, "input": batch})
        resp.raise_for_status()
        return resp.json().get("embeddings", [])


class HashEmbedder:
    """Offline, deterministic embedder built on feature hashing.

    Unigrams and adjacent-word bigrams are hashed into signed buckets, so
    texts sharing most of their words land close together. No semantics,
    but stable across processes, which is all the tests and the default
    configuration need.
    """

    _WORD_RE = re.compile(r"[a-z0-9_]+")

    def __init__(self, dims: int = 384, model: str | None = None) -> None:
        self.dims = max(32, int(dims))
        self.model = model or f"hash-{self.dims}"

    def _features(self, text: str) -> list[str]:
        words = self._WORD_RE.findall((text or "").lower())
        return words + [f"{a}_{b}" for a, b in zip(words, words[1:])]

    def _bucket(self, feature: str) -> tuple[int, float]:
        digest = hashlib.blake2b(feature.encode("utf-8"), digest_size=8).digest()
        slot = int.from_bytes(digest[:4], "little") % self.dims
        return slot, (-1.0 if digest[4] & 1 else 1.0)

    def _encode(self, text: str) -> np.ndarray:
        vec = np.zeros(self.dims, dtype=np.float32)
        for feature in self._features(text):
            slot, sign = self._bucket(feature)
            vec[slot] += sign
        norm = float(np.linalg.norm(vec))
        return vec / norm if norm > 0.0 else vec

    async def embed(self, texts: list[str]) -> np.ndarray:
        if not texts:
            return _empty(self.dims)
        return np.vstack([self._encode(t) for t in texts]).astype(np.float32, copy=False)

    async def embed_single(self, text: str) -> np.ndarray:
        return self._encode(text)

    async def close(self) -> None:
        return None


class SentenceTransformerEmbedder:
    """Local semantic embedder (``pip install engram-memory[semantic]``)."""

    def __init__(self, model: str = "all-MiniLM-L6-v2", dims: int = 384, batch_size: int = 32) -> None:
        self.model = model or "all-MiniLM-L6-v2"
        self.dims = int(dims)
        self.batch_size = batch_size
        self._st = None

    def _load(self):
        if self._st is None:
            from sentence_transformers import SentenceTransformer

            self._st = SentenceTransformer(self.model)
        return self._st

    def _encode_sync(self, texts: list[str]) -> np.ndarray:
        if not texts:
            return _empty(self.dims)
        out = self._load().encode(
            texts,
            batch_size=self.batch_size,
            normalize_embeddings=True,
            show_progress_bar=False,
        )
        return np.atleast_2d(np.asarray(out, dtype=np.float32))

    async def embed(self, texts: list[str]) -> np.ndarray:
        return await asyncio.to_thread(self._encode_sync, texts)

    async def embed_single(self, text: str) -> np.ndarray:
        return (await self.embed([text]))[0]

    async def close(self) -> None:
        self._st = None


def create_embedder(config: EmbeddingConfig | None = None) -> EmbeddingProvider:
    cfg = config or EmbeddingConfig()
    provider = (cfg.provider or "hash").strip().lower()
    if provider == "hash":
        return HashEmbedder(dims=cfg.dims)
    if provider == "openai":
        return OpenAIEmbedder(
            api_key=cfg.api_key or None,
            model=cfg.model,
            dims=cfg.dims,
            base_url=cfg.base_url or "https://api.openai.com/v1",
            timeout=cfg.timeout,
            batch_size=cfg.batch_size,
        )
    if provider == "ollama":
        return OllamaEmbedder(
            model=cfg.model,
            dims=cfg.dims,
            base_url=cfg.base_url or "http://127.0.0.1:11434",
            timeout=cfg.timeout,
            batch_size=cfg.batch_size,
        )
    if provider in {"sbert", "sentence-transformers"}:
        return SentenceTransformerEmbedder(model=cfg.model, dims=cfg.dims, batch_size=cfg.batch_size)
    raise ValueError(f"Unsupported embedding provider: {cfg.provider}")
