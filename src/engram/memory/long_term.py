"""Long-term memory: validated CRUD, dedup-on-write, ranked retrieval."""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import numpy as np
from loguru import logger
from pydantic import ValidationError as PydanticValidationError

from engram.config import Config
from engram.embeddings.backends import EmbeddingProvider
from engram.embeddings.cache import EmbeddingCache
from engram.exceptions import (
    DimensionMismatch,
    EngramError,
    NotFoundError,
    ProviderError,
    ValidationError,
)
from engram.memory.locks import KeyedLocks
from engram.nlp import (
    analyze_sentiment,
    extract_entities,
    extract_keywords,
    extract_topics,
    infer_preference,
)
from engram.protocol.types import MemoryStore
from engram.scoring import (
    calculate_importance,
    compression_rank,
    explain,
    generate_tags,
    relevance_score,
    should_compress,
)
from engram.storage.vector_index import VectorIndex, cosine_similarity
from engram.types import (
    MemoryCandidate,
    MemoryContext,
    MemoryFilter,
    MemoryItem,
    MemoryKind,
    MemoryMetadata,
    MemoryPatch,
    MemoryQuery,
    MemorySource,
    PreferenceDetails,
    SearchResult,
)
from engram.utils import age_in_days, collapse_whitespace, dedupe, utcnow

_SENTENCE_END_RE = re.compile(r"[.!?;:]$")
_MAX_MERGED_KEYWORDS = 20


def sanitize_content(content: str, max_chars: int) -> str:
    """Trim, collapse whitespace and cap length."""
    return collapse_whitespace(content)[:max_chars]


def synthesize_content(contents: list[str], max_chars: int) -> str:
    """Join distinct statements, skipping any already contained in the text so far."""
    parts: list[str] = []
    for text in contents:
        text = text.strip()
        if not text:
            continue
        joined = " ".join(parts).lower()
        if text.lower() in joined:
            continue
        # Earlier parts fully contained in the newcomer are superseded by it.
        parts = [p for p in parts if p.lower() not in text.lower()]
        parts.append(text)
    out = ""
    for part in parts:
        if not out:
            out = part
        elif _SENTENCE_END_RE.search(out):
            out = f"{out} {part}"
        else:
            out = f"{out}. {part}"
    return out[:max_chars]


def _prefer_content(existing: str, incoming: str) -> str:
    a, b = existing.lower(), incoming.lower()
    if b in a:
        return existing
    if a in b:
        return incoming
    return existing if len(existing) >= len(incoming) else incoming


def merge_items(
    target: MemoryItem,
    incoming: MemoryItem,
    *,
    content: str,
    max_relationships: int,
    drop_ids: set[str] | None = None,
) -> MemoryItem:
    """Fold ``incoming`` into ``target``; the result keeps ``target.id`` and kind.

    Ids in ``drop_ids`` (the merged members themselves) are removed from the
    relationship and contradiction lists so the result never points at them.
    Kind-specific ``details`` are only taken from a member of the same kind.
    """
    drop = set(drop_ids or set()) | {target.id, incoming.id}
    tm, im = target.metadata, incoming.metadata

    entities = list(tm.entities)
    seen_entities = {(e.text, e.type) for e in entities}
    for ent in im.entities:
        if (ent.text, ent.type) not in seen_entities:
            seen_entities.add((ent.text, ent.type))
            entities.append(ent)

    merge_count = int(tm.extra.get("merge_count", 0)) + int(im.extra.get("merge_count", 0)) + 1
    metadata = tm.model_copy(update={
        "sentiment": tm.sentiment if abs(tm.sentiment) >= abs(im.sentiment) else im.sentiment,
        "entities": entities,
        "keywords": dedupe(tm.keywords + im.keywords)[:_MAX_MERGED_KEYWORDS],
        "topics": dedupe(tm.topics + im.topics),
        "verified": tm.verified or im.verified,
        "contradicts": [c for c in dedupe(tm.contradicts + im.contradicts) if c not in drop],
        "details": tm.details if tm.details is not None or incoming.kind is not target.kind else im.details,
        "extra": {**im.extra, **tm.extra, "merge_count": merge_count},
    })
    source = target.source if target.source.reliability >= incoming.source.reliability else incoming.source
    relationships = [r for r in dedupe(target.relationships + incoming.relationships) if r not in drop]
    return target.model_copy(update={
        "content": content,
        "importance": max(target.importance, incoming.importance),
        "confidence": max(target.confidence, incoming.confidence),
        "tags": dedupe(target.tags + incoming.tags),
        "relationships": relationships[:max_relationships],
        "created_at": min(target.created_at, incoming.created_at),
        "last_accessed": max(target.last_accessed, incoming.last_accessed),
        "access_count": target.access_count + incoming.access_count,
        "source": source,
        "metadata": metadata,
    })


@dataclass
class _Parsed:
    kind: MemoryKind
    content: str
    context: MemoryContext
    source: MemorySource | None
    metadata: MemoryMetadata | None


class LongTermStore:
    """Authoritative CRUD over memory items.

    Writes embed first and persist second, so a provider failure leaves no
    trace; the vector index is only touched after the store commits.
    """

    def __init__(
        self,
        store: MemoryStore,
        index: VectorIndex,
        embedder: EmbeddingProvider,
        cache: EmbeddingCache,
        config: Config | None = None,
        locks: KeyedLocks | None = None,
    ) -> None:
        self.db = store
        self.index = index
        self.embedder = embedder
        self.cache = cache
        self.config = config or Config()
        self.locks = locks or KeyedLocks()

    @property
    def model(self) -> str:
        return self.index.model

    # --- Embedding ---

    async def embed(self, text: str) -> np.ndarray:
        cached = self.cache.get(text)
        if cached is not None:
            return cached
        timeout = self.config.embedding.timeout
        try:
            raw = await asyncio.wait_for(self.embedder.embed_single(text), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise ProviderError(f"Embedding timed out after {timeout}s") from exc
        except EngramError:
            raise
        except Exception as exc:
            raise ProviderError(f"Embedding provider failed: {exc}") from exc
        vec = np.asarray(raw, dtype=np.float32).ravel()
        if vec.shape[0] != self.index.dims:
            raise DimensionMismatch(self.index.dims, vec.shape[0],
                                    detail=f"provider model {self.embedder.model!r}")
        self.cache.put(text, vec)
        return vec

    # --- Validation ---

    def _parse(self, candidate: MemoryCandidate) -> tuple[_Parsed | None, list[str]]:
        errors: list[str] = []
        sec = self.config.security

        content = candidate.content
        if not isinstance(content, str) or not content.strip():
            errors.append("Memory content is required")
            content = ""
        elif len(content.encode("utf-8")) > sec.max_memory_size:
            errors.append(f"Memory content exceeds {sec.max_memory_size} bytes")

        kind: MemoryKind | None = None
        try:
            kind = MemoryKind(candidate.kind) if candidate.kind is not None else None
        except ValueError:
            kind = None
        if kind is None:
            errors.append("Valid memory kind is required")

        context: MemoryContext | None = None
        if candidate.context is None:
            errors.append("Memory context is required")
        else:
            try:
                context = MemoryContext.model_validate(candidate.context)
            except PydanticValidationError as exc:
                errors.append(f"Invalid memory context: {exc.errors()[0]['msg']}")

        for name in ("importance", "confidence"):
            value = getattr(candidate, name)
            if value is not None and not (isinstance(value, (int, float)) and 0.0 <= value <= 1.0):
                errors.append(f"{name.capitalize()} must be between 0 and 1")

        source: MemorySource | None = None
        if candidate.source is not None:
            try:
                source = MemorySource.model_validate(candidate.source)
            except PydanticValidationError as exc:
                errors.append(f"Invalid memory source: {exc.errors()[0]['msg']}")
            else:
                if source.type not in sec.allowed_sources:
                    errors.append(f"Memory source type '{source.type}' is not allowed")

        metadata: MemoryMetadata | None = None
        if candidate.metadata is not None:
            try:
                metadata = MemoryMetadata.model_validate(candidate.metadata)
            except PydanticValidationError as exc:
                errors.append(f"Invalid memory metadata: {exc.errors()[0]['msg']}")

        if candidate.relationships is not None and not all(
            isinstance(r, str) for r in candidate.relationships
        ):
            errors.append("Relationships must be memory ids")
        if candidate.tags is not None and not all(isinstance(t, str) for t in candidate.tags):
            errors.append("Tags must be strings")

        if errors:
            return None, errors
        return _Parsed(kind, content, context, source, metadata), []

    def check(self, candidate: MemoryCandidate) -> list[str]:
        """Every rule ``candidate`` violates (empty when valid)."""
        return self._parse(candidate)[1]

    def _analyze(self, kind: MemoryKind, content: str, provided: MemoryMetadata | None) -> MemoryMetadata:
        """Fill sentiment, entities, keywords and topics the caller left empty."""
        meta = provided or MemoryMetadata()
        updates: dict[str, Any] = {}
        if not meta.sentiment:
            updates["sentiment"] = analyze_sentiment(content)
        if not meta.entities:
            updates["entities"] = extract_entities(content)
        if not meta.keywords:
            updates["keywords"] = extract_keywords(content)
        if not meta.topics:
            updates["topics"] = extract_topics(content)
        if kind is MemoryKind.PREFERENCE and meta.details is None:
            category, strength = infer_preference(content)
            updates["details"] = PreferenceDetails(category=category, strength=strength)
        return meta.model_copy(update=updates)

    def _existing_ids(self, ids: list[str], exclude: str | None = None) -> list[str]:
        wanted = [i for i in dedupe(ids) if i != exclude]
        found = self.db.get_memories(wanted)
        missing = [i for i in wanted if i not in found]
        if missing:
            logger.debug("Dropping references to unknown memories: {}", missing)
        return [i for i in wanted if i in found]

    # --- Store ---

    async def store(self, candidate: MemoryCandidate, *, dedup: bool = True) -> str:
        """Validate, enrich, embed, dedup and persist a memory. Returns its id.

        When a near-duplicate of the same kind (similarity >= the dedup
        threshold among the top neighbors) exists, the candidate is merged
        into it and that id is returned instead of creating a new record.
        Experiences are never deduplicated.
        """
        parsed, errors = self._parse(candidate)
        if errors:
            raise ValidationError(errors)

        defaults = self.config.defaults
        content = sanitize_content(parsed.content, self.config.security.max_content_chars)
        metadata = self._analyze(parsed.kind, content, parsed.metadata)
        source = parsed.source or MemorySource(
            type="system", identifier="long-term", reliability=defaults.source_reliability
        )
        now = utcnow()
        importance = candidate.importance
        if importance is None:
            importance = calculate_importance(
                kind=parsed.kind,
                content=content,
                created_at=now,
                access_count=0,
                sentiment=metadata.sentiment,
                source_reliability=source.reliability,
                config=self.config.importance,
                now=now,
            )
        item = MemoryItem(
            kind=parsed.kind,
            content=content,
            context=parsed.context,
            importance=importance,
            confidence=defaults.confidence if candidate.confidence is None else candidate.confidence,
            created_at=now,
            last_accessed=now,
            source=source,
            metadata=metadata,
        )
        if candidate.tags is not None:
            item.tags = dedupe(list(candidate.tags))
        else:
            item.tags = dedupe(generate_tags(item, self.config.importance) + defaults.default_tags)
        if candidate.relationships:
            item.relationships = self._existing_ids(candidate.relationships, exclude=item.id)[
                : defaults.max_relationships
            ]

        vector = await self.embed(content)

        if dedup and item.kind is not MemoryKind.EXPERIENCE:
            neighbors = self.index.query(
                vector,
                threshold=self.config.dedup.similarity_threshold,
                limit=self.config.dedup.neighbors,
            )
            for neighbor_id, similarity in neighbors:
                if await self._merge_into(neighbor_id, item):
                    logger.debug("Merged new memory into {} (similarity {:.3f})", neighbor_id, similarity)
                    return neighbor_id

        self.db.insert_memory(item, vector, self.model)
        self.index.upsert(item.id, vector)
        logger.info("Stored memory {} ({}, importance {:.2f})", item.id, item.kind.value, item.importance)
        await self._backlink(item.id, item.relationships)
        return item.id

    async def _merge_into(self, target_id: str, incoming: MemoryItem) -> bool:
        async with self.locks.hold(target_id):
            existing = self.db.get_memory(target_id)
            if existing is None:
                # Stale index entry
                self.index.remove(target_id)
                return False
            if existing.kind is not incoming.kind:
                return False
            content = _prefer_content(existing.content, incoming.content)
            vector = await self.embed(content) if content != existing.content else None
            # Re-read: access counters may have moved while embedding.
            existing = self.db.get_memory(target_id)
            if existing is None:
                return False
            merged = merge_items(
                existing,
                incoming,
                content=content,
                max_relationships=self.config.defaults.max_relationships,
            )
            merged.last_accessed = utcnow()
            self.db.replace_memory(merged, vector, self.model if vector is not None else None)
            if vector is not None:
                self.index.upsert(target_id, vector)
        await self._backlink(target_id, incoming.relationships)
        return True

    async def _backlink(self, memory_id: str, peer_ids: list[str]) -> None:
        """Add ``memory_id`` to each peer's relationships, respecting the cap."""
        cap = self.config.defaults.max_relationships
        for peer_id in peer_ids:
            if peer_id == memory_id:
                continue
            try:
                async with self.locks.hold(peer_id):
                    peer = self.db.get_memory(peer_id)
                    if peer is None or memory_id in peer.relationships:
                        continue
                    if len(peer.relationships) >= cap:
                        logger.debug("Memory {} is at its relationship cap; skipping backlink", peer_id)
                        continue
                    peer.relationships = peer.relationships + [memory_id]
                    self.db.replace_memory(peer)
            except Exception as exc:
                logger.warning("Could not link {} -> {}: {}", peer_id, memory_id, exc)

    async def link(self, memory_id: str, related_ids: list[str]) -> list[str]:
        """One-directional: append existing ``related_ids`` to ``memory_id``'s relationships."""
        async with self.locks.hold(memory_id):
            item = self.db.get_memory(memory_id)
            if item is None:
                raise NotFoundError(memory_id)
            related = self._existing_ids(related_ids, exclude=memory_id)
            merged = dedupe(item.relationships + related)[: self.config.defaults.max_relationships]
            if merged != item.relationships:
                item.relationships = merged
                self.db.replace_memory(item)
            return merged

    # --- Read ---

    def get(self, memory_id: str) -> MemoryItem:
        item = self.db.get_memory(memory_id)
        if item is None:
            raise NotFoundError(memory_id)
        return item

    async def retrieve(self, query: MemoryQuery) -> list[SearchResult]:
        """Rank stored memories against ``query``.

        Raises ``TimeoutError`` when the search exceeds the configured timeout.
        Returned items have their access counters bumped.
        """
        return await asyncio.wait_for(self._retrieve(query), timeout=self.config.retrieval.search_timeout)

    async def _retrieve(self, query: MemoryQuery) -> list[SearchResult]:
        cfg = self.config.retrieval
        # Materialize candidates up front; deletes during scoring cannot break the scan.
        candidates = self.db.list_memories(
            MemoryFilter.from_query(query), limit=cfg.max_candidates, order="importance"
        )
        if not candidates:
            return []
        query_vec = await self.embed(query.query)
        query_keywords = extract_keywords(query.query)
        now = utcnow()

        scored: list[tuple[float, MemoryItem]] = []
        for i, item in enumerate(candidates):
            vec = self.index.get(item.id)
            similarity = cosine_similarity(query_vec, vec) if vec is not None else 0.0
            score = relevance_score(item, similarity, query_keywords, cfg, now)
            if score > cfg.min_score:
                scored.append((score, item))
            if i % 64 == 63:
                await asyncio.sleep(0)

        scored.sort(key=lambda s: (-s[0], -s[1].last_accessed.timestamp(), s[1].id))
        top = scored[: query.max_results or cfg.max_results]

        touched = set(self.db.touch_memories([item.id for _, item in top], now))
        results: list[SearchResult] = []
        for score, item in top:
            if item.id not in touched:
                continue
            item = item.model_copy(update={"access_count": item.access_count + 1, "last_accessed": now})
            results.append(SearchResult(memory=item, score=score, explanation=self._explain(item, query, score)))
        return results

    def _explain(self, item: MemoryItem, query: MemoryQuery, score: float) -> str:
        try:
            return explain(item, query, score)
        except Exception as exc:
            logger.warning("Explanation failed for {}: {}", item.id, exc)
            return "General relevance"

    # --- Update / Delete ---

    async def update(self, memory_id: str, patch: MemoryPatch) -> MemoryItem:
        errors: list[str] = []
        if patch.content is not None and not patch.content.strip():
            errors.append("Memory content cannot be empty")
        for name in ("importance", "confidence"):
            value = getattr(patch, name)
            if value is not None and not 0.0 <= value <= 1.0:
                errors.append(f"{name.capitalize()} must be between 0 and 1")
        if errors:
            raise ValidationError(errors)

        async with self.locks.hold(memory_id):
            item = self.get(memory_id)
            vector: np.ndarray | None = None
            content: str | None = None
            if patch.content is not None:
                content = sanitize_content(patch.content, self.config.security.max_content_chars)
                if content != item.content:
                    vector = await self.embed(content)
                else:
                    content = None
            # Re-read after the embedding await so concurrent touches are kept.
            item = self.get(memory_id)

            updates: dict[str, Any] = {"last_accessed": utcnow()}
            if content is not None:
                updates["content"] = content
                if patch.metadata is None:
                    updates["metadata"] = item.metadata.model_copy(update={
                        "sentiment": analyze_sentiment(content),
                        "entities": extract_entities(content),
                        "keywords": extract_keywords(content),
                        "topics": extract_topics(content),
                    })
            if patch.importance is not None:
                updates["importance"] = patch.importance
            if patch.confidence is not None:
                updates["confidence"] = patch.confidence
            if patch.tags is not None:
                updates["tags"] = dedupe(list(patch.tags))
            if patch.relationships is not None:
                updates["relationships"] = self._existing_ids(patch.relationships, exclude=memory_id)[
                    : self.config.defaults.max_relationships
                ]
            if patch.metadata is not None:
                updates["metadata"] = patch.metadata
            updated = item.model_copy(update=updates)
            self.db.replace_memory(updated, vector, self.model if vector is not None else None)
            if vector is not None:
                self.index.upsert(memory_id, vector)
        logger.debug("Updated memory {} (re-embedded: {})", memory_id, vector is not None)
        return updated

    async def delete(self, memory_id: str) -> None:
        async with self.locks.hold(memory_id):
            if self.db.get_memory(memory_id) is None:
                raise NotFoundError(memory_id)
            self.index.remove(memory_id)
            self._strip_references({memory_id: None})
            self.db.delete_memory(memory_id)
        logger.info("Deleted memory {}", memory_id)

    def _strip_references(self, mapping: dict[str, str | None]) -> int:
        """Rewrite references to the keys of ``mapping``.

        A key mapped to None is removed; otherwise it is re-pointed to its
        value. Self-references and duplicates that result are dropped.
        """
        cap = self.config.defaults.max_relationships
        changed = 0
        for peer in self.db.find_referencing(list(mapping)):
            if peer.id in mapping:
                continue

            def _rewrite(ids: list[str]) -> list[str]:
                out = []
                for ref in ids:
                    ref = mapping[ref] if ref in mapping else ref
                    if ref and ref != peer.id:
                        out.append(ref)
                return dedupe(out)

            relationships = _rewrite(peer.relationships)[:cap]
            contradicts = _rewrite(peer.metadata.contradicts)
            if relationships == peer.relationships and contradicts == peer.metadata.contradicts:
                continue
            peer.relationships = relationships
            peer.metadata = peer.metadata.model_copy(update={"contradicts": contradicts})
            self.db.replace_memory(peer)
            changed += 1
        return changed

    # --- Conflicts ---

    async def resolve_conflicts(self, memory_id: str) -> list[str]:
        """Downgrade memories this one contradicts when it is more trustworthy.

        Only the ids listed on ``memory_id`` are examined; the reverse
        direction is left to a separate call. Returns the downgraded ids.
        """
        item = self.get(memory_id)
        downgraded: list[str] = []
        for other_id in dedupe(item.metadata.contradicts):
            if other_id == memory_id:
                continue
            async with self.locks.hold(other_id):
                other = self.db.get_memory(other_id)
                if other is None:
                    logger.debug("Contradicted memory {} no longer exists", other_id)
                    continue
                if not (
                    item.confidence > other.confidence
                    or item.source.reliability > other.source.reliability
                ):
                    continue
                other = other.model_copy(update={
                    "confidence": other.confidence * 0.8,
                    "metadata": other.metadata.model_copy(update={"verified": False}),
                    "last_accessed": utcnow(),
                })
                self.db.replace_memory(other)
                downgraded.append(other_id)
        if downgraded:
            logger.info("Memory {} downgraded {} conflicting memories", memory_id, len(downgraded))
        return downgraded

    # --- Consolidation support ---

    async def merge_cluster(self, member_ids: list[str]) -> tuple[str | None, int]:
        """Collapse ``member_ids`` into one representative.

        The representative is the most important member (then the oldest,
        then the smallest id). It takes the union of tags, the maximum
        importance and a synthesized content; the other members are deleted
        and references to them are re-pointed to the representative.
        Clusters mixing kinds, or holding experiences, are left untouched.
        Returns ``(representative_id, removed_count)``.
        """
        async with self.locks.hold(*member_ids):
            members = self._live_members(member_ids)
            if len(members) < 2:
                return (members[0].id if members else None), 0
            kinds = {m.kind for m in members}
            if len(kinds) > 1 or MemoryKind.EXPERIENCE in kinds:
                logger.debug("Not merging cluster of kinds {}", sorted(k.value for k in kinds))
                return None, 0
            rep = min(members, key=lambda m: (-m.importance, m.created_at, m.id))
            ordered = [rep] + sorted((m for m in members if m.id != rep.id), key=lambda m: (m.created_at, m.id))
            content = synthesize_content([m.content for m in ordered], self.config.security.max_content_chars)
            vector = await self.embed(content) if content != rep.content else None

            members = self._live_members(member_ids)
            rep = next((m for m in members if m.id == rep.id), None)
            if rep is None or len(members) < 2:
                return (rep.id if rep else None), 0
            others = sorted((m for m in members if m.id != rep.id), key=lambda m: (m.created_at, m.id))
            drop_ids = {m.id for m in others}
            merged = rep
            for other in others:
                merged = merge_items(
                    merged,
                    other,
                    content=content,
                    max_relationships=self.config.defaults.max_relationships,
                    drop_ids=drop_ids,
                )

            self.db.replace_memory(merged, vector, self.model if vector is not None else None)
            if vector is not None:
                self.index.upsert(rep.id, vector)
            for other in others:
                self.index.remove(other.id)
                self.db.delete_memory(other.id)
            self._strip_references({mid: rep.id for mid in drop_ids})
        logger.debug("Merged {} memories into {}", len(others), rep.id)
        return rep.id, len(others)

    def _live_members(self, member_ids: list[str]) -> list[MemoryItem]:
        found = self.db.get_memories(list(member_ids))
        for mid in member_ids:
            if mid not in found and self.index.remove(mid):
                logger.debug("Dropped stale index entry {}", mid)
        return [found[mid] for mid in member_ids if mid in found]

    # --- Housekeeping ---

    def list_compression_candidates(self, limit: int = 100, now: datetime | None = None) -> list[MemoryItem]:
        """Memories eligible for compression, lowest-priority kinds first."""
        cfg = self.config.compression
        ref = now or utcnow()
        eligible = [m for m in self.db.list_memories() if should_compress(m, cfg, ref)]
        eligible.sort(key=lambda m: (compression_rank(m.kind, cfg), m.importance, m.last_accessed, m.id))
        return eligible[:limit]

    async def forget_expired(self, now: datetime | None = None, dry_run: bool = False) -> dict[str, Any]:
        """Delete memories older than their kind's retention period."""
        cfg = self.config.retention
        ref = now or utcnow()
        expired: list[str] = []
        for item in self.db.list_memories(order="created"):
            days = cfg.days.get(item.kind)
            if days is None or age_in_days(item.created_at, ref) <= days:
                continue
            if item.kind in cfg.protected_kinds and item.importance > cfg.protected_importance:
                continue
            expired.append(item.id)
        deleted = 0
        if not dry_run:
            for memory_id in expired:
                try:
                    await self.delete(memory_id)
                    deleted += 1
                except NotFoundError:
                    continue
        if expired:
            logger.info("Retention sweep: {} expired, {} deleted (dry_run={})", len(expired), deleted, dry_run)
        return {"candidate_count": len(expired), "deleted": deleted, "dry_run": dry_run, "ids": expired}
