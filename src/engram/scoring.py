"""Importance, relevance and housekeeping heuristics."""

from __future__ import annotations

from datetime import datetime

from engram.config import CompressionConfig, ImportanceConfig, RetrievalConfig
from engram.types import MemoryItem, MemoryKind, MemoryQuery
from engram.utils import age_in_days, clamp


def calculate_importance(
    *,
    kind: MemoryKind,
    content: str,
    created_at: datetime,
    access_count: int,
    sentiment: float,
    source_reliability: float | None,
    config: ImportanceConfig | None = None,
    now: datetime | None = None,
) -> float:
    """Weighted importance in [0, 1].

    recency decays linearly over a year, access frequency saturates at 10 hits,
    uniqueness saturates at 1000 characters, and emotional significance is the
    magnitude of the sentiment. The per-kind adjustment is added last.
    """
    cfg = config or ImportanceConfig()
    recency = max(0.0, 1.0 - age_in_days(created_at, now) / 365.0)
    access_frequency = min(1.0, access_count / 10.0)
    uniqueness = min(1.0, len(content) / 1000.0)
    emotional = min(1.0, abs(sentiment))
    reliability = 0.5 if source_reliability is None else source_reliability

    score = (
        recency * cfg.recency_weight
        + access_frequency * cfg.access_frequency_weight
        + uniqueness * cfg.uniqueness_weight
        + emotional * cfg.emotional_weight
        + reliability * cfg.source_reliability_weight
    )
    score += cfg.kind_adjustments.get(kind, 0.0)
    return clamp(score)


def generate_tags(item: MemoryItem, config: ImportanceConfig | None = None) -> list[str]:
    cfg = config or ImportanceConfig()
    tags = [item.kind.value]
    if item.context.workspace_id:
        tags.append(f"workspace:{item.context.workspace_id}")
    if item.context.conversation_id:
        tags.append(f"conversation:{item.context.conversation_id}")
    if item.source.type:
        tags.append(f"source:{item.source.type}")
    if item.importance > cfg.high_threshold:
        tags.append("high-importance")
    elif item.importance < cfg.low_threshold:
        tags.append("low-importance")
    return tags


def keyword_overlap(query_keywords: list[str], memory_keywords: list[str]) -> float:
    if not query_keywords:
        return 0.0
    stored = set(memory_keywords)
    matched = sum(1 for k in query_keywords if k in stored)
    return matched / len(query_keywords)


def relevance_score(
    memory: MemoryItem,
    similarity: float,
    query_keywords: list[str],
    config: RetrievalConfig | None = None,
    now: datetime | None = None,
) -> float:
    cfg = config or RetrievalConfig()
    recency = max(0.0, 1.0 - age_in_days(memory.created_at, now) / 365.0)
    score = (
        cfg.importance_weight * memory.importance
        + cfg.similarity_weight * max(0.0, similarity)
        + cfg.keyword_weight * keyword_overlap(query_keywords, memory.metadata.keywords)
        + cfg.recency_weight * recency
    )
    return clamp(score)


def explain(memory: MemoryItem, query: MemoryQuery, score: float) -> str:
    reasons: list[str] = []
    if memory.importance > 0.7:
        reasons.append("high importance")
    if score > 0.8:
        reasons.append("strong content similarity")
    lowered = query.query.lower()
    if any(k and k in lowered for k in memory.metadata.keywords):
        reasons.append("keyword match")
    conversation_id = query.context.conversation_id if query.context else None
    if conversation_id and conversation_id == memory.context.conversation_id:
        reasons.append("same conversation")
    if not reasons:
        return "General relevance"
    return "Relevant due to: " + ", ".join(reasons)


def should_compress(
    memory: MemoryItem,
    config: CompressionConfig | None = None,
    now: datetime | None = None,
) -> bool:
    """Old, idle, rarely used and unimportant memories are compression candidates."""
    cfg = config or CompressionConfig()
    return (
        age_in_days(memory.created_at, now) > cfg.min_age_days
        and age_in_days(memory.last_accessed, now) > cfg.idle_days
        and memory.access_count < cfg.max_access_count
        and memory.importance < cfg.max_importance
    )


def compression_rank(kind: MemoryKind, config: CompressionConfig | None = None) -> int:
    cfg = config or CompressionConfig()
    try:
        return cfg.priority.index(kind)
    except ValueError:
        return len(cfg.priority)
