"""Engram configuration."""

from __future__ import annotations

import os
from pathlib import Path

from pydantic import BaseModel, Field

from engram.types import MemoryKind


def _default_data_dir() -> Path:
    return Path(os.environ.get("ENGRAM_DATA_DIR", Path.cwd() / "data"))


class EmbeddingConfig(BaseModel):
    provider: str = Field(default_factory=lambda: os.environ.get("ENGRAM_EMBED_PROVIDER", "hash"))
    model: str = Field(default_factory=lambda: os.environ.get("ENGRAM_EMBED_MODEL", "all-MiniLM-L6-v2"))
    dims: int = Field(default_factory=lambda: int(os.environ.get("ENGRAM_VECTOR_DIMENSION", "384")))
    batch_size: int = 32
    timeout: float = 10.0
    base_url: str = ""
    api_key: str = Field(default_factory=lambda: os.environ.get("ENGRAM_EMBED_API_KEY", ""))


class CacheConfig(BaseModel):
    capacity: int = 10_000


class DefaultsConfig(BaseModel):
    importance: float = 0.5
    confidence: float = 0.8
    max_relationships: int = 10
    default_tags: list[str] = Field(default_factory=lambda: ["auto-generated"])
    source_reliability: float = 0.5
    episodic_source_reliability: float = 0.8


class ImportanceConfig(BaseModel):
    recency_weight: float = 0.3
    access_frequency_weight: float = 0.2
    uniqueness_weight: float = 0.2
    emotional_weight: float = 0.15
    source_reliability_weight: float = 0.15
    kind_adjustments: dict[MemoryKind, float] = Field(
        default_factory=lambda: {
            MemoryKind.PREFERENCE: 0.2,
            MemoryKind.GOAL: 0.15,
            MemoryKind.FACT: 0.1,
            MemoryKind.TASK: -0.1,
        }
    )
    high_threshold: float = 0.8
    low_threshold: float = 0.3


class RetrievalConfig(BaseModel):
    max_candidates: int = 50
    max_results: int = 10
    min_score: float = 0.1
    importance_weight: float = 0.3
    similarity_weight: float = 0.4
    keyword_weight: float = 0.2
    recency_weight: float = 0.1
    search_timeout: float = 5.0


class DedupConfig(BaseModel):
    similarity_threshold: float = 0.9
    neighbors: int = 5


class EpisodicConfig(BaseModel):
    similar_limit: int = 10
    link_limit: int = 5
    long_duration_seconds: float = 3600.0
    frustration_emotions: list[str] = Field(default_factory=lambda: ["frustration", "anger"])


class ConsolidationConfig(BaseModel):
    enabled: bool = True
    threshold: float = 0.8


class SecurityConfig(BaseModel):
    max_content_chars: int = 10_000
    max_memory_size: int = Field(
        default_factory=lambda: int(os.environ.get("ENGRAM_MAX_MEMORY_SIZE", "1048576"))
    )
    allowed_sources: list[str] = Field(
        default_factory=lambda: [
            "chat", "file", "web", "user_input", "system", "inference", "conversation", "external",
        ]
    )


class RetentionConfig(BaseModel):
    days: dict[MemoryKind, int] = Field(
        default_factory=lambda: {
            MemoryKind.CONVERSATION: 90,
            MemoryKind.FACT: 365,
            MemoryKind.PREFERENCE: 730,
            MemoryKind.SKILL: 365,
            MemoryKind.EXPERIENCE: 180,
            MemoryKind.RELATIONSHIP: 365,
            MemoryKind.GOAL: 365,
            MemoryKind.TASK: 30,
            MemoryKind.KNOWLEDGE: 730,
            MemoryKind.OBSERVATION: 60,
        }
    )
    # Goals and preferences above this importance survive their retention window.
    protected_kinds: list[MemoryKind] = Field(
        default_factory=lambda: [MemoryKind.GOAL, MemoryKind.PREFERENCE]
    )
    protected_importance: float = 0.8


class CompressionConfig(BaseModel):
    min_age_days: float = 30.0
    idle_days: float = 7.0
    max_access_count: int = 3
    max_importance: float = 0.5
    # Compressed first -> compressed last.
    priority: list[MemoryKind] = Field(
        default_factory=lambda: [
            MemoryKind.CONVERSATION,
            MemoryKind.OBSERVATION,
            MemoryKind.TASK,
            MemoryKind.EXPERIENCE,
            MemoryKind.KNOWLEDGE,
            MemoryKind.FACT,
            MemoryKind.SKILL,
            MemoryKind.RELATIONSHIP,
            MemoryKind.GOAL,
            MemoryKind.PREFERENCE,
        ]
    )


class LoggingConfig(BaseModel):
    level: str = Field(default_factory=lambda: os.environ.get("ENGRAM_LOG_LEVEL", "INFO"))
    file: str | None = None


class Config(BaseModel):
    data_dir: Path = Field(default_factory=_default_data_dir)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    defaults: DefaultsConfig = Field(default_factory=DefaultsConfig)
    importance: ImportanceConfig = Field(default_factory=ImportanceConfig)
    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)
    dedup: DedupConfig = Field(default_factory=DedupConfig)
    episodic: EpisodicConfig = Field(default_factory=EpisodicConfig)
    consolidation: ConsolidationConfig = Field(default_factory=ConsolidationConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    retention: RetentionConfig = Field(default_factory=RetentionConfig)
    compression: CompressionConfig = Field(default_factory=CompressionConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @property
    def db_path(self) -> Path:
        return self.data_dir / "db" / "engram.db"

    def ensure_dirs(self) -> None:
        for d in [self.data_dir, self.db_path.parent]:
            d.mkdir(parents=True, exist_ok=True)
