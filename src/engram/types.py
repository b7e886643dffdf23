"""Core data types for the memory engine."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field

from engram.utils import new_id, utcnow


class MemoryKind(str, Enum):
    FACT = "fact"
    PREFERENCE = "preference"
    EXPERIENCE = "experience"
    OBSERVATION = "observation"
    SKILL = "skill"
    RELATIONSHIP = "relationship"
    GOAL = "goal"
    TASK = "task"
    KNOWLEDGE = "knowledge"
    CONVERSATION = "conversation"


class Entity(BaseModel):
    text: str
    type: str
    confidence: float = 0.7


class MemoryContext(BaseModel):
    user_id: str | None = None
    conversation_id: str | None = None
    workspace_id: str | None = None
    timestamp: datetime = Field(default_factory=utcnow)
    relevant_entities: list[Entity] = Field(default_factory=list)


class MemorySource(BaseModel):
    type: str = "system"
    identifier: str = ""
    reliability: float = Field(default=0.5, ge=0.0, le=1.0)


# --- Kind-specific metadata (tagged by ``kind``) ---

class EpisodeDetails(BaseModel):
    kind: Literal["experience"] = "experience"
    event: str = "Unknown event"
    outcome: str = "Unknown outcome"
    participants: list[str] = Field(default_factory=list)
    location: str | None = None
    duration: float | None = None  # seconds
    emotions: list[str] = Field(default_factory=list)
    lessons: list[str] = Field(default_factory=list)
    success: bool = False


class PreferenceDetails(BaseModel):
    kind: Literal["preference"] = "preference"
    category: str = "general"
    strength: float = Field(default=0.5, ge=0.0, le=1.0)


KindDetails = Annotated[Union[EpisodeDetails, PreferenceDetails], Field(discriminator="kind")]


class MemoryMetadata(BaseModel):
    language: str = "en"
    sentiment: float = 0.0
    entities: list[Entity] = Field(default_factory=list)
    keywords: list[str] = Field(default_factory=list)
    topics: list[str] = Field(default_factory=list)
    verified: bool = False
    contradicts: list[str] = Field(default_factory=list)
    details: KindDetails | None = None
    extra: dict[str, Any] = Field(default_factory=dict)


class MemoryItem(BaseModel):
    id: str = Field(default_factory=new_id)
    kind: MemoryKind
    content: str
    context: MemoryContext = Field(default_factory=MemoryContext)
    importance: float = Field(default=0.5, ge=0.0, le=1.0)
    confidence: float = Field(default=0.8, ge=0.0, le=1.0)
    tags: list[str] = Field(default_factory=list)
    relationships: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    last_accessed: datetime = Field(default_factory=utcnow)
    access_count: int = 0
    source: MemorySource = Field(default_factory=MemorySource)
    metadata: MemoryMetadata = Field(default_factory=MemoryMetadata)


class SearchResult(BaseModel):
    memory: MemoryItem
    score: float
    explanation: str = ""


class Pattern(BaseModel):
    id: str = Field(default_factory=new_id)
    pattern_key: str = ""
    description: str
    frequency: int
    confidence: float
    related_episodes: list[str] = Field(default_factory=list)
    predictive_value: float
    updated_at: datetime = Field(default_factory=utcnow)


class TimeRange(BaseModel):
    start: datetime | None = None
    end: datetime | None = None


class ContextFilter(BaseModel):
    user_id: str | None = None
    conversation_id: str | None = None
    workspace_id: str | None = None


class MemoryQuery(BaseModel):
    query: str
    kinds: list[MemoryKind] | None = None
    context: ContextFilter | None = None
    min_importance: float | None = None
    max_results: int | None = None
    time_range: TimeRange | None = None


# --- Caller input (validated by the stores, not by pydantic) ---

@dataclass
class MemoryCandidate:
    content: str | None = None
    kind: MemoryKind | str | None = None
    context: MemoryContext | dict[str, Any] | None = None
    importance: float | None = None
    confidence: float | None = None
    tags: list[str] | None = None
    relationships: list[str] | None = None
    source: MemorySource | dict[str, Any] | None = None
    metadata: MemoryMetadata | dict[str, Any] | None = None


@dataclass
class MemoryPatch:
    content: str | None = None
    importance: float | None = None
    confidence: float | None = None
    tags: list[str] | None = None
    relationships: list[str] | None = None
    metadata: MemoryMetadata | None = None


@dataclass
class EpisodeDraft:
    event: str | None = None
    outcome: str | None = None
    success: bool = False
    content: str | None = None
    context: MemoryContext | dict[str, Any] | None = None
    participants: list[str] | None = None
    location: str | None = None
    duration: float | None = None
    emotions: list[str] | None = None
    lessons: list[str] | None = None
    importance: float | None = None
    confidence: float | None = None
    tags: list[str] | None = None
    source: MemorySource | dict[str, Any] | None = None


@dataclass
class MemoryFilter:
    """Store-level listing filter; every field is optional."""

    kinds: list[MemoryKind] | None = None
    min_importance: float | None = None
    created_after: datetime | None = None
    created_before: datetime | None = None
    user_id: str | None = None
    conversation_id: str | None = None
    workspace_id: str | None = None

    @classmethod
    def from_query(cls, query: MemoryQuery) -> MemoryFilter:
        ctx = query.context or ContextFilter()
        tr = query.time_range or TimeRange()
        return cls(
            kinds=list(query.kinds) if query.kinds else None,
            min_importance=query.min_importance,
            created_after=tr.start,
            created_before=tr.end,
            user_id=ctx.user_id,
            conversation_id=ctx.conversation_id,
            workspace_id=ctx.workspace_id,
        )


@dataclass
class Episode:
    """Read view of an Experience memory with its episodic details unpacked."""

    memory: MemoryItem
    details: EpisodeDetails

    @classmethod
    def from_item(cls, item: MemoryItem) -> Episode:
        details = item.metadata.details
        if not isinstance(details, EpisodeDetails):
            details = EpisodeDetails()
        return cls(memory=item, details=details)

    @property
    def id(self) -> str:
        return self.memory.id

    @property
    def event(self) -> str:
        return self.details.event

    @property
    def outcome(self) -> str:
        return self.details.outcome

    @property
    def success(self) -> bool:
        return self.details.success

    @property
    def lessons(self) -> list[str]:
        return self.details.lessons
