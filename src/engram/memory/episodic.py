"""Episodic memory: experiences, lessons, outcome prediction and patterns."""

from __future__ import annotations

from collections import defaultdict

from loguru import logger
from pydantic import ValidationError as PydanticValidationError

from engram.config import Config
from engram.exceptions import NotFoundError, ValidationError
from engram.memory.long_term import LongTermStore
from engram.nlp import extract_entities, extract_keywords, normalize_event
from engram.types import (
    Episode,
    EpisodeDetails,
    EpisodeDraft,
    MemoryCandidate,
    MemoryFilter,
    MemoryKind,
    MemoryMetadata,
    MemorySource,
    Pattern,
    TimeRange,
)
from engram.utils import content_hash, dedupe

NO_PREDICTION = "No similar experiences found to predict outcome."


def derive_lessons(details: EpisodeDetails, frustration_emotions: list[str] | None = None,
                   long_duration: float = 3600.0) -> list[str]:
    lessons: list[str] = []
    if details.success:
        lessons.append(f"Successful approach: {details.event} led to {details.outcome}")
        if details.participants:
            lessons.append(f"Effective collaboration with: {', '.join(details.participants)}")
    else:
        lessons.append(f"Avoid: {details.event} as it resulted in {details.outcome}")
        triggers = {e.lower() for e in (frustration_emotions or ["frustration", "anger"])}
        if any(e.lower() in triggers for e in details.emotions):
            lessons.append("Consider emotional management strategies for similar situations")
    if details.duration and details.duration > long_duration:
        lessons.append("Consider breaking down similar tasks into smaller chunks")
    return lessons


def extract_patterns(episodes: list[Episode]) -> list[Pattern]:
    """Group episodes by normalized event; every group of two or more is a pattern."""
    groups: dict[str, list[Episode]] = defaultdict(list)
    for ep in episodes:
        groups[normalize_event(ep.event)].append(ep)

    patterns: list[Pattern] = []
    for key, group in groups.items():
        if len(group) < 2:
            continue
        successes = sum(1 for ep in group if ep.success)
        patterns.append(Pattern(
            id=content_hash(key.encode("utf-8"))[:32],
            pattern_key=key,
            description=f"Pattern for: {key}",
            frequency=len(group),
            confidence=min(0.9, len(group) * 0.2),
            related_episodes=dedupe([ep.id for ep in group]),
            predictive_value=successes / len(group),
        ))
    return patterns


def _bullets(lines: list[str]) -> str:
    return "\n".join(f"• {line}" for line in lines)


class EpisodicStore:
    """Experiences layered over the long-term store.

    Similar experiences are found lexically (substring, keyword and entity
    matches on the event and content) rather than by vector similarity.
    """

    def __init__(self, long_term: LongTermStore, config: Config | None = None) -> None:
        self.long_term = long_term
        self.db = long_term.db
        self.config = config or long_term.config

    # --- Recording ---

    def _validate(self, draft: EpisodeDraft) -> list[str]:
        errors = []
        if not isinstance(draft.event, str) or not draft.event.strip():
            errors.append("Episode event is required")
        if not isinstance(draft.outcome, str) or not draft.outcome.strip():
            errors.append("Episode outcome is required")
        if draft.context is None:
            errors.append("Episode context is required")
        if draft.duration is not None and (
            not isinstance(draft.duration, (int, float)) or draft.duration < 0
        ):
            errors.append("Episode duration must be a non-negative number of seconds")
        return errors

    async def record_episode(self, draft: EpisodeDraft) -> str:
        errors = self._validate(draft)
        if errors:
            raise ValidationError(errors)

        defaults = self.config.defaults
        try:
            details = EpisodeDetails(
                event=draft.event.strip(),
                outcome=draft.outcome.strip(),
                participants=list(draft.participants or []),
                location=draft.location,
                duration=draft.duration,
                emotions=list(draft.emotions or []),
                lessons=list(draft.lessons or []),
                success=bool(draft.success),
            )
        except PydanticValidationError as exc:
            raise ValidationError([f"Invalid episode: {exc.errors()[0]['msg']}"]) from exc
        derived = derive_lessons(details, self.config.episodic.frustration_emotions,
                                 self.config.episodic.long_duration_seconds)
        details.lessons = dedupe(details.lessons + derived)

        source = draft.source or MemorySource(
            type="system", identifier="episodic", reliability=defaults.episodic_source_reliability
        )
        candidate = MemoryCandidate(
            content=draft.content or f"{details.event}: {details.outcome}",
            kind=MemoryKind.EXPERIENCE,
            context=draft.context,
            importance=defaults.importance if draft.importance is None else draft.importance,
            confidence=draft.confidence,
            tags=draft.tags,
            source=source,
            metadata=MemoryMetadata(verified=True, details=details),
        )
        # Distinct episodes of the same event must stay separate records.
        episode_id = await self.long_term.store(candidate, dedup=False)
        logger.info("Recorded episode {} ({}, success={})", episode_id, details.event, details.success)
        await self._link_related(episode_id, details.event)
        return episode_id

    async def _link_related(self, episode_id: str, event: str) -> list[str]:
        limit = self.config.episodic.link_limit
        try:
            similar = self.find_similar_experiences(event, limit=limit, exclude={episode_id})
            if not similar:
                return []
            return await self.long_term.link(episode_id, [ep.id for ep in similar])
        except Exception as exc:
            logger.warning("Linking related episodes for {} failed: {}", episode_id, exc)
            return []

    # --- Lookup ---

    def get_episode(self, episode_id: str) -> Episode:
        item = self.db.get_memory(episode_id)
        if item is None or item.kind is not MemoryKind.EXPERIENCE:
            raise NotFoundError(episode_id)
        return Episode.from_item(item)

    def find_similar_experiences(
        self,
        description: str,
        limit: int | None = None,
        exclude: set[str] | None = None,
    ) -> list[Episode]:
        """Experiences whose event or content mentions the description, a keyword or an entity."""
        phrase = normalize_event(description)
        keywords = extract_keywords(description)
        entities = [normalize_event(e.text) for e in extract_entities(description)]
        needles = [n for n in dedupe([phrase] + keywords + entities) if n]
        if not needles:
            return []

        cap = self.config.episodic.similar_limit if limit is None else limit
        skip = exclude or set()
        matches: list[Episode] = []
        for item in self.db.list_memories(MemoryFilter(kinds=[MemoryKind.EXPERIENCE]), order="importance"):
            if item.id in skip:
                continue
            episode = Episode.from_item(item)
            haystack = normalize_event(f"{episode.event} {item.content}")
            if any(n in haystack for n in needles):
                matches.append(episode)
                if len(matches) >= cap:
                    break
        return matches

    def get_timeline(self, user_id: str, time_range: TimeRange | None = None) -> list[Episode]:
        tr = time_range or TimeRange()
        flt = MemoryFilter(
            kinds=[MemoryKind.EXPERIENCE],
            user_id=user_id,
            created_after=tr.start,
            created_before=tr.end,
        )
        return [Episode.from_item(m) for m in self.db.list_memories(flt, order="created")]

    # --- Prediction ---

    def predict_outcome(self, scenario: str) -> str:
        """Free-form summary of how similar past experiences turned out."""
        similar = self.find_similar_experiences(scenario)
        if not similar:
            return NO_PREDICTION

        positive = [ep.outcome for ep in similar if ep.success]
        negative = [ep.outcome for ep in similar if not ep.success]
        rate = len(positive) / len(similar)

        text = f"Based on {len(similar)} similar experiences:\n"
        text += f"Success rate: {rate * 100:.1f}%\n\n"
        if positive:
            text += "Likely positive outcomes:\n" + _bullets(positive[:3])
        if negative:
            text += "\n\nPotential challenges:\n" + _bullets(negative[:3])
        lessons = dedupe([lesson for ep in similar for lesson in ep.lessons])
        if lessons:
            text += "\n\nKey lessons from past experiences:\n" + _bullets(lessons[:3])
        return text

    # --- Patterns ---

    def extract_patterns(self, episodes: list[Episode]) -> list[Pattern]:
        return extract_patterns(episodes)

    async def learn_from_experience(self, episode_id: str) -> list[Pattern]:
        """Persist patterns involving this episode and refresh its links."""
        episode = self.get_episode(episode_id)
        key = normalize_event(episode.event)
        saved: list[Pattern] = []
        try:
            peers = self.find_similar_experiences(episode.event, exclude={episode_id})
            group = [episode] + [p for p in peers if normalize_event(p.event) == key]
            for pattern in extract_patterns(group):
                pattern.id = self.db.upsert_pattern(pattern)
                saved.append(pattern)
        except Exception as exc:
            logger.warning("Pattern extraction for {} failed: {}", episode_id, exc)
        if saved:
            logger.debug("Episode {} updated {} pattern(s)", episode_id, len(saved))
        await self._link_related(episode_id, episode.event)
        return saved

    def list_patterns(self, limit: int = 100) -> list[Pattern]:
        return self.db.list_patterns(limit)
