"""Lightweight text analysis: keywords, entities, sentiment, topics.

Everything here is regex and word-list based so it runs offline and is
deterministic. Results feed memory metadata and retrieval keyword matching.
"""

from __future__ import annotations

import re
from collections import Counter

from engram.types import Entity
from engram.utils import collapse_whitespace, dedupe

_NON_WORD_RE = re.compile(r"[^\w]")
_ALPHA_RE = re.compile(r"^[a-zA-Z]+$")
_PUNCT_RE = re.compile(r"[^\w\s]")

STOP_WORDS = frozenset({
    "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for", "of", "with",
    "by", "from", "up", "about", "into", "through", "during", "before", "after",
    "above", "below", "between", "among", "is", "are", "was", "were", "be", "been",
    "being", "have", "has", "had", "do", "does", "did", "will", "would", "could",
    "should", "may", "might", "must", "can", "this", "that", "these", "those",
    "i", "you", "he", "she", "it", "we", "they", "me", "him", "her", "us", "them",
})

POSITIVE_WORDS = frozenset({
    "good", "great", "excellent", "amazing", "wonderful", "fantastic", "love", "like",
    "happy", "pleased",
})
NEGATIVE_WORDS = frozenset({
    "bad", "terrible", "awful", "horrible", "hate", "dislike", "sad", "angry",
    "disappointed", "upset",
})

ENTITY_CONFIDENCE = 0.7
_ENTITY_PATTERNS: list[tuple[str, re.Pattern[str]]] = [
    ("PERSON", re.compile(r"\b[A-Z][a-z]+ [A-Z][a-z]+\b")),
    ("ORGANIZATION", re.compile(r"\b[A-Z][a-zA-Z]+ (?:Inc|Corp|LLC|Ltd|Company|Organization)\b")),
    ("LOCATION", re.compile(r"\b[A-Z][a-z]+ (?:City|State|Country|Street|Avenue|Road)\b")),
    ("DATE", re.compile(r"\b\d{1,2}/\d{1,2}/\d{4}\b|\b\d{4}-\d{2}-\d{2}\b")),
]

_PREFERENCE_CATEGORIES: dict[str, tuple[str, ...]] = {
    "food": ("eat", "food", "meal", "restaurant", "cuisine", "dish"),
    "music": ("music", "song", "artist", "band", "album", "genre"),
    "technology": ("software", "app", "tool", "platform", "device", "tech", "mode", "editor"),
    "work": ("work", "job", "career", "project", "task", "meeting"),
    "entertainment": ("movie", "show", "game", "book", "video", "series"),
    "lifestyle": ("exercise", "hobby", "activity", "sport", "travel"),
}
_PREFERENCE_STRENGTHS: list[tuple[re.Pattern[str], float]] = [
    (re.compile(r"\b(?:always|favorite)\b"), 0.9),
    (re.compile(r"\b(?:like|love|prefers?|enjoys?|wants?)\b"), 0.8),
    (re.compile(r"\busually\b"), 0.6),
    (re.compile(r"\b(?:dislikes?|hates?|avoids?)\b"), 0.2),
    (re.compile(r"\bnever\b"), 0.1),
]


def tokenize(text: str) -> list[str]:
    out = []
    for raw in (text or "").split():
        tok = _NON_WORD_RE.sub("", raw.lower())
        if tok:
            out.append(tok)
    return out


def stem(word: str) -> str:
    """Strip a handful of English suffixes; intentionally crude."""
    w = word.lower()
    if w.endswith("ing") and len(w) > 6:
        return w[:-3]
    if w.endswith("ed") and len(w) > 5:
        return w[:-2]
    if w.endswith("er") and len(w) > 5:
        return w[:-2]
    if w.endswith("ly") and len(w) > 5:
        return w[:-2]
    if w.endswith("tion") and len(w) > 7:
        return w[:-4]
    return w


def is_stop_word(word: str) -> bool:
    return word.lower() in STOP_WORDS


def extract_keywords(text: str, max_keywords: int = 10) -> list[str]:
    """Most frequent stemmed content words; ties keep first-seen order."""
    counts: Counter[str] = Counter()
    for tok in tokenize(text):
        if len(tok) <= 2 or is_stop_word(tok) or not _ALPHA_RE.match(tok):
            continue
        counts[stem(tok)] += 1
    # Counter.most_common is stable for equal counts (insertion order).
    return [word for word, _ in counts.most_common(max_keywords)]


def extract_entities(text: str) -> list[Entity]:
    entities: list[Entity] = []
    seen: set[tuple[str, str]] = set()
    for etype, pattern in _ENTITY_PATTERNS:
        for match in pattern.finditer(text or ""):
            key = (etype, match.group(0))
            if key in seen:
                continue
            seen.add(key)
            entities.append(Entity(text=match.group(0), type=etype, confidence=ENTITY_CONFIDENCE))
    return entities


def analyze_sentiment(text: str) -> float:
    """Word-list sentiment in [-1, 1]."""
    tokens = tokenize(text)
    if not tokens:
        return 0.0
    score = 0
    for tok in tokens:
        if tok in POSITIVE_WORDS:
            score += 1
        if tok in NEGATIVE_WORDS:
            score -= 1
    return max(-1.0, min(1.0, score / len(tokens)))


def extract_topics(text: str, max_topics: int = 5) -> list[str]:
    entity_types = dedupe([e.type.lower() for e in extract_entities(text)])
    keywords = extract_keywords(text, 20)
    topics = entity_types + keywords[: max(0, max_topics - len(entity_types))]
    return dedupe(topics)[:max_topics]


def infer_preference(text: str) -> tuple[str, float]:
    """Guess a (category, strength) pair for a stated preference."""
    lowered = (text or "").lower()
    category = "general"
    for name, words in _PREFERENCE_CATEGORIES.items():
        if any(w in lowered for w in words):
            category = name
            break
    strength = 0.5
    for pattern, value in _PREFERENCE_STRENGTHS:
        if pattern.search(lowered):
            strength = value
            break
    return category, strength


def normalize_event(text: str) -> str:
    """Lowercase, drop punctuation and collapse whitespace."""
    return collapse_whitespace(_PUNCT_RE.sub("", (text or "").lower()))
