from __future__ import annotations

from datetime import datetime, timedelta, timezone

import numpy as np

from engram.storage.sqlite_store import SQLiteStore
from engram.types import (
    MemoryContext,
    MemoryFilter,
    MemoryItem,
    MemoryKind,
    MemoryMetadata,
    Pattern,
    PreferenceDetails,
)

T0 = datetime(2026, 3, 1, tzinfo=timezone.utc)


def _vec(seed: int, dims: int = 8) -> np.ndarray:
    return np.random.default_rng(seed).standard_normal(dims).astype(np.float32)


def _item(mid: str, **kw) -> MemoryItem:
    base = dict(id=mid, kind=MemoryKind.FACT, content=f"content {mid}", created_at=T0, last_accessed=T0)
    base.update(kw)
    return MemoryItem(**base)


def test_insert_roundtrips_memory_and_vector(tmp_path):
    store = SQLiteStore(tmp_path / "db" / "engram.db")
    item = _item(
        "m1",
        kind=MemoryKind.PREFERENCE,
        context=MemoryContext(user_id="u1"),
        tags=["a", "b"],
        metadata=MemoryMetadata(details=PreferenceDetails(category="technology", strength=0.8),
                                extra={"note": "x"}),
    )
    store.insert_memory(item, _vec(1), "hash-8")

    got = store.get_memory("m1")
    assert got == item
    assert isinstance(got.metadata.details, PreferenceDetails)
    assert np.allclose(store.get_vector("m1"), _vec(1))
    assert store.get_vector("m1", model="other") is None
    assert [mid for mid, _ in store.iter_vectors("hash-8")] == ["m1"]
    assert store.list_ids_without_vector("other") == ["m1"]
    store.close()


def test_list_filters_and_orders(tmp_path):
    store = SQLiteStore(tmp_path / "engram.db")
    store.insert_memory(_item("low", importance=0.2, context=MemoryContext(user_id="u1")), _vec(1), "m")
    store.insert_memory(
        _item("high", importance=0.9, kind=MemoryKind.GOAL, created_at=T0 - timedelta(days=3)),
        _vec(2), "m",
    )
    store.insert_memory(_item("mid", importance=0.5, created_at=T0 + timedelta(days=1)), _vec(3), "m")

    assert [m.id for m in store.list_memories()] == ["high", "mid", "low"]
    assert [m.id for m in store.list_memories(order="created")] == ["mid", "low", "high"]
    assert [m.id for m in store.list_memories(MemoryFilter(kinds=[MemoryKind.GOAL]))] == ["high"]
    assert [m.id for m in store.list_memories(MemoryFilter(min_importance=0.4))] == ["high", "mid"]
    assert [m.id for m in store.list_memories(MemoryFilter(user_id="u1"))] == ["low"]
    assert [m.id for m in store.list_memories(MemoryFilter(created_after=T0))] == ["mid", "low"]
    assert [m.id for m in store.list_memories(limit=1, offset=1)] == ["mid"]
    assert store.count_memories() == 3
    assert store.count_memories(MemoryKind.GOAL) == 1
    store.close()


def test_replace_touch_delete_and_references(tmp_path):
    store = SQLiteStore(tmp_path / "engram.db")
    store.insert_memory(_item("a"), _vec(1), "m")
    store.insert_memory(_item("b", relationships=["a"]), _vec(2), "m")
    store.insert_memory(_item("c", metadata=MemoryMetadata(contradicts=["a"])), _vec(3), "m")

    assert [m.id for m in store.find_referencing(["a"])] == ["b", "c"]

    updated = store.get_memory("a").model_copy(update={"content": "new"})
    assert store.replace_memory(updated, _vec(9), "m") is True
    assert store.get_memory("a").content == "new"
    assert np.allclose(store.get_vector("a"), _vec(9))
    assert store.replace_memory(_item("ghost")) is False

    assert store.touch_memories(["a", "ghost"], T0 + timedelta(hours=1)) == ["a"]
    touched = store.get_memory("a")
    assert touched.access_count == 1
    assert touched.last_accessed == T0 + timedelta(hours=1)

    assert store.delete_memory("a") is True
    assert store.delete_memory("a") is False
    assert store.get_vector("a") is None
    assert store.get_memories(["a", "b"]).keys() == {"b"}
    store.close()


def test_pattern_upsert_keeps_first_id(tmp_path):
    store = SQLiteStore(tmp_path / "engram.db")
    first = Pattern(id="p1", pattern_key="deploy", description="Pattern for: deploy",
                    frequency=2, confidence=0.4, related_episodes=["e1", "e2"], predictive_value=0.5)
    assert store.upsert_pattern(first) == "p1"
    again = first.model_copy(update={"id": "p2", "frequency": 3, "confidence": 0.6})
    assert store.upsert_pattern(again) == "p1"

    patterns = store.list_patterns()
    assert len(patterns) == 1
    assert patterns[0].frequency == 3
    assert patterns[0].related_episodes == ["e1", "e2"]
    store.close()
