from __future__ import annotations

import asyncio

from engram.config import Config
from engram.embeddings import HashEmbedder
from engram.engine import MemoryEngine
from engram.memory.episodic import NO_PREDICTION
from engram.types import (
    EpisodeDetails,
    EpisodeDraft,
    MemoryCandidate,
    MemoryContext,
    MemoryKind,
    MemoryMetadata,
    PreferenceDetails,
)


def _engine(tmp_path, **overrides) -> MemoryEngine:
    cfg = Config()
    cfg.data_dir = tmp_path
    cfg.ensure_dirs()
    for key, value in overrides.items():
        setattr(cfg.consolidation, key, value)
    return MemoryEngine(cfg, embedder=HashEmbedder(dims=cfg.embedding.dims))


def _candidate(content: str, kind: MemoryKind = MemoryKind.FACT, **kw) -> MemoryCandidate:
    return MemoryCandidate(content=content, kind=kind, context=MemoryContext(), **kw)


async def _store_raw(engine: MemoryEngine, content: str, **kw) -> str:
    # Bypass dedup-on-write so near-duplicates reach consolidation.
    return await engine.long_term.store(_candidate(content, **kw), dedup=False)


def test_consolidate_merges_duplicates_and_is_idempotent(tmp_path):
    async def _run() -> None:
        engine = _engine(tmp_path)
        low = await _store_raw(engine, "Backups are stored in the eu bucket", importance=0.4, tags=["ops"])
        high = await _store_raw(engine, "Backups are stored in the eu bucket", importance=0.9, tags=["storage"])
        other = await _store_raw(engine, "The design team prefers figma for mockups")

        first = await engine.consolidate()
        assert first["clusters_merged"] == 1
        assert first["memories_removed"] == 1
        assert first["remaining"] == 2
        assert engine.db.count_memories() == 2

        survivor = engine.get(high)
        assert survivor.importance == 0.9
        assert set(survivor.tags) >= {"ops", "storage"}
        assert low not in engine.index
        assert engine.db.get_memory(low) is None
        assert engine.db.get_memory(other) is not None

        second = await engine.consolidate()
        assert second["memories_removed"] == 0
        assert engine.db.count_memories() == 2
        assert engine.get(high) == survivor
        await engine.close()

    asyncio.run(_run())


def test_consolidate_repoints_references(tmp_path):
    async def _run() -> None:
        engine = _engine(tmp_path)
        keep = await _store_raw(engine, "Payroll runs on the last friday", importance=0.8)
        gone = await _store_raw(engine, "Payroll runs on the last friday", importance=0.2)
        peer = await _store_raw(
            engine,
            "Finance closes the books monthly",
            relationships=[gone],
            metadata=MemoryMetadata(contradicts=[gone]),
        )

        await engine.consolidate()

        after = engine.get(peer)
        assert after.relationships == [keep]
        assert after.metadata.contradicts == [keep]
        survivor = engine.get(keep)
        assert gone not in survivor.relationships
        assert keep not in survivor.relationships
        assert peer in survivor.relationships

        # No stored memory points at a deleted id.
        live = {m.id for m in engine.db.list_memories()}
        for item in engine.db.list_memories():
            assert set(item.relationships) <= live
            assert set(item.metadata.contradicts) <= live
        await engine.close()

    asyncio.run(_run())


def test_consolidate_synthesizes_distinct_content(tmp_path):
    async def _run() -> None:
        engine = _engine(tmp_path)
        rep = await _store_raw(engine, "The staging cluster restarts nightly at 2am", importance=0.9)
        await _store_raw(engine, "The staging cluster restarts nightly at 2am utc", importance=0.3)

        stats = await engine.consolidate(threshold=0.8)
        assert stats["memories_removed"] == 1
        merged = engine.get(rep)
        assert merged.content == "The staging cluster restarts nightly at 2am utc"

        again = await engine.consolidate(threshold=0.8)
        assert again["memories_removed"] == 0
        await engine.close()

    asyncio.run(_run())


def test_disabled_consolidation_is_a_noop(tmp_path):
    async def _run() -> None:
        engine = _engine(tmp_path, enabled=False)
        await _store_raw(engine, "Duplicate fact")
        await _store_raw(engine, "Duplicate fact")
        stats = await engine.consolidate()
        assert stats["enabled"] is False
        assert stats["passes"] == 0
        assert engine.db.count_memories() == 2
        await engine.close()

    asyncio.run(_run())


def _draft(event: str, outcome: str, success: bool) -> EpisodeDraft:
    return EpisodeDraft(event=event, outcome=outcome, success=success, context=MemoryContext(user_id="u1"))


def _assert_details_match_kind(engine: MemoryEngine) -> None:
    for item in engine.db.list_memories():
        details = item.metadata.details
        if item.kind is MemoryKind.EXPERIENCE:
            assert isinstance(details, EpisodeDetails)
        elif item.kind is MemoryKind.PREFERENCE:
            assert isinstance(details, PreferenceDetails)
        else:
            assert details is None


def test_repeated_episodes_survive_consolidation(tmp_path):
    async def _run() -> None:
        engine = _engine(tmp_path)
        ids = [
            await engine.record_episode(_draft("Deploy on friday", "went fine", True)),
            await engine.record_episode(_draft("Deploy on friday", "went fine", True)),
            await engine.record_episode(_draft("Deploy on friday", "went fine", False)),
        ]
        before = await engine.predict_outcome("deploy on friday")
        assert before.startswith("Based on 3 similar experiences:\n")
        assert "Success rate: 66.7%" in before

        stats = await engine.consolidate()
        assert stats["memories_removed"] == 0
        assert all(engine.db.get_memory(i) is not None for i in ids)
        assert await engine.predict_outcome("deploy on friday") == before
        await engine.close()

    asyncio.run(_run())


def test_episode_is_not_merged_into_a_similar_fact(tmp_path):
    async def _run() -> None:
        engine = _engine(tmp_path)
        fact = await _store_raw(engine, "Missed deadline: client upset", importance=0.95)
        episode = await engine.record_episode(_draft("Missed deadline", "client upset", False))

        await engine.consolidate(threshold=0.5)

        assert engine.get(fact).kind is MemoryKind.FACT
        kept = engine.get(episode)
        assert kept.kind is MemoryKind.EXPERIENCE
        assert isinstance(kept.metadata.details, EpisodeDetails)
        assert await engine.predict_outcome("missed deadline") != NO_PREDICTION
        _assert_details_match_kind(engine)
        await engine.close()

    asyncio.run(_run())


def test_consolidation_only_merges_within_a_kind(tmp_path):
    async def _run() -> None:
        engine = _engine(tmp_path)
        text = "I prefer dark mode in the editor"
        facts = [await _store_raw(engine, text), await _store_raw(engine, text)]
        prefs = [
            await _store_raw(engine, text, kind=MemoryKind.PREFERENCE),
            await _store_raw(engine, text, kind=MemoryKind.PREFERENCE),
        ]

        stats = await engine.consolidate()
        assert stats["clusters_merged"] == 2
        assert stats["memories_removed"] == 2
        kinds = sorted(m.kind.value for m in engine.db.list_memories())
        assert kinds == ["fact", "preference"]
        assert sum(engine.db.get_memory(i) is not None for i in facts) == 1
        assert sum(engine.db.get_memory(i) is not None for i in prefs) == 1
        _assert_details_match_kind(engine)

        again = await engine.consolidate()
        assert again["memories_removed"] == 0
        await engine.close()

    asyncio.run(_run())


def test_merge_cluster_refuses_mixed_kinds(tmp_path):
    async def _run() -> None:
        engine = _engine(tmp_path)
        fact = await _store_raw(engine, "Standup is at ten")
        pref = await _store_raw(engine, "Standup is at ten", kind=MemoryKind.PREFERENCE)

        assert await engine.long_term.merge_cluster([fact, pref]) == (None, 0)
        assert engine.db.count_memories() == 2
        await engine.close()

    asyncio.run(_run())
