from __future__ import annotations

import asyncio
from datetime import timedelta

import numpy as np
import pytest

from engram.config import Config
from engram.embeddings import HashEmbedder
from engram.engine import MemoryEngine
from engram.exceptions import NotFoundError, ProviderError, ValidationError
from engram.memory.long_term import merge_items, synthesize_content
from engram.storage.vector_index import cosine_similarity
from engram.types import (
    MemoryCandidate,
    MemoryContext,
    MemoryItem,
    MemoryKind,
    MemoryMetadata,
    MemoryPatch,
    MemoryQuery,
    MemorySource,
    PreferenceDetails,
)
from engram.utils import utcnow


def _config(tmp_path) -> Config:
    cfg = Config()
    cfg.data_dir = tmp_path
    cfg.ensure_dirs()
    return cfg


def _engine(tmp_path, **kw) -> MemoryEngine:
    cfg = kw.pop("config", None) or _config(tmp_path)
    embedder = kw.pop("embedder", None) or HashEmbedder(dims=cfg.embedding.dims)
    return MemoryEngine(cfg, embedder=embedder, **kw)


def _candidate(content: str, kind: MemoryKind = MemoryKind.FACT, **kw) -> MemoryCandidate:
    return MemoryCandidate(content=content, kind=kind, context=MemoryContext(user_id="u1"), **kw)


class _FailingEmbedder:
    model = "failing-384"
    dims = 384

    async def embed(self, texts):
        raise RuntimeError("provider down")

    async def embed_single(self, text):
        raise RuntimeError("provider down")

    async def close(self) -> None:
        return None


class _SlowEmbedder(HashEmbedder):
    def __init__(self, dims: int) -> None:
        super().__init__(dims=dims)
        self.delay = 0.0

    async def embed_single(self, text):
        await asyncio.sleep(self.delay)
        return await super().embed_single(text)


def test_store_and_retrieve_preference(tmp_path):
    async def _run() -> None:
        engine = _engine(tmp_path)
        mid = await engine.store(MemoryCandidate(
            content="Alice prefers dark mode",
            kind=MemoryKind.PREFERENCE,
            context=MemoryContext(user_id="alice"),
        ))

        item = engine.get(mid)
        assert isinstance(item.metadata.details, PreferenceDetails)
        assert item.metadata.details.category == "technology"
        assert "preference" in item.tags and "auto-generated" in item.tags
        assert item.importance > 0.5

        results = await engine.retrieve(MemoryQuery(query="dark mode preference"))
        assert [r.memory.id for r in results] == [mid]
        assert results[0].score > 0.1
        assert results[0].memory.access_count == 1
        assert "keyword match" in results[0].explanation
        assert engine.get(mid).access_count == 1
        await engine.close()

    asyncio.run(_run())


def test_validation_reports_every_violation(tmp_path):
    async def _run() -> None:
        engine = _engine(tmp_path)
        with pytest.raises(ValidationError) as exc_info:
            await engine.store(MemoryCandidate(
                content="  ",
                kind="bogus",
                context=None,
                importance=1.5,
                source=MemorySource(type="carrier-pigeon"),
            ))
        errors = exc_info.value.errors
        assert len(errors) == 5
        assert "Memory content is required" in errors
        assert "Valid memory kind is required" in errors
        assert "Memory context is required" in errors
        assert engine.db.count_memories() == 0
        await engine.close()

    asyncio.run(_run())


def test_near_duplicates_collapse_to_one_record(tmp_path):
    async def _run() -> None:
        engine = _engine(tmp_path)
        first = await engine.store(_candidate("The API server listens on port 8080", importance=0.4,
                                              tags=["infra"]))
        second = await engine.store(_candidate("the API server listens on port 8080.", importance=0.7,
                                               tags=["ops"]))
        assert second == first
        assert engine.db.count_memories() == 1
        assert len(engine.index) == 1

        merged = engine.get(first)
        assert merged.importance == 0.7
        assert set(merged.tags) == {"infra", "ops"}
        assert merged.metadata.extra["merge_count"] == 1
        await engine.close()

    asyncio.run(_run())


def test_retrieve_is_sorted_and_respects_filters(tmp_path):
    async def _run() -> None:
        engine = _engine(tmp_path)
        await engine.store(_candidate("Postgres backups run nightly at two", importance=0.9))
        await engine.store(_candidate("Redis cache eviction uses allkeys lru", importance=0.3))
        await engine.store(_candidate("Team lunch is on fridays", kind=MemoryKind.OBSERVATION))

        results = await engine.retrieve(MemoryQuery(query="postgres backups"))
        scores = [r.score for r in results]
        assert scores == sorted(scores, reverse=True)
        assert all(s > 0.1 for s in scores)
        assert results[0].memory.content.startswith("Postgres")

        only_obs = await engine.retrieve(MemoryQuery(query="lunch", kinds=[MemoryKind.OBSERVATION]))
        assert [r.memory.kind for r in only_obs] == [MemoryKind.OBSERVATION]

        assert await engine.retrieve(MemoryQuery(query="postgres", min_importance=0.95)) == []
        await engine.close()

    asyncio.run(_run())


def test_update_reembeds_content(tmp_path):
    async def _run() -> None:
        engine = _engine(tmp_path)
        mid = await engine.store(_candidate("The build uses make"))
        before = engine.get(mid).last_accessed

        updated = await engine.update(mid, MemoryPatch(content="The build uses bazel and remote caching"))
        assert updated.content == "The build uses bazel and remote caching"
        assert updated.last_accessed >= before
        assert "bazel" in updated.metadata.keywords

        fresh = await engine.embedder.embed_single(updated.content)
        assert cosine_similarity(fresh, engine.index.get(mid)) == pytest.approx(1.0, abs=1e-5)
        assert cosine_similarity(fresh, engine.db.get_vector(mid)) == pytest.approx(1.0, abs=1e-5)

        results = await engine.retrieve(MemoryQuery(query="The build uses bazel and remote caching"))
        assert results[0].memory.id == mid

        with pytest.raises(NotFoundError):
            await engine.update("missing", MemoryPatch(importance=0.1))
        with pytest.raises(ValidationError):
            await engine.update(mid, MemoryPatch(importance=2.0))
        await engine.close()

    asyncio.run(_run())


def test_delete_strips_relationships(tmp_path):
    async def _run() -> None:
        engine = _engine(tmp_path)
        a = await engine.store(_candidate("Kubernetes cluster runs in eu-west"))
        b = await engine.store(_candidate("Grafana dashboards track latency", relationships=[a, "unknown"]))

        assert engine.get(b).relationships == [a]
        assert engine.get(a).relationships == [b]

        await engine.delete(a)
        assert engine.get(b).relationships == []
        assert a not in engine.index
        with pytest.raises(NotFoundError):
            engine.get(a)
        with pytest.raises(NotFoundError):
            await engine.delete(a)

        results = await engine.retrieve(MemoryQuery(query="Kubernetes cluster runs in eu-west"))
        assert a not in [r.memory.id for r in results]
        await engine.close()

    asyncio.run(_run())


def test_relationship_cap_is_respected(tmp_path):
    async def _run() -> None:
        cfg = _config(tmp_path)
        cfg.defaults.max_relationships = 2
        engine = _engine(tmp_path, config=cfg)
        hub = await engine.store(_candidate("Central hub memory about payments"))
        spokes = []
        for topic in ["invoices", "refunds", "chargebacks"]:
            spokes.append(await engine.store(_candidate(f"Spoke about {topic} processing", relationships=[hub])))
        assert engine.get(hub).relationships == spokes[:2]
        await engine.close()

    asyncio.run(_run())


def test_resolve_conflicts_downgrades_weaker_memory(tmp_path):
    async def _run() -> None:
        engine = _engine(tmp_path)
        weak = await engine.store(_candidate("The office opens at nine", confidence=0.5,
                                             metadata={"verified": True}))
        strong = await engine.store(_candidate("The office opens at eight on weekdays", confidence=0.9,
                                               metadata={"contradicts": [weak]}))

        assert await engine.resolve_conflicts(strong) == [weak]
        downgraded = engine.get(weak)
        assert downgraded.confidence == pytest.approx(0.4)
        assert downgraded.metadata.verified is False

        # One-directional: the weaker memory lists nothing, so nothing changes.
        assert await engine.resolve_conflicts(weak) == []
        assert engine.get(strong).confidence == 0.9
        with pytest.raises(NotFoundError):
            await engine.resolve_conflicts("missing")
        await engine.close()

    asyncio.run(_run())


def test_failed_embedding_leaves_no_record(tmp_path):
    async def _run() -> None:
        engine = _engine(tmp_path, embedder=_FailingEmbedder())
        with pytest.raises(ProviderError):
            await engine.store(_candidate("This will never be embedded"))
        assert engine.db.count_memories() == 0
        assert len(engine.index) == 0
        await engine.close()

    asyncio.run(_run())


def test_slow_embedding_times_out_cleanly(tmp_path):
    async def _run() -> None:
        cfg = _config(tmp_path)
        cfg.embedding.timeout = 0.05
        slow = _SlowEmbedder(cfg.embedding.dims)
        slow.delay = 1.0
        engine = _engine(tmp_path, config=cfg, embedder=slow)
        with pytest.raises(ProviderError):
            await engine.store(_candidate("Slow provider content"))
        assert engine.db.count_memories() == 0
        assert len(engine.index) == 0
        await engine.close()

    asyncio.run(_run())


def test_retrieve_times_out(tmp_path):
    async def _run() -> None:
        cfg = _config(tmp_path)
        cfg.retrieval.search_timeout = 0.05
        slow = _SlowEmbedder(cfg.embedding.dims)
        engine = _engine(tmp_path, config=cfg, embedder=slow)
        await engine.store(_candidate("Latency budget is 200ms"))
        slow.delay = 1.0
        with pytest.raises(asyncio.TimeoutError):
            await engine.retrieve(MemoryQuery(query="an uncached latency question"))
        await engine.close()

    asyncio.run(_run())


def test_index_is_rebuilt_from_store(tmp_path):
    async def _run() -> None:
        cfg = _config(tmp_path)
        engine = _engine(tmp_path, config=cfg)
        mid = await engine.store(_candidate("Persisted vectors survive restarts"))
        await engine.close()

        reopened = _engine(tmp_path, config=cfg)
        assert mid in reopened.index
        results = await reopened.retrieve(MemoryQuery(query="persisted vectors"))
        assert results[0].memory.id == mid

        stats = await reopened.rebuild_index()
        assert stats["loaded"] == 1
        assert stats["reembedded"] == 0
        await reopened.close()

    asyncio.run(_run())


def test_concurrent_store_and_delete(tmp_path):
    async def _run() -> None:
        engine = _engine(tmp_path)
        ids = [await engine.store(_candidate(f"Service number {i} owns queue {i * 7}")) for i in range(6)]
        results, _ = await asyncio.gather(
            engine.retrieve(MemoryQuery(query="service queue")),
            asyncio.gather(*(engine.delete(mid) for mid in ids[:3])),
        )
        assert all(r.memory.id in ids for r in results)
        assert engine.db.count_memories() == 3
        assert sorted(engine.index.ids()) == sorted(ids[3:])
        await engine.close()

    asyncio.run(_run())


def test_merge_helpers():
    assert synthesize_content(["Deploys happen on Monday", "deploys happen on monday"], 100) == (
        "Deploys happen on Monday"
    )
    assert synthesize_content(["Deploys happen on Monday.", "Rollbacks need approval"], 100) == (
        "Deploys happen on Monday. Rollbacks need approval"
    )
    assert synthesize_content(["short", "a short note"], 100) == "a short note"

    a = MemoryItem(id="a", kind=MemoryKind.FACT, content="x", importance=0.3, tags=["t1"],
                   relationships=["b", "z"], access_count=2)
    b = MemoryItem(id="b", kind=MemoryKind.FACT, content="x", importance=0.8, tags=["t2"],
                   relationships=["a", "y"], access_count=1)
    merged = merge_items(a, b, content="x", max_relationships=10)
    assert merged.id == "a"
    assert merged.importance == 0.8
    assert merged.tags == ["t1", "t2"]
    assert merged.relationships == ["z", "y"]
    assert merged.access_count == 3
    assert np.isclose(merged.confidence, max(a.confidence, b.confidence))


def test_forget_expired_honours_retention_and_protection(tmp_path):
    async def _run() -> None:
        engine = _engine(tmp_path)
        task = await engine.store(_candidate("Renew the TLS certificate", kind=MemoryKind.TASK))
        goal = await engine.store(_candidate("Ship version two this year", kind=MemoryKind.GOAL, importance=0.9))
        fact = await engine.store(_candidate("The logo is teal", importance=0.5))
        later = utcnow() + timedelta(days=400)

        preview = await engine.forget_expired(now=later, dry_run=True)
        assert preview["dry_run"] is True
        assert preview["deleted"] == 0
        assert sorted(preview["ids"]) == sorted([task, fact])
        assert engine.db.count_memories() == 3

        done = await engine.forget_expired(now=later)
        assert done["deleted"] == 2
        assert [m.id for m in engine.db.list_memories()] == [goal]
        await engine.close()

    asyncio.run(_run())


def test_compression_candidates_lowest_priority_first(tmp_path):
    async def _run() -> None:
        engine = _engine(tmp_path)
        fact = await engine.store(_candidate("Printer is on floor three", importance=0.3))
        chat = await engine.store(_candidate("We chatted about lunch options", kind=MemoryKind.CONVERSATION,
                                             importance=0.2))
        await engine.store(_candidate("Always use the staging VPN", kind=MemoryKind.PREFERENCE, importance=0.9))

        later = utcnow() + timedelta(days=60)
        assert [m.id for m in engine.compression_candidates(now=later)] == [chat, fact]
        assert engine.compression_candidates(now=utcnow()) == []
        await engine.close()

    asyncio.run(_run())


def test_default_source_reliability_feeds_importance(tmp_path):
    async def _run() -> dict[float, MemoryItem]:
        out: dict[float, MemoryItem] = {}
        for reliability in (0.0, 1.0):
            cfg = _config(tmp_path / str(reliability))
            cfg.defaults.source_reliability = reliability
            engine = _engine(tmp_path, config=cfg)
            memory_id = await engine.store(_candidate("Renew the certificate", kind=MemoryKind.TASK))
            out[reliability] = engine.get(memory_id)
            await engine.close()
        return out

    items = asyncio.run(_run())
    assert items[0.0].source.reliability == 0.0
    assert items[1.0].source.reliability == 1.0
    weight = Config().importance.source_reliability_weight
    assert items[1.0].importance - items[0.0].importance == pytest.approx(weight, abs=1e-3)


def test_dedup_on_write_stays_within_kind(tmp_path):
    async def _run() -> None:
        engine = _engine(tmp_path)
        fact = await engine.store(_candidate("I prefer dark mode in the editor"))
        pref = await engine.store(_candidate("I prefer dark mode in the editor", kind=MemoryKind.PREFERENCE))

        assert pref != fact
        assert engine.db.count_memories() == 2
        assert engine.get(fact).kind is MemoryKind.FACT
        assert engine.get(fact).metadata.details is None
        assert engine.get(pref).kind is MemoryKind.PREFERENCE
        assert isinstance(engine.get(pref).metadata.details, PreferenceDetails)

        again = await engine.store(_candidate("I prefer dark mode in the editor", kind=MemoryKind.PREFERENCE))
        assert again == pref
        await engine.close()

    asyncio.run(_run())


def test_merge_items_ignores_details_of_another_kind():
    fact = MemoryItem(id="f", kind=MemoryKind.FACT, content="x")
    pref = MemoryItem(id="p", kind=MemoryKind.PREFERENCE, content="x",
                      metadata=MemoryMetadata(details=PreferenceDetails(category="ui", strength=0.9)))
    merged = merge_items(fact, pref, content="x", max_relationships=10)
    assert merged.kind is MemoryKind.FACT
    assert merged.metadata.details is None

    other = MemoryItem(id="q", kind=MemoryKind.PREFERENCE, content="x")
    assert merge_items(other, pref, content="x", max_relationships=10).metadata.details == pref.metadata.details
