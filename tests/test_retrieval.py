"""Tests for hybrid recall."""

from datetime import timedelta

import pytest

from nanomem.errors import StorageError
from nanomem.memory.retrieval import build_fts_query, fetch_limit, recency_decay, rrf_fuse
from nanomem.memory.types import MemoryScope, RecallOptions, to_millis, utcnow
from tests.fakes import fact


def ids(result):
    return [hit.memory.id for hit in result.unwrap()]


# ============================================================================
# Ranking helpers
# ============================================================================


class TestRankingHelpers:

    def test_fetch_limit_is_clamped(self):
        assert fetch_limit(1) == 30
        assert fetch_limit(20) == 60
        assert fetch_limit(500) == 200

    def test_build_fts_query(self):
        assert build_fts_query("Hi, do you like C++?") == '"you" OR "like"'
        assert build_fts_query('bun "runtime" (fast)') == '"bun" OR "runtime" OR "fast"'
        assert build_fts_query("a an") == ""
        assert build_fts_query("") == ""

    def test_rrf_scores(self):
        fused = rrf_fuse({"vector": ["a", "b"], "fts": ["b", "c"]}, k=60)
        assert fused["b"][0] == pytest.approx(1 / 62 + 1 / 61)
        assert fused["a"][0] == pytest.approx(1 / 61)
        assert fused["b"][1] == {"vector", "fts"}
        assert fused["c"][1] == {"fts"}

    def test_rrf_is_monotonic_in_rank(self):
        fused = rrf_fuse({"fts": ["a", "b", "c", "d"]})
        scores = [fused[x][0] for x in "abcd"]
        assert scores == sorted(scores, reverse=True)

    def test_rrf_rewards_agreement(self):
        fused = rrf_fuse({"vector": ["x", "y"], "fts": ["y", "x"]})
        lone = rrf_fuse({"vector": ["x"], "fts": []})
        assert fused["x"][0] > lone["x"][0]

    def test_recency_decay(self):
        now = utcnow()
        assert recency_decay(now, 90, now) == pytest.approx(1.0)
        assert recency_decay(now - timedelta(days=90), 90, now) == pytest.approx(0.5)
        assert recency_decay(now + timedelta(days=1), 90, now) == pytest.approx(1.0)


# ============================================================================
# recall()
# ============================================================================


class TestRecall:

    async def test_expired_records_never_take_slots(self, store):
        past = utcnow() - timedelta(days=1)
        for i in range(8):
            await store.store(fact(f"User tried bun for prototype number {i}", expires_at=past))
        valid = [
            (await store.store(fact("User uses bun as the JavaScript runtime"))).unwrap().id,
            (await store.store(fact("User prefers bun over node for scripts"))).unwrap().id,
        ]
        for strategy in ("hybrid", "vector", "fts"):
            result = await store.recall("bun", RecallOptions(strategy=strategy, top_k=2))
            assert sorted(ids(result)) == sorted(valid), strategy

    async def test_fts_strategy_scores_by_rank(self, lexical_store):
        await lexical_store.store(fact("User writes Go services at work"))
        await lexical_store.store(fact("User writes Go and Rust services"))
        hits = (await lexical_store.recall("rust services")).unwrap()
        assert [h.match_source for h in hits] == ["fts", "fts"]
        assert [h.score for h in hits] == [1.0, 0.5]
        assert hits[0].memory.content == "User writes Go and Rust services"

    async def test_hybrid_marks_sources(self, store):
        both = (await store.store(fact("User brews espresso every morning"))).unwrap()
        hits = (await store.recall("espresso")).unwrap()
        assert hits[0].memory.id == both.id
        assert hits[0].match_source == "hybrid"

    async def test_vector_strategy_respects_min_score(self, store):
        await store.store(fact("User brews espresso every morning"))
        hits = (await store.recall("User brews espresso every morning", RecallOptions(strategy="vector"))).unwrap()
        assert hits[0].score == pytest.approx(1.0, abs=1e-6)
        assert all(h.match_source == "vector" for h in hits)
        none = await store.recall("zzzz qqqq", RecallOptions(strategy="vector", min_score=0.99))
        assert none.unwrap() == []

    async def test_vector_strategy_without_embedding_falls_back(self, lexical_store):
        await lexical_store.store(fact("User brews espresso every morning"))
        hits = (await lexical_store.recall("espresso", RecallOptions(strategy="vector"))).unwrap()
        assert [h.match_source for h in hits] == ["fts"]

    async def test_recency_decay_reorders(self, lexical_store):
        old = (await lexical_store.store(fact("User plays chess online at night"))).unwrap()
        fresh = (await lexical_store.store(fact("User plays chess in the park"))).unwrap()
        year_ago = to_millis(utcnow() - timedelta(days=365))
        lexical_store._conn.execute("UPDATE memories SET updated_at = ? WHERE id = ?", (year_ago, old.id))
        hits = (await lexical_store.recall("chess", RecallOptions(strategy="hybrid"))).unwrap()
        assert [h.memory.id for h in hits] == [fresh.id, old.id]
        assert hits[0].score > hits[1].score

    async def test_confidence_floor(self, store):
        shaky = (await store.store(fact("User may own a kayak", confidence=0.2, status="active"))).unwrap()
        assert (await store.recall("kayak")).unwrap() == []
        hits = (await store.recall("kayak", RecallOptions(min_confidence=0.0))).unwrap()
        assert [h.memory.id for h in hits] == [shaky.id]

    async def test_status_kind_and_scope_filters(self, store):
        candidate = (await store.store(fact("User might like sailing trips", confidence=0.5))).unwrap()
        scoped = (await store.store(fact(
            "Sailing club meets on Fridays", scope=MemoryScope.project("club"),
        ))).unwrap()

        default = ids(await store.recall("sailing"))
        assert default == [scoped.id]
        with_candidates = ids(await store.recall("sailing", RecallOptions(status=["active", "candidate"])))
        assert set(with_candidates) == {candidate.id, scoped.id}
        in_scope = ids(await store.recall("sailing", RecallOptions(
            status=["active", "candidate"], scope=MemoryScope.project("club"),
        )))
        assert in_scope == [scoped.id]
        assert ids(await store.recall("sailing", RecallOptions(kinds=["episode"]))) == []

    async def test_top_k_truncates(self, lexical_store):
        for i in range(5):
            await lexical_store.store(fact(f"User collects vinyl record number {i}"))
        assert len((await lexical_store.recall("vinyl", RecallOptions(top_k=3))).unwrap()) == 3

    async def test_unknown_strategy_is_an_error(self, store):
        result = await store.recall("anything", RecallOptions(strategy="psychic"))
        assert isinstance(result.error, StorageError)

    async def test_query_without_terms(self, lexical_store):
        await lexical_store.store(fact("User collects vinyl records"))
        assert (await lexical_store.recall("?!")).unwrap() == []
