"""Tests for token-budgeted retrieval through the engine."""

from __future__ import annotations

import pytest

from factmemory.memory import MemoryEngine
from factmemory.records import NewRecord
from factmemory.retrieval import keyword_similarity, parse_ordinal
from conftest import FakeCompleter, FlakyEmbeddingFunction


def _rank(result, record_id):
    return next(r for r in result.telemetry["ranks"] if r["id"] == record_id)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class TestHelpers:
    def test_parse_ordinal(self):
        assert parse_ordinal("What was the second code?") == (2, "code")
        assert parse_ordinal("the 3rd meeting") == (3, "meeting")
        assert parse_ordinal("my last codes") == (-1, "code")
        assert parse_ordinal("what codes do I have") is None

    def test_keyword_similarity(self):
        assert keyword_similarity(["rex", "beach"], "Rex loves the beach.") == 1.0
        assert keyword_similarity(["love"], "Rex loves the beach.") == 1.0
        assert keyword_similarity(["salary"], "Rex loves the beach.") == 0.0
        assert keyword_similarity([], "anything") == 0.0


# ---------------------------------------------------------------------------
# Caps
# ---------------------------------------------------------------------------


class TestCaps:
    def test_empty_store(self, engine: MemoryEngine):
        result = engine.retrieve_context("u1", "anything")
        assert result.records == []
        assert result.telemetry["candidate_count"] == 0
        assert result.telemetry["selected_ids"] == []

    def test_record_cap_holds_for_every_cap(self, engine: MemoryEngine):
        for i in range(10):
            engine.store_fact("u1", f"I enjoy hobby number {i}.")
        for cap in range(0, 11):
            result = engine.retrieve_context("u1", "What hobbies do I have?", max_count=cap)
            assert len(result.records) <= cap
            assert result.telemetry["max_count"] == cap
        assert engine.retrieve_context("u1", "What hobbies do I have?", max_count=0).records == []

    def test_token_budget(self, engine: MemoryEngine):
        for i in range(10):
            engine.store_fact("u1", f"I enjoy hobby number {i} with friends on weekends.")
        result = engine.retrieve_context("u1", "What hobbies do I have?", budget=30, max_count=10)
        assert result.telemetry["tokens_used"] <= 30 * 1.2
        assert sum(r.token_count for r in result.records) == result.telemetry["tokens_used"]

    def test_only_current_records_are_returned(self, engine: MemoryEngine):
        engine.store_fact("u1", "My salary is $90,000.")
        new_id = engine.store_fact("u1", "Actually my salary is $95,000.")
        result = engine.retrieve_context("u1", "What is my salary?", max_count=10)
        assert [r.id for r in result.records] == [new_id]

    def test_users_are_isolated(self, engine: MemoryEngine):
        engine.store_fact("u1", "Alex is my brother.")
        assert engine.retrieve_context("u2", "Tell me about Alex").records == []


# ---------------------------------------------------------------------------
# Fallback and linked facts
# ---------------------------------------------------------------------------


class TestFallback:
    def test_cross_category_fallback(self, engine: MemoryEngine):
        colleague = engine.store_fact("u1", "Alex is my colleague.")
        brother = engine.store_fact("u1", "Alex is my brother.")
        result = engine.retrieve_context("u1", "Tell me about Alex")
        assert {r.id for r in result.records} == {colleague, brother}
        assert result.telemetry["fallback_used"]
        assert result.telemetry["routing_method"] == "default"
        assert all(r["high_priority"] for r in result.telemetry["ranks"])

    def test_low_confidence_route_searches_other_categories(self, make_engine):
        engine = make_engine(embedding_function=FlakyEmbeddingFunction())
        primary = engine._records.insert(
            NewRecord(user_id="u1", category="relationships_social", content="My family loves music.")
        )
        other = engine._records.insert(
            NewRecord(user_id="u1", category="personal_life_interests", content="Maya teaches music on weekends.")
        )
        result = engine.retrieve_context("u1", "Who teaches music to my family?")
        assert result.telemetry["primary_category"] == "relationships_social"
        assert result.telemetry["routing_method"] == "scored"
        assert result.telemetry["routing_confidence"] < 0.8
        assert result.telemetry["fallback_used"]
        assert [r["id"] for r in result.telemetry["ranks"]] == [primary, other]
        assert not _rank(result, primary)["from_fallback"]
        assert _rank(result, other)["from_fallback"]
        assert _rank(result, other)["score"] == pytest.approx(0.9 * _rank(result, primary)["score"], abs=1e-3)
        assert set(result.telemetry["selected_ids"]) == {primary, other}

    def test_numbers_survive_compression_and_retrieval(self, make_engine):
        exchange = "The basic plan costs $99 and the premium plan costs $299."
        engine = make_engine(completer=FakeCompleter({exchange: "Basic plan: $99.\nPremium plan: $299."}))
        outcome = engine.write("u1", exchange)
        assert outcome.category == "money_spending_goals"
        assert outcome.warnings == []
        result = engine.retrieve_context("u1", "What are the prices of the plans?")
        assert len(result.records) == 1
        assert "$99" in result.records[0].content
        assert "$299" in result.records[0].content

    def test_ordinal_reference(self, engine: MemoryEngine):
        engine.store_fact("u1", "First code is ALPHA-1234567890.")
        second = engine.store_fact("u1", "Second code is BRAVO-9876543210.")
        result = engine.retrieve_context("u1", "What was the second code?", max_count=1)
        assert [r.id for r in result.records] == [second]
        assert _rank(result, second)["breakdown"]["ordinal"] == pytest.approx(0.30)

    def test_explicit_recall_boost(self, engine: MemoryEngine):
        rid = engine.store_fact("u1", "Please remember that my locker code is 4417.")
        result = engine.retrieve_context("u1", "Do you remember my locker?")
        assert rid in result.telemetry["selected_ids"]
        assert _rank(result, rid)["breakdown"]["explicit_recall"] == pytest.approx(0.20)
        plain = engine.retrieve_context("u1", "What is my locker?")
        assert _rank(plain, rid)["breakdown"]["explicit_recall"] == 0.0


# ---------------------------------------------------------------------------
# Embedding status
# ---------------------------------------------------------------------------


class TestEmbeddingStatus:
    def test_pending_record_is_found_by_keywords(self, engine: MemoryEngine):
        rid = engine._records.insert(
            NewRecord(user_id="u1", category="relationships_social", content="Rex loves the beach.")
        )
        result = engine.retrieve_context("u1", "Where does Rex love to go?")
        assert rid in result.telemetry["selected_ids"]
        assert _rank(result, rid)["similarity_source"] == "keyword"

    def test_failed_embeddings_do_not_block_reads(self, make_engine):
        engine = make_engine(embedding_function=FlakyEmbeddingFunction())
        rid = engine.store_fact("u1", "My dog is named Rex.")
        assert engine._records.get(rid).embedding_status == "failed"
        result = engine.retrieve_context("u1", "What is my dog called?")
        assert [r.id for r in result.records] == [rid]
        assert result.telemetry["vector_search"] is False


# ---------------------------------------------------------------------------
# Session cache
# ---------------------------------------------------------------------------


class TestSessionCache:
    def test_repeat_query_hits_cache_until_write(self, engine: MemoryEngine):
        engine.store_fact("u1", "Alex is my brother.")
        first = engine.retrieve_context("u1", "Tell me about Alex", session_id="s1")
        second = engine.retrieve_context("u1", "Tell me about Alex", session_id="s1")
        assert first.telemetry["cache_hit"] is False
        assert second.telemetry["cache_hit"] is True
        assert [r.id for r in second.records] == [r.id for r in first.records]

        engine.store_fact("u1", "Alex lives in Denver.")
        third = engine.retrieve_context("u1", "Tell me about Alex", session_id="s1")
        assert third.telemetry["cache_hit"] is False
        assert len(third.records) == 2

    def test_no_session_no_cache(self, engine: MemoryEngine):
        engine.retrieve_context("u1", "Tell me about Alex")
        assert engine.retrieve_context("u1", "Tell me about Alex").telemetry["cache_hit"] is False

    def test_end_session(self, engine: MemoryEngine):
        engine.retrieve_context("u1", "Tell me about Alex", session_id="s1")
        assert engine.end_session("u1", "s1")
        assert not engine.end_session("u1", "s1")
