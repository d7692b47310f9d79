"""Tests for near-duplicate detection."""

from __future__ import annotations

import logging

import pytest

from factmemory.dedup import Deduplicator, nearest_duplicate, should_prevent_merge
from factmemory.errors import EmbeddingFailure
from factmemory.records import NewRecord, RecordStore
from factmemory.store import VectorStore

UNIT = [1.0] + [0.0] * 15


def _same_vector(_text: str) -> list[float]:
    return UNIT


def _broken_embed(_text: str) -> list[float]:
    raise EmbeddingFailure("backend down")


def _seed(records: RecordStore, store: VectorStore, content: str, fingerprint: str | None = None) -> int:
    rid = records.insert(
        NewRecord(user_id="u1", category="personal_life_interests", content=content, fingerprint=fingerprint)
    )
    store.add(
        str(rid),
        content,
        {"user_id": "u1", "category": "personal_life_interests", "is_current": True},
        embedding=UNIT,
    )
    return rid


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


class TestShouldPreventMerge:
    def test_changed_amount_blocks_merge(self):
        assert should_prevent_merge("Salary is $90,000.", "Salary is $95,000.")

    def test_changed_identifier_blocks_merge(self):
        assert should_prevent_merge("Code ALPHA-1234567890.", "Code BRAVO-9876543210.")

    def test_plain_rewording_merges(self):
        assert not should_prevent_merge("I love hiking.", "I really love hiking.")

    def test_same_identifier_merges(self):
        assert not should_prevent_merge("Plate ABC-123-XYZ.", "My plate is ABC-123-XYZ.")


class TestNearestDuplicate:
    def test_returns_closest_below_threshold(self):
        assert nearest_duplicate([0.3, 0.1, 0.12]) == 1

    def test_returns_none_above_threshold(self):
        assert nearest_duplicate([0.3, 0.1], threshold=0.05) is None

    def test_empty(self):
        assert nearest_duplicate([]) is None


# ---------------------------------------------------------------------------
# Deduplicator
# ---------------------------------------------------------------------------


class TestDeduplicator:
    def test_exact_match(self, records, ephemeral_store):
        rid = _seed(records, ephemeral_store, "I love hiking.")
        dedup = Deduplicator(records, ephemeral_store, _broken_embed)
        match = dedup.find_duplicate("u1", "personal_life_interests", "i love  hiking")
        assert match.record.id == rid
        assert match.method == "exact"

    def test_vector_match(self, records, ephemeral_store):
        rid = _seed(records, ephemeral_store, "I love hiking.")
        dedup = Deduplicator(records, ephemeral_store, _same_vector)
        match = dedup.find_duplicate("u1", "personal_life_interests", "Hiking is what I love.")
        assert match.record.id == rid
        assert match.method == "vector"
        assert match.distance < 0.15

    def test_other_category_is_not_a_duplicate(self, records, ephemeral_store):
        _seed(records, ephemeral_store, "I love hiking.")
        dedup = Deduplicator(records, ephemeral_store, _same_vector)
        assert dedup.find_duplicate("u1", "health_wellness", "Hiking is what I love.") is None

    def test_different_fingerprint_is_not_a_duplicate(self, records, ephemeral_store):
        _seed(records, ephemeral_store, "Salary is high.", fingerprint="user_salary")
        dedup = Deduplicator(records, ephemeral_store, _same_vector)
        assert dedup.find_duplicate("u1", "personal_life_interests", "Salary is high", "user_age") is None
        assert dedup.find_duplicate("u1", "personal_life_interests", "Salary is high") is None

    def test_new_value_is_not_a_duplicate(self, records, ephemeral_store):
        _seed(records, ephemeral_store, "Salary is $90,000.", fingerprint="user_salary")
        dedup = Deduplicator(records, ephemeral_store, _same_vector)
        assert dedup.find_duplicate(
            "u1", "personal_life_interests", "Salary is $95,000.", "user_salary"
        ) is None

    def test_embedding_failure_fails_open(self, records, ephemeral_store, caplog):
        _seed(records, ephemeral_store, "I love hiking.")
        dedup = Deduplicator(records, ephemeral_store, _broken_embed)
        with caplog.at_level(logging.WARNING, logger="factmemory.dedup"):
            assert dedup.find_duplicate("u1", "personal_life_interests", "Hiking rocks.") is None
        assert "treating as unique" in caplog.text

    def test_merge_boosts_existing_record(self, records, ephemeral_store):
        rid = _seed(records, ephemeral_store, "I love hiking.")
        before = records.get(rid).relevance_score
        dedup = Deduplicator(records, ephemeral_store, _same_vector, relevance_boost=0.05)
        match = dedup.find_duplicate("u1", "personal_life_interests", "I love hiking.")
        assert dedup.merge(match) == rid
        after = records.get(rid)
        assert after.usage_frequency == 1
        assert after.relevance_score == pytest.approx(min(1.0, before + 0.05))
