"""Tests for the sqlite3 record store."""

from __future__ import annotations

import sqlite3

import pytest

from factmemory.records import EMBEDDING_PENDING, EMBEDDING_READY, NewRecord, RecordStore


def _new(content: str, fingerprint: str | None = None, user: str = "u1", category: str = "work_career") -> NewRecord:
    return NewRecord(user_id=user, category=category, content=content, fingerprint=fingerprint)


class TestInsert:
    def test_insert_and_get(self, records: RecordStore):
        rid = records.insert(_new("Works at Acme."))
        record = records.get(rid)
        assert record.content == "Works at Acme."
        assert record.is_current
        assert record.token_count == 4
        assert record.usage_frequency == 0
        assert record.embedding_status == EMBEDDING_PENDING
        assert record.metadata == {}

    def test_ids_are_never_reused(self, records: RecordStore):
        first = records.insert(_new("one"))
        second = records.insert(_new("two"))
        assert second > first

    def test_blank_content_is_rejected(self, records: RecordStore):
        with pytest.raises(sqlite3.IntegrityError):
            records.insert(_new("   "))

    def test_metadata_round_trips(self, records: RecordStore):
        new = _new("Salary: $90,000.")
        new.metadata = {"entities": ["Acme"], "explicit_recall": True}
        record = records.get(records.insert(new))
        assert record.metadata == {"entities": ["Acme"], "explicit_recall": True}


class TestSupersession:
    def test_supersede_marks_old_non_current(self, records: RecordStore):
        old = records.insert(_new("Salary: $90,000.", "user_salary"))
        new = records.insert(_new("Salary: $95,000.", "user_salary"), supersede=old)
        old_record = records.get(old)
        assert not old_record.is_current
        assert old_record.superseded_by == new
        assert records.current_by_fingerprint("u1", "user_salary").id == new

    def test_two_current_records_for_one_fingerprint_are_impossible(self, records: RecordStore):
        records.insert(_new("Salary: $90,000.", "user_salary"))
        with pytest.raises(sqlite3.IntegrityError):
            records.insert(_new("Salary: $95,000.", "user_salary"))
        assert records.count("u1") == 1

    def test_same_fingerprint_for_different_users(self, records: RecordStore):
        records.insert(_new("Salary: $90,000.", "user_salary", user="u1"))
        records.insert(_new("Salary: $50,000.", "user_salary", user="u2"))
        assert records.count() == 2

    def test_history_of_stores_non_current_record(self, records: RecordStore):
        winner = records.insert(_new("Meeting at 3pm.", "user_meeting_time"))
        loser = records.insert(_new("Meeting is soon.", "user_meeting_time"), history_of=winner)
        assert not records.get(loser).is_current
        assert records.get(loser).superseded_by == winner
        assert [r.id for r in records.history("u1", "user_meeting_time")] == [winner, loser]
        assert records.count("u1") == 1
        assert records.count("u1", current_only=False) == 2

    def test_untagged_records_are_unconstrained(self, records: RecordStore):
        records.insert(_new("I like tea."))
        records.insert(_new("I like coffee."))
        assert records.count("u1") == 2


class TestUpdates:
    def test_boost_caps_relevance(self, records: RecordStore):
        new = _new("I love hiking.")
        new.relevance_score = 0.98
        rid = records.insert(new)
        records.boost(rid, 0.05)
        record = records.get(rid)
        assert record.usage_frequency == 1
        assert record.relevance_score == pytest.approx(1.0)

    def test_embedding_status(self, records: RecordStore):
        rid = records.insert(_new("I love hiking."))
        records.set_embedding_status(rid, EMBEDDING_READY)
        assert records.get(rid).has_embedding
        assert records.with_embedding_status(EMBEDDING_PENDING) == []
        assert records.embedding_status_counts("u1") == {EMBEDDING_READY: 1}


class TestQueries:
    def test_current_filters_by_user_and_category(self, records: RecordStore):
        records.insert(_new("a fact", category="work_career"))
        records.insert(_new("b fact", category="health_wellness"))
        records.insert(_new("c fact", user="u2"))
        assert [r.content for r in records.current("u1")] == ["a fact", "b fact"]
        assert [r.content for r in records.current("u1", "health_wellness")] == ["b fact"]
        assert len(records.current("u1", limit=1)) == 1

    def test_search_current_is_case_insensitive(self, records: RecordStore):
        records.insert(_new("Alex is my colleague."))
        records.insert(_new("Maria is my sister."))
        found = records.search_current("u1", ["alex", "nobody"])
        assert [r.content for r in found] == ["Alex is my colleague."]
        assert records.search_current("u1", []) == []

    def test_category_usage_sums_current_tokens(self, records: RecordStore):
        old = records.insert(_new("x" * 40, "user_salary"))
        records.insert(_new("y" * 8, "user_salary"), supersede=old)
        records.insert(_new("z" * 4, category="health_wellness"))
        assert records.category_usage("u1") == {"work_career": 2, "health_wellness": 1}


class TestDynamicCategories:
    def test_saved_categories_round_trip(self, records: RecordStore):
        records.save_category("ai_dynamic_2", ["chess"], [], [], "", "medium")
        records.save_category("ai_dynamic_1", ["sailing", "boat"], [r"\bsail\w*"], ["boats"], "sailing", "medium")
        saved = {c["name"]: c for c in records.dynamic_categories()}
        assert set(saved) == {"ai_dynamic_1", "ai_dynamic_2"}
        assert saved["ai_dynamic_1"] == {
            "name": "ai_dynamic_1",
            "keywords": ["sailing", "boat"],
            "patterns": [r"\bsail\w*"],
            "topics": ["boats"],
            "description": "sailing",
            "priority": "medium",
        }

    def test_saving_again_replaces(self, records: RecordStore):
        records.save_category("ai_dynamic_1", ["sailing"], [], [], "", "medium")
        records.save_category("ai_dynamic_1", ["chess"], [], [], "chess", "medium")
        assert [(c["keywords"], c["description"]) for c in records.dynamic_categories()] == [(["chess"], "chess")]
