"""Tests for the VectorStore ChromaDB wrapper."""

from __future__ import annotations

from factmemory.store import VectorStore, where_clause


class TestWhereClause:
    def test_no_filters(self):
        assert where_clause() is None
        assert where_clause(category=None) is None

    def test_single_filter_is_unwrapped(self):
        assert where_clause(user_id="u1") == {"user_id": "u1"}

    def test_multiple_filters_are_anded(self):
        assert where_clause(user_id="u1", category=None, is_current=True) == {
            "$and": [{"user_id": "u1"}, {"is_current": True}]
        }


class TestVectorStore:
    def test_initial_count_is_zero(self, ephemeral_store: VectorStore):
        assert ephemeral_store.count() == 0

    def test_embed_returns_floats(self, ephemeral_store: VectorStore):
        vector = ephemeral_store.embed("hello")
        assert len(vector) == 16
        assert all(isinstance(x, float) for x in vector)

    def test_add_and_get(self, ephemeral_store: VectorStore):
        ephemeral_store.add("1", "Hello world", metadata={"user_id": "u1"})
        result = ephemeral_store.get("1")
        assert result["ids"] == ["1"]
        assert result["documents"] == ["Hello world"]
        assert result["metadatas"][0]["user_id"] == "u1"
        assert ephemeral_store.has("1")
        assert not ephemeral_store.has("2")

    def test_add_with_precomputed_embedding(self, ephemeral_store: VectorStore):
        vector = ephemeral_store.embed("Hello world")
        ephemeral_store.add("1", "Hello world", {"user_id": "u1"}, embedding=vector)
        result = ephemeral_store.query(vector, n_results=1)
        assert result["ids"][0] == ["1"]
        assert result["distances"][0][0] < 1e-4

    def test_update_metadata(self, ephemeral_store: VectorStore):
        ephemeral_store.add("1", "Hello", metadata={"user_id": "u1", "is_current": True})
        ephemeral_store.update_metadata("1", {"user_id": "u1", "is_current": False})
        assert not ephemeral_store.get("1")["metadatas"][0]["is_current"]

    def test_query_on_empty_store_returns_empty(self, ephemeral_store: VectorStore):
        result = ephemeral_store.query(ephemeral_store.embed("anything"), n_results=5)
        assert result["ids"] == [[]]
        assert result["distances"] == [[]]

    def test_query_respects_where_filter(self, ephemeral_store: VectorStore):
        ephemeral_store.add("1", "Alpha", {"user_id": "u1", "is_current": True})
        ephemeral_store.add("2", "Beta", {"user_id": "u2", "is_current": True})
        ephemeral_store.add("3", "Gamma", {"user_id": "u1", "is_current": False})
        result = ephemeral_store.query(
            ephemeral_store.embed("Alpha"),
            n_results=10,
            where=where_clause(user_id="u1", is_current=True),
        )
        assert result["ids"][0] == ["1"]

    def test_query_n_results_capped_at_matching_count(self, ephemeral_store: VectorStore):
        ephemeral_store.add("1", "Single document", {"user_id": "u1"})
        result = ephemeral_store.query(ephemeral_store.embed("document"), n_results=10)
        assert len(result["ids"][0]) == 1

    def test_count_with_filter(self, ephemeral_store: VectorStore):
        ephemeral_store.add("1", "a", {"user_id": "u1"})
        ephemeral_store.add("2", "b", {"user_id": "u2"})
        assert ephemeral_store.count() == 2
        assert ephemeral_store.count({"user_id": "u1"}) == 1
