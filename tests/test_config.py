"""Tests for EngineConfig."""

from __future__ import annotations

import dataclasses

import pytest

from factmemory.config import EngineConfig


class TestEngineConfig:
    def test_defaults(self):
        config = EngineConfig()
        assert config.dedup_distance == 0.15
        assert config.routing_confidence_floor == 0.80
        assert config.token_budget == 2400
        assert config.max_records == 5
        assert config.default_category == "personal_life_interests"

    def test_from_empty_env_is_default(self):
        assert EngineConfig.from_env({}) == EngineConfig()

    def test_from_env_coerces_types(self):
        config = EngineConfig.from_env(
            {
                "FACTMEMORY_DEDUP_DISTANCE": "0.2",
                "FACTMEMORY_MAX_RECORDS": "3",
                "FACTMEMORY_BACKGROUND_EMBEDDINGS": "false",
                "FACTMEMORY_DB_PATH": "/tmp/facts",
                "UNRELATED": "x",
            }
        )
        assert config.dedup_distance == 0.2
        assert config.max_records == 3
        assert config.background_embeddings is False
        assert config.db_path == "/tmp/facts"

    def test_invalid_number_raises(self):
        with pytest.raises(ValueError):
            EngineConfig.from_env({"FACTMEMORY_MAX_RECORDS": "many"})

    def test_with_overrides_returns_copy(self):
        base = EngineConfig()
        tuned = base.with_overrides(token_budget=100)
        assert tuned.token_budget == 100
        assert base.token_budget == 2400

    def test_frozen(self):
        with pytest.raises(dataclasses.FrozenInstanceError):
            EngineConfig().token_budget = 1
