"""
Engine configuration.

Every tuning constant of the write and read pipelines lives here so that
thresholds can be varied per deployment (and per test) without touching
the code that applies them.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from pathlib import Path

_ENV_PREFIX = "FACTMEMORY_"


@dataclass(frozen=True)
class EngineConfig:
    """Tuning knobs for :class:`~factmemory.memory.MemoryEngine`."""

    # Storage locations
    db_path: str = str(Path.home() / ".cache" / "factmemory")
    collection_name: str = "facts"
    embedding_model: str = "all-MiniLM-L6-v2"
    llm_model: str = "gpt-4o-mini"

    # Deduplication: cosine distance below which two facts are duplicates.
    dedup_distance: float = 0.15
    dedup_relevance_boost: float = 0.05

    # Fingerprinting
    partial_confidence_factor: float = 0.6

    # Routing
    routing_confidence_floor: float = 0.80
    fallback_min_results: int = 2
    default_category: str = "personal_life_interests"
    default_category_confidence: float = 0.2
    category_token_ceiling: int = 50_000

    # Retrieval
    token_budget: int = 2400
    max_records: int = 5
    overflow_fraction: float = 0.20
    fallback_penalty: float = 0.9
    vector_candidates: int = 50

    # Compression
    compression_timeout: float = 10.0
    max_fact_lines: int = 5
    max_fact_words: int = 8

    # Embeddings
    embedding_timeout: float = 3.0
    embedding_retries: int = 1
    embedding_workers: int = 2
    background_embeddings: bool = True

    # Per-session cache
    session_ttl: float = 1800.0

    def with_overrides(self, **overrides) -> "EngineConfig":
        """Return a copy with *overrides* applied."""
        return replace(self, **overrides)

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> "EngineConfig":
        """
        Build a config from ``FACTMEMORY_*`` environment variables.

        Each field maps to the upper-cased field name with the prefix, e.g.
        ``FACTMEMORY_DEDUP_DISTANCE=0.2``.  Unset variables keep the default.
        """
        env = os.environ if environ is None else environ
        overrides: dict[str, object] = {}
        for f in fields(cls):
            raw = env.get(_ENV_PREFIX + f.name.upper())
            if raw is None:
                continue
            overrides[f.name] = _coerce(raw, f.default)
        return cls(**overrides)


def _coerce(raw: str, default: object) -> object:
    if isinstance(default, bool):
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(default, int):
        return int(raw)
    if isinstance(default, float):
        return float(raw)
    return raw
