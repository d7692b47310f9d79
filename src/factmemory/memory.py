"""
MemoryEngine: high-level API for storing and retrieving conversational facts.

This is the main entry-point for applications that want an assistant to
remember what a user told it.

Usage example::

    from factmemory import MemoryEngine

    engine = MemoryEngine(db_path="./my_memory")

    # Store what the user said
    memory_id = engine.store_fact("alice", "My salary is $120,000 now.")

    # Later, pull the relevant facts into a prompt
    result = engine.retrieve_context("alice", "What do I earn?")
    for record in result.records:
        print(record.content)

    # And check the model's answer before sending it
    answer = engine.validate_response(llm_answer, "What do I earn?", "alice")
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .categories import CategoryDefinition, CategoryRegistry
from .compression import FactCompressor
from .config import EngineConfig
from .dedup import Deduplicator
from .embeddings import EmbeddingWorker
from .fingerprint import METHOD_PARTIAL, FingerprintDetector, reconcile
from .intelligence import (
    compute_importance,
    extract_entities,
    extract_temporal_anchors,
    has_explicit_recall,
)
from .llm import Completer
from .records import MemoryRecord, NewRecord, RecordStore
from .retrieval import RetrievalResult, Retriever
from .routing import CategoryRouter, Classifier
from .session import SessionCache
from .store import VectorStore
from .validators import (
    AmbiguityValidator,
    AnchorPreservationValidator,
    ConflictValidator,
    Validator,
    run_validators,
)

logger = logging.getLogger(__name__)

ACTION_INSERTED = "inserted"
ACTION_DEDUPLICATED = "deduplicated"
ACTION_SUPERSEDED = "superseded"
ACTION_HISTORY = "history"

#: Attempts at claiming a fingerprint slot before the fact is stored without it.
SLOT_ATTEMPTS = 3


def _release_slot(new: NewRecord) -> None:
    """Store *new* outside the unique slot, keeping its assignment in metadata."""
    new.metadata["unclaimed_fingerprint"] = new.fingerprint
    new.fingerprint = None


@dataclass
class StoreOutcome:
    """What a write did."""

    memory_id: int
    action: str
    category: str
    fingerprint: str | None = None
    fingerprint_confidence: float | None = None
    fingerprint_method: str | None = None
    superseded_id: int | None = None
    routing: dict[str, Any] = field(default_factory=dict)
    compression: dict[str, Any] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)
    capacity_exceeded: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "memory_id": self.memory_id,
            "action": self.action,
            "category": self.category,
            "fingerprint": self.fingerprint,
            "fingerprint_confidence": self.fingerprint_confidence,
            "fingerprint_method": self.fingerprint_method,
            "superseded_id": self.superseded_id,
            "routing": self.routing,
            "compression": self.compression,
            "warnings": self.warnings,
            "capacity_exceeded": self.capacity_exceeded,
        }


class MemoryEngine:
    """
    Conversational fact memory backed by sqlite3 and a local ChromaDB store.

    Responsibilities
    ----------------
    * **Write** – Compresses an exchange into fact lines, assigns a
      fingerprint slot, routes the fact to a category, and either boosts a
      near-duplicate or persists a new record (superseding the previous
      holder of its slot).  Embedding happens in the background.
    * **Read** – Routes the query, gathers current candidates (with a
      cross-category fallback when routing is unsure) and returns a
      ranked list capped by a token budget and a record count.
    * **Validate** – Re-checks a generated answer against storage for
      ambiguous names, allergy/preference conflicts and exact figures
      the answer dropped.

    Parameters
    ----------
    db_path:
        Directory holding ``records.sqlite3`` and the ``chroma`` store.
        Defaults to ``config.db_path``.
    collection_name:
        ChromaDB collection to use.  Defaults to ``config.collection_name``.
    embedding_model:
        sentence-transformers model identifier.  Defaults to
        ``config.embedding_model``.
    config:
        Tuning constants; see :class:`~factmemory.config.EngineConfig`.
    completer:
        LLM used for fact extraction.  Without one, facts are stored
        uncompressed.
    classifier:
        Routing strategy; the keyword/pattern scorer by default.
    """

    def __init__(
        self,
        db_path: str | None = None,
        collection_name: str | None = None,
        embedding_model: str | None = None,
        config: EngineConfig | None = None,
        completer: Completer | None = None,
        classifier: Classifier | None = None,
        _store: VectorStore | None = None,
        _records: RecordStore | None = None,
    ) -> None:
        self.config = config or EngineConfig()
        cfg = self.config
        root = Path(db_path or cfg.db_path)
        if _store is None or _records is None:
            root.mkdir(parents=True, exist_ok=True)

        self._records = _records or RecordStore(str(root / "records.sqlite3"))
        self._store = _store or VectorStore(
            path=str(root / "chroma"),
            collection_name=collection_name or cfg.collection_name,
            embedding_model=embedding_model or cfg.embedding_model,
        )
        self.registry = CategoryRegistry(token_ceiling=cfg.category_token_ceiling)
        self._restore_categories()
        self.embeddings = EmbeddingWorker(
            self._store,
            self._records,
            timeout=cfg.embedding_timeout,
            retries=cfg.embedding_retries,
            max_workers=cfg.embedding_workers,
            background=cfg.background_embeddings,
        )
        self.compressor = FactCompressor(
            completer,
            timeout=cfg.compression_timeout,
            max_lines=cfg.max_fact_lines,
            max_words=cfg.max_fact_words,
        )
        self.fingerprints = FingerprintDetector(partial_factor=cfg.partial_confidence_factor)
        self.router = CategoryRouter(
            self.registry,
            self._records,
            classifier=classifier,
            confidence_floor=cfg.routing_confidence_floor,
            default_category=cfg.default_category,
            default_confidence=cfg.default_category_confidence,
        )
        self.dedup = Deduplicator(
            self._records,
            self._store,
            self.embeddings.embed_text,
            threshold=cfg.dedup_distance,
            relevance_boost=cfg.dedup_relevance_boost,
        )
        self.retriever = Retriever(
            self._records,
            self._store,
            self.router,
            self.embeddings.embed_text,
            overflow_fraction=cfg.overflow_fraction,
            fallback_min_results=cfg.fallback_min_results,
            fallback_penalty=cfg.fallback_penalty,
            vector_candidates=cfg.vector_candidates,
        )
        self.validators: list[Validator] = [
            AmbiguityValidator(self._records),
            ConflictValidator(self._records),
            AnchorPreservationValidator(self._records),
        ]
        self.sessions = SessionCache(ttl=cfg.session_ttl)

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    def store_fact(self, user_id: str, raw_exchange: str) -> int:
        """Run the write pipeline on *raw_exchange* and return the memory id."""
        return self.write(user_id, raw_exchange).memory_id

    def write(self, user_id: str, raw_exchange: str) -> StoreOutcome:
        """
        Run the full write pipeline and report what happened.

        Parameters
        ----------
        user_id:
            Owner of the fact.
        raw_exchange:
            The user's message, optionally followed by the assistant's reply.

        Returns
        -------
        StoreOutcome
            ``action`` is one of ``"inserted"``, ``"deduplicated"`` (an
            existing record was boosted), ``"superseded"`` (the new record
            replaced the previous holder of its fingerprint) or
            ``"history"`` (the previous holder kept its slot).

        Raises
        ------
        ValueError
            If *user_id* or *raw_exchange* is blank.
        """
        if not user_id or not user_id.strip():
            raise ValueError("user_id is required")
        if not raw_exchange or not raw_exchange.strip():
            raise ValueError("no text provided")

        compression = self.compressor.compress(raw_exchange)
        content = compression.content
        match = self.fingerprints.detect(content)
        fingerprint = match.fingerprint if match else None
        decision = self.router.route_write(user_id, content)

        outcome = StoreOutcome(
            memory_id=0,
            action=ACTION_INSERTED,
            category=decision.category,
            fingerprint=fingerprint,
            fingerprint_confidence=match.confidence if match else None,
            fingerprint_method=match.method if match else None,
            routing=decision.to_dict(),
            compression=compression.stats(),
            warnings=list(compression.warnings),
        )

        duplicate = self.dedup.find_duplicate(user_id, decision.category, content, fingerprint)
        if duplicate is not None:
            outcome.memory_id = self.dedup.merge(duplicate)
            outcome.action = ACTION_DEDUPLICATED
            self.sessions.invalidate_user(user_id)
            return outcome

        new = NewRecord(
            user_id=user_id,
            category=decision.category,
            subcategory=fingerprint or "general",
            content=content,
            relevance_score=compute_importance(content),
            fingerprint=fingerprint,
            fingerprint_confidence=outcome.fingerprint_confidence,
            fingerprint_method=outcome.fingerprint_method,
            metadata={
                "compression": compression.stats(),
                "compression_warnings": compression.warnings,
                "temporal_anchors": extract_temporal_anchors(content),
                "entities": extract_entities(content),
                "explicit_recall": has_explicit_recall(raw_exchange),
                "routing": decision.to_dict(),
            },
        )
        outcome.memory_id, outcome.action, outcome.superseded_id = self._insert(new)

        if outcome.superseded_id is not None:
            previous = self._records.get(outcome.superseded_id)
            if previous is not None:
                self.embeddings.mark_superseded(previous)
        record = self._records.get(outcome.memory_id)
        if record is not None and record.is_current:
            self.embeddings.submit(record)

        outcome.capacity_exceeded = self._over_ceiling(user_id, decision.category)
        self.sessions.invalidate_user(user_id)
        logger.info(
            "stored record %d user=%s category=%s fingerprint=%s action=%s ratio=%.2f",
            outcome.memory_id, user_id, decision.category, fingerprint, outcome.action,
            compression.ratio,
        )
        return outcome

    def _insert(self, new: NewRecord) -> tuple[int, str, int | None]:
        """Persist *new*, resolving its fingerprint slot.  Returns (id, action, superseded id)."""
        for attempt in range(1, SLOT_ATTEMPTS + 1):
            try:
                return self._insert_once(new)
            except sqlite3.IntegrityError as exc:
                # Another writer took the slot between the read and the insert.
                logger.warning(
                    "fingerprint %s changed hands during write (attempt %d/%d): %s",
                    new.fingerprint, attempt, SLOT_ATTEMPTS, exc,
                )
        logger.error(
            "could not claim fingerprint %s for user=%s, storing the fact without it",
            new.fingerprint, new.user_id,
        )
        _release_slot(new)
        return self._insert_once(new)

    def _insert_once(self, new: NewRecord) -> tuple[int, str, int | None]:
        supersede = history_of = None
        if new.fingerprint:
            existing = self._records.current_by_fingerprint(new.user_id, new.fingerprint)
            if existing is not None:
                verdict = reconcile(
                    existing.content,
                    new.content,
                    partial=new.fingerprint_method == METHOD_PARTIAL,
                )
                new.metadata["reconciliation"] = verdict.reason
                if verdict.new_wins:
                    supersede = existing.id
                elif verdict.keeps_both:
                    _release_slot(new)
                else:
                    history_of = existing.id
        new_id = self._records.insert(new, supersede=supersede, history_of=history_of)
        if supersede is not None:
            return new_id, ACTION_SUPERSEDED, supersede
        if history_of is not None:
            return new_id, ACTION_HISTORY, None
        return new_id, ACTION_INSERTED, None

    def _over_ceiling(self, user_id: str, category: str) -> bool:
        if category not in self.registry:
            return False
        ceiling = self.registry.get(category).token_ceiling
        used = self._records.category_usage(user_id).get(category, 0)
        if used > ceiling:
            logger.warning(
                "category %s for user=%s holds %d tokens, over its ceiling of %d",
                category, user_id, used, ceiling,
            )
            return True
        return False

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    def retrieve_context(
        self,
        user_id: str,
        query: str,
        budget: int | None = None,
        max_count: int | None = None,
        session_id: str | None = None,
    ) -> RetrievalResult:
        """
        Return the ranked, capped records relevant to *query*.

        Parameters
        ----------
        budget:
            Prompt token budget; ``config.token_budget`` when omitted.
        max_count:
            Hard record cap; ``config.max_records`` when omitted.
        session_id:
            When given, results are cached for the session until the user
            writes again or the session idles out.
        """
        budget = self.config.token_budget if budget is None else budget
        max_count = self.config.max_records if max_count is None else max_count
        key = (query, budget, max_count)
        if session_id:
            cached = self.sessions.get(user_id, session_id, key)
            if cached is not None:
                return RetrievalResult(cached.records, {**cached.telemetry, "cache_hit": True})

        result = self.retriever.retrieve(user_id, query, budget=budget, max_count=max_count)
        result.telemetry["cache_hit"] = False
        if session_id:
            self.sessions.put(user_id, session_id, key, result)
        return result

    def validate_response(self, response: str, query: str, user_id: str) -> str:
        """Return *response*, amended with any ambiguity, conflict or key-detail disclosure."""
        return run_validators(self.validators, response, query, user_id)

    def end_session(self, user_id: str, session_id: str) -> bool:
        return self.sessions.end(user_id, session_id)

    # ------------------------------------------------------------------
    # Management
    # ------------------------------------------------------------------

    def list_current(
        self, user_id: str, category: str | None = None, limit: int = 100
    ) -> list[MemoryRecord]:
        return self._records.current(user_id, category=category, limit=limit)

    def history(self, user_id: str, fingerprint: str) -> list[MemoryRecord]:
        """Every record written for *fingerprint*, superseded ones included."""
        return self._records.history(user_id, fingerprint)

    def count(self, user_id: str | None = None) -> int:
        """Number of current records, optionally for one user."""
        return self._records.count(user_id)

    def stats(self, user_id: str) -> dict[str, Any]:
        usage = self._records.category_usage(user_id)
        categories = {}
        for definition in self.registry.all():
            used = usage.get(definition.name, 0)
            categories[definition.name] = {
                "tokens": used,
                "ceiling": definition.token_ceiling,
                "over_ceiling": used > definition.token_ceiling,
            }
        return {
            "user_id": user_id,
            "current_records": self._records.count(user_id),
            "total_records": self._records.count(user_id, current_only=False),
            "categories": categories,
            "embeddings": self._records.embedding_status_counts(user_id),
            "registry_version": self.registry.version,
        }

    def register_category(
        self,
        keywords: list[str],
        patterns: list[str] | None = None,
        topics: list[str] | None = None,
        description: str = "",
    ) -> CategoryDefinition:
        """Add a runtime category to the next free dynamic slot and save it."""
        definition = self.registry.register_dynamic(
            keywords, patterns=patterns, topics=topics, description=description
        )
        self._records.save_category(
            definition.name,
            keywords,
            list(patterns or []),
            list(topics or []),
            description,
            definition.priority,
        )
        return definition

    def _restore_categories(self) -> None:
        for saved in self._records.dynamic_categories():
            try:
                self.registry.register_dynamic(
                    saved["keywords"],
                    patterns=saved["patterns"],
                    topics=saved["topics"],
                    description=saved["description"],
                    priority=saved["priority"],
                    name=saved["name"],
                )
            except ValueError as exc:
                logger.warning("could not restore category %s: %s", saved["name"], exc)

    def backfill_embeddings(self) -> int:
        """Re-queue current records whose embedding is pending or failed."""
        return self.embeddings.backfill()

    def wait_for_embeddings(self, timeout: float | None = None) -> bool:
        return self.embeddings.wait(timeout)

    def close(self) -> None:
        self.embeddings.shutdown()
        self._records.close()
