"""
Token-budgeted retrieval.

Turns a query into a ranked, capped list of current records plus the
telemetry needed to explain the selection.  Linked facts (same person,
explicit "remember this" requests, ordinal references) are admitted as a
group before anything else so the cap does not split them.
"""

from __future__ import annotations

import logging
import math
import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from .errors import EmbeddingFailure
from .intelligence import extract_entities, has_recall_intent, words
from .records import MemoryRecord, RecordStore
from .routing import CategoryRouter, RoutingDecision, fallback_terms
from .store import VectorStore, where_clause

logger = logging.getLogger(__name__)

SIMILARITY_WEIGHT: float = 0.55
ENTITY_BOOST: float = 0.30
EXPLICIT_RECALL_BOOST: float = 0.20
ORDINAL_BOOST: float = 0.30
RECENCY_WEIGHT: float = 0.10
RELEVANCE_WEIGHT: float = 0.05

#: Days over which the recency term decays by a factor of e.
RECENCY_DECAY_DAYS: float = 30.0

_ORDINAL_WORDS = {
    "first": 1, "second": 2, "third": 3, "fourth": 4, "fifth": 5,
    "sixth": 6, "seventh": 7, "eighth": 8, "ninth": 9, "tenth": 10,
    "last": -1, "latest": -1,
}
_ORDINAL_PATTERN = re.compile(
    r"\b(" + "|".join(_ORDINAL_WORDS) + r"|\d+(?:st|nd|rd|th))\s+([a-z][a-z-]*)",
    re.IGNORECASE,
)


@dataclass
class ScoredCandidate:
    record: MemoryRecord
    score: float = 0.0
    similarity: float = 0.0
    similarity_source: str = "keyword"
    entity_match: bool = False
    explicit_recall: bool = False
    ordinal: bool = False
    from_fallback: bool = False
    high_priority: bool = False
    breakdown: dict[str, float] = field(default_factory=dict)


@dataclass
class RetrievalResult:
    records: list[MemoryRecord]
    telemetry: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {
            "records": [r.to_dict() for r in self.records],
            "telemetry": self.telemetry,
        }


def parse_ordinal(query: str) -> tuple[int, str] | None:
    """``"the second code"`` -> ``(2, "code")``; ``None`` without an ordinal."""
    match = _ORDINAL_PATTERN.search(query)
    if not match:
        return None
    word, noun = match.group(1).lower(), match.group(2).lower()
    position = _ORDINAL_WORDS.get(word)
    if position is None:
        position = int(re.sub(r"\D", "", word))
    if noun.endswith("s") and len(noun) > 3:
        noun = noun[:-1]
    return position, noun


def keyword_similarity(terms: list[str], content: str) -> float:
    """Share of *terms* found among the words of *content*."""
    if not terms:
        return 0.0
    present = set(words(content))
    hits = sum(1 for t in terms if t in present or any(w.startswith(t) for w in present))
    return hits / len(terms)


def _mentions(content: str, name: str) -> bool:
    return re.search(r"\b" + re.escape(name) + r"\b", content, re.IGNORECASE) is not None


class Retriever:
    """
    Parameters
    ----------
    records, store:
        Relational and vector stores.
    router:
        Category router shared with the write path.
    embed:
        Query embedding callable; raises
        :class:`~factmemory.errors.EmbeddingFailure` on failure.
    overflow_fraction:
        Extra budget share the high-priority group may use.
    fallback_min_results:
        Primary-category result count below which the cross-category
        fallback runs.
    fallback_penalty:
        Score multiplier for candidates found only through the fallback.
    vector_candidates:
        Nearest neighbours requested from the vector store.
    """

    def __init__(
        self,
        records: RecordStore,
        store: VectorStore,
        router: CategoryRouter,
        embed: Callable[[str], list[float]],
        overflow_fraction: float = 0.20,
        fallback_min_results: int = 2,
        fallback_penalty: float = 0.9,
        vector_candidates: int = 50,
    ) -> None:
        self.records = records
        self.store = store
        self.router = router
        self.embed = embed
        self.overflow_fraction = overflow_fraction
        self.fallback_min_results = fallback_min_results
        self.fallback_penalty = fallback_penalty
        self.vector_candidates = vector_candidates

    def retrieve(
        self,
        user_id: str,
        query: str,
        budget: int = 2400,
        max_count: int = 5,
    ) -> RetrievalResult:
        """
        Select at most *max_count* current records for *query* within
        *budget* tokens (plus the high-priority overflow allowance).
        """
        started = time.monotonic()
        decision = self.router.route(query)
        candidates, fallback_used, vector_ok = self._candidates(user_id, query, decision)
        scored = self._score(query, candidates)
        self._mark_high_priority(scored)
        selected, tokens_used, overflow_used = self._admit(scored, budget, max_count)

        self.records.touch(c.record.id for c in selected)
        ranked = sorted(scored, key=lambda c: c.score, reverse=True)
        telemetry = {
            "candidate_count": len(scored),
            "primary_category": decision.category,
            "routing_confidence": decision.confidence,
            "routing_method": decision.method,
            "fallback_used": fallback_used,
            "vector_search": vector_ok,
            "budget": budget,
            "max_count": max_count,
            "tokens_used": tokens_used,
            "overflow_used": overflow_used,
            "selected_ids": [c.record.id for c in selected],
            "ranks": [
                {
                    "rank": i,
                    "id": c.record.id,
                    "score": round(c.score, 4),
                    "high_priority": c.high_priority,
                    "from_fallback": c.from_fallback,
                    "similarity_source": c.similarity_source,
                    "breakdown": c.breakdown,
                }
                for i, c in enumerate(ranked, 1)
            ],
            "elapsed_ms": round((time.monotonic() - started) * 1000, 2),
        }
        logger.info(
            "retrieval user=%s category=%s confidence=%.2f candidates=%d selected=%d tokens=%d%s",
            user_id, decision.category, decision.confidence, len(scored), len(selected),
            tokens_used, " (fallback)" if fallback_used else "",
        )
        return RetrievalResult([c.record for c in selected], telemetry)

    # ------------------------------------------------------------------
    # Candidate fetch
    # ------------------------------------------------------------------

    def _candidates(
        self, user_id: str, query: str, decision: RoutingDecision
    ) -> tuple[list[ScoredCandidate], bool, bool]:
        primary = self.records.current(user_id, decision.category)
        fallback_used = decision.needs_fallback or len(primary) < self.fallback_min_results

        sims: dict[int, float] = {}
        vector_ok = False
        try:
            vector = self.embed(query)
        except EmbeddingFailure as exc:
            logger.warning("query embedding failed, keyword matching only: %s", exc)
        else:
            category = None if fallback_used else decision.category
            try:
                results = self.store.query(
                    vector,
                    n_results=self.vector_candidates,
                    where=where_clause(user_id=user_id, category=category, is_current=True),
                )
            except Exception as exc:  # a broken index must not fail the read
                logger.warning("vector query failed, keyword matching only: %s", exc)
            else:
                vector_ok = True
                for rid, distance in zip(results["ids"][0], results["distances"][0]):
                    sims[int(rid)] = max(0.0, min(1.0, 1.0 - float(distance)))

        pool: dict[int, ScoredCandidate] = {
            r.id: ScoredCandidate(record=r) for r in primary
        }
        if fallback_used:
            extra_ids = [rid for rid in sims if rid not in pool]
            extra = self.records.search_current(user_id, fallback_terms(query))
            extra += [r for r in self.records.get_many(extra_ids) if r.is_current]
            if len(pool) + len(extra) < self.fallback_min_results:
                extra += self.records.current(user_id)
            for record in extra:
                if record.id not in pool:
                    pool[record.id] = ScoredCandidate(record=record, from_fallback=True)

        for cand in pool.values():
            if cand.record.has_embedding and cand.record.id in sims:
                cand.similarity = sims[cand.record.id]
                cand.similarity_source = "vector"
        return list(pool.values()), fallback_used, vector_ok

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    def _score(self, query: str, candidates: list[ScoredCandidate]) -> list[ScoredCandidate]:
        terms = fallback_terms(query)
        entities = extract_entities(query)
        recall = has_recall_intent(query)
        ordinal_ids = self._ordinal_matches(query, candidates)
        now = time.time()

        for cand in candidates:
            record = cand.record
            if cand.similarity_source == "keyword":
                cand.similarity = keyword_similarity(terms, record.content)
            cand.entity_match = any(_mentions(record.content, e) for e in entities)
            cand.explicit_recall = recall and bool(record.metadata.get("explicit_recall"))
            cand.ordinal = record.id in ordinal_ids
            age_days = max(0.0, now - record.created_at) / 86400.0
            recency = math.exp(-age_days / RECENCY_DECAY_DAYS)

            cand.breakdown = {
                "similarity": round(SIMILARITY_WEIGHT * cand.similarity, 4),
                "entity": ENTITY_BOOST if cand.entity_match else 0.0,
                "explicit_recall": EXPLICIT_RECALL_BOOST if cand.explicit_recall else 0.0,
                "ordinal": ORDINAL_BOOST if cand.ordinal else 0.0,
                "recency": round(RECENCY_WEIGHT * recency, 4),
                "relevance": round(RELEVANCE_WEIGHT * record.relevance_score, 4),
            }
            score = sum(cand.breakdown.values())
            if cand.from_fallback:
                score *= self.fallback_penalty
            cand.score = score
        return candidates

    @staticmethod
    def _ordinal_matches(query: str, candidates: list[ScoredCandidate]) -> set[int]:
        parsed = parse_ordinal(query)
        if parsed is None:
            return set()
        position, noun = parsed
        matching = sorted(
            (c.record for c in candidates if noun in c.record.content.lower()),
            key=lambda r: r.id,
        )
        if not matching:
            return set()
        index = position - 1 if position > 0 else position
        if -len(matching) <= index < len(matching):
            return {matching[index].id}
        return set()

    @staticmethod
    def _mark_high_priority(candidates: list[ScoredCandidate]) -> None:
        seeds = [c for c in candidates if c.entity_match or c.explicit_recall or c.ordinal]
        for c in seeds:
            c.high_priority = True
        names = {n for c in seeds for n in extract_entities(c.record.content)}
        if not names:
            return
        for c in candidates:
            if not c.high_priority and any(_mentions(c.record.content, n) for n in names):
                c.high_priority = True

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    def _admit(
        self, candidates: list[ScoredCandidate], budget: int, max_count: int
    ) -> tuple[list[ScoredCandidate], int, bool]:
        if max_count <= 0:
            return [], 0, False
        by_score = sorted(candidates, key=lambda c: (c.score, c.record.id), reverse=True)
        high = [c for c in by_score if c.high_priority]
        rest = [c for c in by_score if not c.high_priority]

        selected: list[ScoredCandidate] = []
        used = 0
        ceiling = int(budget * (1 + self.overflow_fraction))
        for cand in high:
            if len(selected) >= max_count:
                break
            if used + cand.record.token_count > ceiling:
                continue
            selected.append(cand)
            used += cand.record.token_count

        for cand in rest:
            if len(selected) >= max_count:
                break
            if used + cand.record.token_count > budget:
                break
            selected.append(cand)
            used += cand.record.token_count

        return selected, used, used > budget
