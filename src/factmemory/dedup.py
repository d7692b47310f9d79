"""
Near-duplicate detection for new facts.

A new fact is a duplicate when a current record of the same user and
category sits within the cosine-distance threshold.  Duplicates are not
inserted; the existing record is boosted instead.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

from .errors import DedupFailure, EmbeddingFailure
from .intelligence import (
    extract_high_entropy_tokens,
    extract_numbers,
    normalize_text,
    number_core,
)
from .records import MemoryRecord, RecordStore
from .store import VectorStore, where_clause

logger = logging.getLogger(__name__)

#: Cosine distance below which two facts are the same fact.
DEDUP_DISTANCE: float = 0.15


@dataclass(frozen=True)
class DuplicateMatch:
    record: MemoryRecord
    distance: float
    method: str  # "exact" or "vector"


def should_prevent_merge(existing_content: str, new_content: str) -> bool:
    """
    Return ``True`` when *new_content* carries an identifier or a number
    that *existing_content* lacks.  Such facts differ where it matters even
    if their embeddings are close ("code ALPHA-1234567890" vs "code
    BRAVO-9876543210", "salary $90,000" vs "salary $95,000").
    """
    new_numbers = {number_core(n) for n in extract_numbers(new_content)}
    if new_numbers - {number_core(n) for n in extract_numbers(existing_content)}:
        return True
    new_tokens = {t.upper() for t in extract_high_entropy_tokens(new_content)}
    if not new_tokens:
        return False
    existing_tokens = {t.upper() for t in extract_high_entropy_tokens(existing_content)}
    if not existing_tokens:
        return False
    return bool(new_tokens - existing_tokens)


def nearest_duplicate(
    distances: list[float],
    threshold: float = DEDUP_DISTANCE,
) -> int | None:
    """
    Index of the closest entry in *distances* if it is below *threshold*.

    *distances* are ChromaDB cosine distances (range [0, 2]).
    """
    if not distances:
        return None
    best_idx = min(range(len(distances)), key=lambda i: distances[i])
    return best_idx if distances[best_idx] < threshold else None


class Deduplicator:
    """
    Parameters
    ----------
    records:
        Relational store holding current records.
    store:
        Vector store holding their embeddings.
    embed:
        Callable turning text into a vector under a timeout; raises
        :class:`~factmemory.errors.EmbeddingFailure` on failure.
    threshold:
        Cosine distance below which two facts are duplicates.
    relevance_boost:
        Amount added to the existing record's relevance on a duplicate.
    """

    def __init__(
        self,
        records: RecordStore,
        store: VectorStore,
        embed: Callable[[str], list[float]],
        threshold: float = DEDUP_DISTANCE,
        relevance_boost: float = 0.05,
    ) -> None:
        self.records = records
        self.store = store
        self.embed = embed
        self.threshold = threshold
        self.relevance_boost = relevance_boost

    def find_duplicate(
        self,
        user_id: str,
        category: str,
        content: str,
        fingerprint: str | None = None,
    ) -> DuplicateMatch | None:
        """
        Return the record *content* duplicates, or ``None``.

        Records with a different fingerprint never count.  When distances
        cannot be computed the fact is treated as unique.
        """
        exact = self._exact(user_id, category, content, fingerprint)
        if exact is not None:
            return exact
        try:
            return self._nearest(user_id, category, content, fingerprint)
        except DedupFailure as exc:
            logger.warning(
                "dedup unavailable for user=%s category=%s fingerprint=%s, treating as unique: %s",
                user_id, category, fingerprint, exc,
            )
            return None

    def merge(self, match: DuplicateMatch) -> int:
        """Boost the existing record of *match* and return its id."""
        self.records.boost(match.record.id, self.relevance_boost)
        logger.info(
            "duplicate of record %d (%s, distance=%.3f), boosted",
            match.record.id, match.method, match.distance,
        )
        return match.record.id

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _exact(
        self, user_id: str, category: str, content: str, fingerprint: str | None
    ) -> DuplicateMatch | None:
        # Covers records whose embedding is still pending.
        wanted = normalize_text(content)
        for record in self.records.current(user_id, category):
            if record.fingerprint == fingerprint and normalize_text(record.content) == wanted:
                return DuplicateMatch(record, 0.0, "exact")
        return None

    def _nearest(
        self, user_id: str, category: str, content: str, fingerprint: str | None
    ) -> DuplicateMatch | None:
        try:
            vector = self.embed(content)
        except EmbeddingFailure as exc:
            raise DedupFailure(f"no embedding for new fact: {exc}") from exc
        try:
            results = self.store.query(
                vector,
                n_results=5,
                where=where_clause(user_id=user_id, category=category, is_current=True),
            )
        except Exception as exc:  # backend errors surface as DedupFailure
            raise DedupFailure(f"vector query failed: {exc}") from exc

        ids = results["ids"][0]
        distances = list(results["distances"][0])
        while distances:
            idx = nearest_duplicate(distances, self.threshold)
            if idx is None:
                return None
            record = self.records.get(int(ids[idx]))
            distance = distances[idx]
            ids = ids[:idx] + ids[idx + 1:]
            distances = distances[:idx] + distances[idx + 1:]
            if record is None or not record.is_current or record.fingerprint != fingerprint:
                continue
            if should_prevent_merge(record.content, content):
                logger.info("record %d is close but carries different identifiers, not merging", record.id)
                continue
            return DuplicateMatch(record, float(distance), "vector")
        return None
