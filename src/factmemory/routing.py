"""
Category routing for facts (write) and queries (read).

Routing is content based: recall phrasing such as "do you remember" is
stripped first, so a question routes on its topic rather than on the fact
that it is a question.  The scoring strategy sits behind the
:class:`Classifier` interface and can be swapped per router.
"""

from __future__ import annotations

import logging
import math
import re
from collections import Counter
from dataclasses import dataclass, field
from typing import Callable, Protocol

from .categories import PRIORITY_HIGH, PRIORITY_MEDIUM, CategoryDefinition, CategoryRegistry
from .errors import RoutingFailure
from .intelligence import extract_entities, extract_topic_keywords, strip_recall_phrasing
from .records import RecordStore

logger = logging.getLogger(__name__)

KEYWORD_WEIGHT: float = 2.0
PATTERN_WEIGHT: float = 3.0
TOPIC_WEIGHT: float = 1.5
PRIORITY_BONUS: dict[str, float] = {PRIORITY_HIGH: 1.0, PRIORITY_MEDIUM: 0.5}
URGENCY_BONUS: float = 0.5

#: Score at which routing strength saturates.
CONFIDENT_SCORE: float = 6.0

_URGENCY = re.compile(r"\b(urgent|asap|emergency|important|critical)\b", re.IGNORECASE)


class Classifier(Protocol):
    """Scoring strategy: ``classify(text) -> (category, confidence)``."""

    def classify(self, text: str) -> tuple[str, float]: ...


@dataclass
class CategoryScore:
    keyword: float = 0.0
    pattern: float = 0.0
    topic: float = 0.0
    priority: float = 0.0

    @property
    def total(self) -> float:
        return self.keyword + self.pattern + self.topic + self.priority


def _contains_phrase(text: str, phrase: str) -> bool:
    return re.search(r"(?<!\w)" + re.escape(phrase) + r"(?!\w)", text) is not None


def confidence_from_scores(top: float, second: float) -> float:
    """Blend of absolute strength and separation from the runner-up."""
    if top <= 0:
        return 0.0
    strength = min(top / CONFIDENT_SCORE, 1.0)
    separation = (top - second) / top
    return round(0.5 * strength + 0.5 * separation, 4)


class KeywordPatternClassifier:
    """Weighted keyword, pattern, topic and priority scoring."""

    def __init__(self, registry: CategoryRegistry) -> None:
        self.registry = registry

    def score_category(self, category: CategoryDefinition, text: str) -> CategoryScore:
        lowered = text.lower()
        topics = set(extract_topic_keywords(text))
        score = CategoryScore(
            keyword=KEYWORD_WEIGHT * sum(1 for k in category.keywords if _contains_phrase(lowered, k)),
            pattern=PATTERN_WEIGHT * sum(1 for p in category.patterns if p.search(text)),
            topic=TOPIC_WEIGHT * len(topics & category.topics),
        )
        if score.total > 0:
            score.priority = PRIORITY_BONUS.get(category.priority, 0.0)
            if category.priority == PRIORITY_HIGH and _URGENCY.search(text):
                score.priority += URGENCY_BONUS
        return score

    def score(self, text: str) -> dict[str, CategoryScore]:
        return {c.name: self.score_category(c, text) for c in self.registry.all()}

    def classify(self, text: str) -> tuple[str, float]:
        scores = self.score(text)
        ranked = sorted(scores.items(), key=lambda kv: kv[1].total, reverse=True)
        if not ranked or ranked[0][1].total <= 0:
            raise RoutingFailure("no category matched")
        top = ranked[0][1].total
        second = ranked[1][1].total if len(ranked) > 1 else 0.0
        return ranked[0][0], confidence_from_scores(top, second)


class EmbeddingClassifier:
    """
    Route to the category whose description embeds closest to the text.

    Category vectors are cached per registry version.
    """

    def __init__(
        self,
        registry: CategoryRegistry,
        embed: Callable[[str], list[float]],
        min_similarity: float = 0.1,
    ) -> None:
        self.registry = registry
        self.embed = embed
        self.min_similarity = min_similarity
        self._version = -1
        self._vectors: dict[str, list[float]] = {}

    def _category_vectors(self) -> dict[str, list[float]]:
        if self._version != self.registry.version:
            self._vectors = {
                c.name: self.embed(f"{c.description}: {', '.join(sorted(c.keywords))}")
                for c in self.registry.all()
            }
            self._version = self.registry.version
        return self._vectors

    def classify(self, text: str) -> tuple[str, float]:
        query = self.embed(text)
        sims = {name: _cosine(query, vec) for name, vec in self._category_vectors().items()}
        if not sims:
            raise RoutingFailure("registry is empty")
        best = max(sims, key=sims.get)
        if sims[best] < self.min_similarity:
            raise RoutingFailure(f"best similarity {sims[best]:.3f} below floor")
        return best, round(max(0.0, min(1.0, sims[best])), 4)


def _cosine(a: list[float], b: list[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    return dot / norm if norm else 0.0


@dataclass
class RoutingDecision:
    category: str
    confidence: float
    method: str  # "scored", "default" or "cross_category"
    needs_fallback: bool = False
    needs_reconciliation: bool = False
    scores: dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "category": self.category,
            "confidence": self.confidence,
            "method": self.method,
            "needs_fallback": self.needs_fallback,
            "needs_reconciliation": self.needs_reconciliation,
        }


class CategoryRouter:
    """
    Parameters
    ----------
    registry:
        Shared category vocabulary.
    records:
        Relational store, used by the write-time cross-category fallback.
    classifier:
        Scoring strategy; defaults to :class:`KeywordPatternClassifier`.
    confidence_floor:
        Confidence below which the cross-category fallback runs.
    default_category, default_confidence:
        Assignment used when nothing scores.
    """

    def __init__(
        self,
        registry: CategoryRegistry,
        records: RecordStore,
        classifier: Classifier | None = None,
        confidence_floor: float = 0.80,
        default_category: str = "personal_life_interests",
        default_confidence: float = 0.2,
    ) -> None:
        self.registry = registry
        self.records = records
        self.classifier = classifier or KeywordPatternClassifier(registry)
        self.confidence_floor = confidence_floor
        self.default_category = default_category
        self.default_confidence = default_confidence

    def route(self, text: str) -> RoutingDecision:
        """Classify *text* on its topic."""
        topic_text = strip_recall_phrasing(text)
        scores: dict[str, float] = {}
        if isinstance(self.classifier, KeywordPatternClassifier):
            scores = {k: v.total for k, v in self.classifier.score(topic_text).items() if v.total > 0}
        try:
            category, confidence = self.classifier.classify(topic_text)
        except RoutingFailure as exc:
            logger.info("routing failed (%s), using %s", exc, self.default_category)
            return RoutingDecision(
                category=self.default_category,
                confidence=self.default_confidence,
                method="default",
                needs_fallback=True,
                needs_reconciliation=True,
                scores=scores,
            )
        decision = RoutingDecision(
            category=category,
            confidence=confidence,
            method="scored",
            needs_fallback=confidence < self.confidence_floor,
            scores=scores,
        )
        logger.debug("routed to %s (confidence %.2f, scores=%s)", category, confidence, scores)
        return decision

    def route_write(self, user_id: str, text: str) -> RoutingDecision:
        """
        Route a fact for storage.

        With low confidence, existing records that share the fact's topic
        terms decide: if they sit in one category, the fact joins them so
        that reads and writes keep one vocabulary.
        """
        decision = self.route(text)
        if not decision.needs_fallback:
            return decision
        terms = fallback_terms(text)
        related = self.records.search_current(user_id, terms)
        counts = Counter(r.category for r in related if r.category in self.registry)
        if not counts:
            return decision
        ranked = counts.most_common(2)
        if len(ranked) > 1 and ranked[0][1] == ranked[1][1]:
            return decision
        target = ranked[0][0]
        if target != decision.category:
            logger.info(
                "cross-category write: %s -> %s (confidence %.2f, terms=%s)",
                decision.category, target, decision.confidence, terms,
            )
            decision.category = target
            decision.method = "cross_category"
            decision.needs_reconciliation = False
        return decision


def fallback_terms(text: str) -> list[str]:
    """Topic keywords and entity names of *text*, lower-cased."""
    terms = extract_topic_keywords(strip_recall_phrasing(text))
    for name in extract_entities(text):
        lowered = name.lower()
        if lowered not in terms:
            terms.append(lowered)
    return terms
