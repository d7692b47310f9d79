"""
Post-generation validators.

They run after the LLM has answered and query the record store directly,
over every current record of the user, so their verdict does not depend
on which records the retrieval cap let into the prompt.
"""

from __future__ import annotations

import logging
import re
import sqlite3
from dataclasses import dataclass
from typing import Protocol

from .errors import ValidatorFailure
from .intelligence import extract_entities, extract_topic_keywords, strip_recall_phrasing
from .records import MemoryRecord, RecordStore

logger = logging.getLogger(__name__)


class Validator(Protocol):
    name: str

    def check(self, response: str, query: str, user_id: str) -> str | None:
        """Return a disclosure to append, or ``None`` when nothing is wrong."""
        ...


# ---------------------------------------------------------------------------
# Ambiguity
# ---------------------------------------------------------------------------

_DESCRIPTOR_TEMPLATES = (
    r"\b{name}\s+is\s+(?:my|our)\s+([a-z][a-z-]*)",
    r"\b(?:my|our)\s+([a-z][a-z-]*)\s*,?\s+{name}\b",
    r"\b{name}\s*(?:\(|,)\s*(?:my\s+|our\s+)?([a-z][a-z-]*)",
    r"^\s*([a-z][a-z-]*)\s*:\s*{name}\b",
)

#: Words that tell two people apart.  Occupations and other attributes
#: ("Alex is a dentist") describe the same person and are not listed.
RELATIONSHIPS = frozenset(
    """
    brother sister sibling mother mom mum father dad parent son daughter child
    cousin uncle aunt nephew niece grandfather grandmother grandpa grandma
    grandson granddaughter stepbrother stepsister stepmother stepfather
    husband wife spouse partner boyfriend girlfriend fiance fiancee ex
    brother-in-law sister-in-law mother-in-law father-in-law
    friend colleague coworker co-worker boss manager supervisor employee
    teammate mentor client neighbor neighbour roommate flatmate classmate
    landlord tenant doctor dentist therapist trainer teacher tutor coach
    """.split()
)


def referent_descriptor(content: str, name: str) -> str | None:
    """
    How *content* relates *name* to the user: "colleague" for "Alex is my
    colleague" or "Colleague: Alex".  ``None`` when the record only gives
    an attribute of the person.
    """
    for template in _DESCRIPTOR_TEMPLATES:
        pattern = template.format(name=re.escape(name))
        for match in re.finditer(pattern, content, re.IGNORECASE | re.MULTILINE):
            word = match.group(1).lower()
            if word in RELATIONSHIPS:
                return word
    return None


def _join(items: list[str]) -> str:
    if len(items) == 1:
        return items[0]
    return ", ".join(items[:-1]) + " and " + items[-1]


class AmbiguityValidator:
    """Discloses when a name in the query refers to more than one person."""

    name = "ambiguity"

    def __init__(self, records: RecordStore) -> None:
        self.records = records

    def referents(self, user_id: str, name: str) -> list[tuple[str, MemoryRecord]]:
        """Distinct (descriptor, first record) pairs for *name*, oldest first."""
        found: dict[str, MemoryRecord] = {}
        try:
            matches = self.records.search_current(user_id, [name])
        except sqlite3.Error as exc:
            raise ValidatorFailure(f"lookup of {name!r} failed: {exc}") from exc
        for record in matches:
            if not re.search(r"\b" + re.escape(name) + r"\b", record.content, re.IGNORECASE):
                continue
            descriptor = referent_descriptor(record.content, name)
            if descriptor and descriptor not in found:
                found[descriptor] = record
        return list(found.items())

    def check(self, response: str, query: str, user_id: str) -> str | None:
        disclosures = []
        lowered = response.lower()
        for name in extract_entities(query):
            referents = self.referents(user_id, name)
            if len(referents) < 2:
                continue
            descriptors = [d for d, _ in referents]
            acknowledged = all(re.search(r"\b" + re.escape(d) + r"\b", lowered) for d in descriptors)
            if acknowledged or re.search(
                r"\bwhich " + re.escape(name.lower()) + r"\b|more than one|two people named",
                lowered,
            ):
                continue
            logger.info(
                "ambiguity: %s has %d referents (%s) for user=%s",
                name, len(referents), ", ".join(descriptors), user_id,
            )
            disclosures.append(
                f"Note: I have more than one {name} in memory: "
                f"{_join(['your ' + d for d in descriptors])}. Which {name} do you mean?"
            )
        return "\n".join(disclosures) or None


# ---------------------------------------------------------------------------
# Conflict
# ---------------------------------------------------------------------------

_ALLERGY = re.compile(
    r"\b(?:allergic|intolerant)\s+to\s+([a-z][a-z -]*?)(?=[.,;!?]|\s+and\b|$)"
    r"|\b([a-z]+)\s+(?:allergy|intolerance)\b",
    re.IGNORECASE,
)
_PREFERENCE = re.compile(r"\b(?:love|loves|like|likes|prefer|prefers|favou?rite|enjoy|enjoys|craving)\b", re.IGNORECASE)
_FOOD_TOPIC = re.compile(
    r"\b(?:food|eat|eating|meal|meals|dinner|lunch|breakfast|snack|snacks|recipe|recipes|"
    r"cook|cooking|restaurant|dessert|menu|order|bake|baking|treat|allerg\w*)\b",
    re.IGNORECASE,
)


def _stem(word: str) -> str:
    word = word.lower()
    if word.endswith("ies") and len(word) > 4:
        return word[:-3] + "y"
    if word.endswith("s") and not word.endswith("ss") and len(word) > 3:
        return word[:-1]
    return word


def allergens(content: str) -> list[str]:
    found = []
    for match in _ALLERGY.finditer(content):
        phrase = (match.group(1) or match.group(2) or "").strip().lower()
        for part in re.split(r"\s*(?:,|\bor\b)\s*", phrase):
            part = part.strip()
            if part and part not in ("food", "foods", "a", "an", "the") and part not in found:
                found.append(part)
    return found


@dataclass(frozen=True)
class Conflict:
    allergen: str
    allergy_record: MemoryRecord
    preference_record: MemoryRecord


class ConflictValidator:
    """Discloses when a documented allergy collides with a documented preference."""

    name = "conflict"

    def __init__(self, records: RecordStore) -> None:
        self.records = records

    def conflicts(self, user_id: str) -> list[Conflict]:
        try:
            current = self.records.current(user_id)
        except sqlite3.Error as exc:
            raise ValidatorFailure(f"record scan failed: {exc}") from exc
        allergy_records = [
            r for r in current if r.fingerprint == "user_allergy" or _ALLERGY.search(r.content)
        ]
        preference_records = [
            r for r in current if _PREFERENCE.search(r.content) and r not in allergy_records
        ]
        found: list[Conflict] = []
        for allergy in allergy_records:
            for allergen in allergens(allergy.content):
                stems = [_stem(w) for w in allergen.split()]
                for pref in preference_records:
                    pref_stems = {_stem(w) for w in re.findall(r"[a-z]+", pref.content.lower())}
                    if all(s in pref_stems for s in stems):
                        found.append(Conflict(allergen, allergy, pref))
        return found

    def check(self, response: str, query: str, user_id: str) -> str | None:
        conflicts = self.conflicts(user_id)
        if not conflicts:
            return None
        query_stems = {_stem(w) for w in re.findall(r"[a-z]+", query.lower())}
        relevant = [
            c for c in conflicts
            if _FOOD_TOPIC.search(query) or any(_stem(w) in query_stems for w in c.allergen.split())
        ]
        lowered = response.lower()
        disclosures = []
        seen: set[str] = set()
        for c in relevant:
            if c.allergen in seen:
                continue
            seen.add(c.allergen)
            if "allerg" in lowered and c.allergen.split()[0] in lowered:
                continue
            logger.info(
                "conflict: allergy record %d vs preference record %d (%s)",
                c.allergy_record.id, c.preference_record.id, c.allergen,
            )
            disclosures.append(
                f"Important: you have a documented allergy to {c.allergen}, which conflicts "
                f'with a noted preference ("{c.preference_record.content.strip()}"). '
                f"Please keep the allergy in mind."
            )
        return "\n".join(disclosures) or None


# ---------------------------------------------------------------------------
# Anchor preservation
# ---------------------------------------------------------------------------

ANCHOR_PRICE = "price"
ANCHOR_DATE = "date"
ANCHOR_PERCENTAGE = "percentage"
ANCHOR_NUMBER = "number"

_PRICE = re.compile(r"\$\d[\d,]*(?:\.\d{2})?|\b\d[\d,]*(?:\.\d{2})?\s*(?:dollars?|usd)\b", re.IGNORECASE)
_DATE = re.compile(
    r"\b\d{4}-\d{1,2}-\d{1,2}\b|\b\d{1,2}/\d{1,2}/\d{2,4}\b"
    r"|\b(?:jan|feb|mar|apr|may|jun|jul|aug|sep|oct|nov|dec)[a-z]*\.?\s+\d{1,2}(?:st|nd|rd|th)?,?\s+\d{4}\b",
    re.IGNORECASE,
)
_PERCENTAGE = re.compile(r"\b\d+(?:\.\d+)?%")
_NUMBER = re.compile(r"\b\d{2,}(?:,\d{3})*(?:\.\d+)?\b")
_RESPONSE_NUMBER = re.compile(r"\d[\d,]*(?:\.\d+)?")

_WANTS = {
    ANCHOR_PRICE: ("price", "cost", "pricing", "plan", "tier", "fee", "charge", "rate", "pay"),
    ANCHOR_DATE: ("date", "when", "time", "year", "month", "day", "deadline"),
    ANCHOR_NUMBER: ("how many", "how much", "quantity", "amount", "number", "count"),
}
_LABELS = (
    (ANCHOR_PRICE, "Pricing"),
    (ANCHOR_DATE, "Dates"),
    (ANCHOR_PERCENTAGE, "Percentages"),
    (ANCHOR_NUMBER, "Numbers"),
)


@dataclass(frozen=True)
class Anchor:
    kind: str
    value: str
    record_id: int


def extract_anchors(record: MemoryRecord) -> list[Anchor]:
    """Prices, dates, percentages and multi-digit numbers stated in *record*."""
    anchors: list[Anchor] = []
    taken: list[str] = []
    for kind, pattern in (
        (ANCHOR_PRICE, _PRICE),
        (ANCHOR_DATE, _DATE),
        (ANCHOR_PERCENTAGE, _PERCENTAGE),
        (ANCHOR_NUMBER, _NUMBER),
    ):
        for match in pattern.finditer(record.content):
            value = match.group(0).strip()
            if any(value in t for t in taken):
                continue
            taken.append(value)
            anchors.append(Anchor(kind, value, record.id))
    return anchors


def _amount(value: str) -> float | None:
    digits = re.sub(r"[^\d.]", "", value).rstrip(".")
    try:
        return float(digits)
    except ValueError:
        return None


def _topic_terms(query: str) -> list[str]:
    terms = []
    for word in extract_topic_keywords(strip_recall_phrasing(query)):
        if word.endswith("s") and not word.endswith("ss") and len(word) > 4:
            word = word[:-1]
        if word not in terms:
            terms.append(word)
    return terms + [e.lower() for e in extract_entities(query) if e.lower() not in terms]


class AnchorPreservationValidator:
    """
    Re-states exact figures from memory that the response dropped or
    altered, such as a "$99" plan answered as "about $100".
    """

    name = "anchor_preservation"

    def __init__(self, records: RecordStore) -> None:
        self.records = records

    def relevant_anchors(self, user_id: str, query: str) -> list[Anchor]:
        """Anchors of the current records that share a topic with *query*."""
        terms = _topic_terms(query)
        if not terms:
            return []
        try:
            matches = self.records.search_current(user_id, terms)
        except sqlite3.Error as exc:
            raise ValidatorFailure(f"anchor lookup failed: {exc}") from exc
        anchors = [a for record in matches for a in extract_anchors(record)]

        lowered = query.lower()
        wanted = {kind for kind, words in _WANTS.items() if any(w in lowered for w in words)}
        if ANCHOR_NUMBER in wanted:
            wanted.add(ANCHOR_PERCENTAGE)
        if wanted:
            anchors = [a for a in anchors if a.kind in wanted]
        return anchors

    @staticmethod
    def preserved(response: str, anchor: Anchor) -> bool:
        if anchor.value.lower() in response.lower():
            return True
        if anchor.kind in (ANCHOR_PRICE, ANCHOR_NUMBER, ANCHOR_PERCENTAGE):
            wanted = _amount(anchor.value)
            return wanted is not None and any(
                _amount(m) == wanted for m in _RESPONSE_NUMBER.findall(response)
            )
        return False

    def check(self, response: str, query: str, user_id: str) -> str | None:
        missing: dict[str, list[str]] = {}
        for anchor in self.relevant_anchors(user_id, query):
            if self.preserved(response, anchor):
                continue
            values = missing.setdefault(anchor.kind, [])
            if anchor.value not in values:
                values.append(anchor.value)
        if not missing:
            return None
        parts = [f"{label}: {', '.join(missing[kind])}" for kind, label in _LABELS if kind in missing]
        logger.info("anchors missing from response for user=%s: %s", user_id, "; ".join(parts))
        return f"(Key details: {'; '.join(parts)})"


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


def run_validators(
    validators: list[Validator],
    response: str,
    query: str,
    user_id: str,
) -> str:
    """
    Apply every validator to *response* and append their disclosures.

    A validator that raises is logged and skipped; the response it would
    have amended passes through unchanged.
    """
    additions: list[str] = []
    for validator in validators:
        try:
            disclosure = validator.check(response, query, user_id)
        except ValidatorFailure as exc:
            logger.error("%s validator failed for user=%s query=%r: %s", validator.name, user_id, query, exc)
            continue
        except Exception:
            logger.exception("%s validator raised for user=%s query=%r", validator.name, user_id, query)
            continue
        if disclosure:
            additions.append(disclosure)
    if not additions:
        return response
    return response.rstrip() + "\n\n" + "\n".join(additions)
