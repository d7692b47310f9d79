"""
Fingerprints: semantic slots such as "the user's salary" or "the meeting
time", and the reconciliation rule that decides which of two facts in the
same slot stays current.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

from .intelligence import (
    extract_temporal_anchors,
    has_change_marker,
    has_correction_marker,
    has_explicit_value,
)

logger = logging.getLogger(__name__)

#: Method markers recorded on every assignment.
METHOD_WITH_VALUE = "indicator_with_value"
METHOD_INDICATOR = "indicator"
METHOD_PARTIAL = "indicator_only"


@dataclass
class FingerprintSlot:
    """
    One semantic slot.

    A slot matches when any *indicator* phrase appears in the text (whole
    words, case-insensitive).  Slots with *value_patterns* also expect a
    concrete value; an indicator without a value is a partial match.
    """

    id: str
    indicators: tuple[str, ...]
    confidence: float
    value_patterns: tuple[str, ...] = ()
    _indicator_re: re.Pattern = field(init=False, repr=False)
    _value_res: tuple[re.Pattern, ...] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._indicator_re = re.compile(
            r"(?<!\w)(?:" + "|".join(re.escape(i) for i in self.indicators) + r")(?!\w)",
            re.IGNORECASE,
        )
        self._value_res = tuple(re.compile(p, re.IGNORECASE) for p in self.value_patterns)

    def has_indicator(self, text: str) -> bool:
        return bool(self._indicator_re.search(text))

    def has_value(self, text: str) -> bool:
        return any(p.search(text) for p in self._value_res)


_MONEY = (
    r"\$\s?\d[\d,]*(?:\.\d+)?\s?[kKmM]?",
    r"\b\d+(?:\.\d+)?\s?k\b",
    r"\b\d{1,3}(?:,\d{3})+\b",
    r"\b\d{5,}\b",
)
_CLOCK = (r"\b\d{1,2}:\d{2}\b", r"\b\d{1,2}\s?(?:am|pm)\b")

DEFAULT_SLOTS: tuple[FingerprintSlot, ...] = (
    FingerprintSlot(
        "user_salary",
        ("salary", "income", "paycheck", "compensation", "wage", "wages", "earnings",
         "i earn", "i make", "paid me", "pay me", "paying me", "got a raise",
         "pay raise", "pay rise"),
        0.90,
        _MONEY,
    ),
    FingerprintSlot(
        "user_phone_number",
        ("phone", "phone number", "cell", "mobile", "telephone"),
        0.95,
        (r"\b\d{3}[-.\s]?\d{3}[-.\s]?\d{4}\b", r"\(\d{3}\)\s?\d{3}[-.\s]?\d{4}"),
    ),
    FingerprintSlot(
        "user_email",
        ("email", "e-mail"),
        0.95,
        (r"[\w.+-]+@[\w-]+\.[\w.]+",),
    ),
    FingerprintSlot(
        "user_meeting_time",
        ("meeting", "appointment", "standup", "stand-up", "scheduled", "rescheduled"),
        0.90,
        _CLOCK,
    ),
    FingerprintSlot(
        "user_age",
        ("age", "years old", "birthday", "born"),
        0.90,
        (r"\b\d{1,3}\s*(?:years?|yrs?)\b", r"\bage\s*(?:is\s*|:\s*)?\d{1,3}\b", r"\b(?:19|20)\d{2}\b"),
    ),
    FingerprintSlot(
        "user_allergy",
        ("allergy", "allergies", "allergic", "intolerant", "intolerance", "anaphylaxis"),
        0.95,
    ),
    FingerprintSlot(
        "user_medical",
        ("diagnosis", "diagnosed", "medical condition", "chronic"),
        0.90,
    ),
    FingerprintSlot(
        "user_job_title",
        ("job title", "work as", "working as", "employed as", "my job", "my role",
         "my position", "profession", "occupation"),
        0.85,
    ),
    FingerprintSlot(
        "user_employer",
        ("employer", "work at", "work for", "working at", "working for", "employed by"),
        0.85,
    ),
    FingerprintSlot(
        "user_location_residence",
        ("live in", "living in", "reside", "moved to", "my address", "home address", "based in"),
        0.85,
    ),
    FingerprintSlot("user_name", ("my name", "call me"), 0.85),
    FingerprintSlot(
        "user_spouse_name",
        ("wife", "husband", "spouse"),
        0.85,
        (r"\b(?:wife|husband|spouse)(?:'s name)?(?:\s+is)?\s*:?\s+[A-Z][a-z]+",),
    ),
    FingerprintSlot("user_marital_status", ("married", "divorced", "engaged", "widowed"), 0.90),
    FingerprintSlot(
        "user_children_count",
        ("children", "kids", "my son", "my daughter"),
        0.85,
        (r"\b(?:\d+|one|two|three|four|five|six|no)\s+(?:kids?|children|sons?|daughters?)\b",),
    ),
    FingerprintSlot("user_pet", ("my dog", "my cat", "my pet", "puppy", "kitten"), 0.80),
    FingerprintSlot(
        "user_favorite_color",
        ("favorite color", "favourite colour", "favorite colour", "favourite color"),
        0.80,
    ),
    FingerprintSlot(
        "user_timezone",
        ("timezone", "time zone"),
        0.85,
        (r"\b(?:EST|EDT|PST|PDT|CST|CDT|MST|MDT|UTC|GMT|CET)(?:\s?[+-]\d{1,2})?\b",),
    ),
)


@dataclass(frozen=True)
class FingerprintMatch:
    fingerprint: str
    confidence: float
    method: str

    @property
    def partial(self) -> bool:
        return self.method == METHOD_PARTIAL


class FingerprintDetector:
    """
    Assign a fact to a fingerprint slot.

    Parameters
    ----------
    slots:
        Slot table, checked in order.
    partial_factor:
        Confidence multiplier for an indicator match with no value.
    """

    def __init__(
        self,
        slots: tuple[FingerprintSlot, ...] = DEFAULT_SLOTS,
        partial_factor: float = 0.6,
    ) -> None:
        self.slots = slots
        self.partial_factor = partial_factor

    def detect(self, text: str) -> FingerprintMatch | None:
        """
        Return the slot of *text*, or ``None`` when no indicator matches.

        A full match (indicator plus value, or an indicator-only slot) wins
        over a partial one anywhere in the table.  A partial match is still
        an assignment, at reduced confidence and with its own method marker.
        """
        partial: FingerprintMatch | None = None
        for slot in self.slots:
            if not slot.has_indicator(text):
                continue
            if not slot.value_patterns:
                match = FingerprintMatch(slot.id, slot.confidence, METHOD_INDICATOR)
            elif slot.has_value(text):
                match = FingerprintMatch(slot.id, slot.confidence, METHOD_WITH_VALUE)
            else:
                if partial is None:
                    partial = FingerprintMatch(
                        slot.id, round(slot.confidence * self.partial_factor, 4), METHOD_PARTIAL
                    )
                continue
            logger.debug("fingerprint %s (%s, %.2f)", match.fingerprint, match.method, match.confidence)
            return match
        if partial is not None:
            logger.info(
                "partial fingerprint %s: indicator without value (confidence %.2f)",
                partial.fingerprint, partial.confidence,
            )
        return partial


# ---------------------------------------------------------------------------
# Temporal reconciliation
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Reconciliation:
    """Which of two same-slot facts stays current, and why."""

    winner: str  # "new", "old" or "both"
    reason: str
    old_anchors: tuple[str, ...] = ()
    new_anchors: tuple[str, ...] = ()

    @property
    def new_wins(self) -> bool:
        return self.winner == "new"

    @property
    def keeps_both(self) -> bool:
        return self.winner == "both"


def reconcile(old_content: str, new_content: str, partial: bool = False) -> Reconciliation:
    """
    Decide between an existing fact and a newer one in the same slot.

    An explicit correction marker in the new statement always wins.  A
    *partial* new match (slot indicator, no value) only competes for the
    slot when it reports a change ("got moved", "went up"); otherwise the
    two facts are unrelated and both stay current.  Beyond that the most
    recent *explicit* statement wins: the new fact replaces the old one
    unless it states no concrete value (number, date, time or identifier)
    while the old one does.
    """
    old_anchors = tuple(extract_temporal_anchors(old_content))
    new_anchors = tuple(extract_temporal_anchors(new_content))

    if has_correction_marker(new_content):
        return Reconciliation("new", "explicit_correction", old_anchors, new_anchors)
    if partial and not has_change_marker(new_content):
        return Reconciliation("both", "unrelated_partial_match", old_anchors, new_anchors)
    if has_explicit_value(new_content) or not has_explicit_value(old_content):
        return Reconciliation("new", "most_recent", old_anchors, new_anchors)
    return Reconciliation("old", "retained_explicit_value", old_anchors, new_anchors)
