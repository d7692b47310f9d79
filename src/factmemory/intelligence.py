"""
Text heuristics shared by the write and read pipelines.

These utilities work on plain strings and never touch storage:
  - Token estimation and topic keyword extraction
  - Entity, number, date and temporal-anchor detection
  - High-entropy identifier detection (codes, plates, IDs)
  - Marker detection for corrections and explicit "remember this" requests
  - Importance scoring to seed a record's relevance
"""

from __future__ import annotations

import math
import re

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

#: Characters per token used for estimation.  Any monotone function of the
#: content length works; four characters per token tracks common tokenizers.
CHARS_PER_TOKEN: int = 4

#: Words that never count as topics or entities.
STOPWORDS: frozenset[str] = frozenset(
    """
    a about above after again against all also am an and any are as at be
    because been before being below between both but by can could did do does
    doing down during each few for from further had has have having he her
    here hers herself him himself his how i if in into is it its itself just
    me more most my myself no nor not now of off on once only or other our
    ours ourselves out over own same she should so some such than that the
    their theirs them themselves then there these they this those through to
    too under until up very was we were what when where which while who whom
    why will with would you your yours yourself yourselves

    tell remind remember recall know said say says told give show please
    hey hi hello thanks thank okay ok yes yeah sure well
    like really actually just maybe still also much many thing things
    something anything everything someone anyone everyone
    today tomorrow yesterday week month year
    user assistant
    """.split()
)

_WEEKDAYS = (
    "monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday",
)
_MONTHS = (
    "january", "february", "march", "april", "may", "june", "july", "august",
    "september", "october", "november", "december",
)

#: Identifiers that compression must never paraphrase away:
#: ABC-123-XYZ, ABC-1234567890, Dr. ABC-123 and long alphanumeric codes.
HIGH_ENTROPY_PATTERN = re.compile(
    r"\b[A-Z]+-\d+-[A-Z0-9]+\b"
    r"|\b[A-Z]+-\d{10,}\b"
    r"|\bDr\.\s*[A-Z]+-\d+\b"
    r"|\b(?=[A-Z0-9]*\d)(?=[A-Z0-9]*[A-Z])[A-Z0-9]{12,}\b",
    re.IGNORECASE,
)

_NUMBER_PATTERN = re.compile(r"\$?\d[\d,]*(?:\.\d+)?(?:%|[kKmM]\b)?")
_ENTITY_PATTERN = re.compile(r"\b[A-Z][a-z][a-zA-Z]*(?:'s)?\b")
_WORD_PATTERN = re.compile(r"[a-z][a-z'-]*")

_CLOCK_PATTERN = re.compile(r"\b\d{1,2}(?::\d{2})?\s?(?:am|pm)\b|\b\d{1,2}:\d{2}\b", re.IGNORECASE)
_ISO_DATE_PATTERN = re.compile(r"\b\d{4}-\d{2}-\d{2}\b|\b\d{1,2}/\d{1,2}(?:/\d{2,4})?\b")
_NAMED_DATE_PATTERN = re.compile(
    r"\b(?:" + "|".join(_MONTHS) + r")(?:\s+\d{1,2}(?:st|nd|rd|th)?)?(?:,?\s+\d{4})?\b"
    r"|\b(?:" + "|".join(_WEEKDAYS) + r")\b"
    r"|\b(?:today|tomorrow|yesterday|tonight)\b",
    re.IGNORECASE,
)
_DURATION_PATTERN = re.compile(
    r"\b\d+\s*(?:minutes?|mins?|hours?|hrs?|days?|weeks?|months?|years?)\b",
    re.IGNORECASE,
)

_CORRECTION_PATTERN = re.compile(
    r"\b(?:actually|i was wrong|correction|i meant|i misspoke|scratch that|"
    r"not anymore|no longer|let me correct)\b",
    re.IGNORECASE,
)
_CHANGE_PATTERN = re.compile(
    r"\b(?:moved|changed|changing|switched|rescheduled|postponed|pushed back|cancell?ed|"
    r"went up|went down|increased|decreased|dropped|updated|is now|are now)\b",
    re.IGNORECASE,
)
_EXPLICIT_RECALL_PATTERN = re.compile(
    r"\b(?:remember (?:this|that)|please remember|don'?t forget|make a note|"
    r"keep in mind|note that)\b",
    re.IGNORECASE,
)
_RECALL_INTENT_PATTERN = re.compile(
    r"\b(?:do you (?:remember|recall)|did i (?:tell|mention|say)|"
    r"what did i (?:tell|say|mention)|remind me|you remember|recall)\b",
    re.IGNORECASE,
)

_TERMINAL = (".", "!", "?")


# ---------------------------------------------------------------------------
# Tokens and keywords
# ---------------------------------------------------------------------------


def estimate_tokens(text: str) -> int:
    """Estimated token count of *text*; zero only for the empty string."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def words(text: str) -> list[str]:
    """Lower-cased word tokens of *text*."""
    return _WORD_PATTERN.findall(text.lower())


def extract_topic_keywords(text: str) -> list[str]:
    """
    Return topic nouns from *text*: lower-cased words longer than three
    characters that are not stopwords, in first-seen order.
    """
    seen: list[str] = []
    for word in words(text):
        word = word.strip("'-")
        if word.endswith("'s"):
            word = word[:-2]
        if len(word) > 3 and word not in STOPWORDS and word not in seen:
            seen.append(word)
    return seen


def normalize_text(text: str) -> str:
    """Collapse whitespace, case and trailing punctuation for exact matching."""
    return " ".join(text.lower().split()).rstrip(".!?")


def ensure_terminal_punctuation(line: str) -> str:
    line = line.strip()
    if not line:
        return line
    return line if line.endswith(_TERMINAL) else line + "."


# ---------------------------------------------------------------------------
# Entities, numbers and dates
# ---------------------------------------------------------------------------


def extract_entities(text: str) -> list[str]:
    """
    Return capitalised names mentioned in *text* (``"Alex"``, ``"Paris"``).

    Stopwords, weekday and month names are excluded so that a capitalised
    sentence opener such as "Tell" or "Monday" is not mistaken for a name.
    """
    found: list[str] = []
    for match in _ENTITY_PATTERN.findall(text):
        name = match[:-2] if match.endswith("'s") else match
        lowered = name.lower()
        if lowered in STOPWORDS or lowered in _WEEKDAYS or lowered in _MONTHS:
            continue
        if name not in found:
            found.append(name)
    return found


def extract_numbers(text: str) -> list[str]:
    """Numeric values in *text* as written, without thousands separators."""
    values: list[str] = []
    for raw in _NUMBER_PATTERN.findall(text):
        value = raw.replace(",", "")
        if value not in values:
            values.append(value)
    return values


def number_core(value: str) -> str:
    """Digits (and decimal point) of a numeric token: ``"$1,200"`` -> ``"1200"``."""
    return re.sub(r"[^\d.]", "", value).rstrip(".")


def extract_dates(text: str) -> list[str]:
    found = _ISO_DATE_PATTERN.findall(text) + _NAMED_DATE_PATTERN.findall(text)
    return _unique_lower(found)


def extract_temporal_anchors(text: str) -> list[str]:
    """Clock times, dates, weekday names and durations mentioned in *text*."""
    found = (
        _CLOCK_PATTERN.findall(text)
        + _ISO_DATE_PATTERN.findall(text)
        + _NAMED_DATE_PATTERN.findall(text)
        + _DURATION_PATTERN.findall(text)
    )
    return _unique_lower(found)


def extract_high_entropy_tokens(text: str) -> list[str]:
    return [m.group(0) for m in HIGH_ENTROPY_PATTERN.finditer(text)]


def _unique_lower(values: list[str]) -> list[str]:
    out: list[str] = []
    for v in values:
        v = " ".join(v.lower().split())
        if v and v not in out:
            out.append(v)
    return out


# ---------------------------------------------------------------------------
# Markers
# ---------------------------------------------------------------------------


def has_correction_marker(text: str) -> bool:
    """True when *text* explicitly corrects an earlier statement."""
    return bool(_CORRECTION_PATTERN.search(text))


def has_change_marker(text: str) -> bool:
    """True when *text* reports that something changed ("got moved", "went up")."""
    return bool(_CHANGE_PATTERN.search(text))


def has_explicit_recall(text: str) -> bool:
    """True when the user explicitly asked for *text* to be remembered."""
    return bool(_EXPLICIT_RECALL_PATTERN.search(text))


def has_recall_intent(query: str) -> bool:
    """True when *query* asks the assistant to recall something it was told."""
    return bool(_RECALL_INTENT_PATTERN.search(query))


def strip_recall_phrasing(query: str) -> str:
    """Remove recall-style wrappers so routing sees only the topic."""
    return _RECALL_INTENT_PATTERN.sub(" ", query)


def has_explicit_value(text: str) -> bool:
    """True when *text* states a concrete value: a number, time, date or identifier."""
    return bool(
        extract_numbers(text)
        or extract_temporal_anchors(text)
        or extract_high_entropy_tokens(text)
    )


# ---------------------------------------------------------------------------
# Importance scoring
# ---------------------------------------------------------------------------


def compute_importance(text: str) -> float:
    """
    Estimate the information density of *text* as a float in [0.0, 1.0].

    Used as the initial relevance score of a new record.

    Heuristics used (all normalised to [0, 1]):
      - Vocabulary richness: unique_tokens / total_tokens
      - Length contribution: capped at 30 words, since facts are short
      - Fact bonus: numeric data or a named entity
      - Identifier bonus: high-entropy tokens
    """
    tokens = text.lower().split()
    if not tokens:
        return 0.0

    unique_ratio = len(set(tokens)) / len(tokens)
    length_score = min(len(tokens) / 30.0, 1.0)

    fact_bonus = 0.1 if re.search(r"\d+", text) or extract_entities(text) else 0.0
    identifier_bonus = 0.1 if HIGH_ENTROPY_PATTERN.search(text) else 0.0

    score = unique_ratio * 0.5 + length_score * 0.3 + fact_bonus + identifier_bonus
    return min(score, 1.0)
