"""
Fact compression: raw exchange in, short atomic fact lines out.

The extraction itself is delegated to an LLM :class:`~factmemory.llm.Completer`.
Everything around it is deterministic: identifier protection, line
clean-up, and a verification pass that reports any number, name or date
the model dropped.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

from .errors import CompressionFailure
from .intelligence import (
    HIGH_ENTROPY_PATTERN,
    ensure_terminal_punctuation,
    estimate_tokens,
    extract_dates,
    extract_entities,
    extract_high_entropy_tokens,
    extract_numbers,
    number_core,
)
from .llm import Completer, call_with_timeout

logger = logging.getLogger(__name__)

DEFAULT_PROMPT = """Extract ONLY the essential facts from this conversation. Be extremely brief but PRESERVE all identifiers and numeric values.

Rules:
1. Preserve exact alphanumeric identifiers (e.g. ECHO-123-ABC).
2. Preserve names exactly as written (e.g. Dr. Smith).
3. Preserve numbers, prices, salaries, times and dates VERBATIM (e.g. $250,000, 3pm, Tuesday).
4. Never generalise an identifier into a description like "a code".
5. If the user says "My X is Y", the output MUST contain Y exactly.

Examples:
Input: "My license plate is ABC-123-XYZ"
Output: License plate: ABC-123-XYZ.
Input: "I got a raise! They're now paying me $250,000"
Output: Salary: $250,000.
Input: "Meeting moved to 4pm"
Output: Meeting: 4pm.

Format:
- One fact per line, at most {max_lines} facts
- Each fact 3-8 words (more only for identifiers or amounts)
- Only names, numbers, entities, user statements, amounts and times
- No questions, greetings or explanations

Conversation:
{exchange}

Facts:"""

_BULLET = re.compile(r"^\s*(?:[-*•]|\d+[.)\]])\s*")


@dataclass
class CompressionResult:
    """Outcome of compressing one exchange."""

    facts: list[str]
    uncompressed: bool = False
    original_tokens: int = 0
    compressed_tokens: int = 0
    warnings: list[str] = field(default_factory=list)
    dropped_numbers: list[str] = field(default_factory=list)
    dropped_entities: list[str] = field(default_factory=list)
    dropped_dates: list[str] = field(default_factory=list)

    @property
    def content(self) -> str:
        return "\n".join(self.facts)

    @property
    def ratio(self) -> float:
        if not self.compressed_tokens:
            return 1.0
        return round(self.original_tokens / self.compressed_tokens, 2)

    def stats(self) -> dict:
        return {
            "original_tokens": self.original_tokens,
            "compressed_tokens": self.compressed_tokens,
            "ratio": self.ratio,
            "uncompressed": self.uncompressed,
        }


class FactCompressor:
    """
    Turn a raw exchange into fact lines.

    Parameters
    ----------
    completer:
        LLM collaborator.  ``None`` disables extraction; every exchange is
        then stored uncompressed.
    timeout:
        Seconds allowed for the extraction call.
    max_lines:
        Maximum number of fact lines kept.
    max_words:
        Word cap for a fact line that carries no number or identifier.
    prompt_template:
        Extraction prompt with ``{exchange}`` and ``{max_lines}`` fields.
    """

    def __init__(
        self,
        completer: Completer | None = None,
        timeout: float = 10.0,
        max_lines: int = 5,
        max_words: int = 8,
        prompt_template: str = DEFAULT_PROMPT,
    ) -> None:
        self.completer = completer
        self.timeout = timeout
        self.max_lines = max_lines
        self.max_words = max_words
        self.prompt_template = prompt_template

    def compress(self, exchange: str) -> CompressionResult:
        """
        Compress *exchange*.  Never raises for extraction problems: on any
        failure the exchange is returned whole, flagged ``uncompressed``.
        """
        exchange = exchange.strip()
        if not exchange:
            raise ValueError("cannot compress an empty exchange")

        try:
            raw = self._extract(exchange)
        except CompressionFailure as exc:
            logger.warning("compression failed, storing uncompressed: %s", exc)
            return self._uncompressed(exchange)

        lines = self._clean(raw)
        lines = self._protect_identifiers(exchange, lines)
        lines = self._limit(lines)
        if not lines:
            logger.warning("compression produced no facts, storing uncompressed")
            return self._uncompressed(exchange)

        result = CompressionResult(
            facts=lines,
            original_tokens=estimate_tokens(exchange),
            compressed_tokens=estimate_tokens("\n".join(lines)),
        )
        self.verify(exchange, result)
        return result

    # ------------------------------------------------------------------
    # Extraction
    # ------------------------------------------------------------------

    def _extract(self, exchange: str) -> str:
        if self.completer is None:
            raise CompressionFailure("no completer configured")
        prompt = self.prompt_template.format(exchange=exchange, max_lines=self.max_lines)
        try:
            raw = call_with_timeout(self.completer.complete, self.timeout, prompt)
        except TimeoutError as exc:
            raise CompressionFailure(f"timeout: {exc}") from exc
        except Exception as exc:  # any client error means no extraction
            raise CompressionFailure(f"{type(exc).__name__}: {exc}") from exc
        if not raw or not raw.strip():
            raise CompressionFailure("empty extraction")
        return raw

    def _uncompressed(self, exchange: str) -> CompressionResult:
        lines = [ensure_terminal_punctuation(l) for l in exchange.splitlines() if l.strip()]
        tokens = estimate_tokens(exchange)
        return CompressionResult(
            facts=lines,
            uncompressed=True,
            original_tokens=tokens,
            compressed_tokens=estimate_tokens("\n".join(lines)),
        )

    # ------------------------------------------------------------------
    # Post-processing
    # ------------------------------------------------------------------

    @staticmethod
    def _clean(raw: str) -> list[str]:
        lines = []
        for line in raw.splitlines():
            line = _BULLET.sub("", line).strip().strip('"').strip()
            if line:
                lines.append(line)
        return lines

    @staticmethod
    def _protect_identifiers(exchange: str, lines: list[str]) -> list[str]:
        """Re-append identifiers from *exchange* that the model dropped."""
        joined = "\n".join(lines).lower()
        for token in extract_high_entropy_tokens(exchange):
            if token.lower() in joined:
                continue
            context = re.search(r"(?:[\w.']+\s+){0,3}" + re.escape(token), exchange, re.IGNORECASE)
            line = context.group(0) if context else f"Identifier: {token}"
            logger.info("restoring dropped identifier %s", token)
            lines.append(line)
            joined += "\n" + line.lower()
        return lines

    def _limit(self, lines: list[str]) -> list[str]:
        kept: list[str] = []
        for line in lines:
            if len(kept) >= self.max_lines and not HIGH_ENTROPY_PATTERN.search(line):
                continue
            tokens = line.split()
            carries_value = HIGH_ENTROPY_PATTERN.search(line) or extract_numbers(line)
            if len(tokens) > self.max_words and not carries_value:
                line = " ".join(tokens[: self.max_words])
            kept.append(ensure_terminal_punctuation(line))
        return kept

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def verify(self, exchange: str, result: CompressionResult) -> CompressionResult:
        """
        Compare numbers, proper nouns and dates between *exchange* and the
        compressed facts.  Every value missing from the output is recorded
        on *result* and logged; storage is never blocked.
        """
        output = result.content
        kept_numbers = {number_core(n) for n in extract_numbers(output)}
        lowered = output.lower()

        for value in extract_numbers(exchange):
            if number_core(value) not in kept_numbers:
                result.dropped_numbers.append(value)
        for name in extract_entities(exchange):
            if name.lower() not in lowered:
                result.dropped_entities.append(name)
        for date in extract_dates(exchange):
            if date not in lowered:
                result.dropped_dates.append(date)

        for kind, values in (
            ("number", result.dropped_numbers),
            ("proper noun", result.dropped_entities),
            ("date", result.dropped_dates),
        ):
            for value in values:
                message = f"compression dropped {kind} {value!r}"
                result.warnings.append(message)
                logger.warning("%s (ratio=%.2f)", message, result.ratio)
        return result
