"""Tests for fact compression and its verification pass."""

from __future__ import annotations

import logging
import time

import pytest

from factmemory.compression import FactCompressor
from conftest import FakeCompleter


class SlowCompleter:
    def complete(self, prompt: str) -> str:
        time.sleep(0.5)
        return "too late"


# ---------------------------------------------------------------------------
# Fallbacks
# ---------------------------------------------------------------------------


class TestUncompressedFallback:
    def test_no_completer_stores_exchange_whole(self):
        result = FactCompressor().compress("I love hiking")
        assert result.uncompressed
        assert result.facts == ["I love hiking."]
        assert result.warnings == []

    def test_completer_error_falls_back(self, caplog):
        compressor = FactCompressor(FakeCompleter(error=RuntimeError("rate limited")))
        with caplog.at_level(logging.WARNING, logger="factmemory.compression"):
            result = compressor.compress("My salary is $90,000.")
        assert result.uncompressed
        assert result.content == "My salary is $90,000."
        assert "compression failed" in caplog.text

    def test_timeout_falls_back(self):
        result = FactCompressor(SlowCompleter(), timeout=0.05).compress("Meeting at 3pm.")
        assert result.uncompressed
        assert result.content == "Meeting at 3pm."

    def test_empty_extraction_falls_back(self):
        compressor = FactCompressor(FakeCompleter({"Meeting at 3pm": "   \n"}))
        assert compressor.compress("Meeting at 3pm").uncompressed

    def test_empty_exchange_is_rejected(self):
        with pytest.raises(ValueError):
            FactCompressor().compress("   ")


# ---------------------------------------------------------------------------
# Post-processing
# ---------------------------------------------------------------------------


class TestPostProcessing:
    def test_prompt_carries_exchange_and_line_limit(self):
        completer = FakeCompleter()
        FactCompressor(completer, max_lines=3).compress("Alex is my brother.")
        assert "Alex is my brother." in completer.prompts[0]
        assert "at most 3 facts" in completer.prompts[0]

    def test_bullets_are_stripped_and_lines_punctuated(self):
        exchange = "I got a raise! They're now paying me $250,000. Meeting moved to 4pm."
        completer = FakeCompleter({exchange: "- Salary: $250,000\n* Meeting: 4pm"})
        result = FactCompressor(completer).compress(exchange)
        assert result.facts == ["Salary: $250,000.", "Meeting: 4pm."]
        assert not result.uncompressed
        assert result.warnings == []

    def test_dropped_identifier_is_restored(self):
        exchange = "My license plate is ABC-123-XYZ"
        completer = FakeCompleter({exchange: "License plate noted."})
        result = FactCompressor(completer).compress(exchange)
        assert "ABC-123-XYZ" in result.content

    def test_line_and_word_limits(self):
        reply = "\n".join(
            ["Enjoys long walks along the quiet river bank every single evening"]
            + [f"Likes topic {name}" for name in ("tea", "jazz", "chess", "rain", "maps", "owls")]
        )
        result = FactCompressor(FakeCompleter({"chat": reply}), max_lines=5, max_words=8).compress(
            "We chatted about things"
        )
        assert len(result.facts) == 5
        assert result.facts[0] == "Enjoys long walks along the quiet river bank."

    def test_identifier_lines_are_kept_past_the_line_limit(self):
        reply = "\n".join(["One fact", "Two fact", "Code ALPHA-1234567890"])
        result = FactCompressor(FakeCompleter({"codes": reply}), max_lines=2).compress(
            "Talked about codes"
        )
        assert result.facts[-1] == "Code ALPHA-1234567890."

    def test_lines_with_amounts_are_not_truncated(self):
        reply = "Premium plan with support and backups costs $299 per month"
        result = FactCompressor(FakeCompleter({"plan": reply}), max_words=4).compress(
            "Which plan costs $299 per month"
        )
        assert result.facts == [reply + "."]


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------


class TestVerification:
    def test_dropped_values_are_reported_not_blocked(self, caplog):
        exchange = "Lunch with Maria on Tuesday costs $45."
        compressor = FactCompressor(FakeCompleter({exchange: "Lunch planned."}))
        with caplog.at_level(logging.WARNING, logger="factmemory.compression"):
            result = compressor.compress(exchange)
        assert result.facts == ["Lunch planned."]
        assert result.dropped_numbers == ["$45"]
        assert result.dropped_entities == ["Maria"]
        assert result.dropped_dates == ["tuesday"]
        assert len(result.warnings) == 3
        assert "compression dropped number '$45'" in caplog.text

    def test_faithful_corpus_raises_no_flags(self):
        corpus = [
            "My salary is $120,000.",
            "Meeting with Dr. Smith at 3pm Tuesday.",
            "License plate ABC-123-XYZ.",
            "Alex is my brother.",
            "Basic plan $99, premium plan $299.",
        ]
        compressor = FactCompressor(FakeCompleter())
        for exchange in corpus:
            result = compressor.compress(exchange)
            assert not result.uncompressed
            assert result.warnings == [], exchange

    def test_ratio_and_stats(self):
        exchange = "So, after a lot of back and forth with HR, my salary is now $95,000."
        result = FactCompressor(FakeCompleter({exchange: "Salary: $95,000."})).compress(exchange)
        stats = result.stats()
        assert stats["original_tokens"] > stats["compressed_tokens"]
        assert stats["ratio"] > 1.0
        assert stats["uncompressed"] is False
