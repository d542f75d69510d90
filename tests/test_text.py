"""
Tests for text normalization and classifiers.
"""

import pytest

from src.intake.text import (
    EMERGENCY_KEYWORDS,
    detect_emergency,
    emergency_hits,
    is_short_answer,
    is_too_short_issue,
    normalize,
    normalize_free_text,
    parse_yes_no,
    word_count,
)


class TestNormalize:
    """Tests for normalize()."""

    def test_lowercases_and_strips_punctuation(self):
        assert normalize("  What ARE your hours?! ") == "what are your hours"

    def test_non_ascii_letters_become_spaces(self):
        assert normalize("café—open") == "caf open"

    def test_empty_and_none(self):
        assert normalize("") == ""
        assert normalize(None) == ""
        assert normalize("?!.") == ""

    @pytest.mark.parametrize("text", ["Hello,   World!", "unit #204-B", "  a\tb\nc  "])
    def test_idempotent(self, text):
        once = normalize(text)
        assert normalize(once) == once


class TestFreeText:
    """Tests for normalize_free_text()."""

    def test_collapses_whitespace_keeps_case_and_punctuation(self):
        assert normalize_free_text("  Water   is\tleaking. ") == "Water is leaking."

    def test_none(self):
        assert normalize_free_text(None) == ""


class TestYesNo:
    """Tests for parse_yes_no()."""

    @pytest.mark.parametrize("text", ["Yes please", "yeah", "Sure thing", "OK", "okay.", "affirmative"])
    def test_affirmative(self, text):
        assert parse_yes_no(text) is True

    @pytest.mark.parametrize("text", ["nope", "No.", "nah", "negative"])
    def test_negative(self, text):
        assert parse_yes_no(text) is False

    @pytest.mark.parametrize("text", ["maybe", "", None, "I don't know", "nobody is home"])
    def test_unknown(self, text):
        assert parse_yes_no(text) is None

    def test_affirmative_checked_first(self):
        assert parse_yes_no("yes no") is True


class TestAnswerLength:
    """Tests for the short answer / short issue checks."""

    def test_short_answer(self):
        assert is_short_answer("We are open 9 to 5.")
        assert is_short_answer("x" * 280)
        assert not is_short_answer("x" * 281)
        assert not is_short_answer("   ")
        assert not is_short_answer(None)

    def test_too_short_issue(self):
        assert is_too_short_issue("leak")
        assert is_too_short_issue("it's bad")  # two words, under ten chars
        assert not is_too_short_issue("water leak under the sink")

    def test_word_count(self):
        assert word_count("  water  leak ") == 2
        assert word_count("") == 0


class TestEmergency:
    """Tests for emergency keyword detection."""

    def test_gas_smell(self):
        assert detect_emergency("there's a gas smell")

    def test_slow_sink_is_not_an_emergency(self):
        assert not detect_emergency("my sink is slow")

    def test_leak_is_in_canonical_list(self):
        assert "leak" in EMERGENCY_KEYWORDS
        assert detect_emergency("Water leak under the sink!")

    def test_hits_lists_every_matching_keyword(self):
        hits = emergency_hits("water leak and sparks")
        assert "leak" in hits
        assert "water leak" in hits
        assert "sparks" in hits

    def test_custom_keywords(self):
        assert detect_emergency("the elevator is stuck", ["elevator"])
        assert not detect_emergency("the elevator is stuck", [])
        assert emergency_hits("", EMERGENCY_KEYWORDS) == []
