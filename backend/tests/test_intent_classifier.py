"""
Intent Classifier Tests

Covers text normalisation, keyword scoring, tie-breaking, the no-match
fallback per expected shape, entity extraction and the
human-intervention rule.
"""

import pytest

from prima.models import ExpectedShape
from prima.services.intent_classifier import (
    Classification,
    Entity,
    INTENT_ORDER,
    Intent,
    NO_MATCH_CONFIDENCE,
    Sentiment,
    classify,
    keyword_score,
    levenshtein,
    normalize,
    requires_human_intervention,
)


class TestNormalize:
    """Tests for normalize()"""

    def test_lowercases_and_collapses_whitespace(self):
        """Should lowercase, trim and collapse runs of whitespace"""
        assert normalize("  Sudah   MINUM  ") == "sudah minum"

    def test_strips_trailing_punctuation(self):
        """Should drop trailing punctuation only"""
        assert normalize("ya!!!") == "ya"
        assert normalize("ok, sudah.") == "ok, sudah"

    def test_expands_abbreviations_as_whole_words(self):
        """Should expand udh/blm/ga without touching longer words"""
        assert normalize("udh") == "sudah"
        assert normalize("blm minum") == "belum minum"
        assert normalize("gak mau") == "tidak mau"
        assert normalize("gaji") == "gaji"

    def test_empty_input(self):
        assert normalize("") == ""
        assert normalize(None) == ""


class TestLevenshtein:

    def test_distances(self):
        assert levenshtein("sudah", "sudah") == 0
        assert levenshtein("sudh", "sudah") == 1
        assert levenshtein("tidak", "tolak") == 2
        assert levenshtein("", "abc") == 3


class TestScoring:
    """Tests for keyword_score()"""

    def test_exact_match_scores_ten_plus_fuzzy(self):
        """Whole-message match is +10, plus 0.5 * len for the token itself"""
        assert keyword_score("sudah", ("sudah",)) == 10 + 2.5

    def test_substring_scores_keyword_length(self):
        """Substring match adds len(keyword); no fuzzy credit for distant tokens"""
        assert keyword_score("sudah minum obat", ("sudah",)) == 5 + 2.5

    def test_no_match_scores_zero(self):
        assert keyword_score("terserah", ("sudah",)) == 0


class TestClassify:
    """Tests for classify()"""

    @pytest.mark.parametrize("text,intent", [
        ("YA", Intent.ACCEPT),
        ("iya", Intent.ACCEPT),
        ("tidak", Intent.DECLINE),
        ("sudah", Intent.CONFIRM_TAKEN),
        ("udh", Intent.CONFIRM_TAKEN),
        ("belum", Intent.CONFIRM_MISSED),
        ("berhenti", Intent.UNSUBSCRIBE),
        ("sesak nafas tolong", Intent.EMERGENCY),
        ("tanya", Intent.INQUIRY),
    ])
    def test_common_replies(self, text, intent):
        """Should map common patient replies to the expected intent"""
        assert classify(text).intent == intent

    def test_belum_prefers_missed_over_decline(self):
        """'belum' appears in both lists; the higher score must win"""
        result = classify("belum", ExpectedShape.YES_NO)
        assert result.scores[Intent.CONFIRM_MISSED] > result.scores[Intent.DECLINE]
        assert result.intent == Intent.CONFIRM_MISSED

    def test_emergency_outscores_inquiry_on_tolong(self):
        result = classify("sesak nafas tolong")
        assert result.scores[Intent.EMERGENCY] > result.scores[Intent.INQUIRY]

    def test_tie_goes_to_earlier_intent(self):
        """Equal scores resolve by INTENT_ORDER"""
        result = classify("help")
        assert result.scores[Intent.EMERGENCY] == result.scores[Intent.INQUIRY]
        assert INTENT_ORDER.index(Intent.EMERGENCY) < INTENT_ORDER.index(Intent.INQUIRY)
        assert result.intent == Intent.EMERGENCY

    def test_no_match_yes_no_is_unknown(self):
        result = classify("terserah", ExpectedShape.YES_NO)
        assert result.intent == Intent.UNKNOWN
        assert result.confidence == NO_MATCH_CONFIDENCE

    def test_no_match_free_text_is_inquiry(self):
        result = classify("terserah", ExpectedShape.FREE_TEXT)
        assert result.intent == Intent.INQUIRY
        assert result.confidence == NO_MATCH_CONFIDENCE

    def test_empty_text_is_unknown_with_zero_confidence(self):
        result = classify("   ")
        assert result.intent == Intent.UNKNOWN
        assert result.confidence == 0.0

    def test_confidence_is_capped_at_one(self):
        assert classify("ya").confidence == 1.0

    def test_is_deterministic(self):
        """Same input and shape always give the same classification"""
        assert classify("Sudah minum obat!", "yes_no") == classify("Sudah minum obat!", "yes_no")

    def test_sentiment_prior_from_intent(self):
        assert classify("sudah").sentiment == Sentiment.POSITIVE
        assert classify("berhenti").sentiment == Sentiment.NEGATIVE

    def test_extracts_time_entity(self):
        result = classify("nanti jam 19:30")
        times = [e for e in result.entities if e.type == "time"]
        assert times and times[0].value == "19:30"

    def test_emergency_keywords_add_severity_entity(self):
        result = classify("demam tinggi")
        assert any(e.type == "emergency_level" and e.value == "high" for e in result.entities)


class TestHumanIntervention:
    """Tests for requires_human_intervention()"""

    def _classification(self, **overrides):
        fields = dict(intent=Intent.ACCEPT, confidence=0.9, sentiment=Sentiment.POSITIVE)
        fields.update(overrides)
        return Classification(**fields)

    def test_confident_positive_reply_needs_no_human(self):
        assert requires_human_intervention(self._classification()) is False

    @pytest.mark.parametrize("overrides", [
        {"intent": Intent.EMERGENCY},
        {"intent": Intent.INQUIRY},
        {"confidence": 0.2},
        {"sentiment": Sentiment.NEGATIVE},
        {"entities": (Entity(type="time", value="7:00", confidence=0.4, start=0, end=4),)},
    ])
    def test_any_single_condition_escalates(self, overrides):
        assert requires_human_intervention(self._classification(**overrides)) is True

    def test_property_matches_function(self):
        result = classify("tanya")
        assert result.requires_human_intervention is True
