"""
Rule-based intent classifier for patient WhatsApp replies (Indonesian with
common English fallbacks).

``classify`` is a pure function: the same text and expected shape always give
the same result.

Scoring, per intent keyword list:

* keyword equals the whole message: +10
* keyword is a substring of the message: +len(keyword)
* each message token within edit distance 2 of the keyword: +0.5 * len(keyword)

The highest score wins; ties go to the intent listed first in
``INTENT_ORDER``.
"""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass, field

from prima.models import ExpectedShape


class Intent(str, enum.Enum):
    ACCEPT = "accept"
    DECLINE = "decline"
    CONFIRM_TAKEN = "confirm_taken"
    CONFIRM_MISSED = "confirm_missed"
    CONFIRM_LATER = "confirm_later"
    UNSUBSCRIBE = "unsubscribe"
    EMERGENCY = "emergency"
    INQUIRY = "inquiry"
    UNKNOWN = "unknown"


class Sentiment(str, enum.Enum):
    POSITIVE = "positive"
    NEGATIVE = "negative"
    NEUTRAL = "neutral"


INTENT_ORDER = (
    Intent.ACCEPT,
    Intent.DECLINE,
    Intent.CONFIRM_TAKEN,
    Intent.CONFIRM_MISSED,
    Intent.CONFIRM_LATER,
    Intent.UNSUBSCRIBE,
    Intent.EMERGENCY,
    Intent.INQUIRY,
)

# ---------------------------------------------------------------------------
# Keyword lists
# ---------------------------------------------------------------------------

KEYWORDS: dict[Intent, tuple[str, ...]] = {
    Intent.ACCEPT: (
        "ya", "iya", "yes", "y", "ok", "oke", "baik", "setuju", "mau", "ingin",
        "terima", "siap", "bisa", "boleh", "sudah siap", "sudah oke", "sudah baik",
    ),
    Intent.DECLINE: (
        "tidak", "no", "n", "ga", "gak", "engga", "enggak", "tolak", "nanti",
        "besok", "belum", "ga mau", "ga bisa", "ga siap", "belum siap",
    ),
    Intent.CONFIRM_TAKEN: (
        "sudah", "udh", "sudah selesai", "udh selesai", "sudah lakukan",
        "udh lakukan", "selesai", "telah selesai", "done",
    ),
    Intent.CONFIRM_MISSED: (
        "belum", "blm", "belum selesai", "blm selesai", "belum lakukan", "lupa",
        "lupa lakukan", "skip", "lewat", "ga lakukan", "tidak lakukan",
    ),
    Intent.CONFIRM_LATER: (
        "nanti", "bentaran", "sebentar", "tunggu", "wait", "later",
        "tunggu sebentar", "nanti dulu", "belum saatnya", "masih ada waktu",
    ),
    Intent.UNSUBSCRIBE: (
        "berhenti", "stop", "cancel", "batal", "keluar", "hapus", "unsubscribe",
        "cabut", "stop dulu", "berhenti dulu", "tidak mau lagi", "sudah cukup",
    ),
    Intent.EMERGENCY: (
        "darurat", "emergency", "sakit", "mual", "muntah", "alergi", "sesak",
        "nyeri", "sakit kepala", "demam", "panas", "gawat", "tolong", "help",
    ),
    Intent.INQUIRY: (
        "tanya", "pertanyaan", "bagaimana", "gimana", "kenapa", "kok", "mengapa",
        "info", "informasi", "bantuan", "help", "tolong", "mau tanya",
    ),
}

POSITIVE_WORDS = ("baik", "bagus", "senang", "terima kasih", "makasih", "thanks", "good")
NEGATIVE_WORDS = ("buruk", "jelek", "marah", "kesal", "kecewa", "tidak suka", "bad")

_SENTIMENT_PRIOR = {
    Intent.ACCEPT: Sentiment.POSITIVE,
    Intent.CONFIRM_TAKEN: Sentiment.POSITIVE,
    Intent.DECLINE: Sentiment.NEGATIVE,
    Intent.CONFIRM_MISSED: Sentiment.NEGATIVE,
    Intent.UNSUBSCRIBE: Sentiment.NEGATIVE,
}

ABBREVIATIONS = (
    (re.compile(r"\budh\b"), "sudah"),
    (re.compile(r"\bblm\b"), "belum"),
    (re.compile(r"\bga\b"), "tidak"),
    (re.compile(r"\bgak\b"), "tidak"),
    (re.compile(r"\bengga\b"), "tidak"),
    (re.compile(r"\benggak\b"), "tidak"),
)

LOW_CONFIDENCE_THRESHOLD = 0.3
LOW_ENTITY_CONFIDENCE = 0.5
NO_MATCH_CONFIDENCE = 0.5

_WHITESPACE = re.compile(r"\s+")
_TRAILING_PUNCTUATION = re.compile(r"[.,!?;:]+$")
_TIME_PATTERN = re.compile(r"\b(\d{1,2}):(\d{2})\b")


@dataclass(frozen=True)
class Entity:
    type: str
    value: str
    confidence: float
    start: int
    end: int


@dataclass(frozen=True)
class Classification:
    intent: Intent
    confidence: float
    sentiment: Sentiment
    entities: tuple[Entity, ...] = ()
    normalized_text: str = ""
    scores: dict[Intent, float] = field(default_factory=dict, compare=False)

    @property
    def requires_human_intervention(self) -> bool:
        return requires_human_intervention(self)


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------

def normalize(text: str) -> str:
    """Lowercase, trim, collapse whitespace, drop trailing punctuation and
    expand common chat abbreviations (``udh``, ``blm``, ``ga`` …)."""
    normalized = _WHITESPACE.sub(" ", (text or "").lower().strip())
    normalized = _TRAILING_PUNCTUATION.sub("", normalized)
    for pattern, replacement in ABBREVIATIONS:
        normalized = pattern.sub(replacement, normalized)
    return normalized


def levenshtein(a: str, b: str) -> int:
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            cost = 0 if ca == cb else 1
            current.append(min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost))
        previous = current
    return previous[-1]


def keyword_score(message: str, keywords: tuple[str, ...]) -> float:
    tokens = message.split(" ")
    score = 0.0
    for keyword in keywords:
        if keyword in message:
            score += 10 if message == keyword else len(keyword)
        fuzzy = sum(1 for token in tokens if levenshtein(token, keyword) <= 2)
        score += fuzzy * len(keyword) * 0.5
    return score


def score_intents(message: str) -> dict[Intent, float]:
    return {intent: keyword_score(message, KEYWORDS[intent]) for intent in INTENT_ORDER}


def detect_sentiment(message: str, intent: Intent) -> Sentiment:
    positive = sum(1 for word in POSITIVE_WORDS if word in message)
    negative = sum(1 for word in NEGATIVE_WORDS if word in message)
    if positive > negative:
        return Sentiment.POSITIVE
    if negative > positive:
        return Sentiment.NEGATIVE
    return _SENTIMENT_PRIOR.get(intent, Sentiment.NEUTRAL)


def extract_entities(message: str) -> tuple[Entity, ...]:
    entities = [
        Entity(
            type="time",
            value=f"{match.group(1)}:{match.group(2)}",
            confidence=0.9,
            start=match.start(),
            end=match.end(),
        )
        for match in _TIME_PATTERN.finditer(message)
    ]
    if any(keyword in message for keyword in KEYWORDS[Intent.EMERGENCY]):
        entities.append(Entity(type="emergency_level", value="high", confidence=0.7, start=0, end=len(message)))
    return tuple(entities)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def classify(raw_text: str, expected_shape: ExpectedShape | str = ExpectedShape.FREE_TEXT) -> Classification:
    """Classify a patient reply.

    When nothing matches, a ``yes_no`` expectation yields ``unknown`` and a
    ``free_text`` expectation yields ``inquiry``.
    """
    expected_shape = ExpectedShape(expected_shape)
    message = normalize(raw_text)

    if not message:
        return Classification(
            intent=Intent.UNKNOWN, confidence=0.0, sentiment=Sentiment.NEUTRAL, normalized_text=message
        )

    scores = score_intents(message)
    max_score = max(scores.values())

    if max_score > 0:
        intent = next(i for i in INTENT_ORDER if scores[i] == max_score)
        confidence = min(1.0, max_score / len(message) * 100)
    else:
        intent = Intent.UNKNOWN if expected_shape == ExpectedShape.YES_NO else Intent.INQUIRY
        confidence = NO_MATCH_CONFIDENCE

    return Classification(
        intent=intent,
        confidence=confidence,
        sentiment=detect_sentiment(message, intent),
        entities=extract_entities(message),
        normalized_text=message,
        scores=scores,
    )


def requires_human_intervention(classification: Classification) -> bool:
    """Any single condition escalates to a volunteer."""
    return (
        classification.intent == Intent.EMERGENCY
        or classification.confidence < LOW_CONFIDENCE_THRESHOLD
        or classification.intent == Intent.INQUIRY
        or classification.sentiment == Sentiment.NEGATIVE
        or any(entity.confidence < LOW_ENTITY_CONFIDENCE for entity in classification.entities)
    )
