"""
Reply classification.

Maps a patient's free-text SMS reply onto a ``Decision``. Keyword sets are
pluggable so another locale can be added without touching the state
machine.
"""

import re
import unicodedata
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Pattern

from app.core.slots.types import Decision


def normalize_text(text: Optional[str]) -> str:
    """Lower-case, strip diacritics and surrounding whitespace."""
    if not text:
        return ""
    decomposed = unicodedata.normalize("NFD", text.lower())
    return "".join(c for c in decomposed if unicodedata.category(c) != "Mn").strip()


def normalize_body(text: Optional[str]) -> str:
    """Normalised message body used for content equality (whitespace collapsed)."""
    return re.sub(r"\s+", " ", normalize_text(text))


@dataclass(frozen=True)
class KeywordSet:
    """Compiled keyword patterns for one locale bundle."""

    affirmative: Pattern[str]
    negative: Pattern[str]
    reschedule: Pattern[str]


# English + Spanish. Affirmative/negative anchored at the start of the reply,
# reschedule matches anywhere.
DEFAULT_KEYWORDS = KeywordSet(
    affirmative=re.compile(
        r"^\s*(?:si|s|ok(?:ay|ey)?|vale|dale|confirm(?:o|ar|ado|ada|ed|ing)?|listo|de acuerdo"
        r"|perfecto|correcto|yes|yep|yeah|yup|sure|of course|certainly|absolutely|alright"
        r"|all right|agreed|i agree|sounds good|works for me)\b"
    ),
    negative=re.compile(
        r"^\s*(?:no|nope|nop|nah|cance(?:l|la|lar|led|ling)?|no puedo|no voy|rechazo"
        r"|declin(?:e|ed|ing|o)|can'?t|cannot|won'?t|will not|not coming|not attending"
        r"|do not|don'?t)\b"
    ),
    reschedule=re.compile(
        r"\b(?:reagendar|reagenda|otro dia|otra fecha|cambiar\s+(?:hora|fecha)|reprogramar"
        r"|posponer|move|reschedul(?:e|ing)|rebook|rearrange|change\s+(?:time|date)"
        r"|push\s*back|bring\s*forward|postpone|delay|later|earlier)\b"
    ),
)


class ReplyClassifier(ABC):
    """Classifies patient replies."""

    @abstractmethod
    def classify(self, text: Optional[str]) -> Decision:
        """Return the decision expressed by ``text``."""


class KeywordReplyClassifier(ReplyClassifier):
    """
    Keyword classifier.

    Precedence: affirmative, then negative, then reschedule. No match is
    ``Decision.UNKNOWN``.
    """

    def __init__(self, keywords: KeywordSet = DEFAULT_KEYWORDS):
        self.keywords = keywords

    def classify(self, text: Optional[str]) -> Decision:
        normalized = normalize_text(text)
        if not normalized:
            return Decision.UNKNOWN
        if self.keywords.affirmative.search(normalized):
            return Decision.CONFIRMED
        if self.keywords.negative.search(normalized):
            return Decision.DECLINED
        if self.keywords.reschedule.search(normalized):
            return Decision.RESCHEDULE
        return Decision.UNKNOWN


# Singleton
_classifier: Optional[ReplyClassifier] = None


def get_reply_classifier() -> ReplyClassifier:
    """Get singleton default classifier."""
    global _classifier
    if _classifier is None:
        _classifier = KeywordReplyClassifier()
    return _classifier
