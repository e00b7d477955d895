"""Tests for reply classification."""

import re

import pytest

from app.core.confirmation.classifier import (
    KeywordReplyClassifier,
    KeywordSet,
    normalize_body,
    normalize_text,
)
from app.core.slots.types import Decision


@pytest.fixture
def classifier():
    return KeywordReplyClassifier()


class TestNormalization:

    def test_lowercases_strips_diacritics_and_trims(self):
        assert normalize_text("  Sí, CONFIRMÓ  ") == "si, confirmo"

    def test_empty(self):
        assert normalize_text(None) == ""
        assert normalize_text("   ") == ""

    def test_body_collapses_whitespace(self):
        assert normalize_body("Hi  Ana,\n this is   Clinic") == "hi ana, this is clinic"


class TestKeywordReplyClassifier:

    @pytest.mark.parametrize(
        "text",
        ["YES", "yes please", "Ok", "okay!", "Sí", "si claro", "Confirmo", "confirmed", "Sounds good", "de acuerdo"],
    )
    def test_affirmative(self, classifier, text):
        assert classifier.classify(text) == Decision.CONFIRMED

    @pytest.mark.parametrize(
        "text",
        [
            "No", "NO thanks", "Nope", "nope, sorry", "Nah, no puedo", "cancel", "Cancelar",
            "can't make it", "cannot come", "won't be there",
        ],
    )
    def test_negative(self, classifier, text):
        assert classifier.classify(text) == Decision.DECLINED

    @pytest.mark.parametrize(
        "text",
        ["Could we reschedule?", "quiero reagendar", "otro día mejor", "can we move it", "postpone please"],
    )
    def test_reschedule(self, classifier, text):
        assert classifier.classify(text) == Decision.RESCHEDULE

    @pytest.mark.parametrize("text", ["maybe next week", "who is this?", "", None, "   "])
    def test_unknown(self, classifier, text):
        assert classifier.classify(text) == Decision.UNKNOWN

    def test_affirmative_wins_over_reschedule(self, classifier):
        assert classifier.classify("ok but can we move it later") == Decision.CONFIRMED

    def test_negative_wins_over_reschedule(self, classifier):
        assert classifier.classify("no, reschedule please") == Decision.DECLINED

    def test_affirmative_only_at_start(self, classifier):
        assert classifier.classify("I said yes") == Decision.UNKNOWN

    def test_custom_keywords(self):
        portuguese = KeywordSet(
            affirmative=re.compile(r"^\s*(?:sim|confirmo)\b"),
            negative=re.compile(r"^\s*(?:nao)\b"),
            reschedule=re.compile(r"\b(?:remarcar)\b"),
        )
        classifier = KeywordReplyClassifier(portuguese)

        assert classifier.classify("Sim") == Decision.CONFIRMED
        assert classifier.classify("Não") == Decision.DECLINED
        assert classifier.classify("posso remarcar?") == Decision.RESCHEDULE
        assert classifier.classify("yes") == Decision.UNKNOWN
