"""
Unit tests for emotion normalization.
"""
import pytest

from app.services.emotions import VALID_EMOTIONS, Emotion, normalize_emotion


class TestNormalizeEmotion:
    @pytest.mark.parametrize("raw", ["Joy", "joy", "JOY", "  joy  "])
    def test_canonical_names_any_case(self, raw):
        assert normalize_emotion(raw) is Emotion.joy

    @pytest.mark.parametrize("raw,expected", [
        ("happy", Emotion.joy),
        ("Relaxed", Emotion.calm),
        ("anxious", Emotion.stress),
        ("excited", Emotion.anticipation),
        ("sad", Emotion.sadness),
    ])
    def test_aliases(self, raw, expected):
        assert normalize_emotion(raw) is expected

    @pytest.mark.parametrize("raw", ["", "   ", "ennui", "joyy", None, 3])
    def test_unknown_or_empty_rejected(self, raw):
        assert normalize_emotion(raw) is None

    def test_valid_emotions_is_the_canonical_set(self):
        assert VALID_EMOTIONS == ("Joy", "Calm", "Stress", "Anticipation", "Sadness")
