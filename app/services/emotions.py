"""
Canonical emotion set and alias normalization.

Matching is case-insensitive and whitespace-tolerant. Unknown strings are
rejected; there is no fallback emotion.
"""
from __future__ import annotations

import enum
from typing import Optional


class Emotion(str, enum.Enum):
    joy = "Joy"
    calm = "Calm"
    stress = "Stress"
    anticipation = "Anticipation"
    sadness = "Sadness"


VALID_EMOTIONS: tuple[str, ...] = tuple(e.value for e in Emotion)

EMOTION_ALIASES: dict[str, Emotion] = {
    # Joy
    "happy": Emotion.joy,
    "happiness": Emotion.joy,
    "glad": Emotion.joy,
    "joyful": Emotion.joy,
    "content": Emotion.joy,
    "grateful": Emotion.joy,
    # Calm
    "relaxed": Emotion.calm,
    "peaceful": Emotion.calm,
    "serene": Emotion.calm,
    "chill": Emotion.calm,
    # Stress
    "stressed": Emotion.stress,
    "anxious": Emotion.stress,
    "anxiety": Emotion.stress,
    "overwhelmed": Emotion.stress,
    "nervous": Emotion.stress,
    # Anticipation
    "excited": Emotion.anticipation,
    "hopeful": Emotion.anticipation,
    "eager": Emotion.anticipation,
    "expectant": Emotion.anticipation,
    # Sadness
    "sad": Emotion.sadness,
    "down": Emotion.sadness,
    "unhappy": Emotion.sadness,
    "lonely": Emotion.sadness,
    "melancholy": Emotion.sadness,
}

_BY_LOWER: dict[str, Emotion] = {e.value.lower(): e for e in Emotion}


def normalize_emotion(raw: Optional[str]) -> Optional[Emotion]:
    """Map a canonical name or registered alias to an Emotion, else None."""
    if not isinstance(raw, str):
        return None
    key = raw.strip().lower()
    if not key:
        return None
    return _BY_LOWER.get(key) or EMOTION_ALIASES.get(key)
