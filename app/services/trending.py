"""
Trending keyword engine.

Public API
----------
TrendingEngine.process_note(note, emotion, region_bucket, timestamp)  → int (keywords scored)
TrendingEngine.get_top(dimension, key, limit)                         → list[TrendingKeyword]
TrendingEngine.get_all_emotions(limit)                                → dict[str, list[TrendingKeyword]]

Each surviving keyword adds `exp(-age_hours / 6)` to four ranked sets:
global, emotion:<Emotion>, region:<bucket> and hourly:<YYYY-MM-DDTHH>.
Stored scores never decay; whole sets expire after their TTL (24h, or 6h
for hourly sets) and are wiped before being written again.

Trending is best-effort. Storage failures are logged and dropped; reads
return an empty list.
"""
from __future__ import annotations

import enum
import math
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.orm import Session, sessionmaker

from app.core.clock import Clock, as_utc, utcnow
from app.core.logging import get_logger, log_degraded
from app.core.resilience import CircuitBreaker
from app.db.upsert import insert_for
from app.models.trending import TrendingScore, TrendingSet
from app.services.emotions import Emotion
from app.services.geo import GLOBAL_REGION

logger = get_logger(__name__)

STOP_WORDS = frozenset({
    "the", "be", "to", "of", "and", "a", "in", "that", "have", "i",
    "it", "for", "not", "on", "with", "he", "as", "you", "do", "at",
    "this", "but", "his", "by", "from", "they", "we", "say", "her", "she",
    "or", "an", "will", "my", "one", "all", "would", "there", "their",
    "what", "so", "up", "out", "if", "about", "who", "get", "which", "go",
    "me", "when", "make", "can", "like", "time", "no", "just", "him", "know",
    "take", "people", "into", "year", "your", "good", "some", "could", "them",
    "see", "other", "than", "then", "now", "look", "only", "come", "its", "over",
    "think", "also", "back", "after", "use", "two", "how", "our", "work", "first",
    "well", "way", "even", "new", "want", "because", "any", "these", "give", "day",
    "most", "us", "is", "am", "are", "was", "were", "been", "being", "has", "had",
    "does", "did", "doing", "very", "really", "too", "much", "many", "more", "less",
    "feel", "feeling", "felt", "im", "ive", "dont", "cant", "wont", "wasnt", "werent",
})

MIN_KEYWORD_LENGTH = 3
_PUNCT_RE = re.compile(r"[^\w\s]")


class TrendingDimension(str, enum.Enum):
    global_ = "global"
    emotion = "emotion"
    region = "region"
    hourly = "hourly"


@dataclass(frozen=True)
class TrendingKeyword:
    keyword: str
    score: float
    count: int


# ---------------------------------------------------------------------------
# Text & scoring helpers
# ---------------------------------------------------------------------------

def _words(text: str) -> list[str]:
    return [w for w in _PUNCT_RE.sub(" ", text.lower()).split() if w]


def _is_keyword(word: str) -> bool:
    return len(word) >= MIN_KEYWORD_LENGTH and word not in STOP_WORDS


def extract_keywords(text: str) -> list[str]:
    """Lowercase, strip punctuation, drop short and stop words. Repeats are kept."""
    return [w for w in _words(text) if _is_keyword(w)]


def extract_phrases(text: str) -> list[str]:
    """Adjacent word pairs where both words would count as keywords."""
    words = _words(text)
    return [
        f"{a} {b}" for a, b in zip(words, words[1:])
        if _is_keyword(a) and _is_keyword(b)
    ]


def recency_weight(timestamp: datetime, now: datetime, decay_hours: float = 6.0) -> float:
    age_hours = (as_utc(now) - as_utc(timestamp)).total_seconds() / 3600
    return math.exp(-max(age_hours, 0.0) / decay_hours)


def hour_bucket(timestamp: datetime) -> str:
    return as_utc(timestamp).strftime("%Y-%m-%dT%H")


def set_key(dimension: TrendingDimension, key: Optional[str] = None) -> str:
    if dimension is TrendingDimension.global_:
        return "global"
    if not key:
        raise ValueError(f"{dimension.value} trending requires a key")
    return f"{dimension.value}:{key}"


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------

class SqlTrendingStore:
    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory

    def increment(
        self,
        key: str,
        dimension: str,
        deltas: dict[str, float],
        ttl_seconds: int,
        now: datetime,
    ) -> None:
        """Add each delta to its keyword's score and refresh the set's TTL."""
        with self._session_factory() as db:
            current = db.scalar(select(TrendingSet.expires_at).where(TrendingSet.key == key))
            if current is not None and as_utc(current) <= now:
                db.execute(delete(TrendingScore).where(TrendingScore.set_key == key))

            set_stmt = insert_for(db, TrendingSet).values(
                key=key, dimension=dimension, expires_at=now + timedelta(seconds=ttl_seconds),
            )
            set_stmt = set_stmt.on_conflict_do_update(
                index_elements=[TrendingSet.key],
                set_={"expires_at": set_stmt.excluded.expires_at},
            )
            db.execute(set_stmt)

            for keyword, delta in deltas.items():
                stmt = insert_for(db, TrendingScore).values(set_key=key, keyword=keyword, score=delta)
                stmt = stmt.on_conflict_do_update(
                    index_elements=[TrendingScore.set_key, TrendingScore.keyword],
                    set_={"score": TrendingScore.score + stmt.excluded.score},
                )
                db.execute(stmt)
            db.commit()

    def top(self, key: str, now: datetime, limit: int) -> list[tuple[str, float]]:
        with self._session_factory() as db:
            expires_at = db.scalar(select(TrendingSet.expires_at).where(TrendingSet.key == key))
            if expires_at is None or as_utc(expires_at) <= now:
                return []
            rows = db.execute(
                select(TrendingScore.keyword, TrendingScore.score)
                .where(TrendingScore.set_key == key)
                .order_by(TrendingScore.score.desc(), TrendingScore.keyword.asc())
                .limit(limit)
            )
            return [(keyword, score) for keyword, score in rows]


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class TrendingEngine:
    def __init__(
        self,
        store: SqlTrendingStore,
        breaker: Optional[CircuitBreaker] = None,
        clock: Clock = utcnow,
        ttl_seconds: int = 86_400,
        hourly_ttl_seconds: int = 21_600,
        decay_hours: float = 6.0,
        min_note_length: int = 5,
        include_phrases: bool = False,
        max_limit: int = 100,
    ):
        self._store = store
        self._breaker = breaker
        self._clock = clock
        self.ttl_seconds = ttl_seconds
        self.hourly_ttl_seconds = hourly_ttl_seconds
        self.decay_hours = decay_hours
        self.min_note_length = min_note_length
        self.include_phrases = include_phrases
        self.max_limit = max_limit

    def _call(self, fn, *args):
        if self._breaker is None:
            return fn(*args)
        return self._breaker.call(fn, *args)

    def _terms(self, note: str) -> list[str]:
        terms = extract_keywords(note)
        if self.include_phrases:
            terms.extend(extract_phrases(note))
        return terms

    def process_note(
        self,
        note: Optional[str],
        emotion: str,
        region_bucket: Optional[str],
        timestamp: datetime,
    ) -> int:
        if not note or len(note.strip()) < self.min_note_length:
            return 0
        terms = self._terms(note)
        if not terms:
            return 0

        weight = recency_weight(timestamp, self._clock(), self.decay_hours)
        deltas: dict[str, float] = {}
        for term in terms:
            deltas[term] = deltas.get(term, 0.0) + weight

        targets = [
            (set_key(TrendingDimension.global_), TrendingDimension.global_, self.ttl_seconds),
            (set_key(TrendingDimension.emotion, emotion), TrendingDimension.emotion, self.ttl_seconds),
        ]
        if region_bucket and region_bucket != GLOBAL_REGION:
            targets.append(
                (set_key(TrendingDimension.region, region_bucket), TrendingDimension.region, self.ttl_seconds)
            )
        targets.append((
            set_key(TrendingDimension.hourly, hour_bucket(timestamp)),
            TrendingDimension.hourly,
            self.hourly_ttl_seconds,
        ))

        failed = 0
        for key, dimension, ttl in targets:
            try:
                self._call(self._store.increment, key, dimension.value, deltas, ttl, self._clock())
            except Exception as exc:
                failed += 1
                log_degraded(logger, "trending", "increment_failed", error=exc, set_key=key)
        if failed == len(targets):
            return 0
        logger.debug(
            "Scored %d trending terms",
            len(deltas),
            extra={"action": "trending_processed", "context": {"emotion": emotion, "terms": len(deltas)}},
        )
        return len(deltas)

    def get_top(
        self,
        dimension: TrendingDimension,
        key: Optional[str] = None,
        limit: int = 20,
    ) -> list[TrendingKeyword]:
        if dimension is TrendingDimension.hourly and not key:
            key = hour_bucket(self._clock())
        limit = max(1, min(limit, self.max_limit))
        try:
            rows = self._call(self._store.top, set_key(dimension, key), self._clock(), limit)
        except Exception as exc:
            log_degraded(logger, "trending", "read_failed", error=exc, dimension=dimension.value, key=key)
            return []
        return [
            TrendingKeyword(keyword=keyword, score=round(score, 6), count=round(score * 100))
            for keyword, score in rows
        ]

    def get_all_emotions(self, limit: int = 10) -> dict[str, list[TrendingKeyword]]:
        return {
            emotion.value: self.get_top(TrendingDimension.emotion, emotion.value, limit)
            for emotion in Emotion
        }
