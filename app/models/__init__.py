from .check_in import CheckIn
from .emotion_event import EmotionEvent
from .rate_limit import RateLimit
from .streak import StreakDay, HistoryEntry
from .trending import TrendingSet, TrendingScore
from .region_preference import IdentityRegion

__all__ = [
    "CheckIn",
    "EmotionEvent",
    "RateLimit",
    "StreakDay",
    "HistoryEntry",
    "TrendingSet",
    "TrendingScore",
    "IdentityRegion",
]
