"""
Trending keyword schemas.

GET /trending       → TrendingResponse
GET /trending/all   → AllEmotionsTrendingResponse
GET /trending/emotions/distribution → EmotionDistributionResponse
"""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict


class TrendingKeywordOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    keyword: str
    score: float
    count: int


class TrendingResponse(BaseModel):
    type: str
    key: Optional[str] = None
    label: Optional[str] = None
    keywords: list[TrendingKeywordOut]
    count: int
    timestamp: datetime


class AllEmotionsTrendingResponse(BaseModel):
    emotions: dict[str, list[TrendingKeywordOut]]
    timestamp: datetime


class EmotionDistributionResponse(BaseModel):
    region: Optional[str] = None
    since: datetime
    total: int
    counts: dict[str, int]
