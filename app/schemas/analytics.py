"""
Analytics schemas.

GET /analytics/emotions  → EmotionSummaryResponse
GET /analytics/regions   → RegionSummaryResponse
GET /analytics/realtime  → RealtimeStatsResponse
"""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class EmotionSummaryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    emotion: str = Field(..., examples=["Joy"])
    count: int
    percentage: int = Field(..., description="Share of the period total, rounded to a whole percent.")
    average_intensity: float = Field(..., examples=[3.4])


class EmotionSummaryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    period: str = Field(..., examples=["day"])
    key: str = Field(..., examples=["2026-10-19"])
    region: Optional[str] = None
    total: int
    average_intensity: Optional[float] = None
    emotions: list[EmotionSummaryOut]


class RegionSummaryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    region: str = Field(..., examples=["US-CA"])
    label: str = Field(..., examples=["California, USA"])
    dominant_emotion: str
    dominant_count: int
    total: int
    percentage: int


class RegionSummaryResponse(BaseModel):
    period: str
    key: str
    regions: list[RegionSummaryOut]
    count: int


class RealtimeStatsResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    hour: str = Field(..., examples=["2026-10-19T12"])
    region: Optional[str] = None
    total: int
    emotions: dict[str, int]
    last_update: Optional[datetime] = None
