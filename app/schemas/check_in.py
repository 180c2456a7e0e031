"""
Check-in request / response schemas.

Submit:   POST /check-in            → CheckInRequest → CheckInResponse
Streak:   GET  /check-in/streak     → StreakResponse
History:  GET  /check-in/history    → HistoryResponse

Field types are checked here; ranges, aliases and time bounds are enforced
by the service so direct callers get the same rules.
"""
from __future__ import annotations

from datetime import datetime
from typing import Annotated, Optional

from pydantic import BaseModel, ConfigDict, Field, StrictInt, model_validator


class Coordinates(BaseModel):
    lat: float = Field(description="Latitude in degrees.", examples=[37.77])
    lng: float = Field(description="Longitude in degrees.", examples=[-122.42])


class CheckInRequest(BaseModel):
    """One daily emotional check-in."""
    model_config = ConfigDict(populate_by_name=True)

    emotion: Annotated[str, Field(
        min_length=1,
        max_length=64,
        description="Canonical emotion or a registered alias (e.g. 'happy' → Joy).",
        examples=["Joy", "happy", "calm"],
    )]
    intensity: Optional[StrictInt] = Field(
        default=None,
        description="1 (faint) to 5 (overwhelming). Defaults to 3.",
        examples=[4],
    )
    note: Optional[str] = Field(
        default=None,
        max_length=2_000,
        description="Optional short note (280 characters after trimming). Used only for trending keywords.",
        examples=["finally got the job offer today"],
    )
    region: Optional[str] = Field(
        default=None,
        description="Declared region code such as 'US', 'US-CA' or 'GLOBAL'.",
        examples=["US-CA"],
    )
    coordinates: Optional[Coordinates] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    timestamp: Optional[datetime] = Field(
        default=None,
        description="When the emotion was felt. Defaults to acceptance time; at most 7 days old.",
    )

    @model_validator(mode="after")
    def merge_coordinates(self) -> "CheckInRequest":
        if self.coordinates is not None:
            self.latitude = self.coordinates.lat
            self.longitude = self.coordinates.lng
        return self


class CheckInResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    emotion: str
    intensity: int
    timestamp: datetime
    streak: int
    next_allowed_at: datetime = Field(alias="nextAllowedAt")
    region: str


class StreakResponse(BaseModel):
    streak: int
    today: str


class HistoryItemOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    emotion: str
    day: str
    recorded_at: datetime
    check_in_id: Optional[str] = None


class HistoryResponse(BaseModel):
    items: list[HistoryItemOut]
    count: int
    next_cursor: Optional[int] = None
