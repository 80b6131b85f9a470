# app/schemas/availability.py
from __future__ import annotations
from datetime import date, datetime, time
from enum import Enum
from typing import List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, field_validator, model_validator

from app.config.settings import get_settings

WEEKDAY_NAMES = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]


def _default_timezone() -> str:
    return get_settings().DEFAULT_TIMEZONE or "America/New_York"


class ScheduleConfig(BaseModel):
    """Company working-hours configuration, validated once when loaded"""
    timezone: str = Field(default_factory=_default_timezone, description="IANA timezone")
    working_hours_start: str = Field("09:00", description="Opening time (HH:MM)")
    working_hours_end: str = Field("18:00", description="Closing time (HH:MM)")
    working_days: List[str] = Field(
        default_factory=lambda: WEEKDAY_NAMES[:5],
        description="Lower-case weekday names",
    )
    exclude_holidays: bool = Field(False, description="Skip US federal holidays")
    default_slot_minutes: int = Field(30, ge=5, le=480)

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown timezone: {v}")
        return v

    @field_validator("working_hours_start", "working_hours_end")
    @classmethod
    def validate_time(cls, v: str) -> str:
        try:
            datetime.strptime(v, "%H:%M")
        except ValueError:
            raise ValueError("Time must be in HH:MM format")
        return v

    @field_validator("working_days")
    @classmethod
    def validate_days(cls, v: List[str]) -> List[str]:
        days = [d.strip().lower() for d in v]
        unknown = [d for d in days if d not in WEEKDAY_NAMES]
        if unknown:
            raise ValueError(f"Unknown weekday(s): {', '.join(unknown)}")
        return sorted(set(days), key=WEEKDAY_NAMES.index)

    @model_validator(mode="after")
    def hours_in_order(self) -> "ScheduleConfig":
        if self.opens_at >= self.closes_at:
            raise ValueError("working_hours_end must be after working_hours_start")
        return self

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    @property
    def opens_at(self) -> time:
        return datetime.strptime(self.working_hours_start, "%H:%M").time()

    @property
    def closes_at(self) -> time:
        return datetime.strptime(self.working_hours_end, "%H:%M").time()

    def is_working_day(self, day: date) -> bool:
        return WEEKDAY_NAMES[day.weekday()] in self.working_days


class SlotStatus(str, Enum):
    FREE = "free"
    BUSY = "busy"


class Slot(BaseModel):
    start_time: datetime
    end_time: datetime
    status: SlotStatus
    conflicting_event_id: Optional[str] = None


class AvailabilityResult(BaseModel):
    date: date
    timezone: str
    is_working_day: bool
    is_holiday: bool
    holiday_name: Optional[str] = None
    slot_duration_minutes: int
    slots: List[Slot] = Field(default_factory=list)

    @property
    def free_slots(self) -> List[Slot]:
        return [s for s in self.slots if s.status == SlotStatus.FREE]


class SlotCheck(BaseModel):
    available: bool
    conflicting_event_id: Optional[str] = None
