# app/schemas/calendar_events.py
from __future__ import annotations
from datetime import datetime, timezone
from enum import Enum
from typing import List, Literal, Optional
from uuid import UUID
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, field_validator, model_validator


class CalendarProvider(str, Enum):
    GOOGLE = "google_calendar"
    MICROSOFT = "microsoft_outlook"
    CALENDLY = "calendly"


class EventStatus(str, Enum):
    SCHEDULED = "scheduled"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    NO_SHOW = "no_show"


class EventType(str, Enum):
    CALL = "call"
    FOLLOW_UP = "follow_up"
    NO_SHOW_RETRY = "no_show_retry"
    MEETING = "meeting"


class EventSource(str, Enum):
    MANUAL = "manual"
    GOOGLE = "google_calendar"
    MICROSOFT = "microsoft_outlook"
    CALENDLY = "calendly"


TERMINAL_STATUSES = frozenset({EventStatus.CANCELLED.value, EventStatus.COMPLETED.value, EventStatus.NO_SHOW.value})
ACTIVE_STATUSES = frozenset({EventStatus.SCHEDULED.value, EventStatus.CONFIRMED.value})


def ensure_aware(value: Optional[datetime], tz_name: Optional[str] = None) -> Optional[datetime]:
    """Attach tz_name (or UTC) to naive datetimes"""
    if value is None or value.tzinfo is not None:
        return value
    tz = timezone.utc
    if tz_name:
        try:
            tz = ZoneInfo(tz_name)
        except (ZoneInfoNotFoundError, ValueError):
            tz = timezone.utc
    return value.replace(tzinfo=tz)


class EventCreateRequest(BaseModel):
    """Manual booking; title/start/end are checked by the route to answer 400"""
    title: Optional[str] = Field(None, description="Event title")
    start_time: Optional[datetime] = Field(None, description="Start instant")
    end_time: Optional[datetime] = Field(None, description="End instant")
    timezone: Optional[str] = Field(None, description="IANA timezone for naive times and display")
    event_type: EventType = Field(EventType.MEETING)
    contact_id: Optional[UUID] = None
    description: Optional[str] = None
    location: Optional[str] = None
    notes: Optional[str] = None
    attendees: List[str] = Field(default_factory=list)
    all_day: bool = False
    sync_to_google: bool = Field(False, description="Push the booking to the user's Google calendar")
    sync_to_provider: Optional[CalendarProvider] = Field(None, description="Push the booking to this provider")
    allow_conflict: bool = Field(False, description="Book even if the slot overlaps another event")

    @model_validator(mode="after")
    def localize_times(self) -> "EventCreateRequest":
        self.start_time = ensure_aware(self.start_time, self.timezone)
        self.end_time = ensure_aware(self.end_time, self.timezone)
        return self

    def missing_fields(self) -> List[str]:
        missing = []
        if not (self.title or "").strip():
            missing.append("title")
        if self.start_time is None:
            missing.append("start_time")
        if self.end_time is None:
            missing.append("end_time")
        return missing

    def push_provider(self) -> Optional[CalendarProvider]:
        if self.sync_to_provider:
            return self.sync_to_provider
        return CalendarProvider.GOOGLE if self.sync_to_google else None


class EventAction(str, Enum):
    CONFIRM = "confirm"
    CANCEL = "cancel"
    NO_SHOW = "no_show"
    RESCHEDULE = "reschedule"
    UPDATE = "update"
    COMPLETE = "complete"


class EventActionRequest(BaseModel):
    event_id: UUID
    action: EventAction
    timezone: Optional[str] = None

    # cancel / reschedule
    reason: Optional[str] = None

    # no_show
    schedule_retry: bool = False
    retry_date: Optional[datetime] = None
    retry_notes: Optional[str] = None

    # reschedule
    new_start_time: Optional[datetime] = None
    new_end_time: Optional[datetime] = None
    override_conflict: bool = False

    # update
    title: Optional[str] = None
    description: Optional[str] = None
    location: Optional[str] = None
    notes: Optional[str] = None
    event_type: Optional[EventType] = None
    contact_id: Optional[UUID] = None

    @model_validator(mode="after")
    def localize_times(self) -> "EventActionRequest":
        self.retry_date = ensure_aware(self.retry_date, self.timezone)
        self.new_start_time = ensure_aware(self.new_start_time, self.timezone)
        self.new_end_time = ensure_aware(self.new_end_time, self.timezone)
        return self

    def detail_updates(self) -> dict:
        fields = ("title", "description", "location", "notes", "event_type", "contact_id")
        updates = {name: getattr(self, name) for name in fields if name in self.model_fields_set}
        if updates.get("event_type") is not None:
            updates["event_type"] = updates["event_type"].value
        return updates


class ConnectResponse(BaseModel):
    authorization_url: str
    state: str
    provider: CalendarProvider


class IntegrationStatus(BaseModel):
    id: str
    provider: CalendarProvider
    provider_account_email: Optional[str] = None
    connected: bool
    needs_reauth: bool
    webhook_active: bool
    last_sync_at: Optional[datetime] = None
    last_sync_status: Optional[str] = None
    last_error: Optional[str] = None


class SyncLogEntry(BaseModel):
    id: str
    sync_type: str
    status: str
    events_created: int
    events_updated: int
    events_deleted: int
    errors: list = Field(default_factory=list)
    error_message: Optional[str] = None
    started_at: datetime
    completed_at: Optional[datetime] = None


class CalendarEventOut(BaseModel):
    """Wire shape of a CalendarEvent row"""
    model_config = {"from_attributes": True}

    id: UUID
    company_id: UUID
    integration_id: Optional[UUID] = None
    external_id: Optional[str] = None
    title: str
    description: Optional[str] = None
    location: Optional[str] = None
    start_time: datetime
    end_time: datetime
    all_day: bool
    timezone: Optional[str] = None
    event_type: str
    status: str
    source: str
    contact_id: Optional[UUID] = None
    attendees: List[str] = Field(default_factory=list)
    notes: Optional[str] = None
    sync_status: Optional[str] = None
    sync_error: Optional[str] = None
    original_start_time: Optional[datetime] = None
    original_end_time: Optional[datetime] = None
    rescheduled_count: int = 0
    rescheduled_reason: Optional[str] = None
    parent_event_id: Optional[UUID] = None
    needs_manual_reschedule: bool = False
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    completed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    @field_validator("attendees", mode="before")
    @classmethod
    def default_attendees(cls, v):
        return v or []
