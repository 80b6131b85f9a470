# app/schemas/provider_events.py
"""Provider-agnostic shapes produced by calendar adapters"""
from __future__ import annotations
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from app.schemas.calendar_events import CalendarProvider


class AccountProfile(BaseModel):
    email: Optional[str] = None
    account_id: Optional[str] = None
    name: Optional[str] = None
    # Provider extras persisted into CalendarIntegration.provider_config
    extra: dict = Field(default_factory=dict)


class TokenBundle(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    profile: AccountProfile = Field(default_factory=AccountProfile)


class SyncWindow(BaseModel):
    start: datetime
    end: datetime


class ProviderEvent(BaseModel):
    """One provider event translated to the canonical shape"""
    external_id: str
    title: str = ""
    description: Optional[str] = None
    location: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    all_day: bool = False
    timezone: Optional[str] = None
    is_cancelled: bool = False
    updated_at: Optional[datetime] = None
    etag: Optional[str] = None
    attendees: List[str] = Field(default_factory=list)
    organizer_email: Optional[str] = None

    @property
    def has_times(self) -> bool:
        return self.start_time is not None and self.end_time is not None


class ProviderEventBatch(BaseModel):
    events: List[ProviderEvent] = Field(default_factory=list)
    next_cursor: Optional[str] = None
    # True when the result is the complete event set of [window_start, window_end]
    full_window: bool = False
    window_start: Optional[datetime] = None
    window_end: Optional[datetime] = None


class WebhookSubscription(BaseModel):
    id: str
    expires_at: Optional[datetime] = None
    resource_id: Optional[str] = None


class WebhookChangeType(str, Enum):
    UPSERT = "upsert"
    CANCEL = "cancel"
    # Provider only signals "something changed" (Google push channels)
    RESYNC = "resync"
    # Handshake or informational delivery, nothing to apply
    PING = "ping"


class NormalizedChangeEvent(BaseModel):
    provider: CalendarProvider
    change_type: WebhookChangeType
    account_id: Optional[str] = None
    subscription_id: Optional[str] = None
    participant_emails: List[str] = Field(default_factory=list)
    external_id: Optional[str] = None
    event: Optional[ProviderEvent] = None
