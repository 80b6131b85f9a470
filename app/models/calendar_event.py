# app/models/calendar_event.py
import uuid

from sqlalchemy import (
    Boolean, CheckConstraint, Column, ForeignKey, Integer, JSON, String, Text, UniqueConstraint, Uuid,
)

from app.models.base import Base, UTCDateTime, utcnow


class CalendarEvent(Base):
    """Canonical appointment record; status is written only by EventStateMachine"""

    __tablename__ = "calendar_events"
    __table_args__ = (
        UniqueConstraint("integration_id", "external_id", name="uq_calendar_events_integration_external"),
        CheckConstraint("start_time < end_time", name="ck_calendar_events_time_order"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    company_id = Column(Uuid, nullable=False, index=True)
    integration_id = Column(Uuid, ForeignKey("calendar_integrations.id"), nullable=True, index=True)
    external_id = Column(String(1024), nullable=True)

    title = Column(String(500), nullable=False)
    description = Column(Text, nullable=True)
    location = Column(String(1000), nullable=True)
    start_time = Column(UTCDateTime, nullable=False, index=True)
    end_time = Column(UTCDateTime, nullable=False, index=True)
    all_day = Column(Boolean, nullable=False, default=False)
    timezone = Column(String(64), nullable=True)

    event_type = Column(String(32), nullable=False, default="meeting")  # call, follow_up, no_show_retry, meeting
    status = Column(String(32), nullable=False, default="scheduled")  # scheduled, confirmed, cancelled, completed, no_show
    source = Column(String(32), nullable=False, default="manual")  # manual, google_calendar, microsoft_outlook, calendly

    contact_id = Column(Uuid, nullable=True, index=True)
    attendees = Column(JSON, nullable=False, default=list)
    notes = Column(Text, nullable=True)

    # Last applied provider revision
    etag = Column(String(255), nullable=True)
    provider_updated_at = Column(UTCDateTime, nullable=True)

    # Outbound push state
    sync_status = Column(String(16), nullable=True)  # synced, pending_push, error
    sync_error = Column(Text, nullable=True)

    # Reschedule audit trail
    original_start_time = Column(UTCDateTime, nullable=True)
    original_end_time = Column(UTCDateTime, nullable=True)
    rescheduled_count = Column(Integer, nullable=False, default=0)
    rescheduled_reason = Column(Text, nullable=True)
    reschedule_history = Column(JSON, nullable=False, default=list)

    # No-show retries
    parent_event_id = Column(Uuid, ForeignKey("calendar_events.id"), nullable=True)
    needs_manual_reschedule = Column(Boolean, nullable=False, default=False)

    cancelled_at = Column(UTCDateTime, nullable=True)
    cancellation_reason = Column(Text, nullable=True)
    completed_at = Column(UTCDateTime, nullable=True)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<CalendarEvent {self.id} {self.status} {self.start_time}>"
