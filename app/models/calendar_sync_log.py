# app/models/calendar_sync_log.py
import uuid

from sqlalchemy import Column, ForeignKey, Integer, JSON, String, Text, Uuid

from app.models.base import Base, UTCDateTime, utcnow


class CalendarSyncLog(Base):
    __tablename__ = "calendar_sync_logs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    integration_id = Column(Uuid, ForeignKey("calendar_integrations.id"), nullable=False, index=True)
    company_id = Column(Uuid, nullable=False, index=True)

    sync_type = Column(String(16), nullable=False)  # full, incremental, webhook
    direction = Column(String(16), nullable=False, default="inbound")
    status = Column(String(16), nullable=False, default="running")  # running, completed, partial, failed

    events_created = Column(Integer, nullable=False, default=0)
    events_updated = Column(Integer, nullable=False, default=0)
    events_deleted = Column(Integer, nullable=False, default=0)
    errors = Column(JSON, nullable=False, default=list)
    error_message = Column(Text, nullable=True)

    started_at = Column(UTCDateTime, nullable=False, default=utcnow)
    completed_at = Column(UTCDateTime, nullable=True)
