# app/models/company_schedule.py
import uuid

from sqlalchemy import Boolean, Column, Integer, JSON, String, Uuid

from app.models.base import Base, UTCDateTime, utcnow


class CompanySchedule(Base):
    """Working-hours configuration; read through ScheduleConfig"""

    __tablename__ = "company_schedules"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    company_id = Column(Uuid, nullable=False, unique=True)

    timezone = Column(String(64), nullable=False)
    working_hours_start = Column(String(5), nullable=False, default="09:00")  # HH:MM
    working_hours_end = Column(String(5), nullable=False, default="18:00")
    working_days = Column(JSON, nullable=False)  # ["monday", ...]
    exclude_holidays = Column(Boolean, nullable=False, default=False)
    default_slot_minutes = Column(Integer, nullable=False, default=30)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)
