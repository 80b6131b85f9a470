# app/models/__init__.py
from .base import Base
from .calendar_integration import CalendarIntegration
from .calendar_event import CalendarEvent
from .calendar_sync_log import CalendarSyncLog
from .company_schedule import CompanySchedule

__all__ = [
    "Base",
    "CalendarIntegration",
    "CalendarEvent",
    "CalendarSyncLog",
    "CompanySchedule",
]
