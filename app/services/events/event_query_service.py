# ============================================================================
# FILE: app/services/events/event_query_service.py
# Read side of the event store - no FastAPI dependencies
# ============================================================================
from datetime import datetime
from typing import Any, Dict, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from app.models import CalendarEvent
from app.schemas.calendar_events import CalendarEventOut

DEFAULT_LIMIT = 500
MAX_LIMIT = 1000


class EventQueryService:
    """Filtered listing of a company's events"""

    @staticmethod
    def list_events(
            db: Session,
            company_id: UUID,
            start_date: Optional[datetime] = None,
            end_date: Optional[datetime] = None,
            event_type: Optional[str] = None,
            status: Optional[str] = None,
            source: Optional[str] = None,
            contact_id: Optional[UUID] = None,
            limit: int = DEFAULT_LIMIT,
    ) -> Dict[str, Any]:
        """Events overlapping [start_date, end_date), ordered by start time"""
        query = db.query(CalendarEvent).filter(CalendarEvent.company_id == company_id)

        if start_date:
            query = query.filter(CalendarEvent.end_time > start_date)
        if end_date:
            query = query.filter(CalendarEvent.start_time < end_date)
        if event_type:
            query = query.filter(CalendarEvent.event_type == event_type)
        if status:
            query = query.filter(CalendarEvent.status == status)
        if source:
            query = query.filter(CalendarEvent.source == source)
        if contact_id:
            query = query.filter(CalendarEvent.contact_id == contact_id)

        limit = max(1, min(limit, MAX_LIMIT))
        total = query.count()
        events = query.order_by(CalendarEvent.start_time.asc()).limit(limit).all()

        return {
            "total": total,
            "events": [EventQueryService.serialize(event) for event in events],
        }

    @staticmethod
    def serialize(event: Optional[CalendarEvent]) -> Optional[Dict[str, Any]]:
        if event is None:
            return None
        return CalendarEventOut.model_validate(event).model_dump(mode="json")
