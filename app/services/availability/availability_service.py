# ===== app/services/availability/availability_service.py =====
from datetime import date, datetime, timedelta, timezone
from typing import Iterator, List, Optional, Tuple
from uuid import UUID
import logging

from sqlalchemy import or_
from sqlalchemy.orm import Session

from app.models import CalendarEvent, CalendarIntegration, CompanySchedule
from app.schemas.availability import AvailabilityResult, ScheduleConfig, Slot, SlotCheck, SlotStatus
from app.schemas.calendar_events import EventSource, EventStatus
from app.services.availability.holidays import holiday_name

logger = logging.getLogger(__name__)

NEXT_SLOT_SEARCH_DAYS = 14


def overlaps(start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime) -> bool:
    """Strict overlap: ranges that only touch do not conflict"""
    return start_a < end_b and start_b < end_a


class AvailabilityService:
    """Free/busy computation over the company's working hours and stored events (read-only)"""

    def __init__(self, db: Session):
        self.db = db

    # ------------------------------------------------------------------
    # Working-hours configuration
    # ------------------------------------------------------------------
    def get_schedule(self, company_id: UUID) -> ScheduleConfig:
        row = self.db.query(CompanySchedule).filter(CompanySchedule.company_id == company_id).first()
        if not row:
            return ScheduleConfig()
        return ScheduleConfig(
            timezone=row.timezone,
            working_hours_start=row.working_hours_start,
            working_hours_end=row.working_hours_end,
            working_days=row.working_days,
            exclude_holidays=row.exclude_holidays,
            default_slot_minutes=row.default_slot_minutes,
        )

    def save_schedule(self, company_id: UUID, config: ScheduleConfig) -> ScheduleConfig:
        row = self.db.query(CompanySchedule).filter(CompanySchedule.company_id == company_id).first()
        if not row:
            row = CompanySchedule(company_id=company_id)
            self.db.add(row)
        row.timezone = config.timezone
        row.working_hours_start = config.working_hours_start
        row.working_hours_end = config.working_hours_end
        row.working_days = list(config.working_days)
        row.exclude_holidays = config.exclude_holidays
        row.default_slot_minutes = config.default_slot_minutes
        self.db.commit()
        logger.info(f"Saved working hours for company {company_id}")
        return config

    # ------------------------------------------------------------------
    # Busy events
    # ------------------------------------------------------------------
    def busy_events(
            self,
            company_id: UUID,
            start: datetime,
            end: datetime,
            exclude_event_id: Optional[UUID] = None,
    ) -> List[CalendarEvent]:
        """Non-cancelled events overlapping [start, end): manual ones and those of active integrations"""
        query = (
            self.db.query(CalendarEvent)
            .outerjoin(CalendarIntegration, CalendarEvent.integration_id == CalendarIntegration.id)
            .filter(
                CalendarEvent.company_id == company_id,
                CalendarEvent.status != EventStatus.CANCELLED.value,
                CalendarEvent.start_time < end,
                CalendarEvent.end_time > start,
                or_(
                    CalendarEvent.integration_id.is_(None),
                    CalendarEvent.source == EventSource.MANUAL.value,
                    CalendarIntegration.is_active.is_(True),
                ),
            )
        )
        if exclude_event_id is not None:
            query = query.filter(CalendarEvent.id != exclude_event_id)
        return query.order_by(CalendarEvent.start_time, CalendarEvent.created_at).all()

    def is_slot_available(
            self,
            company_id: UUID,
            start: datetime,
            end: datetime,
            exclude_event_id: Optional[UUID] = None,
    ) -> SlotCheck:
        conflicts = self.busy_events(company_id, start, end, exclude_event_id)
        if conflicts:
            return SlotCheck(available=False, conflicting_event_id=str(conflicts[0].id))
        return SlotCheck(available=True)

    # ------------------------------------------------------------------
    # Slots
    # ------------------------------------------------------------------
    @staticmethod
    def _candidates(
            schedule: ScheduleConfig,
            day: date,
            duration: timedelta,
            step: Optional[timedelta] = None,
    ) -> Iterator[Tuple[datetime, datetime]]:
        """(start, end) pairs in UTC; a slot never runs past closing time"""
        tz = schedule.tz
        opens = datetime.combine(day, schedule.opens_at)
        closes = datetime.combine(day, schedule.closes_at)
        step = step or duration
        current = opens
        while current + duration <= closes:
            start = current.replace(tzinfo=tz).astimezone(timezone.utc)
            end = (current + duration).replace(tzinfo=tz).astimezone(timezone.utc)
            yield start, end
            current += step

    @staticmethod
    def _day_bounds(schedule: ScheduleConfig, day: date) -> Tuple[datetime, datetime]:
        tz = schedule.tz
        start = datetime.combine(day, schedule.opens_at).replace(tzinfo=tz).astimezone(timezone.utc)
        end = datetime.combine(day, schedule.closes_at).replace(tzinfo=tz).astimezone(timezone.utc)
        return start, end

    def get_availability(
            self,
            company_id: UUID,
            day: date,
            slot_duration_minutes: Optional[int] = None,
    ) -> AvailabilityResult:
        schedule = self.get_schedule(company_id)
        duration_minutes = slot_duration_minutes or schedule.default_slot_minutes
        holiday = holiday_name(day) if schedule.exclude_holidays else None
        result = AvailabilityResult(
            date=day,
            timezone=schedule.timezone,
            is_working_day=schedule.is_working_day(day),
            is_holiday=holiday is not None,
            holiday_name=holiday,
            slot_duration_minutes=duration_minutes,
        )
        if not result.is_working_day or result.is_holiday:
            return result

        day_start, day_end = self._day_bounds(schedule, day)
        events = self.busy_events(company_id, day_start, day_end)
        for start, end in self._candidates(schedule, day, timedelta(minutes=duration_minutes)):
            conflict = next((e for e in events if overlaps(start, end, e.start_time, e.end_time)), None)
            result.slots.append(Slot(
                start_time=start,
                end_time=end,
                status=SlotStatus.BUSY if conflict else SlotStatus.FREE,
                conflicting_event_id=str(conflict.id) if conflict else None,
            ))
        return result

    def is_bookable_day(self, schedule: ScheduleConfig, day: date) -> bool:
        if not schedule.is_working_day(day):
            return False
        return not (schedule.exclude_holidays and holiday_name(day))

    def next_available_slot(
            self,
            company_id: UUID,
            after: datetime,
            duration_minutes: int,
    ) -> Optional[Slot]:
        """First free slot starting at or after `after`, searching two weeks ahead"""
        schedule = self.get_schedule(company_id)
        duration = timedelta(minutes=duration_minutes)
        step = timedelta(minutes=schedule.default_slot_minutes)
        first_day = after.astimezone(schedule.tz).date()

        for offset in range(NEXT_SLOT_SEARCH_DAYS + 1):
            day = first_day + timedelta(days=offset)
            if not self.is_bookable_day(schedule, day):
                continue
            day_start, day_end = self._day_bounds(schedule, day)
            events = self.busy_events(company_id, day_start, day_end)
            for start, end in self._candidates(schedule, day, duration, step):
                if start < after:
                    continue
                if not any(overlaps(start, end, e.start_time, e.end_time) for e in events):
                    return Slot(start_time=start, end_time=end, status=SlotStatus.FREE)
        return None

    def add_business_days(self, company_id: UUID, start: datetime, days: int) -> datetime:
        """Same local time of day, `days` weekdays later (holidays skipped when excluded)"""
        schedule = self.get_schedule(company_id)
        local = start.astimezone(schedule.tz)
        day = local.date()
        remaining = days
        while remaining > 0:
            day += timedelta(days=1)
            if day.weekday() >= 5:
                continue
            if schedule.exclude_holidays and holiday_name(day):
                continue
            remaining -= 1
        return datetime.combine(day, local.time().replace(tzinfo=None), tzinfo=schedule.tz)
