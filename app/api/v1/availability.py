# ============================================================================
# FILE: app/api/v1/availability.py
# Availability endpoints
# IMPORTANT: Specific routes MUST come before the bare query route
# ============================================================================
from datetime import date, datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from app.api.dependencies import CompanyContext, get_company_context
from app.config.database import get_db
from app.schemas.availability import ScheduleConfig
from app.schemas.calendar_events import ensure_aware
from app.services.availability.availability_service import AvailabilityService

router = APIRouter(tags=["availability"])


@router.get("/schedule", response_model=ScheduleConfig)
def get_schedule(
        context: CompanyContext = Depends(get_company_context),
        db: Session = Depends(get_db),
):
    return AvailabilityService(db).get_schedule(context.company_id)


@router.put("/schedule", response_model=ScheduleConfig)
def update_schedule(
        config: ScheduleConfig,
        context: CompanyContext = Depends(get_company_context),
        db: Session = Depends(get_db),
):
    return AvailabilityService(db).save_schedule(context.company_id, config)


@router.get("/next")
def next_available(
        after: Optional[datetime] = Query(None, description="Earliest start (defaults to now)"),
        duration: Optional[int] = Query(None, ge=5, le=480, description="Minutes"),
        context: CompanyContext = Depends(get_company_context),
        db: Session = Depends(get_db),
):
    """First free slot within the next two weeks, or null"""
    service = AvailabilityService(db)
    schedule = service.get_schedule(context.company_id)
    after = ensure_aware(after, schedule.timezone) if after else datetime.now(timezone.utc)
    slot = service.next_available_slot(
        context.company_id,
        after,
        duration or schedule.default_slot_minutes,
    )
    return {"slot": slot.model_dump(mode="json") if slot else None}


@router.get("")
def get_availability(
        day: Optional[date] = Query(None, alias="date"),
        slot_duration: Optional[int] = Query(None, ge=5, le=480),
        start_time: Optional[datetime] = Query(None),
        end_time: Optional[datetime] = Query(None),
        context: CompanyContext = Depends(get_company_context),
        db: Session = Depends(get_db),
):
    """
    Two modes:
    - date (+ slot_duration): labelled slots for one working day
    - start_time + end_time: conflict check for a single range
    """
    service = AvailabilityService(db)

    if day is not None and start_time is None and end_time is None:
        result = service.get_availability(context.company_id, day, slot_duration)
        return result.model_dump(mode="json")

    if day is None and start_time is not None and end_time is not None:
        schedule = service.get_schedule(context.company_id)
        start = ensure_aware(start_time, schedule.timezone)
        end = ensure_aware(end_time, schedule.timezone)
        if start >= end:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="start_time must be before end_time",
            )
        check = service.is_slot_available(context.company_id, start, end)
        return check.model_dump()

    raise HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail="Provide either date (and optional slot_duration) or start_time and end_time",
    )
