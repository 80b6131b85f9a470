# ============================================================================
# FILE: app/api/v1/events.py
# Event endpoints - thin HTTP layer over EventStateMachine
# ============================================================================
from datetime import datetime
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from app.api.dependencies import CompanyContext, get_company_context, get_services
from app.config.database import get_db
from app.schemas.calendar_events import (
    EventAction,
    EventActionRequest,
    EventCreateRequest,
    EventSource,
    EventStatus,
    EventType,
)
from app.services.events.event_query_service import DEFAULT_LIMIT, MAX_LIMIT, EventQueryService
from app.services.events.event_state_machine import TransitionOutcome
from app.services.service_factory import CalendarServices

router = APIRouter(tags=["events"])


def _outcome_body(outcome: TransitionOutcome) -> dict:
    body = {
        "event": EventQueryService.serialize(outcome.event),
        "warnings": outcome.warnings,
    }
    if outcome.retry_event is not None:
        body["retry_event"] = EventQueryService.serialize(outcome.retry_event)
    return body


@router.get("")
def list_events(
        start_date: Optional[datetime] = Query(None),
        end_date: Optional[datetime] = Query(None),
        event_type: Optional[EventType] = Query(None),
        status_filter: Optional[EventStatus] = Query(None, alias="status"),
        source: Optional[EventSource] = Query(None),
        contact_id: Optional[UUID] = Query(None),
        limit: int = Query(DEFAULT_LIMIT, ge=1, le=MAX_LIMIT),
        context: CompanyContext = Depends(get_company_context),
        db: Session = Depends(get_db),
):
    """Events overlapping the requested range"""
    return EventQueryService.list_events(
        db,
        context.company_id,
        start_date=start_date,
        end_date=end_date,
        event_type=event_type.value if event_type else None,
        status=status_filter.value if status_filter else None,
        source=source.value if source else None,
        contact_id=contact_id,
        limit=limit,
    )


@router.post("", status_code=status.HTTP_201_CREATED)
def create_event(
        request: EventCreateRequest,
        context: CompanyContext = Depends(get_company_context),
        services: CalendarServices = Depends(get_services),
):
    missing = request.missing_fields()
    if missing:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Missing required fields: {', '.join(missing)}",
        )
    if request.start_time >= request.end_time:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="start_time must be before end_time",
        )

    outcome = services.state_machine.create_event(context.company_id, request, user_id=context.user_id)
    return _outcome_body(outcome)


@router.put("")
def update_event(
        request: EventActionRequest,
        context: CompanyContext = Depends(get_company_context),
        services: CalendarServices = Depends(get_services),
):
    """Apply one lifecycle action to an event"""
    machine = services.state_machine
    company_id = context.company_id

    if request.action == EventAction.CONFIRM:
        outcome = machine.confirm(request.event_id, company_id)

    elif request.action == EventAction.CANCEL:
        outcome = machine.cancel(request.event_id, company_id, reason=request.reason)

    elif request.action == EventAction.NO_SHOW:
        outcome = machine.mark_no_show(
            request.event_id,
            company_id,
            schedule_retry=request.schedule_retry,
            retry_date=request.retry_date,
            retry_notes=request.retry_notes,
        )

    elif request.action == EventAction.RESCHEDULE:
        if not request.new_start_time or not request.new_end_time:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="new_start_time and new_end_time are required to reschedule",
            )
        if request.new_start_time >= request.new_end_time:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="new_start_time must be before new_end_time",
            )
        outcome = machine.reschedule(
            request.event_id,
            company_id,
            request.new_start_time,
            request.new_end_time,
            reason=request.reason,
            override_conflict=request.override_conflict,
        )

    elif request.action == EventAction.UPDATE:
        outcome = machine.update_details(request.event_id, company_id, **request.detail_updates())

    else:
        outcome = machine.complete(request.event_id, company_id)

    return _outcome_body(outcome)


@router.delete("")
def delete_event(
        event_id: UUID = Query(...),
        reason: Optional[str] = Query(None),
        context: CompanyContext = Depends(get_company_context),
        services: CalendarServices = Depends(get_services),
):
    """Soft delete: the event is cancelled, never removed"""
    outcome = services.state_machine.cancel(event_id, context.company_id, reason=reason)
    return _outcome_body(outcome)
