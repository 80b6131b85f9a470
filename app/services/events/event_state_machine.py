# app/services/events/event_state_machine.py
"""
Event State Machine

The only writer of CalendarEvent.status. States:

    scheduled -> confirmed -> completed
    scheduled|confirmed -> cancelled
    scheduled|confirmed -> no_show  (optionally spawning a no_show_retry event)
    scheduled|confirmed -> scheduled (reschedule, audit trail kept)

cancelled, completed and no_show are terminal. Every transition works on a
single event; callers loop for batch effects.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional, Tuple
from uuid import UUID

from sqlalchemy.orm import Session

from app.config.settings import Settings, get_settings
from app.core.exceptions import InvalidTransition, NotFound, SlotConflict
from app.models import CalendarEvent, CalendarIntegration
from app.models.base import utcnow
from app.schemas.calendar_events import (
    TERMINAL_STATUSES,
    EventCreateRequest,
    EventSource,
    EventStatus,
    EventType,
)
from app.schemas.provider_events import ProviderEvent
from app.services.availability.availability_service import AvailabilityService
from app.services.integration.integration_registry import IntegrationRegistry
from app.services.notification.notifier import LoggingNotifier, Notifier, Transition

logger = logging.getLogger(__name__)

UNTITLED = "(No title)"
DETAIL_FIELDS = ("title", "description", "location", "notes", "event_type", "contact_id")
# Subset the provider copy carries
REMOTE_FIELDS = ("title", "description", "location")


@dataclass
class TransitionOutcome:
    event: CalendarEvent
    retry_event: Optional[CalendarEvent] = None
    warnings: List[str] = field(default_factory=list)
    changed: bool = True


def _as_uuid(value) -> UUID:
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except ValueError:
        raise NotFound(f"Event {value} not found")


class EventStateMachine:
    def __init__(
            self,
            db: Session,
            availability: AvailabilityService,
            remote: Optional[IntegrationRegistry] = None,
            notifier: Optional[Notifier] = None,
            settings: Optional[Settings] = None,
    ):
        self.db = db
        self.availability = availability
        self.remote = remote
        self.notifier = notifier or LoggingNotifier()
        self.settings = settings or get_settings()
        self._pending: List[Tuple[Transition, CalendarEvent]] = []

    # ------------------------------------------------------------------
    # Notifications (sent only after commit)
    # ------------------------------------------------------------------
    def _queue(self, transition: Transition, event: CalendarEvent) -> None:
        self._pending.append((transition, event))

    def checkpoint(self) -> int:
        return len(self._pending)

    def discard_since(self, checkpoint: int) -> None:
        del self._pending[checkpoint:]

    def publish_pending(self) -> None:
        pending, self._pending = self._pending, []
        for transition, event in pending:
            try:
                self.notifier.notify(transition, event)
            except Exception:
                logger.exception(f"Notifier failed for event {event.id} ({transition.value})")

    def _commit(self) -> None:
        self.db.commit()
        self.publish_pending()

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------
    def get_event(self, event_id, company_id) -> CalendarEvent:
        event = self.db.get(CalendarEvent, _as_uuid(event_id))
        if not event or event.company_id != _as_uuid(company_id):
            raise NotFound(f"Event {event_id} not found")
        return event

    def _open_event(self, event_id, company_id, action: str) -> CalendarEvent:
        event = self.get_event(event_id, company_id)
        if event.status in TERMINAL_STATUSES:
            raise InvalidTransition(
                f"Cannot {action} event {event.id}: status '{event.status}' is terminal",
                event_id=str(event.id),
                status=event.status,
            )
        return event

    @staticmethod
    def _check_times(start: Optional[datetime], end: Optional[datetime]) -> None:
        if start is None or end is None:
            raise InvalidTransition("Event needs both start_time and end_time")
        if start >= end:
            raise InvalidTransition("start_time must be before end_time")

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------
    def create_event(
            self,
            company_id: UUID,
            data: EventCreateRequest,
            allow_conflict: bool = False,
            user_id: Optional[UUID] = None,
    ) -> TransitionOutcome:
        """Manual or internal booking; every booking passes the conflict check"""
        self._check_times(data.start_time, data.end_time)
        check = self.availability.is_slot_available(company_id, data.start_time, data.end_time)
        if not check.available and not (allow_conflict or data.allow_conflict):
            raise SlotConflict(conflicting_event_id=check.conflicting_event_id)

        event = CalendarEvent(
            company_id=company_id,
            title=data.title.strip(),
            description=data.description,
            location=data.location,
            start_time=data.start_time,
            end_time=data.end_time,
            all_day=data.all_day,
            timezone=data.timezone,
            event_type=data.event_type.value,
            status=EventStatus.SCHEDULED.value,
            source=EventSource.MANUAL.value,
            contact_id=data.contact_id,
            attendees=list(data.attendees),
            notes=data.notes,
        )
        self.db.add(event)
        self.db.flush()

        outcome = TransitionOutcome(event=event)
        if not check.available:
            outcome.warnings.append(f"Booked over conflicting event {check.conflicting_event_id}")

        provider = data.push_provider()
        if provider:
            if self.remote is None:
                outcome.warnings.append(f"Push to {provider.value} is not available")
            else:
                result = self.remote.push_event(event, provider, user_id)
                if not result.ok:
                    outcome.warnings.append(result.warning)

        self._queue(Transition.CREATED, event)
        self._commit()
        self.db.refresh(event)
        logger.info(f"Created {event.event_type} event {event.id} for company {company_id}")
        return outcome

    def record_provider_event(self, integration: CalendarIntegration, provider_event: ProviderEvent) -> CalendarEvent:
        """Inbound creation; caller owns the transaction"""
        self._check_times(provider_event.start_time, provider_event.end_time)
        cancelled = provider_event.is_cancelled
        event = CalendarEvent(
            company_id=integration.company_id,
            integration_id=integration.id,
            external_id=provider_event.external_id,
            title=provider_event.title or UNTITLED,
            description=provider_event.description,
            location=provider_event.location,
            start_time=provider_event.start_time,
            end_time=provider_event.end_time,
            all_day=provider_event.all_day,
            timezone=provider_event.timezone,
            event_type=EventType.MEETING.value,
            status=EventStatus.CANCELLED.value if cancelled else EventStatus.SCHEDULED.value,
            source=integration.provider,
            attendees=list(provider_event.attendees),
            etag=provider_event.etag,
            provider_updated_at=provider_event.updated_at,
            sync_status="synced",
            cancelled_at=utcnow() if cancelled else None,
            cancellation_reason="Cancelled at provider" if cancelled else None,
        )
        self.db.add(event)
        self.db.flush()
        if not cancelled:
            self._queue(Transition.CREATED, event)
        return event

    def apply_provider_changes(self, event: CalendarEvent, provider_event: ProviderEvent) -> bool:
        """Inbound field update; stamps the revision and reports whether any field changed"""
        if event.status in TERMINAL_STATUSES:
            return False

        changed = False
        updates = {
            "title": provider_event.title or UNTITLED,
            "description": provider_event.description,
            "location": provider_event.location,
            "all_day": provider_event.all_day,
            "attendees": list(provider_event.attendees),
        }
        if provider_event.timezone:
            updates["timezone"] = provider_event.timezone
        for name, value in updates.items():
            if getattr(event, name) != value:
                setattr(event, name, value)
                changed = True

        if provider_event.has_times and (
                provider_event.start_time != event.start_time or provider_event.end_time != event.end_time
        ):
            self._check_times(provider_event.start_time, provider_event.end_time)
            self._record_move(event, provider_event.start_time, provider_event.end_time, "Changed at provider")
            changed = True

        event.etag = provider_event.etag
        event.provider_updated_at = provider_event.updated_at
        event.sync_status = "synced"
        self.db.flush()
        if changed:
            self._queue(Transition.UPDATED, event)
        return changed

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------
    def confirm(self, event_id, company_id) -> TransitionOutcome:
        event = self.get_event(event_id, company_id)
        if event.status in TERMINAL_STATUSES:
            raise NotFound(f"Event {event_id} not found or already closed")
        if event.status == EventStatus.CONFIRMED.value:
            return TransitionOutcome(event=event, changed=False)

        event.status = EventStatus.CONFIRMED.value
        self._queue(Transition.CONFIRMED, event)
        self._commit()
        return TransitionOutcome(event=event)

    def complete(self, event_id, company_id) -> TransitionOutcome:
        event = self._open_event(event_id, company_id, "complete")
        event.status = EventStatus.COMPLETED.value
        event.completed_at = utcnow()
        self._queue(Transition.COMPLETED, event)
        self._commit()
        return TransitionOutcome(event=event)

    def cancel(
            self,
            event_id,
            company_id,
            reason: Optional[str] = None,
            propagate_remote: bool = True,
            commit: bool = True,
    ) -> TransitionOutcome:
        """Idempotent; the remote cancel is best-effort and never blocks the local transition"""
        event = self.get_event(event_id, company_id)
        if event.status == EventStatus.CANCELLED.value:
            return TransitionOutcome(event=event, changed=False)
        if event.status in TERMINAL_STATUSES:
            raise InvalidTransition(
                f"Cannot cancel event {event.id}: status '{event.status}' is terminal",
                event_id=str(event.id),
                status=event.status,
            )

        event.status = EventStatus.CANCELLED.value
        event.cancelled_at = utcnow()
        event.cancellation_reason = reason
        self._queue(Transition.CANCELLED, event)
        outcome = TransitionOutcome(event=event)
        if not commit:
            self.db.flush()
            return outcome
        self._commit()

        if propagate_remote and self.remote is not None:
            result = self.remote.cancel_remote_event(event)
            if not result.ok:
                outcome.warnings.append(result.warning)
                event.sync_status = "error"
                event.sync_error = result.warning
                self.db.commit()
        return outcome

    def mark_no_show(
            self,
            event_id,
            company_id,
            schedule_retry: bool = False,
            retry_date: Optional[datetime] = None,
            retry_notes: Optional[str] = None,
    ) -> TransitionOutcome:
        event = self._open_event(event_id, company_id, "mark no-show on")
        event.status = EventStatus.NO_SHOW.value
        self._queue(Transition.NO_SHOW, event)
        outcome = TransitionOutcome(event=event)

        if schedule_retry:
            outcome.retry_event = self._spawn_retry(event, retry_date, retry_notes, outcome.warnings)

        self._commit()
        if outcome.retry_event is not None:
            self.db.refresh(outcome.retry_event)
        return outcome

    def _spawn_retry(
            self,
            event: CalendarEvent,
            retry_date: Optional[datetime],
            retry_notes: Optional[str],
            warnings: List[str],
    ) -> CalendarEvent:
        start = retry_date or self.availability.add_business_days(event.company_id, utcnow(), 2)
        end = start + timedelta(minutes=self.settings.NO_SHOW_RETRY_DURATION_MINUTES)
        check = self.availability.is_slot_available(event.company_id, start, end, exclude_event_id=event.id)

        retry = CalendarEvent(
            company_id=event.company_id,
            title=f"No-Show Retry: {event.title}",
            description=event.description,
            location=event.location,
            start_time=start,
            end_time=end,
            timezone=event.timezone,
            event_type=EventType.NO_SHOW_RETRY.value,
            status=EventStatus.SCHEDULED.value,
            source=EventSource.MANUAL.value,
            contact_id=event.contact_id,
            attendees=list(event.attendees or []),
            notes=retry_notes,
            parent_event_id=event.id,
            needs_manual_reschedule=not check.available,
        )
        self.db.add(retry)
        self.db.flush()
        if not check.available:
            warnings.append(
                f"Retry slot overlaps event {check.conflicting_event_id}; flagged for manual reschedule"
            )
        self._queue(Transition.CREATED, retry)
        logger.info(f"Scheduled no-show retry {retry.id} for event {event.id} at {start.isoformat()}")
        return retry

    def reschedule(
            self,
            event_id,
            company_id,
            new_start: datetime,
            new_end: datetime,
            reason: Optional[str] = None,
            override_conflict: bool = False,
    ) -> TransitionOutcome:
        event = self._open_event(event_id, company_id, "reschedule")
        self._check_times(new_start, new_end)

        check = self.availability.is_slot_available(event.company_id, new_start, new_end, exclude_event_id=event.id)
        outcome = TransitionOutcome(event=event)
        if not check.available:
            if not override_conflict:
                raise SlotConflict(conflicting_event_id=check.conflicting_event_id)
            outcome.warnings.append(f"Rescheduled over conflicting event {check.conflicting_event_id}")

        self._record_move(event, new_start, new_end, reason)
        event.status = EventStatus.SCHEDULED.value
        event.rescheduled_count = (event.rescheduled_count or 0) + 1
        event.rescheduled_reason = reason
        event.needs_manual_reschedule = False
        self._queue(Transition.RESCHEDULED, event)
        self._commit()
        self._push_update(outcome)
        return outcome

    def _push_update(self, outcome: TransitionOutcome) -> None:
        """Best-effort write-back to the provider copy after the local commit"""
        event = outcome.event
        if self.remote is None or not event.integration_id or not event.external_id:
            return
        result = self.remote.update_remote_event(event)
        if not result.ok:
            outcome.warnings.append(result.warning)
        self.db.commit()

    @staticmethod
    def _record_move(event: CalendarEvent, new_start: datetime, new_end: datetime, reason: Optional[str]) -> None:
        if event.original_start_time is None:
            event.original_start_time = event.start_time
            event.original_end_time = event.end_time
        entry = {
            "from_start": event.start_time.isoformat(),
            "from_end": event.end_time.isoformat(),
            "to_start": new_start.isoformat(),
            "to_end": new_end.isoformat(),
            "reason": reason,
            "at": utcnow().isoformat(),
        }
        # Reassign so the JSON column is marked dirty
        event.reschedule_history = [*(event.reschedule_history or []), entry]
        event.start_time = new_start
        event.end_time = new_end

    def update_details(self, event_id, company_id, **fields) -> TransitionOutcome:
        """Non-status fields only"""
        unknown = set(fields) - set(DETAIL_FIELDS)
        if unknown:
            raise InvalidTransition(f"Fields cannot be updated: {', '.join(sorted(unknown))}")
        event = self._open_event(event_id, company_id, "update")
        if "title" in fields and not (fields["title"] or "").strip():
            raise InvalidTransition("title cannot be empty")

        changed = False
        for name, value in fields.items():
            if getattr(event, name) != value:
                setattr(event, name, value)
                changed = True
        if not changed:
            return TransitionOutcome(event=event, changed=False)

        self._queue(Transition.UPDATED, event)
        self._commit()
        outcome = TransitionOutcome(event=event)
        if set(fields) & set(REMOTE_FIELDS):
            self._push_update(outcome)
        return outcome
