import uuid
from datetime import timedelta

import pytest

from app.core.exceptions import InvalidTransition, NotFound, ProviderUnavailable, SlotConflict
from app.models import CalendarEvent
from app.models.base import utcnow
from app.schemas.calendar_events import CalendarProvider, EventCreateRequest
from app.services.notification.notifier import Transition
from conftest import COMPANY_ID, OTHER_COMPANY_ID, USER_ID, at


@pytest.fixture()
def machine(services):
    return services.state_machine


def _request(**fields):
    fields.setdefault("title", "Intro call")
    fields.setdefault("start_time", at(2025, 6, 10, 14))
    fields.setdefault("end_time", at(2025, 6, 10, 14, 30))
    return EventCreateRequest(**fields)


def test_create_event_stores_manual_scheduled_event(machine, notifier):
    outcome = machine.create_event(COMPANY_ID, _request(event_type="call"))

    event = outcome.event
    assert event.status == "scheduled"
    assert event.source == "manual"
    assert event.event_type == "call"
    assert outcome.warnings == []
    assert notifier.sent == [(Transition.CREATED, event.id)]


def test_create_event_rejects_conflict(machine, make_event):
    booked = make_event(at(2025, 6, 10, 14))

    with pytest.raises(SlotConflict) as exc_info:
        machine.create_event(COMPANY_ID, _request(start_time=at(2025, 6, 10, 14, 15), end_time=at(2025, 6, 10, 14, 45)))

    assert exc_info.value.conflicting_event_id == str(booked.id)


def test_create_event_override_books_with_warning(machine, make_event):
    make_event(at(2025, 6, 10, 14))

    outcome = machine.create_event(COMPANY_ID, _request(allow_conflict=True))

    assert outcome.event.id is not None
    assert len(outcome.warnings) == 1


def test_create_event_pushes_to_provider(machine, make_integration, google):
    integration = make_integration()

    outcome = machine.create_event(COMPANY_ID, _request(sync_to_google=True), user_id=USER_ID)

    assert outcome.event.integration_id == integration.id
    assert outcome.event.external_id == f"remote-{outcome.event.id}"
    assert outcome.event.sync_status == "synced"
    assert len(google.pushed) == 1


def test_push_without_integration_keeps_local_event(machine):
    outcome = machine.create_event(COMPANY_ID, _request(sync_to_provider=CalendarProvider.MICROSOFT))

    assert outcome.event.status == "scheduled"
    assert outcome.event.sync_status == "error"
    assert outcome.warnings


def test_confirm_is_idempotent(machine, make_event):
    event = make_event(at(2025, 6, 10, 14))

    assert machine.confirm(event.id, COMPANY_ID).event.status == "confirmed"
    again = machine.confirm(event.id, COMPANY_ID)

    assert again.event.status == "confirmed"
    assert again.changed is False


def test_confirm_terminal_event_is_not_found(machine, make_event):
    event = make_event(at(2025, 6, 10, 14), status="completed")

    with pytest.raises(NotFound):
        machine.confirm(event.id, COMPANY_ID)


def test_other_company_cannot_touch_event(machine, make_event):
    event = make_event(at(2025, 6, 10, 14))

    with pytest.raises(NotFound):
        machine.cancel(event.id, OTHER_COMPANY_ID)


def test_cancel_is_idempotent_and_terminal(machine, make_event):
    event = make_event(at(2025, 6, 10, 14))

    first = machine.cancel(event.id, COMPANY_ID, reason="Customer asked")
    second = machine.cancel(event.id, COMPANY_ID)

    assert first.event.status == "cancelled"
    assert first.event.cancellation_reason == "Customer asked"
    assert first.event.cancelled_at is not None
    assert second.changed is False

    with pytest.raises(InvalidTransition):
        machine.reschedule(event.id, COMPANY_ID, at(2025, 6, 11, 9), at(2025, 6, 11, 9, 30))
    with pytest.raises(InvalidTransition):
        machine.complete(event.id, COMPANY_ID)


def test_cancel_propagates_to_provider_copy(machine, make_integration, make_event, google):
    integration = make_integration()
    event = make_event(
        at(2025, 6, 10, 14), source="google_calendar", integration_id=integration.id, external_id="g-1"
    )

    outcome = machine.cancel(event.id, COMPANY_ID)

    assert google.cancelled == ["g-1"]
    assert outcome.warnings == []


def test_remote_cancel_failure_is_a_warning(machine, make_integration, make_event, google):
    integration = make_integration()
    event = make_event(
        at(2025, 6, 10, 14), source="google_calendar", integration_id=integration.id, external_id="g-1"
    )
    google.cancel_error = ProviderUnavailable("down")

    outcome = machine.cancel(event.id, COMPANY_ID)

    assert outcome.event.status == "cancelled"
    assert outcome.event.sync_status == "error"
    assert len(outcome.warnings) == 1


def test_no_show_with_retry_spawns_follow_up(machine, make_event, db):
    contact_id = uuid.UUID("00000000-0000-0000-0000-00000000c0c0")
    event = make_event(at(2025, 6, 10, 14), contact_id=contact_id)
    before = utcnow()

    outcome = machine.mark_no_show(event.id, COMPANY_ID, schedule_retry=True)

    assert outcome.event.status == "no_show"
    retry = outcome.retry_event
    assert retry.event_type == "no_show_retry"
    assert retry.contact_id == event.contact_id
    assert retry.parent_event_id == event.id
    assert retry.title == f"No-Show Retry: {event.title}"
    assert retry.end_time - retry.start_time == timedelta(minutes=15)
    # Two business days: at least two and at most four calendar days out
    assert timedelta(days=2) - timedelta(minutes=1) <= retry.start_time - before <= timedelta(days=4, minutes=1)
    assert db.query(CalendarEvent).filter(CalendarEvent.parent_event_id == event.id).count() == 1


def test_no_show_retry_conflict_is_flagged(machine, make_event):
    event = make_event(at(2025, 6, 10, 14))
    retry_at = at(2025, 6, 12, 10)
    make_event(retry_at)

    outcome = machine.mark_no_show(event.id, COMPANY_ID, schedule_retry=True, retry_date=retry_at)

    assert outcome.retry_event.needs_manual_reschedule is True
    assert outcome.warnings


def test_reschedule_keeps_original_times(machine, make_event):
    event = make_event(at(2025, 6, 10, 14))

    machine.reschedule(event.id, COMPANY_ID, at(2025, 6, 11, 9), at(2025, 6, 11, 9, 30), reason="Traffic")
    outcome = machine.reschedule(event.id, COMPANY_ID, at(2025, 6, 12, 9), at(2025, 6, 12, 9, 30))

    moved = outcome.event
    assert moved.original_start_time == at(2025, 6, 10, 14)
    assert moved.start_time == at(2025, 6, 12, 9)
    assert moved.rescheduled_count == 2
    assert len(moved.reschedule_history) == 2
    assert moved.reschedule_history[0]["reason"] == "Traffic"


def test_reschedule_into_conflict(machine, make_event):
    event = make_event(at(2025, 6, 10, 14))
    blocker = make_event(at(2025, 6, 11, 9))

    with pytest.raises(SlotConflict) as exc_info:
        machine.reschedule(event.id, COMPANY_ID, at(2025, 6, 11, 9), at(2025, 6, 11, 9, 30))
    assert exc_info.value.conflicting_event_id == str(blocker.id)

    outcome = machine.reschedule(
        event.id, COMPANY_ID, at(2025, 6, 11, 9), at(2025, 6, 11, 9, 30), override_conflict=True
    )
    assert outcome.warnings


def test_reschedule_within_own_slot_is_not_a_conflict(machine, make_event):
    event = make_event(at(2025, 6, 10, 14), minutes=60)

    outcome = machine.reschedule(event.id, COMPANY_ID, at(2025, 6, 10, 14, 30), at(2025, 6, 10, 15, 30))

    assert outcome.event.start_time == at(2025, 6, 10, 14, 30)


def test_update_details_leaves_status_alone(machine, make_event):
    event = make_event(at(2025, 6, 10, 14))

    outcome = machine.update_details(event.id, COMPANY_ID, title="Renamed", notes="Bring contract")

    assert outcome.event.title == "Renamed"
    assert outcome.event.notes == "Bring contract"
    assert outcome.event.status == "scheduled"

    with pytest.raises(InvalidTransition):
        machine.update_details(event.id, COMPANY_ID, status="completed")
    with pytest.raises(InvalidTransition):
        machine.update_details(event.id, COMPANY_ID, title="  ")


def test_complete_sets_timestamp(machine, make_event, notifier):
    event = make_event(at(2025, 6, 10, 14))

    outcome = machine.complete(event.id, COMPANY_ID)

    assert outcome.event.status == "completed"
    assert outcome.event.completed_at is not None
    assert notifier.sent[-1] == (Transition.COMPLETED, event.id)


def test_no_show_is_terminal_and_spawns_one_retry(machine, make_event, db):
    event = make_event(at(2025, 6, 10, 14))
    machine.mark_no_show(event.id, COMPANY_ID, schedule_retry=True)

    with pytest.raises(InvalidTransition):
        machine.mark_no_show(event.id, COMPANY_ID, schedule_retry=True)

    assert db.query(CalendarEvent).filter(CalendarEvent.parent_event_id == event.id).count() == 1
    db.refresh(event)
    assert event.status == "no_show"


@pytest.mark.parametrize("status", ["completed", "no_show"])
def test_closed_events_reject_confirm_and_reschedule(machine, make_event, db, status):
    event = make_event(at(2025, 6, 10, 14), status=status)

    with pytest.raises(NotFound):
        machine.confirm(event.id, COMPANY_ID)
    with pytest.raises(InvalidTransition):
        machine.reschedule(event.id, COMPANY_ID, at(2025, 6, 11, 9), at(2025, 6, 11, 9, 30))
    with pytest.raises(InvalidTransition):
        machine.cancel(event.id, COMPANY_ID)

    db.refresh(event)
    assert event.status == status
    assert event.start_time == at(2025, 6, 10, 14)


def test_reschedule_is_written_back_to_provider(machine, make_integration, make_event, google):
    integration = make_integration()
    google.put("g-1", at(2025, 6, 10, 14))
    event = make_event(
        at(2025, 6, 10, 14), source="google_calendar", integration_id=integration.id, external_id="g-1"
    )

    outcome = machine.reschedule(event.id, COMPANY_ID, at(2025, 6, 10, 17), at(2025, 6, 10, 17, 30))

    assert outcome.warnings == []
    assert google.updated == ["g-1"]
    assert google.events["g-1"].start_time == at(2025, 6, 10, 17)
    assert outcome.event.provider_updated_at == google.events["g-1"].updated_at
    assert outcome.event.sync_status == "synced"


def test_remote_update_failure_is_a_warning(machine, make_integration, make_event, google):
    integration = make_integration()
    google.put("g-1", at(2025, 6, 10, 14))
    event = make_event(
        at(2025, 6, 10, 14), source="google_calendar", integration_id=integration.id, external_id="g-1"
    )
    google.update_error = ProviderUnavailable("down")

    outcome = machine.update_details(event.id, COMPANY_ID, title="Site visit")

    assert outcome.event.title == "Site visit"
    assert outcome.event.sync_status == "error"
    assert len(outcome.warnings) == 1


def test_local_only_fields_are_not_pushed(machine, make_integration, make_event, google):
    integration = make_integration()
    google.put("g-1", at(2025, 6, 10, 14))
    event = make_event(
        at(2025, 6, 10, 14), source="google_calendar", integration_id=integration.id, external_id="g-1"
    )

    machine.update_details(event.id, COMPANY_ID, notes="Gate code 4411")

    assert google.updated == []


def test_calendly_reschedule_stays_local_with_warning(machine, make_integration, make_event, adapters):
    integration = make_integration(provider=CalendarProvider.CALENDLY)
    event = make_event(
        at(2025, 6, 10, 14), source="calendly", integration_id=integration.id, external_id="https://cal/E1"
    )

    outcome = machine.reschedule(event.id, COMPANY_ID, at(2025, 6, 10, 17), at(2025, 6, 10, 17, 30))

    assert outcome.event.start_time == at(2025, 6, 10, 17)
    assert outcome.warnings
    assert adapters.get(CalendarProvider.CALENDLY).updated == []
