from datetime import date

import pytest

from app.schemas.availability import ScheduleConfig, SlotStatus
from app.services.availability.availability_service import AvailabilityService, overlaps
from conftest import COMPANY_ID, OTHER_COMPANY_ID, at

TUESDAY = date(2025, 6, 10)


@pytest.fixture()
def availability(db):
    service = AvailabilityService(db)
    service.save_schedule(COMPANY_ID, ScheduleConfig(
        timezone="UTC",
        working_hours_start="09:00",
        working_hours_end="17:00",
    ))
    return service


def test_empty_working_day_has_sixteen_free_half_hour_slots(availability):
    result = availability.get_availability(COMPANY_ID, TUESDAY, 30)

    assert result.is_working_day
    assert len(result.slots) == 16
    assert all(slot.status == SlotStatus.FREE for slot in result.slots)
    assert result.slots[0].start_time == at(2025, 6, 10, 9)
    assert result.slots[-1].end_time == at(2025, 6, 10, 17)


def test_touching_boundary_is_available(availability, make_event):
    make_event(at(2025, 6, 10, 10))

    check = availability.is_slot_available(COMPANY_ID, at(2025, 6, 10, 9, 30), at(2025, 6, 10, 10))

    assert check.available
    assert check.conflicting_event_id is None


def test_partial_overlap_reports_conflicting_event(availability, make_event):
    booked = make_event(at(2025, 6, 10, 10))

    check = availability.is_slot_available(COMPANY_ID, at(2025, 6, 10, 9, 45), at(2025, 6, 10, 10, 15))

    assert not check.available
    assert check.conflicting_event_id == str(booked.id)


def test_overlap_is_symmetric():
    a = (at(2025, 6, 10, 9), at(2025, 6, 10, 10))
    b = (at(2025, 6, 10, 9, 30), at(2025, 6, 10, 11))
    c = (at(2025, 6, 10, 10), at(2025, 6, 10, 11))

    assert overlaps(*a, *b) and overlaps(*b, *a)
    assert not overlaps(*a, *c) and not overlaps(*c, *a)


def test_cancelled_and_foreign_events_do_not_block(availability, make_event):
    make_event(at(2025, 6, 10, 10), status="cancelled")
    make_event(at(2025, 6, 10, 10), company_id=OTHER_COMPANY_ID)

    assert availability.is_slot_available(COMPANY_ID, at(2025, 6, 10, 10), at(2025, 6, 10, 10, 30)).available


def test_busy_slot_is_labelled(availability, make_event):
    booked = make_event(at(2025, 6, 10, 11), minutes=60)

    result = availability.get_availability(COMPANY_ID, TUESDAY, 30)
    busy = [slot for slot in result.slots if slot.status == SlotStatus.BUSY]

    assert [slot.start_time for slot in busy] == [at(2025, 6, 10, 11), at(2025, 6, 10, 11, 30)]
    assert {slot.conflicting_event_id for slot in busy} == {str(booked.id)}
    assert len(result.free_slots) == 14


def test_slot_never_runs_past_closing(availability):
    result = availability.get_availability(COMPANY_ID, TUESDAY, 45)

    assert len(result.slots) == 10
    assert result.slots[-1].end_time <= at(2025, 6, 10, 17)


def test_weekend_has_no_slots(availability):
    result = availability.get_availability(COMPANY_ID, date(2025, 6, 14), 30)

    assert not result.is_working_day
    assert result.slots == []


def test_holidays_are_closed_only_when_excluded(availability):
    independence_day = date(2025, 7, 4)

    open_result = availability.get_availability(COMPANY_ID, independence_day, 30)
    assert not open_result.is_holiday
    assert len(open_result.slots) == 16

    availability.save_schedule(COMPANY_ID, ScheduleConfig(
        timezone="UTC",
        working_hours_start="09:00",
        working_hours_end="17:00",
        exclude_holidays=True,
    ))
    closed = availability.get_availability(COMPANY_ID, independence_day, 30)
    assert closed.is_holiday
    assert closed.holiday_name == "Independence Day"
    assert closed.slots == []


def test_slots_follow_company_timezone(db):
    service = AvailabilityService(db)
    service.save_schedule(COMPANY_ID, ScheduleConfig(
        timezone="America/New_York",
        working_hours_start="09:00",
        working_hours_end="10:00",
    ))

    result = service.get_availability(COMPANY_ID, TUESDAY, 30)

    assert [slot.start_time for slot in result.slots] == [at(2025, 6, 10, 13), at(2025, 6, 10, 13, 30)]


def test_default_schedule_without_row(db):
    schedule = AvailabilityService(db).get_schedule(COMPANY_ID)

    assert schedule.working_hours_start == "09:00"
    assert schedule.working_days == ["monday", "tuesday", "wednesday", "thursday", "friday"]


def test_schedule_rejects_inverted_hours():
    with pytest.raises(ValueError):
        ScheduleConfig(timezone="UTC", working_hours_start="17:00", working_hours_end="09:00")


def test_next_available_slot_skips_busy_and_weekend(availability, make_event):
    # Friday afternoon, last slot taken
    make_event(at(2025, 6, 13, 16, 30))

    slot = availability.next_available_slot(COMPANY_ID, at(2025, 6, 13, 16, 10), 30)

    assert slot.start_time == at(2025, 6, 16, 9)


def test_add_business_days_keeps_time_of_day(availability):
    friday_afternoon = at(2025, 6, 13, 15)

    assert availability.add_business_days(COMPANY_ID, friday_afternoon, 2) == at(2025, 6, 17, 15)


def test_add_business_days_skips_holidays_when_excluded(db):
    service = AvailabilityService(db)
    service.save_schedule(COMPANY_ID, ScheduleConfig(timezone="UTC", exclude_holidays=True))

    # Thursday before Independence Day (Friday)
    result = service.add_business_days(COMPANY_ID, at(2025, 7, 3, 10), 1)

    assert result == at(2025, 7, 7, 10)
    assert result.tzinfo is not None
