from datetime import datetime, timezone

import pytest
from prometheus_client import REGISTRY

from clinic_booking.app import availability as availability_store
from clinic_booking.app import booking
from clinic_booking.app.errors import (AppointmentFinalized, AppointmentNotFound, AvailabilityNotConfigured,
                                       BookingClosed, InvalidFormat, InvalidTransition, OutsideWorkingHours,
                                       SessionFull, SlotTaken)
from clinic_booking.app.events import list_events
from clinic_booking.app.models import Appointment

MONDAY = "2030-01-07"


def configure_day(db, capacity=5, duration=15):
    availability_store.upsert_day(db, "doc-1", MONDAY, "09:00", "10:00", duration, capacity)
    availability_store.upsert_day(db, "doc-1", MONDAY, "14:00", "15:00", duration, capacity)


def attempts(operation, outcome):
    return REGISTRY.get_sample_value("booking_attempts_total", {"operation": operation, "outcome": outcome}) or 0


def test_queue_numbers_follow_booking_order(db, now):
    configure_day(db, capacity=5)
    queue = [booking.book(db, "doc-1", f"pat-{i}", MONDAY, start, now=now).queue_no
             for i, start in enumerate(["09:30", "09:00", "09:15"])]
    assert queue == [1, 2, 3]


def test_booking_fills_in_slot_details(db, now):
    configure_day(db)
    appointment = booking.book(
        db, "doc-1", "pat-1", MONDAY, "09:15", now=now,
        snapshot={"patient_name": "  Nimal Perera ", "patient_phone": "0771234567"},
        reason="Follow up",
    )

    assert appointment.end_time == "09:30"
    assert appointment.status == "Booked"
    assert appointment.patient_name == "Nimal Perera"
    assert appointment.patient_email == ""
    assert appointment.reason == "Follow up"
    assert appointment.reference_no == "AP-2030-000001"


def test_reference_numbers_are_sequential(db, now):
    configure_day(db)
    first = booking.book(db, "doc-1", "pat-1", MONDAY, "09:00", now=now)
    second = booking.book(db, "doc-1", "pat-2", MONDAY, "09:15", now=now)
    assert first.reference_no == "AP-2030-000001"
    assert second.reference_no == "AP-2030-000002"


def test_session_full(db, now):
    configure_day(db, capacity=2)
    booking.book(db, "doc-1", "pat-1", MONDAY, "09:00", now=now)
    booking.book(db, "doc-1", "pat-2", MONDAY, "09:15", now=now)
    before = attempts("book", "SessionFull")

    with pytest.raises(SessionFull):
        booking.book(db, "doc-1", "pat-3", MONDAY, "09:30", now=now)

    assert attempts("book", "SessionFull") == before + 1
    # The other session has its own capacity
    assert booking.book(db, "doc-1", "pat-3", MONDAY, "14:00", now=now).queue_no == 1


def test_slot_taken(db, now):
    configure_day(db)
    booking.book(db, "doc-1", "pat-1", MONDAY, "09:00", now=now)
    with pytest.raises(SlotTaken):
        booking.book(db, "doc-1", "pat-2", MONDAY, "09:00", now=now)
    assert db.query(Appointment).count() == 1


def test_cancelled_slot_can_be_rebooked(db, now):
    configure_day(db)
    first = booking.book(db, "doc-1", "pat-1", MONDAY, "09:00", now=now)
    booking.cancel(db, first.id)

    second = booking.book(db, "doc-1", "pat-2", MONDAY, "09:00", now=now)
    assert second.queue_no == 1


def test_booking_closed_inside_cutoff(db):
    configure_day(db)
    with pytest.raises(BookingClosed):
        booking.book(db, "doc-1", "pat-1", MONDAY, "09:00", now=datetime(2030, 1, 7, 8, 45, tzinfo=timezone.utc))
    appointment = booking.book(db, "doc-1", "pat-1", MONDAY, "09:00",
                               now=datetime(2030, 1, 7, 8, 44, tzinfo=timezone.utc))
    assert appointment.id is not None


@pytest.mark.parametrize("start_time", ["10:00", "08:45", "09:05", "12:00"])
def test_outside_working_hours(db, now, start_time):
    configure_day(db)
    with pytest.raises(OutsideWorkingHours):
        booking.book(db, "doc-1", "pat-1", MONDAY, start_time, now=now)


def test_no_hours_on_other_weekdays(db, now):
    configure_day(db)
    with pytest.raises(OutsideWorkingHours):
        booking.book(db, "doc-1", "pat-1", "2030-01-08", "09:00", now=now)


def test_availability_not_configured(db, now):
    with pytest.raises(AvailabilityNotConfigured):
        booking.book(db, "doc-unknown", "pat-1", MONDAY, "09:00", now=now)


def test_invalid_input(db, now):
    configure_day(db)
    with pytest.raises(InvalidFormat) as exc:
        booking.book(db, "doc-1", "pat-1", MONDAY, "9:00", now=now)
    assert exc.value.field == "start_time"
    with pytest.raises(InvalidFormat):
        booking.book(db, "doc-1", "pat-1", MONDAY, "09:00", now=now, payment_method="Cheque")


def test_payment_flow(db, now):
    configure_day(db)
    appointment = booking.book(db, "doc-1", "pat-1", MONDAY, "09:00", now=now, payment_required=True,
                               payment_method="Online", price=2500)
    assert appointment.status == "AwaitingPayment"

    appointment = booking.confirm_payment(db, appointment.id)
    assert appointment.status == "Confirmed"
    with pytest.raises(InvalidTransition):
        booking.confirm_payment(db, appointment.id)


def test_reschedule_into_full_session(db, now):
    configure_day(db, capacity=2)
    booking.book(db, "doc-1", "pat-1", MONDAY, "09:00", now=now)
    booking.book(db, "doc-1", "pat-2", MONDAY, "09:15", now=now)
    afternoon = booking.book(db, "doc-1", "pat-3", MONDAY, "14:00", now=now)

    with pytest.raises(SessionFull):
        booking.reschedule(db, afternoon.id, MONDAY, "09:30", now=now)

    unchanged = booking.get_appointment(db, afternoon.id)
    assert unchanged.start_time == "14:00"


def test_reschedule_within_own_session(db, now):
    configure_day(db, capacity=2)
    first = booking.book(db, "doc-1", "pat-1", MONDAY, "09:00", now=now)
    booking.book(db, "doc-1", "pat-2", MONDAY, "09:15", now=now)
    booking.change_status(db, first.id, "CheckedIn")

    moved = booking.reschedule(db, first.id, MONDAY, "09:45", now=now)

    assert moved.start_time == "09:45"
    assert moved.end_time == "10:00"
    assert moved.queue_no == 2
    assert moved.status == "Booked"


def test_reschedule_completed_appointment(db, now):
    configure_day(db)
    appointment = booking.book(db, "doc-1", "pat-1", MONDAY, "09:00", now=now)
    booking.change_status(db, appointment.id, "Completed")

    with pytest.raises(AppointmentFinalized):
        booking.reschedule(db, appointment.id, MONDAY, "09:30", now=now)


def test_reschedule_onto_taken_slot(db, now):
    configure_day(db)
    booking.book(db, "doc-1", "pat-1", MONDAY, "09:00", now=now)
    second = booking.book(db, "doc-1", "pat-2", MONDAY, "09:15", now=now)
    with pytest.raises(SlotTaken):
        booking.reschedule(db, second.id, MONDAY, "09:00", now=now)


def test_reschedule_missing_appointment(db, now):
    configure_day(db)
    with pytest.raises(AppointmentNotFound):
        booking.reschedule(db, 999, MONDAY, "09:00", now=now)


def test_cancelled_appointment_cannot_change_status(db, now):
    configure_day(db)
    appointment = booking.book(db, "doc-1", "pat-1", MONDAY, "09:00", now=now)
    booking.change_status(db, appointment.id, "Cancelled")

    with pytest.raises(InvalidTransition):
        booking.change_status(db, appointment.id, "CheckedIn")


def test_cancel_is_idempotent(db, now):
    configure_day(db)
    appointment = booking.book(db, "doc-1", "pat-1", MONDAY, "09:00", now=now)
    booking.cancel(db, appointment.id)
    assert booking.cancel(db, appointment.id).status == "Cancelled"

    cancelled_events = [e for e in list_events(db) if e.event_type == "cancelled"]
    assert len(cancelled_events) == 1


def test_cancel_completed_appointment(db, now):
    configure_day(db)
    appointment = booking.book(db, "doc-1", "pat-1", MONDAY, "09:00", now=now)
    booking.change_status(db, appointment.id, "Completed")
    with pytest.raises(InvalidTransition):
        booking.cancel(db, appointment.id)


def test_events_are_recorded(db, now):
    configure_day(db)
    appointment = booking.book(db, "doc-1", "pat-1", MONDAY, "09:00", now=now,
                               snapshot={"patient_email": "pat@example.com"})
    booking.reschedule(db, appointment.id, MONDAY, "09:30", now=now)
    booking.change_status(db, appointment.id, "CheckedIn")

    events = list_events(db)
    assert [e.event_type for e in events] == ["booked", "rescheduled", "status_changed"]
    assert events[0].reference_no == appointment.reference_no
    assert events[0].payload["patient_email"] == "pat@example.com"
    assert events[1].payload["previous_start_time"] == "09:00"
    assert events[2].payload["previous_status"] == "Booked"
    assert [e.id for e in list_events(db, after_id=events[0].id)] == [events[1].id, events[2].id]


def test_failed_booking_leaves_no_event(db, now):
    configure_day(db)
    booking.book(db, "doc-1", "pat-1", MONDAY, "09:00", now=now)
    with pytest.raises(SlotTaken):
        booking.book(db, "doc-1", "pat-2", MONDAY, "09:00", now=now)
    assert len(list_events(db)) == 1


def test_list_filters(db, now):
    configure_day(db)
    booking.book(db, "doc-1", "pat-1", MONDAY, "09:00", now=now)
    second = booking.book(db, "doc-1", "pat-1", MONDAY, "14:00", now=now)
    booking.book(db, "doc-1", "pat-2", MONDAY, "09:15", now=now)
    booking.cancel(db, second.id)

    assert len(booking.list_for_patient(db, "pat-1")) == 2
    assert [a.start_time for a in booking.list_for_patient(db, "pat-1", status="Booked")] == ["09:00"]
    assert [a.start_time for a in booking.list_for_doctor(db, "doc-1")] == ["09:00", "09:15", "14:00"]
    assert len(booking.list_for_doctor(db, "doc-1", patient_ref="pat-2")) == 1
    assert booking.list_for_doctor(db, "doc-1", date_from="2030-01-08") == []
    with pytest.raises(InvalidFormat):
        booking.list_for_doctor(db, "doc-1", status="Done")


def test_purge_appointments(db, now):
    configure_day(db)
    booking.book(db, "doc-1", "pat-1", MONDAY, "09:00", now=now)
    cancelled = booking.book(db, "doc-1", "pat-2", MONDAY, "09:15", now=now)
    booking.cancel(db, cancelled.id)

    assert booking.purge_appointments(db, "doc-1") == 2
    assert booking.list_for_doctor(db, "doc-1") == []

    purged = [e for e in list_events(db) if e.payload.get("purged")]
    assert len(purged) == 1
