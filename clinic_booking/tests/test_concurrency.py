from concurrent.futures import ThreadPoolExecutor

from clinic_booking.app import availability as availability_store
from clinic_booking.app import booking
from clinic_booking.app.errors import BookingError, SessionFull, SlotTaken
from clinic_booking.app.models import Appointment

MONDAY = "2030-01-07"


def book_in_own_session(session_factory, now, patient_ref, start_time):
    db = session_factory()
    try:
        appointment = booking.book(db, "doc-1", patient_ref, MONDAY, start_time, now=now)
        return appointment.queue_no
    except BookingError as e:
        return e
    finally:
        db.close()


def run_concurrently(session_factory, now, requests):
    with ThreadPoolExecutor(max_workers=len(requests)) as executor:
        futures = [executor.submit(book_in_own_session, session_factory, now, patient_ref, start_time)
                   for patient_ref, start_time in requests]
        return [future.result() for future in futures]


def test_same_slot_is_booked_once(db, session_factory, now):
    availability_store.upsert_day(db, "doc-1", MONDAY, "09:00", "10:00", 15, 10)

    results = run_concurrently(session_factory, now, [(f"pat-{i}", "09:00") for i in range(8)])

    successes = [r for r in results if not isinstance(r, BookingError)]
    failures = [r for r in results if isinstance(r, BookingError)]
    assert successes == [1]
    assert all(isinstance(f, SlotTaken) for f in failures), failures
    assert db.query(Appointment).count() == 1


def test_capacity_holds_under_concurrent_bookings(db, session_factory, now):
    availability_store.upsert_day(db, "doc-1", MONDAY, "09:00", "10:30", 15, 3)
    starts = ["09:00", "09:15", "09:30", "09:45", "10:00", "10:15"]

    results = run_concurrently(session_factory, now, [(f"pat-{i}", start) for i, start in enumerate(starts)])

    successes = [r for r in results if not isinstance(r, BookingError)]
    failures = [r for r in results if isinstance(r, BookingError)]
    assert sorted(successes) == [1, 2, 3], "Queue numbers are handed out without gaps or repeats"
    assert len(failures) == 3
    assert all(isinstance(f, SessionFull) for f in failures), failures
    assert db.query(Appointment).count() == 3
