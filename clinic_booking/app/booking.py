# booking.py
import logging
import os
from datetime import datetime
from typing import Optional

from sqlalchemy import update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from . import events
from .availability import get_availability, working_ranges_for_date
from .errors import (AppointmentNotFound, AvailabilityNotConfigured, BookingClosed, BookingError, InvalidFormat,
                     OutsideWorkingHours, SessionFull, SlotTaken, StorageFailure)
from .metrics import BOOKING_ATTEMPTS
from .models import Appointment, SequenceCounter, SessionLock
from .status import (AppointmentStatus, check_payment_confirmation, check_reschedulable, check_transition,
                     initial_status, parse_status)
from .utils import (as_utc, containing_range, generate_slots, parse_date, to_minutes, utcnow,
                    within_cutoff)

SNAPSHOT_FIELDS = ("patient_name", "patient_phone", "patient_email", "patient_nic", "patient_passport")
CREATED_BY = ("patient", "doctor", "admin")
PAYMENT_METHODS = ("Cash", "Online")


def reference_prefix():
    return os.getenv('REFERENCE_PREFIX', 'AP')


def _insert_ignore(db: Session, model, values: dict, index_elements):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        stmt = postgresql.insert(model).values(**values).on_conflict_do_nothing(index_elements=index_elements)
    elif dialect == "sqlite":
        stmt = sqlite.insert(model).values(**values).on_conflict_do_nothing(index_elements=index_elements)
    else:
        key = {name: values[name] for name in index_elements}
        if db.query(model).filter_by(**key).first() is None:
            db.add(model(**values))
            db.flush()
        return
    db.execute(stmt)


def lock_day(db: Session, doctor_ref: str, ymd: str):
    """
    Serialize every booking into ``doctor_ref``'s ``ymd`` for the rest of the transaction.

    Bumping the lock row takes a row lock on PostgreSQL and the database write
    lock on SQLite, so a concurrent booking for the same day waits here until
    this one commits or rolls back, and its capacity count then sees our insert.
    """
    _insert_ignore(db, SessionLock, {"doctor_ref": doctor_ref, "date": ymd, "version": 0},
                   ["doctor_ref", "date"])
    db.execute(
        update(SessionLock)
        .where(SessionLock.doctor_ref == doctor_ref, SessionLock.date == ymd)
        .values(version=SessionLock.version + 1)
    )


def next_reference_no(db: Session, now: datetime) -> str:
    key = f"{reference_prefix()}-{now.year}"
    _insert_ignore(db, SequenceCounter, {"key": key, "last_number": 0}, ["key"])
    db.execute(
        update(SequenceCounter)
        .where(SequenceCounter.key == key)
        .values(last_number=SequenceCounter.last_number + 1)
    )
    number = db.query(SequenceCounter.last_number).filter(SequenceCounter.key == key).scalar()
    return f"{key}-{number:06d}"


def _resolve_slot(availability, ymd: str, start_time: str):
    ranges = working_ranges_for_date(availability, ymd)
    time_range = containing_range(start_time, ranges)
    if time_range is None:
        raise OutsideWorkingHours(f"{ymd} {start_time} is outside the doctor's working hours")
    slot = next((s for s in generate_slots([time_range], availability.duration_minutes)
                 if s["start_time"] == start_time), None)
    if slot is None:
        raise OutsideWorkingHours(
            f"{start_time} is not the start of a {availability.duration_minutes} minute slot "
            f"in {time_range['start']}-{time_range['end']}")
    return time_range, slot["end_time"]


def _active_in_session(db: Session, doctor_ref: str, ymd: str, time_range, exclude_id=None):
    query = db.query(Appointment).filter(
        Appointment.doctor_ref == doctor_ref,
        Appointment.date == ymd,
        Appointment.start_time >= time_range["start"],
        Appointment.start_time < time_range["end"],
        Appointment.status != AppointmentStatus.CANCELLED.value,
    )
    if exclude_id is not None:
        query = query.filter(Appointment.id != exclude_id)
    return query.order_by(Appointment.start_time).all()


def _check_slot(db: Session, availability, doctor_ref: str, ymd: str, start_time: str, now: datetime,
                exclude_id=None):
    """Working hours, cutoff, capacity and uniqueness checks. Returns (end_time, queue_no)."""
    time_range, end_time = _resolve_slot(availability, ymd, start_time)

    if within_cutoff(ymd, start_time, now):
        raise BookingClosed(f"Booking is closed for {ymd} {start_time}")

    session_appointments = _active_in_session(db, doctor_ref, ymd, time_range, exclude_id)
    if len(session_appointments) >= availability.session_capacity:
        raise SessionFull(f"Session {time_range['start']}-{time_range['end']} on {ymd} is full")

    if any(a.start_time == start_time for a in session_appointments):
        raise SlotTaken("Slot already taken. Please pick another.")

    return end_time, len(session_appointments) + 1


def _validate_request(ymd: str, start_time: str):
    parse_date(ymd)
    try:
        to_minutes(start_time)
    except InvalidFormat as e:
        e.field = "start_time"
        raise


def _fail(db: Session, operation: str, error: BookingError):
    db.rollback()
    BOOKING_ATTEMPTS.labels(operation=operation, outcome=error.code).inc()
    logging.warning(f"{operation} rejected ({error.code}): {error.message}")
    raise error


def book(db: Session, doctor_ref: str, patient_ref: str, ymd: str, start_time: str,
         snapshot: Optional[dict] = None, now: Optional[datetime] = None, payment_required: bool = False,
         reason: str = "", created_by: str = "patient", payment_method: str = "Cash",
         price: int = 0) -> Appointment:
    """
    Reserve ``start_time`` on ``ymd`` with ``doctor_ref`` for ``patient_ref``.

    The whole check-and-insert sequence runs under the day lock, so concurrent
    bookings into the same session cannot jointly exceed its capacity. Any
    failure leaves nothing behind.
    """
    _validate_request(ymd, start_time)
    if created_by not in CREATED_BY:
        raise InvalidFormat(f"created_by must be one of {', '.join(CREATED_BY)}", field="created_by")
    if payment_method not in PAYMENT_METHODS:
        raise InvalidFormat(f"payment_method must be one of {', '.join(PAYMENT_METHODS)}", field="payment_method")
    snapshot = {name: str((snapshot or {}).get(name) or "").strip() for name in SNAPSHOT_FIELDS}
    now = as_utc(now or utcnow())

    try:
        lock_day(db, doctor_ref, ymd)

        availability = get_availability(db, doctor_ref)
        if availability is None:
            raise AvailabilityNotConfigured("Doctor availability not configured")

        end_time, queue_no = _check_slot(db, availability, doctor_ref, ymd, start_time, now)

        appointment = Appointment(
            reference_no=next_reference_no(db, now),
            doctor_ref=doctor_ref,
            patient_ref=patient_ref,
            date=ymd,
            start_time=start_time,
            end_time=end_time,
            status=initial_status(payment_required).value,
            queue_no=queue_no,
            reason=(reason or "").strip(),
            created_by=created_by,
            payment_method=payment_method,
            price=int(price or 0),
            **snapshot,
        )
        db.add(appointment)
        db.flush()
        events.record_event(db, events.BOOKED, appointment)
        db.commit()
    except BookingError as e:
        _fail(db, "book", e)
    except IntegrityError as e:
        logging.info(f"Uniqueness violation while booking {doctor_ref} {ymd} {start_time}: {e.orig}")
        _fail(db, "book", SlotTaken("Slot already taken. Please pick another."))
    except SQLAlchemyError as e:
        db.rollback()
        BOOKING_ATTEMPTS.labels(operation="book", outcome=StorageFailure.code).inc()
        logging.error(f"Error booking {doctor_ref} {ymd} {start_time}: {str(e)}")
        raise StorageFailure("Booking could not be saved, please retry")

    db.refresh(appointment)
    BOOKING_ATTEMPTS.labels(operation="book", outcome="ok").inc()
    logging.info(f"Appointment {appointment.reference_no} booked: doctor {doctor_ref} {ymd} "
                 f"{start_time}-{end_time} queue #{queue_no}")
    return appointment


def get_appointment(db: Session, appointment_id, for_update: bool = False) -> Appointment:
    query = db.query(Appointment).filter(Appointment.id == appointment_id)
    if for_update:
        query = query.with_for_update().populate_existing()
    appointment = query.first()
    if appointment is None:
        raise AppointmentNotFound(f"Appointment {appointment_id} not found")
    return appointment


def reschedule(db: Session, appointment_id, new_date: str, new_start_time: str,
               now: Optional[datetime] = None) -> Appointment:
    """Move an appointment to a new slot, re-running every booking check, and reset it to Booked."""
    _validate_request(new_date, new_start_time)
    now = as_utc(now or utcnow())

    try:
        appointment = get_appointment(db, appointment_id)
        check_reschedulable(appointment.status)
        doctor_ref = appointment.doctor_ref

        lock_day(db, doctor_ref, new_date)
        appointment = get_appointment(db, appointment_id, for_update=True)
        new_status = check_reschedulable(appointment.status)

        availability = get_availability(db, doctor_ref)
        if availability is None:
            raise AvailabilityNotConfigured("Doctor availability not configured")

        end_time, queue_no = _check_slot(db, availability, doctor_ref, new_date, new_start_time, now,
                                         exclude_id=appointment.id)

        previous = {"previous_date": appointment.date, "previous_start_time": appointment.start_time}
        appointment.date = new_date
        appointment.start_time = new_start_time
        appointment.end_time = end_time
        appointment.status = new_status.value
        appointment.queue_no = queue_no
        db.flush()
        events.record_event(db, events.RESCHEDULED, appointment, **previous)
        db.commit()
    except BookingError as e:
        _fail(db, "reschedule", e)
    except IntegrityError as e:
        logging.info(f"Uniqueness violation while rescheduling {appointment_id}: {e.orig}")
        _fail(db, "reschedule", SlotTaken("Slot already taken. Please pick another."))
    except SQLAlchemyError as e:
        db.rollback()
        BOOKING_ATTEMPTS.labels(operation="reschedule", outcome=StorageFailure.code).inc()
        logging.error(f"Error rescheduling appointment {appointment_id}: {str(e)}")
        raise StorageFailure("Reschedule could not be saved, please retry")

    db.refresh(appointment)
    BOOKING_ATTEMPTS.labels(operation="reschedule", outcome="ok").inc()
    logging.info(f"Appointment {appointment.reference_no} rescheduled to {new_date} {new_start_time} "
                 f"queue #{appointment.queue_no}")
    return appointment


def _save_status(db: Session, appointment: Appointment, status: AppointmentStatus, event_type: str,
                 previous_status: str):
    appointment.status = status.value
    events.record_event(db, event_type, appointment, previous_status=previous_status)
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logging.error(f"Error updating status of appointment {appointment.id}: {str(e)}")
        raise StorageFailure("Status could not be saved, please retry")
    db.refresh(appointment)
    logging.info(f"Appointment {appointment.reference_no} status {previous_status} -> {status.value}")
    return appointment


def change_status(db: Session, appointment_id, new_status) -> Appointment:
    try:
        appointment = get_appointment(db, appointment_id, for_update=True)
        target = check_transition(appointment.status, new_status)
    except BookingError:
        db.rollback()
        raise
    event_type = events.CANCELLED if target == AppointmentStatus.CANCELLED else events.STATUS_CHANGED
    return _save_status(db, appointment, target, event_type, appointment.status)


def cancel(db: Session, appointment_id) -> Appointment:
    """Cancel an appointment, freeing its slot. Cancelling twice returns the appointment unchanged."""
    try:
        appointment = get_appointment(db, appointment_id, for_update=True)
        if appointment.status == AppointmentStatus.CANCELLED.value:
            db.rollback()
            return appointment
        check_transition(appointment.status, AppointmentStatus.CANCELLED)
    except BookingError:
        db.rollback()
        raise
    return _save_status(db, appointment, AppointmentStatus.CANCELLED, events.CANCELLED, appointment.status)


def confirm_payment(db: Session, appointment_id) -> Appointment:
    try:
        appointment = get_appointment(db, appointment_id, for_update=True)
        target = check_payment_confirmation(appointment.status)
    except BookingError:
        db.rollback()
        raise
    return _save_status(db, appointment, target, events.STATUS_CHANGED, appointment.status)


def _filtered(query, status=None, date_from=None, date_to=None):
    if status:
        query = query.filter(Appointment.status == parse_status(status).value)
    if date_from:
        parse_date(date_from)
        query = query.filter(Appointment.date >= date_from)
    if date_to:
        parse_date(date_to)
        query = query.filter(Appointment.date <= date_to)
    return query.order_by(Appointment.date, Appointment.start_time)


def list_for_patient(db: Session, patient_ref: str, status=None, date_from=None, date_to=None, doctor_ref=None):
    query = db.query(Appointment).filter(Appointment.patient_ref == patient_ref)
    if doctor_ref:
        query = query.filter(Appointment.doctor_ref == doctor_ref)
    return _filtered(query, status, date_from, date_to).all()


def list_for_doctor(db: Session, doctor_ref: str, status=None, date_from=None, date_to=None, patient_ref=None):
    query = db.query(Appointment).filter(Appointment.doctor_ref == doctor_ref)
    if patient_ref:
        query = query.filter(Appointment.patient_ref == patient_ref)
    return _filtered(query, status, date_from, date_to).all()


def purge_appointments(db: Session, doctor_ref: str, date_from=None, date_to=None) -> int:
    """Cancel and delete a doctor's appointments (optionally within a date window). Returns the count removed."""
    appointments = _filtered(db.query(Appointment).filter(Appointment.doctor_ref == doctor_ref),
                             date_from=date_from, date_to=date_to).all()
    try:
        for appointment in appointments:
            if appointment.status != AppointmentStatus.CANCELLED.value:
                previous_status = appointment.status
                appointment.status = AppointmentStatus.CANCELLED.value
                events.record_event(db, events.CANCELLED, appointment, previous_status=previous_status,
                                    purged=True)
            db.delete(appointment)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logging.error(f"Error purging appointments of doctor {doctor_ref}: {str(e)}")
        raise StorageFailure("Appointments could not be purged, please retry")
    logging.info(f"Purged {len(appointments)} appointments of doctor {doctor_ref}")
    return len(appointments)
