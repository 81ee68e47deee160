# sessions.py
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from .availability import exceptions_on_date, get_or_create, slots_for_date, working_ranges_for_date
from .models import Appointment
from .status import AppointmentStatus
from .utils import generate_slots, parse_date, ranges_overlap, slot_datetime, utcnow, within_cutoff

AVAILABLE = "AVAILABLE"
FULL = "FULL"
CLOSED = "CLOSED"


def active_start_times(db: Session, doctor_ref: str, ymd: str):
    rows = db.query(Appointment.start_time).filter(
        Appointment.doctor_ref == doctor_ref,
        Appointment.date == ymd,
        Appointment.status != AppointmentStatus.CANCELLED.value,
    ).all()
    return {row.start_time for row in rows}


def compute_sessions(db: Session, doctor_ref: str, ymd: str, now: Optional[datetime] = None):
    """
    Summarise each working-hour range of ``ymd`` with its occupancy.

    The cutoff is applied per session: once the first slot of a range is
    within the cutoff window the whole session reads CLOSED, even if its later
    slots are further out.
    """
    parse_date(ymd)
    now = now or utcnow()
    availability = get_or_create(db, doctor_ref)
    ranges = working_ranges_for_date(availability, ymd)
    if not ranges:
        return []

    taken = active_start_times(db, doctor_ref, ymd)
    capacity = availability.session_capacity
    sessions = []
    for time_range in ranges:
        slots = generate_slots([time_range], availability.duration_minutes)
        active = sum(1 for slot in slots if slot["start_time"] in taken)
        remaining = max(0, capacity - active)
        bookable = not within_cutoff(ymd, time_range["start"], now)

        if not bookable:
            label = CLOSED
        elif remaining == 0:
            label = FULL
        else:
            label = AVAILABLE

        sessions.append({
            "range": dict(time_range),
            "active_appointments": active,
            "capacity": capacity,
            "remaining": remaining,
            "status_label": label,
        })
    return sessions


def free_slots(db: Session, doctor_ref: str, ymd: str, now: Optional[datetime] = None, cache=None):
    """
    List the individually bookable slots of ``ymd``.

    Unlike ``compute_sessions`` the cutoff is applied per slot here, and
    slots touching a break or block on that date are removed as well.
    """
    parse_date(ymd)
    now = now or utcnow()
    availability = get_or_create(db, doctor_ref)
    slots = slots_for_date(availability, ymd, cache)

    slots = [slot for slot in slots if not within_cutoff(ymd, slot["start_time"], now)]

    blocked = exceptions_on_date(availability, ymd)
    if blocked:
        slots = [
            slot for slot in slots
            if not any(ranges_overlap(slot_datetime(ymd, slot["start_time"]), slot_datetime(ymd, slot["end_time"]),
                                      start, end)
                       for start, end in blocked)
        ]

    taken = active_start_times(db, doctor_ref, ymd)
    return [slot for slot in slots if slot["start_time"] not in taken]
