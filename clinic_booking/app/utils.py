import re
from datetime import date, datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional

from .errors import InvalidFormat

HHMM = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")  # 00:00 - 23:59
YMD = re.compile(r"^\d{4}-\d{2}-\d{2}$")  # 2026-10-19

WEEKDAYS = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")

# Minimum lead time before a slot (or a session) starts for it to stay bookable
CUTOFF_MINUTES = 15


def to_minutes(hhmm: str) -> int:
    """Convert 'HH:MM' to minutes since midnight ('18:00' -> 1080)."""
    match = HHMM.match(str(hhmm or ""))
    if not match:
        raise InvalidFormat(f"Time must be HH:MM, got {hhmm!r}")
    return int(match.group(1)) * 60 + int(match.group(2))


def to_hhmm(minutes: int) -> str:
    """Convert minutes since midnight back to a zero-padded 'HH:MM' (1080 -> '18:00')."""
    if minutes < 0 or minutes >= 24 * 60:
        raise InvalidFormat(f"{minutes} minutes is outside a single day")
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def ranges_overlap(a_start, a_end, b_start, b_end) -> bool:
    """Half-open interval overlap test."""
    return a_start < b_end and b_start < a_end


def generate_slots(ranges: Iterable[Dict[str, str]], duration_minutes: int) -> List[Dict[str, str]]:
    """
    Split working-hour ranges into fixed-length slots.

    A slot is only emitted while it fits completely inside its range, so a
    trailing remainder shorter than ``duration_minutes`` is dropped.

    :param ranges: [{"start": "09:00", "end": "13:00"}, ...] in display order.
    :param duration_minutes: slot length.
    :return: [{"start_time": "09:00", "end_time": "09:15"}, ...]
    """
    slots = []
    for time_range in ranges:
        current = to_minutes(time_range["start"])
        end = to_minutes(time_range["end"])
        while current + duration_minutes <= end:
            slots.append({
                "start_time": to_hhmm(current),
                "end_time": to_hhmm(current + duration_minutes),
            })
            current += duration_minutes
    return slots


def containing_range(hhmm: str, ranges: Iterable[Dict[str, str]]) -> Optional[Dict[str, str]]:
    """Return the range with start <= hhmm < end, if any."""
    minute = to_minutes(hhmm)
    for time_range in ranges:
        if to_minutes(time_range["start"]) <= minute < to_minutes(time_range["end"]):
            return time_range
    return None


def parse_date(ymd: str) -> date:
    if not isinstance(ymd, str) or not YMD.match(ymd):
        raise InvalidFormat(f"Date must be YYYY-MM-DD, got {ymd!r}", field="date")
    try:
        return datetime.strptime(ymd, "%Y-%m-%d").date()
    except ValueError:
        raise InvalidFormat(f"Date {ymd!r} does not exist", field="date")


def weekday_key(ymd: str) -> str:
    return WEEKDAYS[parse_date(ymd).weekday()]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # Naive datetimes coming back from the database are stored as UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def slot_datetime(ymd: str, hhmm: str) -> datetime:
    """Combine a date and a time into a UTC datetime."""
    minutes = to_minutes(hhmm)
    day = parse_date(ymd)
    return datetime(day.year, day.month, day.day, tzinfo=timezone.utc) + timedelta(minutes=minutes)


def day_bounds(ymd: str):
    start = slot_datetime(ymd, "00:00")
    return start, start + timedelta(days=1)


def within_cutoff(ymd: str, hhmm: str, now: Optional[datetime] = None,
                  cutoff_minutes: int = CUTOFF_MINUTES) -> bool:
    """True when the lead time until ymd+hhmm is at most the cutoff (booking closed)."""
    now = as_utc(now or utcnow())
    lead_minutes = (slot_datetime(ymd, hhmm) - now).total_seconds() / 60
    return lead_minutes <= cutoff_minutes


def serialize_appointment(appointment) -> dict:
    return {
        "id": appointment.id,
        "reference_no": appointment.reference_no,
        "doctor_ref": appointment.doctor_ref,
        "patient_ref": appointment.patient_ref,
        "date": appointment.date,
        "start_time": appointment.start_time,
        "end_time": appointment.end_time,
        "status": appointment.status,
        "queue_no": appointment.queue_no,
        "reason": appointment.reason,
        "created_by": appointment.created_by,
        "payment_method": appointment.payment_method,
        "price": appointment.price,
        "patient_name": appointment.patient_name,
        "patient_phone": appointment.patient_phone,
        "patient_email": appointment.patient_email,
        "patient_nic": appointment.patient_nic,
        "patient_passport": appointment.patient_passport,
        "created_at": appointment.created_at.isoformat() if appointment.created_at else None,
        "updated_at": appointment.updated_at.isoformat() if appointment.updated_at else None,
    }


def serialize_availability(availability) -> dict:
    return {
        "id": availability.id,
        "doctor_ref": availability.doctor_ref,
        "duration_minutes": availability.duration_minutes,
        "session_capacity": availability.session_capacity,
        "timezone": availability.timezone,
        "weekly_hours": availability.weekly_hours(),
        "breaks": [serialize_exception(item) for item in availability.exceptions if item.kind == "break"],
        "blocks": [serialize_exception(item) for item in availability.exceptions if item.kind == "block"],
    }


def serialize_exception(item) -> dict:
    return {
        "start": as_utc(item.start).isoformat(),
        "end": as_utc(item.end).isoformat(),
        "reason": item.reason,
    }


def serialize_event(event) -> dict:
    return {
        "id": event.id,
        "event_type": event.event_type,
        "appointment_id": event.appointment_id,
        "reference_no": event.reference_no,
        "doctor_ref": event.doctor_ref,
        "patient_ref": event.patient_ref,
        "payload": event.payload,
        "created_at": event.created_at.isoformat() if event.created_at else None,
    }
