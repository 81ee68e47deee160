# availability.py
import logging
import re
from datetime import datetime, timedelta

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .dependencies import commit_or_fail
from .errors import InvalidAvailabilityInput, InvalidFormat
from .models import (Availability, AvailabilityException, WeeklyRange, DEFAULT_DURATION_MINUTES,
                     DEFAULT_SESSION_CAPACITY)
from .slot_cache import cached_slots, invalidate_doctor
from .utils import (WEEKDAYS, HHMM, as_utc, day_bounds, generate_slots, parse_date, ranges_overlap, to_minutes,
                    weekday_key)

ALLOWED_DURATIONS = (10, 15, 20, 30)
MAX_SESSION_CAPACITY = 200
SAFE_TEXT = re.compile(r"^[A-Za-z0-9\s.,()\-_/]*$")


def get_availability(db: Session, doctor_ref: str):
    return db.query(Availability).filter_by(doctor_ref=doctor_ref).first()


def get_or_create(db: Session, doctor_ref: str) -> Availability:
    availability = get_availability(db, doctor_ref)
    if availability:
        return availability

    availability = Availability(
        doctor_ref=doctor_ref,
        duration_minutes=DEFAULT_DURATION_MINUTES,
        session_capacity=DEFAULT_SESSION_CAPACITY,
    )
    db.add(availability)
    try:
        db.commit()
    except IntegrityError:
        # Created concurrently by another request
        db.rollback()
        return get_availability(db, doctor_ref)
    db.refresh(availability)
    logging.info(f"Created default availability for doctor {doctor_ref}")
    return availability


def _positive_int(value, field, allowed=None, maximum=None):
    if isinstance(value, bool):
        raise InvalidAvailabilityInput(f"{field} must be a positive number", field=field)
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise InvalidAvailabilityInput(f"{field} must be a positive number", field=field)
    if number != value and str(number) != str(value).strip():
        raise InvalidAvailabilityInput(f"{field} must be a whole number", field=field)
    if number <= 0:
        raise InvalidAvailabilityInput(f"{field} must be a positive number", field=field)
    if allowed and number not in allowed:
        raise InvalidAvailabilityInput(
            f"{field} must be one of {', '.join(str(a) for a in allowed)}", field=field)
    if maximum and number > maximum:
        raise InvalidAvailabilityInput(f"{field} must be at most {maximum}", field=field)
    return number


def _validate_range(start, end, field):
    if not HHMM.match(str(start or "")) or not HHMM.match(str(end or "")):
        raise InvalidFormat(f"{field} start/end must be HH:MM", field=field)
    if to_minutes(start) >= to_minutes(end):
        raise InvalidAvailabilityInput(f"{field} start must be before end", field=field)
    return {"start": start, "end": end}


def _check_no_overlap(ranges, field):
    ordered = sorted(ranges, key=lambda r: to_minutes(r["start"]))
    for previous, current in zip(ordered, ordered[1:]):
        if ranges_overlap(to_minutes(previous["start"]), to_minutes(previous["end"]),
                          to_minutes(current["start"]), to_minutes(current["end"])):
            raise InvalidAvailabilityInput(
                f"{field} ranges {previous['start']}-{previous['end']} and "
                f"{current['start']}-{current['end']} overlap", field=field)


def _parse_instant(value, field):
    if isinstance(value, datetime):
        return as_utc(value)
    try:
        return as_utc(datetime.fromisoformat(str(value).replace("Z", "+00:00")))
    except ValueError:
        raise InvalidFormat(f"{field} must be an ISO 8601 datetime", field=field)


def _build_exceptions(items, kind):
    field = f"{kind}s"
    exceptions = []
    for item in items or []:
        start = _parse_instant(item.get("start"), field)
        end = _parse_instant(item.get("end"), field)
        if start >= end:
            raise InvalidAvailabilityInput(f"{field} must have start < end", field=field)
        reason = str(item.get("reason") or "").strip()
        if not SAFE_TEXT.match(reason):
            raise InvalidAvailabilityInput(f"{field} reason has invalid characters", field=field)
        exceptions.append(AvailabilityException(kind=kind, start=start, end=end, reason=reason))
    return exceptions


def upsert_day(db: Session, doctor_ref: str, ymd: str, start_time: str, end_time: str,
               duration_minutes, session_capacity, cache=None) -> Availability:
    """
    Add a working-hour range to the weekday of ``ymd`` and store the latest slot settings.

    Duration and capacity are per doctor, not per day: saving any day's hours
    re-slices every other day as well. Adding a range that is already present
    is a no-op.
    """
    parse_date(ymd)
    new_range = _validate_range(start_time, end_time, "time")
    duration = _positive_int(duration_minutes, "duration_minutes", allowed=ALLOWED_DURATIONS)
    capacity = _positive_int(session_capacity, "session_capacity", maximum=MAX_SESSION_CAPACITY)

    availability = get_or_create(db, doctor_ref)
    weekday = weekday_key(ymd)
    existing = availability.ranges_for_weekday(weekday)

    if new_range not in existing:
        _check_no_overlap(existing + [new_range], "weekly_hours")
        availability.ranges.append(WeeklyRange(weekday=weekday, start_time=start_time, end_time=end_time))

    availability.duration_minutes = duration
    availability.session_capacity = capacity
    commit_or_fail(db, f"availability for doctor {doctor_ref}")
    db.refresh(availability)
    invalidate_doctor(cache, doctor_ref)

    logging.info(f"Availability saved for doctor {doctor_ref}: {weekday} {start_time}-{end_time}, "
                 f"{duration} min slots, capacity {capacity}")
    return availability


def set_availability(db: Session, doctor_ref: str, config: dict, cache=None) -> Availability:
    """Replace the provided parts of a doctor's availability (missing keys are left untouched)."""
    config = config or {}
    availability = get_or_create(db, doctor_ref)

    duration = availability.duration_minutes
    if config.get("duration_minutes") is not None:
        duration = _positive_int(config["duration_minutes"], "duration_minutes", allowed=ALLOWED_DURATIONS)
    capacity = availability.session_capacity
    if config.get("session_capacity") is not None:
        capacity = _positive_int(config["session_capacity"], "session_capacity", maximum=MAX_SESSION_CAPACITY)

    new_ranges = None
    if config.get("weekly_hours") is not None:
        new_ranges = []
        for weekday, ranges in config["weekly_hours"].items():
            if weekday not in WEEKDAYS:
                raise InvalidAvailabilityInput(f"Unknown weekday {weekday!r}", field="weekly_hours")
            validated = [_validate_range(r.get("start"), r.get("end"), "weekly_hours") for r in ranges or []]
            _check_no_overlap(validated, "weekly_hours")
            for r in validated:
                new_ranges.append(WeeklyRange(weekday=weekday, start_time=r["start"], end_time=r["end"]))

    new_exceptions = None
    if config.get("breaks") is not None or config.get("blocks") is not None:
        new_exceptions = []
        for kind in ("break", "block"):
            items = config.get(f"{kind}s")
            if items is None:
                new_exceptions.extend(
                    AvailabilityException(kind=e.kind, start=e.start, end=e.end, reason=e.reason)
                    for e in availability.exceptions_of(kind))
            else:
                new_exceptions.extend(_build_exceptions(items, kind))

    availability.duration_minutes = duration
    availability.session_capacity = capacity
    if config.get("timezone"):
        availability.timezone = str(config["timezone"])
    # Old rows must be deleted before equal ones are inserted
    if new_ranges is not None:
        availability.ranges.clear()
    if new_exceptions is not None:
        availability.exceptions.clear()
    db.flush()
    if new_ranges is not None:
        availability.ranges.extend(new_ranges)
    if new_exceptions is not None:
        availability.exceptions.extend(new_exceptions)

    commit_or_fail(db, f"availability for doctor {doctor_ref}")
    db.refresh(availability)
    invalidate_doctor(cache, doctor_ref)
    logging.info(f"Availability replaced for doctor {doctor_ref}")
    return availability


def is_blocked(availability: Availability, ymd: str) -> bool:
    """True when ``ymd`` falls on any day covered by a block (whole days, inclusive)."""
    day = parse_date(ymd)
    for block in availability.exceptions_of("block"):
        if as_utc(block.start).date() <= day <= as_utc(block.end).date():
            return True
    return False


def working_ranges_for_date(availability: Availability, ymd: str):
    if is_blocked(availability, ymd):
        return []
    return availability.ranges_for_weekday(weekday_key(ymd))


def compute_slots_for_date(availability: Availability, ymd: str):
    return generate_slots(working_ranges_for_date(availability, ymd), availability.duration_minutes)


def slots_for_date(availability: Availability, ymd: str, cache=None):
    parse_date(ymd)
    return cached_slots(cache, availability.doctor_ref, ymd,
                        lambda: compute_slots_for_date(availability, ymd))


def exceptions_on_date(availability: Availability, ymd: str):
    """Breaks and blocks intersecting the UTC day ``ymd`` as (start, end) datetimes."""
    day_start, day_end = day_bounds(ymd)
    windows = []
    for item in availability.exceptions:
        start, end = as_utc(item.start), as_utc(item.end)
        if ranges_overlap(start, end, day_start, day_end):
            windows.append((start, end))
    return windows


def week_view(db: Session, doctor_ref: str, ymd: str, cache=None):
    start = parse_date(ymd)
    availability = get_availability(db, doctor_ref)
    if not availability:
        return {"duration_minutes": None, "session_capacity": None, "week": []}

    days = [(start + timedelta(days=i)).isoformat() for i in range(7)]
    return {
        "duration_minutes": availability.duration_minutes,
        "session_capacity": availability.session_capacity,
        "week": [{"date": day, "slots": slots_for_date(availability, day, cache)} for day in days],
    }
