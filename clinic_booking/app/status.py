# status.py
from enum import Enum

from .errors import AppointmentFinalized, InvalidFormat, InvalidTransition


class AppointmentStatus(str, Enum):
    BOOKED = "Booked"
    AWAITING_PAYMENT = "AwaitingPayment"
    CONFIRMED = "Confirmed"
    CHECKED_IN = "CheckedIn"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"
    NO_SHOW = "NoShow"
    RESCHEDULED = "Rescheduled"


TERMINAL_STATUSES = frozenset({AppointmentStatus.COMPLETED, AppointmentStatus.CANCELLED})

# Targets reachable through an explicit status change
STATUS_CHANGE_TARGETS = frozenset({
    AppointmentStatus.CHECKED_IN,
    AppointmentStatus.COMPLETED,
    AppointmentStatus.CANCELLED,
    AppointmentStatus.NO_SHOW,
})


def parse_status(value) -> AppointmentStatus:
    try:
        return AppointmentStatus(value)
    except ValueError:
        allowed = ", ".join(s.value for s in AppointmentStatus)
        raise InvalidFormat(f"Unknown status {value!r}, expected one of: {allowed}", field="status")


def is_terminal(status) -> bool:
    return parse_status(status) in TERMINAL_STATUSES


def is_active(status) -> bool:
    return parse_status(status) != AppointmentStatus.CANCELLED


def initial_status(payment_required: bool = False) -> AppointmentStatus:
    return AppointmentStatus.AWAITING_PAYMENT if payment_required else AppointmentStatus.BOOKED


def check_transition(current, target) -> AppointmentStatus:
    """Validate an explicit status change and return the target status."""
    current = parse_status(current)
    target = parse_status(target)
    if current in TERMINAL_STATUSES:
        raise InvalidTransition(f"Appointment is already {current.value}")
    if target not in STATUS_CHANGE_TARGETS:
        allowed = ", ".join(sorted(s.value for s in STATUS_CHANGE_TARGETS))
        raise InvalidTransition(f"Cannot change status to {target.value}, expected one of: {allowed}")
    return target


def check_payment_confirmation(current) -> AppointmentStatus:
    current = parse_status(current)
    if current != AppointmentStatus.AWAITING_PAYMENT:
        raise InvalidTransition(f"Only AwaitingPayment appointments can be confirmed, not {current.value}")
    return AppointmentStatus.CONFIRMED


def check_reschedulable(current) -> AppointmentStatus:
    """Rescheduling resets any non-terminal appointment to Booked."""
    current = parse_status(current)
    if current in TERMINAL_STATUSES:
        raise AppointmentFinalized(f"A {current.value} appointment cannot be rescheduled")
    return AppointmentStatus.BOOKED
