# errors.py
from typing import Optional


class BookingError(Exception):
    """Base class for every expected booking/scheduling failure."""

    code = "BookingError"
    status_code = 400

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.field = field

    def to_dict(self):
        detail = {"code": self.code, "message": self.message}
        if self.field:
            detail["field"] = self.field
        return detail


class InvalidFormat(BookingError):
    code = "InvalidFormat"


class InvalidAvailabilityInput(BookingError):
    code = "InvalidAvailabilityInput"


class AvailabilityNotConfigured(BookingError):
    code = "AvailabilityNotConfigured"
    status_code = 409


class OutsideWorkingHours(BookingError):
    code = "OutsideWorkingHours"


class BookingClosed(BookingError):
    code = "BookingClosed"


class SessionFull(BookingError):
    code = "SessionFull"
    status_code = 409


class SlotTaken(BookingError):
    code = "SlotTaken"
    status_code = 409


class AppointmentNotFound(BookingError):
    code = "AppointmentNotFound"
    status_code = 404


class AppointmentFinalized(BookingError):
    code = "AppointmentFinalized"
    status_code = 409


class InvalidTransition(BookingError):
    code = "InvalidTransition"
    status_code = 409


class StorageFailure(BookingError):
    code = "StorageFailure"
    status_code = 503
