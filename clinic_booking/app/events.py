# events.py
from sqlalchemy.orm import Session

from .models import AppointmentEvent

BOOKED = "booked"
RESCHEDULED = "rescheduled"
STATUS_CHANGED = "status_changed"
CANCELLED = "cancelled"

MAX_PAGE_SIZE = 500


def record_event(db: Session, event_type: str, appointment, **extra) -> AppointmentEvent:
    """
    Queue a notification record in the caller's transaction.

    Nothing is sent from here; an external notifier polls ``list_events`` and
    delivers confirmation/cancellation messages at its own pace.
    """
    payload = {
        "date": appointment.date,
        "start_time": appointment.start_time,
        "end_time": appointment.end_time,
        "status": appointment.status,
        "queue_no": appointment.queue_no,
        "patient_name": appointment.patient_name,
        "patient_email": appointment.patient_email,
        "patient_phone": appointment.patient_phone,
    }
    payload.update(extra)
    event = AppointmentEvent(
        event_type=event_type,
        appointment_id=appointment.id,
        reference_no=appointment.reference_no,
        doctor_ref=appointment.doctor_ref,
        patient_ref=appointment.patient_ref,
        payload=payload,
    )
    db.add(event)
    return event


def list_events(db: Session, after_id: int = 0, limit: int = 100):
    limit = max(1, min(int(limit), MAX_PAGE_SIZE))
    return (
        db.query(AppointmentEvent)
        .filter(AppointmentEvent.id > after_id)
        .order_by(AppointmentEvent.id)
        .limit(limit)
        .all()
    )
