from typing import Dict, List, Optional

from fastapi import APIRouter, HTTPException, Query, Depends
from sqlalchemy.orm import Session
from pydantic import BaseModel

from . import availability as availability_store
from . import booking
from .auth import Actor, ensure_owner, get_current_actor, role_required
from .dependencies import UserRole, get_db, get_slot_cache
from .errors import BookingError
from .events import list_events
from .sessions import compute_sessions, free_slots
from .utils import serialize_appointment, serialize_availability, serialize_event
import logging

router = APIRouter()


class TimeRange(BaseModel):
    start: str
    end: str


class ExceptionWindow(BaseModel):
    start: str
    end: str
    reason: str = ""


class AvailabilityConfig(BaseModel):
    duration_minutes: Optional[int] = None
    session_capacity: Optional[int] = None
    timezone: Optional[str] = None
    weekly_hours: Optional[Dict[str, List[TimeRange]]] = None
    breaks: Optional[List[ExceptionWindow]] = None
    blocks: Optional[List[ExceptionWindow]] = None


class DayAvailabilityRequest(BaseModel):
    date: str
    start_time: str
    end_time: str
    duration_minutes: int
    session_capacity: int


class BookAppointmentRequest(BaseModel):
    doctor_ref: str
    date: str
    start_time: str
    patient_ref: Optional[str] = None
    patient_name: str = ""
    patient_phone: str = ""
    patient_email: str = ""
    patient_nic: str = ""
    patient_passport: str = ""
    reason: str = ""
    payment_method: str = "Cash"
    price: int = 0
    payment_required: bool = False


class RescheduleRequest(BaseModel):
    date: str
    start_time: str


class StatusChangeRequest(BaseModel):
    status: str


def _http_error(e: BookingError):
    return HTTPException(status_code=e.status_code, detail=e.to_dict())


@router.get('/doctors/{doctor_ref}/sessions')
def get_sessions(doctor_ref: str, date: str = Query(...), db: Session = Depends(get_db)):
    try:
        sessions = compute_sessions(db, doctor_ref, date)
    except BookingError as e:
        raise _http_error(e)
    return {"doctor_ref": doctor_ref, "date": date, "sessions": sessions}


@router.get('/doctors/{doctor_ref}/slots')
def get_free_slots(doctor_ref: str, date: str = Query(...), db: Session = Depends(get_db)):
    try:
        slots = free_slots(db, doctor_ref, date, cache=get_slot_cache())
    except BookingError as e:
        raise _http_error(e)
    availability = availability_store.get_or_create(db, doctor_ref)
    return {
        "date": date,
        "duration_minutes": availability.duration_minutes,
        "capacity_per_session": availability.session_capacity,
        "slots": slots,
    }


@router.get('/doctors/{doctor_ref}/week')
def get_week(doctor_ref: str, date: str = Query(...), db: Session = Depends(get_db)):
    try:
        return availability_store.week_view(db, doctor_ref, date, cache=get_slot_cache())
    except BookingError as e:
        raise _http_error(e)


@router.get('/availability/me')
@role_required([UserRole.DOCTOR.value])
def get_my_availability(current_actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    availability = availability_store.get_or_create(db, current_actor.ref)
    return serialize_availability(availability)


@router.put('/availability/me')
@role_required([UserRole.DOCTOR.value])
def set_my_availability(
        config: AvailabilityConfig,
        current_actor: Actor = Depends(get_current_actor),
        db: Session = Depends(get_db)
):
    logging.info(f"Setting availability for doctor {current_actor.ref}")
    try:
        availability = availability_store.set_availability(
            db, current_actor.ref, config.model_dump(exclude_none=True), cache=get_slot_cache())
    except BookingError as e:
        raise _http_error(e)
    return {"message": "Availability saved", "availability": serialize_availability(availability)}


@router.post('/availability/me/day')
@role_required([UserRole.DOCTOR.value])
def upsert_my_day(
        request: DayAvailabilityRequest,
        current_actor: Actor = Depends(get_current_actor),
        db: Session = Depends(get_db)
):
    try:
        availability = availability_store.upsert_day(
            db, current_actor.ref, request.date, request.start_time, request.end_time,
            request.duration_minutes, request.session_capacity, cache=get_slot_cache())
    except BookingError as e:
        raise _http_error(e)
    return {
        "message": "Availability saved",
        "range": {"start": request.start_time, "end": request.end_time},
        "availability": serialize_availability(availability),
    }


@router.post('/appointments', status_code=201)
@role_required([UserRole.PATIENT.value, UserRole.DOCTOR.value])
def book_appointment(
        request: BookAppointmentRequest,
        current_actor: Actor = Depends(get_current_actor),
        db: Session = Depends(get_db)
):
    if current_actor.role == UserRole.PATIENT.value:
        patient_ref = current_actor.ref
    else:
        if current_actor.role == UserRole.DOCTOR.value and current_actor.ref != request.doctor_ref:
            raise HTTPException(status_code=403, detail="Doctors can only book into their own schedule")
        if not request.patient_ref:
            raise HTTPException(status_code=400, detail="patient_ref is required")
        patient_ref = request.patient_ref

    snapshot = request.model_dump(include=set(booking.SNAPSHOT_FIELDS))
    try:
        appointment = booking.book(
            db, request.doctor_ref, patient_ref, request.date, request.start_time,
            snapshot=snapshot,
            payment_required=request.payment_required,
            reason=request.reason,
            created_by=current_actor.role,
            payment_method=request.payment_method,
            price=request.price,
        )
    except BookingError as e:
        raise _http_error(e)
    return {"message": "Appointment booked", "appointment": serialize_appointment(appointment)}


def _owned_appointment(db: Session, appointment_id: int, current_actor: Actor, doctor_only: bool = False):
    try:
        appointment = booking.get_appointment(db, appointment_id)
    except BookingError as e:
        raise _http_error(e)
    if doctor_only:
        ensure_owner(current_actor, appointment.doctor_ref)
    else:
        ensure_owner(current_actor, appointment.doctor_ref, appointment.patient_ref)
    return appointment


@router.patch('/appointments/{appointment_id}/reschedule')
@role_required([UserRole.PATIENT.value, UserRole.DOCTOR.value])
def reschedule_appointment(
        appointment_id: int,
        request: RescheduleRequest,
        current_actor: Actor = Depends(get_current_actor),
        db: Session = Depends(get_db)
):
    _owned_appointment(db, appointment_id, current_actor)
    try:
        appointment = booking.reschedule(db, appointment_id, request.date, request.start_time)
    except BookingError as e:
        raise _http_error(e)
    return {"message": "Rescheduled", "appointment": serialize_appointment(appointment)}


@router.patch('/appointments/{appointment_id}/status')
@role_required([UserRole.DOCTOR.value])
def change_appointment_status(
        appointment_id: int,
        request: StatusChangeRequest,
        current_actor: Actor = Depends(get_current_actor),
        db: Session = Depends(get_db)
):
    _owned_appointment(db, appointment_id, current_actor, doctor_only=True)
    try:
        appointment = booking.change_status(db, appointment_id, request.status)
    except BookingError as e:
        raise _http_error(e)
    return {"message": "Status updated", "appointment": serialize_appointment(appointment)}


@router.post('/appointments/{appointment_id}/confirm-payment')
@role_required([UserRole.DOCTOR.value])
def confirm_appointment_payment(
        appointment_id: int,
        current_actor: Actor = Depends(get_current_actor),
        db: Session = Depends(get_db)
):
    _owned_appointment(db, appointment_id, current_actor, doctor_only=True)
    try:
        appointment = booking.confirm_payment(db, appointment_id)
    except BookingError as e:
        raise _http_error(e)
    return {"message": "Payment confirmed", "appointment": serialize_appointment(appointment)}


@router.post('/appointments/{appointment_id}/cancel')
@role_required([UserRole.PATIENT.value, UserRole.DOCTOR.value])
def cancel_appointment(
        appointment_id: int,
        current_actor: Actor = Depends(get_current_actor),
        db: Session = Depends(get_db)
):
    _owned_appointment(db, appointment_id, current_actor)
    try:
        appointment = booking.cancel(db, appointment_id)
    except BookingError as e:
        raise _http_error(e)
    return {"message": "Appointment cancelled successfully", "appointment": serialize_appointment(appointment)}


@router.get('/patients/me/appointments')
@role_required([UserRole.PATIENT.value])
def list_my_patient_appointments(
        status: Optional[str] = Query(None),
        date_from: Optional[str] = Query(None),
        date_to: Optional[str] = Query(None),
        doctor_ref: Optional[str] = Query(None),
        current_actor: Actor = Depends(get_current_actor),
        db: Session = Depends(get_db)
):
    try:
        items = booking.list_for_patient(db, current_actor.ref, status, date_from, date_to, doctor_ref)
    except BookingError as e:
        raise _http_error(e)
    return {"items": [serialize_appointment(a) for a in items]}


@router.get('/doctors/me/appointments')
@role_required([UserRole.DOCTOR.value])
def list_my_doctor_appointments(
        status: Optional[str] = Query(None),
        date_from: Optional[str] = Query(None),
        date_to: Optional[str] = Query(None),
        patient_ref: Optional[str] = Query(None),
        current_actor: Actor = Depends(get_current_actor),
        db: Session = Depends(get_db)
):
    try:
        items = booking.list_for_doctor(db, current_actor.ref, status, date_from, date_to, patient_ref)
    except BookingError as e:
        raise _http_error(e)
    return {"items": [serialize_appointment(a) for a in items]}


@router.delete('/doctors/me/appointments')
@role_required([UserRole.DOCTOR.value])
def purge_my_appointments(
        date_from: Optional[str] = Query(None),
        date_to: Optional[str] = Query(None),
        current_actor: Actor = Depends(get_current_actor),
        db: Session = Depends(get_db)
):
    try:
        deleted = booking.purge_appointments(db, current_actor.ref, date_from, date_to)
    except BookingError as e:
        raise _http_error(e)
    return {"message": "Appointments deleted", "deleted": deleted}


@router.get('/events')
@role_required([UserRole.ADMIN.value])
def get_events(
        after_id: int = Query(0),
        limit: int = Query(100),
        current_actor: Actor = Depends(get_current_actor),
        db: Session = Depends(get_db)
):
    return {"items": [serialize_event(e) for e in list_events(db, after_id, limit)]}
