# models.py
from datetime import datetime, timezone

from sqlalchemy import (Column, Integer, String, DateTime, ForeignKey, UniqueConstraint, Index, JSON,
                        CheckConstraint, text)
from sqlalchemy.orm import declarative_base, relationship

from .status import AppointmentStatus
from .utils import WEEKDAYS

Base = declarative_base()

DEFAULT_DURATION_MINUTES = 15
DEFAULT_SESSION_CAPACITY = 30
DEFAULT_TIMEZONE = "Asia/Colombo"


def _now():
    return datetime.now(timezone.utc)


class Availability(Base):
    __tablename__ = 'availabilities'
    id = Column(Integer, primary_key=True, index=True)
    doctor_ref = Column(String, nullable=False, unique=True)
    # Shared by every weekday: changing it re-slices all days
    duration_minutes = Column(Integer, nullable=False, default=DEFAULT_DURATION_MINUTES)
    session_capacity = Column(Integer, nullable=False, default=DEFAULT_SESSION_CAPACITY)
    timezone = Column(String, nullable=False, default=DEFAULT_TIMEZONE)  # informational only
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now, onupdate=_now)

    ranges = relationship("WeeklyRange", back_populates="availability", cascade="all, delete-orphan",
                          order_by="WeeklyRange.start_time")
    exceptions = relationship("AvailabilityException", back_populates="availability",
                              cascade="all, delete-orphan", order_by="AvailabilityException.start")

    def weekly_hours(self):
        hours = {day: [] for day in WEEKDAYS}
        for time_range in self.ranges:
            hours[time_range.weekday].append({"start": time_range.start_time, "end": time_range.end_time})
        return hours

    def ranges_for_weekday(self, weekday):
        return [{"start": r.start_time, "end": r.end_time} for r in self.ranges if r.weekday == weekday]

    def exceptions_of(self, kind):
        return [item for item in self.exceptions if item.kind == kind]


class WeeklyRange(Base):
    __tablename__ = 'weekly_ranges'
    id = Column(Integer, primary_key=True, index=True)
    availability_id = Column(Integer, ForeignKey('availabilities.id', ondelete="CASCADE"), nullable=False)
    weekday = Column(String(3), nullable=False)  # 'mon' .. 'sun'
    start_time = Column(String(5), nullable=False)
    end_time = Column(String(5), nullable=False)

    availability = relationship("Availability", back_populates="ranges")

    __table_args__ = (
        UniqueConstraint('availability_id', 'weekday', 'start_time', 'end_time', name='_availability_weekday_range_uc'),
        CheckConstraint("start_time < end_time", name='ck_weekly_range_order'),
    )


class AvailabilityException(Base):
    __tablename__ = 'availability_exceptions'
    id = Column(Integer, primary_key=True, index=True)
    availability_id = Column(Integer, ForeignKey('availabilities.id', ondelete="CASCADE"), nullable=False)
    kind = Column(String, nullable=False)  # 'break' (partial day) or 'block' (whole days)
    start = Column(DateTime(timezone=True), nullable=False)
    end = Column(DateTime(timezone=True), nullable=False)
    reason = Column(String, nullable=False, default='')

    availability = relationship("Availability", back_populates="exceptions")

    __table_args__ = (
        CheckConstraint("kind IN ('break', 'block')", name='ck_availability_exception_kind'),
    )


class Appointment(Base):
    __tablename__ = 'appointments'
    id = Column(Integer, primary_key=True, index=True)
    reference_no = Column(String, nullable=False, unique=True)  # e.g. AP-2026-000123

    patient_ref = Column(String, nullable=False, index=True)
    doctor_ref = Column(String, nullable=False, index=True)

    # UTC strings, rendering in local time is up to the caller
    date = Column(String(10), nullable=False, index=True)
    start_time = Column(String(5), nullable=False)
    end_time = Column(String(5), nullable=False)

    status = Column(String, nullable=False, default=AppointmentStatus.BOOKED.value, index=True)
    queue_no = Column(Integer, nullable=False)

    reason = Column(String, nullable=False, default='')
    created_by = Column(String, nullable=False, default='patient')  # 'patient', 'doctor' or 'admin'
    payment_method = Column(String, nullable=False, default='Cash')  # 'Cash' or 'Online'
    price = Column(Integer, nullable=False, default=0)

    # Patient contact snapshot taken at booking time
    patient_name = Column(String, nullable=False, default='')
    patient_phone = Column(String, nullable=False, default='')
    patient_email = Column(String, nullable=False, default='')
    patient_nic = Column(String, nullable=False, default='')
    patient_passport = Column(String, nullable=False, default='')

    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now, onupdate=_now)

    __table_args__ = (
        # Hard anti double-booking: one active appointment per doctor/date/start
        Index('uq_active_doctor_date_start', 'doctor_ref', 'date', 'start_time', unique=True,
              postgresql_where=text("status <> 'Cancelled'"),
              sqlite_where=text("status <> 'Cancelled'")),
        Index('idx_patient_date', 'patient_ref', 'date'),
        Index('idx_status_date', 'status', 'date'),
        CheckConstraint("end_time > start_time", name='ck_appointment_time_order'),
        CheckConstraint("queue_no >= 1", name='ck_appointment_queue_no'),
    )


class SessionLock(Base):
    """Serialization row for bookings into one doctor's day."""
    __tablename__ = 'session_locks'
    doctor_ref = Column(String, primary_key=True)
    date = Column(String(10), primary_key=True)
    version = Column(Integer, nullable=False, default=0)


class SequenceCounter(Base):
    __tablename__ = 'sequence_counters'
    key = Column(String, primary_key=True)  # e.g. AP-2026
    last_number = Column(Integer, nullable=False, default=0)


class AppointmentEvent(Base):
    """Outbox consumed by the notification service."""
    __tablename__ = 'appointment_events'
    id = Column(Integer, primary_key=True, index=True)
    event_type = Column(String, nullable=False)  # booked, rescheduled, status_changed, cancelled
    appointment_id = Column(Integer, nullable=False, index=True)
    reference_no = Column(String, nullable=False)
    doctor_ref = Column(String, nullable=False)
    patient_ref = Column(String, nullable=False)
    payload = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)
