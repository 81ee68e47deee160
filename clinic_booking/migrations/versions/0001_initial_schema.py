"""Availability, appointments, booking locks and the notification outbox."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "0001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "availabilities",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("doctor_ref", sa.String(), nullable=False, unique=True),
        sa.Column("duration_minutes", sa.Integer(), nullable=False),
        sa.Column("session_capacity", sa.Integer(), nullable=False),
        sa.Column("timezone", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_availabilities_id", "availabilities", ["id"])

    op.create_table(
        "weekly_ranges",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("availability_id", sa.Integer(), nullable=False),
        sa.Column("weekday", sa.String(3), nullable=False),
        sa.Column("start_time", sa.String(5), nullable=False),
        sa.Column("end_time", sa.String(5), nullable=False),
        sa.ForeignKeyConstraint(["availability_id"], ["availabilities.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("availability_id", "weekday", "start_time", "end_time",
                            name="_availability_weekday_range_uc"),
        sa.CheckConstraint("start_time < end_time", name="ck_weekly_range_order"),
    )
    op.create_index("ix_weekly_ranges_id", "weekly_ranges", ["id"])

    op.create_table(
        "availability_exceptions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("availability_id", sa.Integer(), nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("reason", sa.String(), nullable=False),
        sa.ForeignKeyConstraint(["availability_id"], ["availabilities.id"], ondelete="CASCADE"),
        sa.CheckConstraint("kind IN ('break', 'block')", name="ck_availability_exception_kind"),
    )
    op.create_index("ix_availability_exceptions_id", "availability_exceptions", ["id"])

    op.create_table(
        "appointments",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("reference_no", sa.String(), nullable=False, unique=True),
        sa.Column("patient_ref", sa.String(), nullable=False),
        sa.Column("doctor_ref", sa.String(), nullable=False),
        sa.Column("date", sa.String(10), nullable=False),
        sa.Column("start_time", sa.String(5), nullable=False),
        sa.Column("end_time", sa.String(5), nullable=False),
        sa.Column("status", sa.String(), server_default="Booked", nullable=False),
        sa.Column("queue_no", sa.Integer(), nullable=False),
        sa.Column("reason", sa.String(), server_default="", nullable=False),
        sa.Column("created_by", sa.String(), server_default="patient", nullable=False),
        sa.Column("payment_method", sa.String(), server_default="Cash", nullable=False),
        sa.Column("price", sa.Integer(), server_default="0", nullable=False),
        sa.Column("patient_name", sa.String(), server_default="", nullable=False),
        sa.Column("patient_phone", sa.String(), server_default="", nullable=False),
        sa.Column("patient_email", sa.String(), server_default="", nullable=False),
        sa.Column("patient_nic", sa.String(), server_default="", nullable=False),
        sa.Column("patient_passport", sa.String(), server_default="", nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("end_time > start_time", name="ck_appointment_time_order"),
        sa.CheckConstraint("queue_no >= 1", name="ck_appointment_queue_no"),
    )
    op.create_index("ix_appointments_id", "appointments", ["id"])
    op.create_index("ix_appointments_patient_ref", "appointments", ["patient_ref"])
    op.create_index("ix_appointments_doctor_ref", "appointments", ["doctor_ref"])
    op.create_index("ix_appointments_date", "appointments", ["date"])
    op.create_index("ix_appointments_status", "appointments", ["status"])
    op.create_index("idx_patient_date", "appointments", ["patient_ref", "date"])
    op.create_index("idx_status_date", "appointments", ["status", "date"])
    op.create_index(
        "uq_active_doctor_date_start",
        "appointments",
        ["doctor_ref", "date", "start_time"],
        unique=True,
        postgresql_where=sa.text("status <> 'Cancelled'"),
        sqlite_where=sa.text("status <> 'Cancelled'"),
    )

    op.create_table(
        "session_locks",
        sa.Column("doctor_ref", sa.String(), primary_key=True),
        sa.Column("date", sa.String(10), primary_key=True),
        sa.Column("version", sa.Integer(), server_default="0", nullable=False),
    )

    op.create_table(
        "sequence_counters",
        sa.Column("key", sa.String(), primary_key=True),
        sa.Column("last_number", sa.Integer(), server_default="0", nullable=False),
    )

    op.create_table(
        "appointment_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("appointment_id", sa.Integer(), nullable=False),
        sa.Column("reference_no", sa.String(), nullable=False),
        sa.Column("doctor_ref", sa.String(), nullable=False),
        sa.Column("patient_ref", sa.String(), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_appointment_events_id", "appointment_events", ["id"])
    op.create_index("ix_appointment_events_appointment_id", "appointment_events", ["appointment_id"])


def downgrade() -> None:
    op.drop_index("ix_appointment_events_appointment_id", table_name="appointment_events")
    op.drop_index("ix_appointment_events_id", table_name="appointment_events")
    op.drop_table("appointment_events")
    op.drop_table("sequence_counters")
    op.drop_table("session_locks")
    op.drop_index("uq_active_doctor_date_start", table_name="appointments")
    op.drop_index("idx_status_date", table_name="appointments")
    op.drop_index("idx_patient_date", table_name="appointments")
    op.drop_index("ix_appointments_status", table_name="appointments")
    op.drop_index("ix_appointments_date", table_name="appointments")
    op.drop_index("ix_appointments_doctor_ref", table_name="appointments")
    op.drop_index("ix_appointments_patient_ref", table_name="appointments")
    op.drop_index("ix_appointments_id", table_name="appointments")
    op.drop_table("appointments")
    op.drop_index("ix_availability_exceptions_id", table_name="availability_exceptions")
    op.drop_table("availability_exceptions")
    op.drop_index("ix_weekly_ranges_id", table_name="weekly_ranges")
    op.drop_table("weekly_ranges")
    op.drop_index("ix_availabilities_id", table_name="availabilities")
    op.drop_table("availabilities")
