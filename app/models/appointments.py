"""Appointments table model using SQLAlchemy Core."""

import uuid

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Numeric,
    String,
    Table,
    Text,
    Uuid,
    text,
)

from app.models.base import metadata

# Statuses that give the slot back; every other status keeps it occupied.
SLOT_RELEASING_STATUSES = ("CANCELLED", "DECLINED")

_slot_held = text("status NOT IN ('CANCELLED', 'DECLINED')")

appointments = Table(
    "appointments",
    metadata,
    Column("id", Uuid, primary_key=True, default=uuid.uuid4),
    # Ownership / references
    Column(
        "patient_id",
        Uuid,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    ),
    Column(
        "doctor_id",
        Uuid,
        ForeignKey("doctors.id", ondelete="CASCADE"),
        nullable=False,
    ),
    # Clinic-local civil time, never timezone shifted
    Column("scheduled_for", DateTime(timezone=False), nullable=False),
    Column("reason", String(500), nullable=False),
    Column("phone", String(20), nullable=True),
    Column("notes", Text, nullable=True),
    # Status management
    Column("status", String(20), nullable=False, server_default="PENDING"),
    Column("rejection_reason", Text, nullable=True),
    # Payment
    Column("payment_status", String(20), nullable=False, server_default="unpaid"),
    Column("amount", Numeric(10, 2), nullable=False),
    Column("currency", String(3), nullable=False, server_default="EUR"),
    Column("payment_session_id", String(255), nullable=True, unique=True),
    Column("payment_link", String(500), nullable=True),
    Column("payment_deadline", DateTime, nullable=True),
    # Audit fields
    Column("created_at", DateTime, nullable=False),
    Column("updated_at", DateTime, nullable=False),
    Column("approved_at", DateTime, nullable=True),
    Column("rejected_at", DateTime, nullable=True),
    Column("confirmed_at", DateTime, nullable=True),
    Column("completed_at", DateTime, nullable=True),
    Column("cancelled_at", DateTime, nullable=True),
    # Constraints
    CheckConstraint(
        "status IN ('PENDING', 'APPROVED', 'CONFIRMED', 'COMPLETED', 'DECLINED', 'CANCELLED')",
        name="appointments_status_check",
    ),
    CheckConstraint(
        "payment_status IN ('unpaid', 'paid', 'refunded')",
        name="appointments_payment_status_check",
    ),
    # One live appointment per doctor and timestamp
    Index(
        "uq_appointments_doctor_slot",
        "doctor_id",
        "scheduled_for",
        unique=True,
        postgresql_where=_slot_held,
        sqlite_where=_slot_held,
    ),
    Index("idx_appointments_patient_id", "patient_id"),
    Index("idx_appointments_doctor_status", "doctor_id", "status"),
)
