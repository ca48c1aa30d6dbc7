"""Billing tables written when an appointment payment succeeds."""

import uuid

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Table,
    Text,
    Uuid,
)

from app.models.base import metadata

bills = Table(
    "bills",
    metadata,
    Column("id", Uuid, primary_key=True, default=uuid.uuid4),
    Column(
        "patient_id",
        Uuid,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    ),
    Column(
        "appointment_id",
        Uuid,
        ForeignKey("appointments.id", ondelete="SET NULL"),
        nullable=True,
    ),
    # Provider reference; a second bill for the same payment is never created
    Column("external_reference", String(255), nullable=False, unique=True),
    Column("description", Text, nullable=False),
    Column("total_amount", Numeric(10, 2), nullable=False),
    Column("currency", String(3), nullable=False),
    Column("status", String(20), nullable=False, server_default="paid"),
    Column("created_at", DateTime, nullable=False),
    CheckConstraint("status IN ('pending', 'paid', 'void')", name="bills_status_check"),
)

bill_items = Table(
    "bill_items",
    metadata,
    Column("id", Uuid, primary_key=True, default=uuid.uuid4),
    Column(
        "bill_id",
        Uuid,
        ForeignKey("bills.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    ),
    Column("description", Text, nullable=False),
    Column("quantity", Integer, nullable=False, server_default="1"),
    Column("unit_price", Numeric(10, 2), nullable=False),
    Column("line_total", Numeric(10, 2), nullable=False),
)

payment_history = Table(
    "payment_history",
    metadata,
    Column("id", Uuid, primary_key=True, default=uuid.uuid4),
    Column(
        "bill_id",
        Uuid,
        ForeignKey("bills.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    ),
    Column("amount", Numeric(10, 2), nullable=False),
    Column("payment_method", String(20), nullable=False, server_default="online"),
    Column("transaction_ref", String(255), nullable=True),
    Column("paid_at", DateTime, nullable=False),
)
