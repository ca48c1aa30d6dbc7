"""Applied payment callbacks, one row per provider session."""

import uuid

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Numeric,
    String,
    Table,
    Uuid,
)

from app.models.base import metadata

payment_events = Table(
    "payment_events",
    metadata,
    Column("id", Uuid, primary_key=True, default=uuid.uuid4),
    # A row here means the callback for this session has been applied
    Column("session_id", String(255), nullable=False, unique=True),
    Column(
        "appointment_id",
        Uuid,
        ForeignKey("appointments.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    ),
    Column("provider_event_id", String(255), nullable=True),
    Column("event_type", String(100), nullable=False),
    Column("amount", Numeric(10, 2), nullable=True),
    Column("currency", String(3), nullable=True),
    Column("received_at", DateTime, nullable=False),
)
