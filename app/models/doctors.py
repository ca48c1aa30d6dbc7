"""Doctor model definition using SQLAlchemy Core."""

import uuid

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Numeric,
    String,
    Table,
    Text,
    Uuid,
    func,
    true,
)

from app.models.base import metadata

doctors = Table(
    "doctors",
    metadata,
    Column("id", Uuid, primary_key=True, default=uuid.uuid4),
    Column(
        "user_id",
        Uuid,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
        index=True,
    ),
    Column("full_name", Text, nullable=False),
    Column("specialization", String(200), index=True),
    # Practice information
    Column("consultation_fee", Numeric(10, 2)),
    Column("currency", String(3), nullable=False, server_default="EUR"),
    # Global switch: an unavailable doctor takes no bookings at all
    Column("is_available", Boolean, nullable=False, server_default=true(), index=True),
    # Metadata
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime, nullable=False, server_default=func.now()),
)
