"""Notification records handed to the delivery service."""

import uuid

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    String,
    Table,
    Text,
    Uuid,
    func,
)

from app.models.base import metadata

notifications = Table(
    "notifications",
    metadata,
    Column("id", Uuid, primary_key=True, default=uuid.uuid4),
    Column("user_id", Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("title", Text, nullable=False),
    Column("body", Text, nullable=False),
    Column("notification_type", String(50), nullable=False),
    Column("data", JSON, nullable=True),
    Column("status", String(20), nullable=False, server_default="pending"),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    CheckConstraint(
        "notification_type IN ('appointment_requested', 'appointment_approved', "
        "'appointment_confirmation', 'appointment_declined', 'appointment_cancelled', "
        "'appointment_completed', 'other')",
        name="notifications_type_check",
    ),
    CheckConstraint(
        "status IN ('pending', 'sent', 'failed', 'read')",
        name="notifications_status_check",
    ),
    Index("idx_notifications_user_status", "user_id", "status"),
)
