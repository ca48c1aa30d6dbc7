"""Notification service.

Scheduling only records what happened; wording, channels and delivery are
owned by the messaging service that drains the ``notifications`` table.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy import insert
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.notifications import notifications

logger = structlog.get_logger(__name__)

TITLES = {
    "appointment_requested": "New Appointment Request",
    "appointment_approved": "Appointment Approved - Payment Required",
    "appointment_confirmation": "Appointment Confirmed",
    "appointment_declined": "Appointment Declined",
    "appointment_cancelled": "Appointment Cancelled",
    "appointment_completed": "Appointment Completed",
}


def _jsonable(payload: dict[str, Any]) -> dict[str, Any]:
    return {
        key: value.isoformat() if isinstance(value, datetime) else str(value)
        for key, value in payload.items()
        if value is not None
    }


class NotificationService:
    """Fire-and-forget notification recording."""

    @staticmethod
    async def notify(
        db: AsyncSession,
        user_id: UUID,
        kind: str,
        payload: dict[str, Any],
    ) -> None:
        """
        Queue a notification for a user.

        Never raises: a failed notification must not fail the scheduling
        operation that triggered it.

        Args:
            db: Database session (the caller's work is already committed)
            user_id: Recipient
            kind: Notification type
            payload: Data for the message template
        """
        data = _jsonable(payload)
        try:
            await db.execute(
                insert(notifications).values(
                    user_id=user_id,
                    title=TITLES.get(kind, "Appointment Update"),
                    body=data.get("message", TITLES.get(kind, "Your appointment was updated")),
                    notification_type=kind,
                    data=data,
                    status="pending",
                )
            )
            await db.commit()
            logger.info("notification_queued", user_id=str(user_id), kind=kind)
        except Exception as e:
            await db.rollback()
            logger.warning(
                "failed_to_send_notification",
                user_id=str(user_id),
                kind=kind,
                error=str(e),
            )
