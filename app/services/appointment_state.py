"""Appointment status machine.

    PENDING -> APPROVED -> CONFIRMED -> COMPLETED
    PENDING -> DECLINED
    any non-terminal status -> CANCELLED

Transitions are written as a compare-and-set on the status column, so two
requests racing on the same appointment can never both apply.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import Clock
from app.core.exceptions import AlreadyInState, InvalidTransition
from app.models.appointments import appointments
from app.schemas.appointments import AppointmentStatus, PaymentStatus

logger = structlog.get_logger(__name__)

TERMINAL_STATUSES = frozenset(
    {
        AppointmentStatus.COMPLETED,
        AppointmentStatus.DECLINED,
        AppointmentStatus.CANCELLED,
    }
)

ALLOWED_TRANSITIONS: dict[AppointmentStatus, frozenset[AppointmentStatus]] = {
    AppointmentStatus.PENDING: frozenset(
        {AppointmentStatus.APPROVED, AppointmentStatus.DECLINED, AppointmentStatus.CANCELLED}
    ),
    AppointmentStatus.APPROVED: frozenset(
        {AppointmentStatus.CONFIRMED, AppointmentStatus.CANCELLED}
    ),
    AppointmentStatus.CONFIRMED: frozenset(
        {AppointmentStatus.COMPLETED, AppointmentStatus.CANCELLED}
    ),
    AppointmentStatus.COMPLETED: frozenset(),
    AppointmentStatus.DECLINED: frozenset(),
    AppointmentStatus.CANCELLED: frozenset(),
}

# How many times a transition is re-evaluated after losing a race
MAX_ATTEMPTS = 3


def check_transition(current: AppointmentStatus, target: AppointmentStatus) -> bool:
    """
    Validate a status change.

    Returns:
        True if the transition must be written, False for a repeated
        cancellation, which is accepted without doing anything

    Raises:
        AlreadyInState: If the appointment already has the target status
        InvalidTransition: If the transition is not in the table
    """
    if current == target:
        if target == AppointmentStatus.CANCELLED:
            return False
        raise AlreadyInState(current.value)

    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransition(current.value, target.value)

    return True


class AppointmentStateMachine:
    """Applies status transitions and their side-effect fields."""

    def __init__(self, db: AsyncSession, clock: Clock):
        """Initialize with the request's session and clock."""
        self.db = db
        self.clock = clock

    def side_effects(
        self,
        appointment: dict[str, Any],
        target: AppointmentStatus,
        now: datetime,
        *,
        rejection_reason: str | None = None,
        amount_paid: Decimal | None = None,
    ) -> dict[str, Any]:
        """Column values written together with the new status."""
        values: dict[str, Any] = {"status": target.value, "updated_at": now}

        if target == AppointmentStatus.APPROVED:
            values["approved_at"] = now
        elif target == AppointmentStatus.DECLINED:
            values["rejected_at"] = now
            values["rejection_reason"] = rejection_reason
        elif target == AppointmentStatus.CONFIRMED:
            values["confirmed_at"] = now
            values["payment_status"] = PaymentStatus.PAID.value
            if amount_paid is not None:
                values["amount"] = amount_paid
        elif target == AppointmentStatus.COMPLETED:
            values["completed_at"] = now
            values["payment_link"] = None
            values["payment_session_id"] = None
        elif target == AppointmentStatus.CANCELLED:
            values["cancelled_at"] = now
            values["payment_link"] = None
            values["payment_session_id"] = None
            if appointment["payment_status"] == PaymentStatus.PAID.value:
                values["payment_status"] = PaymentStatus.REFUNDED.value

        return values

    async def transition(
        self,
        appointment: dict[str, Any],
        target: AppointmentStatus,
        *,
        rejection_reason: str | None = None,
        amount_paid: Decimal | None = None,
        expected_from: AppointmentStatus | None = None,
    ) -> dict[str, Any]:
        """
        Move an appointment to ``target``.

        The caller owns the transaction and commits.

        Args:
            appointment: Current appointment row
            target: Requested status
            rejection_reason: Required for DECLINED
            amount_paid: Amount actually charged, for CONFIRMED
            expected_from: Only move the appointment out of this status. When a
                concurrent writer changed it, the transition fails instead of
                being re-evaluated against the new status.

        Returns:
            The updated appointment row

        Raises:
            InvalidTransition: If the change is illegal, including when a
                concurrent writer got there first
        """
        current_row = appointment

        for _ in range(MAX_ATTEMPTS):
            current = AppointmentStatus(current_row["status"])
            if expected_from is not None and current != expected_from:
                raise InvalidTransition(current.value, target.value)
            if not check_transition(current, target):
                return current_row

            values = self.side_effects(
                current_row,
                target,
                self.clock.now(),
                rejection_reason=rejection_reason,
                amount_paid=amount_paid,
            )
            stmt = (
                update(appointments)
                .where(
                    appointments.c.id == current_row["id"],
                    appointments.c.status == current.value,
                )
                .values(**values)
                .returning(appointments)
            )
            result = await self.db.execute(stmt)
            row = result.mappings().first()

            if row is not None:
                logger.info(
                    "appointment_transitioned",
                    appointment_id=str(row["id"]),
                    from_status=current.value,
                    to_status=target.value,
                )
                return dict(row)

            # Someone else moved it; re-check against what is stored now
            refreshed = await self.db.execute(
                select(appointments).where(appointments.c.id == current_row["id"])
            )
            latest = refreshed.mappings().first()
            if latest is None:
                raise InvalidTransition(current.value, target.value, "Appointment no longer exists")
            current_row = dict(latest)
            logger.info(
                "appointment_transition_race",
                appointment_id=str(current_row["id"]),
                expected=current.value,
                found=current_row["status"],
            )

        raise InvalidTransition(current_row["status"], target.value)
