"""Payment sessions for approved appointments."""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import Clock
from app.core.exceptions import AppointmentNotApproved, PaymentAlreadyCompleted
from app.core.payments import CheckoutRequest, PaymentGateway, to_minor_units
from app.models.appointments import appointments
from app.schemas.appointments import AppointmentStatus, PaymentStatus
from app.services.appointment_state import AppointmentStateMachine

logger = structlog.get_logger(__name__)

# Stripe refuses checkout expiries more than 24 hours after creation
PROVIDER_MAX_EXPIRY = timedelta(hours=24) - timedelta(minutes=1)


@dataclass(frozen=True)
class SessionHandle:
    """Result of issuing (or skipping) a payment session."""

    appointment: dict[str, Any]
    payment_link: str | None
    expires_at: datetime | None
    confirmed_without_payment: bool = False


class PaymentSessionManager:
    """Creates and regenerates checkout sessions and their deadlines."""

    def __init__(
        self,
        db: AsyncSession,
        gateway: PaymentGateway,
        state_machine: AppointmentStateMachine,
        clock: Clock,
        window: timedelta,
    ):
        """Initialize with collaborators and the payment window."""
        self.db = db
        self.gateway = gateway
        self.state = state_machine
        self.clock = clock
        self.window = window

    async def create_session(self, appointment: dict[str, Any]) -> SessionHandle:
        """
        Issue the payment session that follows an approval.

        Raises:
            AppointmentNotApproved: If the appointment is not APPROVED
            ExternalProviderError: If the provider call fails; the appointment
                stays APPROVED without a link
        """
        if appointment["status"] != AppointmentStatus.APPROVED.value:
            raise AppointmentNotApproved(appointment["status"])

        return await self._issue(appointment)

    async def regenerate_session(self, appointment: dict[str, Any]) -> SessionHandle:
        """
        Replace the payment link of an unpaid APPROVED appointment.

        Once the new link is stored the superseded session is expired at the
        provider, so the patient cannot pay it any more. That call is best
        effort; a callback for the old session no longer matches
        ``payment_session_id`` and is not applied.

        Raises:
            PaymentAlreadyCompleted: If the appointment is paid, whatever its status
            AppointmentNotApproved: If the appointment is not APPROVED
            ExternalProviderError: If the provider call fails
        """
        if appointment["payment_status"] == PaymentStatus.PAID.value:
            raise PaymentAlreadyCompleted(appointment["id"])
        if appointment["status"] != AppointmentStatus.APPROVED.value:
            raise AppointmentNotApproved(appointment["status"])

        superseded = appointment["payment_session_id"]
        logger.info(
            "payment_session_regenerating",
            appointment_id=str(appointment["id"]),
            superseded_session_id=superseded,
        )
        handle = await self._issue(appointment)

        if superseded and superseded != handle.appointment["payment_session_id"]:
            await self.gateway.expire_checkout_session(superseded)
        return handle

    def _next_deadline(self, appointment: dict[str, Any], now: datetime) -> datetime:
        deadline = now + self.window
        previous = appointment["payment_deadline"]
        if previous is not None and deadline <= previous:
            deadline = previous + timedelta(seconds=1)
        return deadline

    async def _issue(self, appointment: dict[str, Any]) -> SessionHandle:
        if not self.gateway.is_configured:
            confirmed = await self.state.transition(appointment, AppointmentStatus.CONFIRMED)
            await self.db.commit()
            logger.info(
                "appointment_confirmed_without_payment",
                appointment_id=str(confirmed["id"]),
                reason="payment provider not configured",
            )
            return SessionHandle(
                appointment=confirmed,
                payment_link=None,
                expires_at=None,
                confirmed_without_payment=True,
            )

        now = self.clock.now()
        deadline = self._next_deadline(appointment, now)
        provider_expiry = min(deadline, now + PROVIDER_MAX_EXPIRY)

        request = CheckoutRequest(
            appointment_id=str(appointment["id"]),
            patient_id=str(appointment["patient_id"]),
            doctor_id=str(appointment["doctor_id"]),
            scheduled_for=appointment["scheduled_for"].isoformat(sep=" "),
            amount_minor=to_minor_units(appointment["amount"]),
            currency=appointment["currency"],
            description=f"Consultation on {appointment['scheduled_for']:%Y-%m-%d %H:%M}",
            expires_at=int(provider_expiry.replace(tzinfo=self.clock.tz).timestamp()),
        )
        session = await self.gateway.create_checkout_session(request)

        stmt = (
            update(appointments)
            .where(
                appointments.c.id == appointment["id"],
                appointments.c.status == AppointmentStatus.APPROVED.value,
                appointments.c.payment_status != PaymentStatus.PAID.value,
            )
            .values(
                payment_session_id=session.session_id,
                payment_link=session.url,
                payment_deadline=deadline,
                updated_at=now,
            )
            .returning(appointments)
        )
        result = await self.db.execute(stmt)
        row = result.mappings().first()

        if row is None:
            # Paid or moved on while the provider call was in flight
            await self.db.rollback()
            latest = (
                await self.db.execute(
                    select(appointments).where(appointments.c.id == appointment["id"])
                )
            ).mappings().one()
            if latest["payment_status"] == PaymentStatus.PAID.value:
                raise PaymentAlreadyCompleted(appointment["id"])
            raise AppointmentNotApproved(latest["status"])

        await self.db.commit()
        logger.info(
            "payment_session_created",
            appointment_id=str(row["id"]),
            session_id=session.session_id,
            payment_deadline=deadline.isoformat(),
        )
        return SessionHandle(appointment=dict(row), payment_link=session.url, expires_at=deadline)
