"""Payment provider callbacks.

A callback is applied at most once per checkout session: the
``payment_events`` row and the APPROVED -> CONFIRMED transition commit
together, and the row's existence short-circuits every redelivery.
"""

from enum import Enum
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy import insert, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import Clock
from app.core.exceptions import AlreadyInState, InvalidTransition, WebhookSignatureInvalid
from app.core.payments import (
    CHECKOUT_COMPLETED,
    PaymentGateway,
    VerifiedEvent,
    from_minor_units,
)
from app.models.appointments import appointments
from app.models.payment_events import payment_events
from app.schemas.appointments import AppointmentStatus
from app.services.appointment_state import AppointmentStateMachine
from app.services.billing_service import BillingService
from app.services.notification_service import NotificationService

logger = structlog.get_logger(__name__)


class CallbackOutcome(str, Enum):
    """What happened to an authenticated callback. All of them are acknowledged."""

    APPLIED = "applied"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    STALE = "stale"
    UNRESOLVED = "unresolved"
    REJECTED = "rejected"
    NOT_CONFIGURED = "not_configured"


class PaymentEventProcessor:
    """Verifies callbacks and confirms the appointments they pay for."""

    def __init__(
        self,
        db: AsyncSession,
        gateway: PaymentGateway,
        state_machine: AppointmentStateMachine,
        billing: BillingService,
        clock: Clock,
    ):
        """Initialize with collaborators."""
        self.db = db
        self.gateway = gateway
        self.state = state_machine
        self.billing = billing
        self.clock = clock

    async def _already_applied(self, session_id: str) -> bool:
        result = await self.db.execute(
            select(payment_events.c.id).where(payment_events.c.session_id == session_id)
        )
        return result.first() is not None

    async def _load_appointment(self, reference: str | None) -> dict[str, Any] | None:
        if not reference:
            return None
        try:
            appointment_id = UUID(reference)
        except ValueError:
            return None
        result = await self.db.execute(
            select(appointments).where(appointments.c.id == appointment_id)
        )
        row = result.mappings().first()
        return dict(row) if row else None

    async def handle_callback(self, payload: bytes, signature: str | None) -> CallbackOutcome:
        """
        Authenticate and apply a provider callback.

        Args:
            payload: Raw request body, exactly as received
            signature: Provider signature header

        Returns:
            The outcome; every outcome is acknowledged to the provider

        Raises:
            WebhookSignatureInvalid: If the callback cannot be authenticated
        """
        if not self.gateway.is_configured:
            logger.info("payment_callback_without_provider")
            return CallbackOutcome.NOT_CONFIGURED

        try:
            event = self.gateway.verify_event(payload, signature)
        except WebhookSignatureInvalid as e:
            logger.warning("payment_callback_signature_invalid", error=e.message)
            raise

        log = logger.bind(event_id=event.event_id, event_type=event.event_type)

        if event.event_type != CHECKOUT_COMPLETED:
            log.info("payment_callback_ignored")
            return CallbackOutcome.IGNORED

        if not event.session_id:
            log.warning("payment_callback_without_session")
            return CallbackOutcome.UNRESOLVED

        if await self._already_applied(event.session_id):
            log.info("payment_callback_duplicate", session_id=event.session_id)
            return CallbackOutcome.DUPLICATE

        appointment = await self._load_appointment(event.appointment_ref)
        if appointment is None:
            log.warning("payment_callback_unresolved", appointment_ref=event.appointment_ref)
            return CallbackOutcome.UNRESOLVED

        log = log.bind(appointment_id=str(appointment["id"]), session_id=event.session_id)

        if appointment["payment_session_id"] != event.session_id:
            if appointment["status"] == AppointmentStatus.APPROVED.value:
                # Paid on a superseded link while still awaiting payment
                log.error(
                    "payment_callback_stale_session_paid",
                    current_session_id=appointment["payment_session_id"],
                    current_status=appointment["status"],
                    note="operator follow-up required",
                )
            else:
                log.warning(
                    "payment_callback_stale_session",
                    current_session_id=appointment["payment_session_id"],
                    current_status=appointment["status"],
                )
            return CallbackOutcome.STALE

        return await self._apply(event, appointment, log)

    async def _apply(
        self,
        event: VerifiedEvent,
        appointment: dict[str, Any],
        log: Any,
    ) -> CallbackOutcome:
        amount_paid = (
            from_minor_units(event.amount_total)
            if event.amount_total is not None
            else appointment["amount"]
        )
        currency = (event.currency or appointment["currency"]).upper()

        try:
            confirmed = await self.state.transition(
                appointment,
                AppointmentStatus.CONFIRMED,
                amount_paid=amount_paid,
            )
            await self.db.execute(
                insert(payment_events).values(
                    session_id=event.session_id,
                    appointment_id=appointment["id"],
                    provider_event_id=event.event_id,
                    event_type=event.event_type,
                    amount=amount_paid,
                    currency=currency,
                    received_at=self.clock.now(),
                )
            )
            await self.db.commit()
        except AlreadyInState:
            await self.db.rollback()
            log.info("payment_callback_duplicate")
            return CallbackOutcome.DUPLICATE
        except InvalidTransition as e:
            await self.db.rollback()
            # Money was taken for an appointment that can no longer be confirmed
            log.error(
                "payment_callback_rejected",
                current_status=e.current,
                note="operator follow-up required",
            )
            return CallbackOutcome.REJECTED
        except IntegrityError:
            await self.db.rollback()
            log.info("payment_callback_duplicate", note="concurrent delivery")
            return CallbackOutcome.DUPLICATE

        log.info("payment_callback_applied", amount=str(amount_paid), currency=currency)

        # Payment truth is committed; bookkeeping problems are reconciled later
        try:
            await self.billing.create_bill_for_payment(
                patient_id=confirmed["patient_id"],
                amount=amount_paid,
                currency=currency,
                description=f"Consultation on {confirmed['scheduled_for']:%Y-%m-%d %H:%M}",
                external_reference=event.session_id,
                appointment_id=confirmed["id"],
            )
        except Exception as e:
            log.exception("billing_record_failed", error=str(e))

        await NotificationService.notify(
            self.db,
            confirmed["patient_id"],
            "appointment_confirmation",
            {
                "appointment_id": confirmed["id"],
                "scheduled_for": confirmed["scheduled_for"],
                "message": "Your payment was received and your appointment is confirmed",
            },
        )
        return CallbackOutcome.APPLIED
