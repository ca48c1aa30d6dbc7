"""Scheduling service: the single writer of the appointments table."""

from datetime import date, datetime, timedelta
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings, settings
from app.core.clock import Clock
from app.core.exceptions import (
    AppointmentAccessDenied,
    AppointmentNotFound,
    DoctorNotFound,
    ExternalProviderError,
    InvalidTransition,
    PaymentAlreadyCompleted,
    SchedulingValidationError,
)
from app.core.payments import PaymentGateway
from app.core.redis_client import CacheManager
from app.models.appointments import SLOT_RELEASING_STATUSES, appointments
from app.schemas.appointments import (
    AppointmentCreate,
    AppointmentCreated,
    AppointmentListResponse,
    AppointmentResponse,
    AppointmentStatus,
    ApprovalResponse,
    PaymentLinkResponse,
    PaymentStatus,
    PaymentStatusResponse,
)
from app.services.appointment_state import AppointmentStateMachine
from app.services.billing_service import BillingService
from app.services.doctor_service import DoctorService
from app.services.notification_service import NotificationService
from app.services.payment_event_processor import CallbackOutcome, PaymentEventProcessor
from app.services.payment_session_service import PaymentSessionManager, SessionHandle
from app.services.slot_guard import SlotConflictGuard

logger = structlog.get_logger(__name__)


class SchedulingService:
    """Booking, doctor decisions, payment callbacks and slot queries."""

    # Cache TTL in seconds for per-day booked slot lists
    BOOKED_SLOTS_CACHE_TTL = 300

    def __init__(
        self,
        db: AsyncSession,
        gateway: PaymentGateway,
        clock: Clock,
        cache_manager: CacheManager | None = None,
        config: Settings = settings,
    ):
        """Wire the scheduling components around one database session."""
        self.db = db
        self.clock = clock
        self.cache = cache_manager
        self.state = AppointmentStateMachine(db, clock)
        self.slot_guard = SlotConflictGuard(
            db,
            clock,
            lead=timedelta(minutes=config.min_booking_lead_minutes),
            default_fee=config.default_consultation_fee,
        )
        self.payments = PaymentSessionManager(
            db,
            gateway,
            self.state,
            clock,
            window=timedelta(hours=config.payment_window_hours),
        )
        self.billing = BillingService(db, clock)
        self.events = PaymentEventProcessor(db, gateway, self.state, self.billing, clock)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _booked_slots_cache_key(doctor_id: UUID, day: date) -> str:
        """Generate cache key for a doctor's booked slots on a day."""
        return f"booked_slots:{doctor_id}:{day.isoformat()}"

    def _invalidate_slots(self, appointment: dict[str, Any]) -> None:
        if self.cache:
            self.cache.delete(
                self._booked_slots_cache_key(
                    appointment["doctor_id"],
                    appointment["scheduled_for"].date(),
                )
            )

    async def _load(self, appointment_id: UUID) -> dict[str, Any]:
        result = await self.db.execute(
            select(appointments).where(appointments.c.id == appointment_id)
        )
        row = result.mappings().first()
        if not row:
            raise AppointmentNotFound(appointment_id)
        return dict(row)

    async def _doctor_for_user(self, user: dict) -> dict[str, Any]:
        doctor = await DoctorService.get_doctor_by_user_id(self.db, user["id"])
        if not doctor:
            raise AppointmentAccessDenied("Doctor profile not found for this user")
        return doctor

    async def _load_for_doctor(self, appointment_id: UUID, user: dict) -> dict[str, Any]:
        doctor = await self._doctor_for_user(user)
        appointment = await self._load(appointment_id)
        if appointment["doctor_id"] != doctor["id"]:
            raise AppointmentAccessDenied("You can only manage your own appointments")
        return appointment

    async def _load_for_patient(self, appointment_id: UUID, user: dict) -> dict[str, Any]:
        appointment = await self._load(appointment_id)
        if appointment["patient_id"] != user["id"]:
            raise AppointmentAccessDenied()
        return appointment

    async def _load_for_participant(self, appointment_id: UUID, user: dict) -> dict[str, Any]:
        """Patient owner, the appointment's doctor, or an admin."""
        appointment = await self._load(appointment_id)
        if user["role"] == "admin" or appointment["patient_id"] == user["id"]:
            return appointment
        if user["role"] == "doctor":
            doctor = await DoctorService.get_doctor_by_user_id(self.db, user["id"])
            if doctor and doctor["id"] == appointment["doctor_id"]:
                return appointment
        raise AppointmentAccessDenied()

    async def _notify(self, user_id: UUID, kind: str, appointment: dict, message: str) -> None:
        await NotificationService.notify(
            self.db,
            user_id,
            kind,
            {
                "appointment_id": appointment["id"],
                "scheduled_for": appointment["scheduled_for"],
                "status": appointment["status"],
                "payment_link": appointment.get("payment_link"),
                "message": message,
            },
        )

    # ------------------------------------------------------------------
    # Patient booking
    # ------------------------------------------------------------------

    async def request_appointment(
        self,
        patient_id: UUID,
        data: AppointmentCreate,
    ) -> AppointmentCreated:
        """
        Book a slot for a patient.

        Args:
            patient_id: Requesting patient
            data: Booking request

        Returns:
            Id and status of the new PENDING appointment

        Raises:
            DoctorNotFound: If the doctor id is unknown
            SchedulingValidationError: If the slot is too soon or in the past
            DoctorUnavailable: If the doctor takes no bookings
            SlotAlreadyBooked: If the slot is taken
        """
        doctor = await DoctorService.get_doctor_by_id(self.db, data.doctor_id)
        if not doctor:
            raise DoctorNotFound(data.doctor_id)

        appointment = await self.slot_guard.reserve(
            doctor,
            patient_id,
            data.scheduled_for,
            reason=data.reason,
            phone=data.phone,
            notes=data.notes,
        )
        self._invalidate_slots(appointment)

        logger.info(
            "appointment_requested",
            appointment_id=str(appointment["id"]),
            doctor_id=str(doctor["id"]),
            scheduled_for=appointment["scheduled_for"].isoformat(),
        )

        await self._notify(
            doctor["user_id"],
            "appointment_requested",
            appointment,
            f"You have a new appointment request for {appointment['scheduled_for']:%Y-%m-%d %H:%M}",
        )

        return AppointmentCreated(
            appointment_id=appointment["id"],
            status=AppointmentStatus(appointment["status"]),
        )

    async def regenerate_payment_link(
        self,
        appointment_id: UUID,
        user: dict,
    ) -> PaymentLinkResponse:
        """
        Issue a fresh payment link for the patient's approved appointment.

        Raises:
            AppointmentAccessDenied: If the user is not the patient
            PaymentAlreadyCompleted: If it is already paid
            AppointmentNotApproved: If it is not APPROVED
            ExternalProviderError: If the provider call fails
        """
        appointment = await self._load_for_patient(appointment_id, user)
        handle = await self.payments.regenerate_session(appointment)

        return PaymentLinkResponse(
            appointment_id=appointment_id,
            status=AppointmentStatus(handle.appointment["status"]),
            payment_link=handle.payment_link,
            expires_at=handle.expires_at,
        )

    async def cancel_appointment(self, appointment_id: UUID, user: dict) -> AppointmentResponse:
        """
        Cancel an appointment and release its slot.

        Repeating a cancellation is accepted and changes nothing.

        Raises:
            AppointmentAccessDenied: If the user is not a participant or admin
            InvalidTransition: If the appointment is COMPLETED or DECLINED
        """
        appointment = await self._load_for_participant(appointment_id, user)
        if appointment["status"] == AppointmentStatus.CANCELLED.value:
            return AppointmentResponse.model_validate(appointment)

        cancelled = await self.state.transition(appointment, AppointmentStatus.CANCELLED)
        await self.db.commit()
        self._invalidate_slots(cancelled)

        logger.info(
            "appointment_cancelled",
            appointment_id=str(appointment_id),
            cancelled_by=str(user["id"]),
            previous_status=appointment["status"],
        )
        await self._notify(
            cancelled["patient_id"],
            "appointment_cancelled",
            cancelled,
            "Your appointment has been cancelled",
        )
        return AppointmentResponse.model_validate(cancelled)

    # ------------------------------------------------------------------
    # Doctor decisions
    # ------------------------------------------------------------------

    async def approve_appointment(self, appointment_id: UUID, user: dict) -> ApprovalResponse:
        """
        Approve a PENDING appointment and open its payment session.

        Without a payment provider the appointment is confirmed immediately.

        Raises:
            AppointmentAccessDenied: If the doctor does not own the appointment
            InvalidTransition: If it is not PENDING
            ExternalProviderError: If the payment session could not be created;
                the approval itself is kept
        """
        appointment = await self._load_for_doctor(appointment_id, user)
        approved = await self.state.transition(appointment, AppointmentStatus.APPROVED)
        await self.db.commit()

        try:
            handle: SessionHandle = await self.payments.create_session(approved)
        except ExternalProviderError:
            logger.error(
                "payment_link_creation_failed",
                appointment_id=str(appointment_id),
                note="appointment stays APPROVED, regenerate the link to retry",
            )
            raise

        result = handle.appointment
        if handle.confirmed_without_payment:
            await self._notify(
                result["patient_id"],
                "appointment_confirmation",
                result,
                f"Your appointment is confirmed for {result['scheduled_for']:%Y-%m-%d %H:%M}",
            )
        else:
            await self._notify(
                result["patient_id"],
                "appointment_approved",
                result,
                "Your appointment was approved. Please complete the payment within 24 hours",
            )

        return ApprovalResponse(
            appointment_id=appointment_id,
            status=AppointmentStatus(result["status"]),
            payment_link=handle.payment_link,
            payment_deadline=handle.expires_at,
            payment_required=not handle.confirmed_without_payment,
        )

    async def decline_appointment(
        self,
        appointment_id: UUID,
        user: dict,
        reason: str,
    ) -> AppointmentResponse:
        """
        Decline a PENDING appointment; the slot becomes bookable again.

        Raises:
            SchedulingValidationError: If the reason is blank
            AppointmentAccessDenied: If the doctor does not own the appointment
            InvalidTransition: If it is not PENDING
        """
        if not reason or not reason.strip():
            raise SchedulingValidationError("A reason is required to decline", field="reason")

        appointment = await self._load_for_doctor(appointment_id, user)
        declined = await self.state.transition(
            appointment,
            AppointmentStatus.DECLINED,
            rejection_reason=reason.strip(),
        )
        await self.db.commit()
        self._invalidate_slots(declined)

        await self._notify(
            declined["patient_id"],
            "appointment_declined",
            declined,
            "Your appointment request has been declined",
        )
        return AppointmentResponse.model_validate(declined)

    async def complete_appointment(self, appointment_id: UUID, user: dict) -> AppointmentResponse:
        """Close a CONFIRMED appointment after the visit."""
        appointment = await self._load_for_doctor(appointment_id, user)
        completed = await self.state.transition(appointment, AppointmentStatus.COMPLETED)
        await self.db.commit()

        await self._notify(
            completed["patient_id"],
            "appointment_completed",
            completed,
            "Your appointment has been marked as completed",
        )
        return AppointmentResponse.model_validate(completed)

    # ------------------------------------------------------------------
    # Payment provider
    # ------------------------------------------------------------------

    async def handle_payment_callback(
        self,
        payload: bytes,
        signature: str | None,
    ) -> CallbackOutcome:
        """Apply a provider callback; see PaymentEventProcessor."""
        return await self.events.handle_callback(payload, signature)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def list_booked_slots(self, doctor_id: UUID, day: date) -> list[datetime]:
        """
        List the timestamps a doctor already has taken on a day.

        Args:
            doctor_id: Doctor ID
            day: Clinic-local calendar day

        Returns:
            Sorted slot timestamps
        """
        cache_key = self._booked_slots_cache_key(doctor_id, day)
        if self.cache:
            cached = self.cache.get_json(cache_key)
            if cached is not None:
                return [datetime.fromisoformat(value) for value in cached]

        start = datetime.combine(day, datetime.min.time())
        stmt = (
            select(appointments.c.scheduled_for)
            .where(
                appointments.c.doctor_id == doctor_id,
                appointments.c.scheduled_for >= start,
                appointments.c.scheduled_for < start + timedelta(days=1),
                appointments.c.status.notin_(SLOT_RELEASING_STATUSES),
            )
            .order_by(appointments.c.scheduled_for)
        )
        result = await self.db.execute(stmt)
        slots = [row.scheduled_for for row in result]

        if self.cache:
            self.cache.set_json(
                cache_key,
                [slot.isoformat() for slot in slots],
                ttl=self.BOOKED_SLOTS_CACHE_TTL,
            )

        return slots

    async def get_appointment(self, appointment_id: UUID, user: dict) -> AppointmentResponse:
        """Get appointment by ID for a participant or admin."""
        appointment = await self._load_for_participant(appointment_id, user)
        return AppointmentResponse.model_validate(appointment)

    async def get_payment_status(self, appointment_id: UUID, user: dict) -> PaymentStatusResponse:
        """Payment view of an appointment, including whether its deadline passed."""
        appointment = await self._load_for_participant(appointment_id, user)
        deadline = appointment["payment_deadline"]
        overdue = (
            appointment["status"] == AppointmentStatus.APPROVED.value
            and appointment["payment_status"] != PaymentStatus.PAID.value
            and deadline is not None
            and deadline < self.clock.now()
        )

        return PaymentStatusResponse(
            appointment_id=appointment_id,
            status=AppointmentStatus(appointment["status"]),
            payment_status=PaymentStatus(appointment["payment_status"]),
            amount=appointment["amount"],
            currency=appointment["currency"],
            payment_link=appointment["payment_link"],
            payment_deadline=deadline,
            is_payment_overdue=overdue,
        )

    async def list_patient_appointments(
        self,
        patient_id: UUID,
        status: AppointmentStatus | None = None,
    ) -> AppointmentListResponse:
        """List a patient's appointments, newest slot first."""
        conditions = [appointments.c.patient_id == patient_id]
        if status:
            conditions.append(appointments.c.status == status.value)

        return await self._list(conditions)

    async def list_doctor_appointments(
        self,
        user: dict,
        statuses: tuple[AppointmentStatus, ...],
    ) -> AppointmentListResponse:
        """List the calling doctor's appointments in the given statuses."""
        doctor = await self._doctor_for_user(user)
        conditions = [
            appointments.c.doctor_id == doctor["id"],
            appointments.c.status.in_([s.value for s in statuses]),
        ]

        return await self._list(conditions)

    async def _list(self, conditions: list) -> AppointmentListResponse:
        count_stmt = select(func.count()).select_from(appointments).where(and_(*conditions))
        total = (await self.db.execute(count_stmt)).scalar() or 0

        stmt = (
            select(appointments)
            .where(and_(*conditions))
            .order_by(appointments.c.scheduled_for.desc())
        )
        result = await self.db.execute(stmt)
        items = [AppointmentResponse.model_validate(dict(row)) for row in result.mappings()]

        return AppointmentListResponse(total=total, items=items)

    # ------------------------------------------------------------------
    # Operator maintenance
    # ------------------------------------------------------------------

    async def fill_missing_payment_links(self) -> tuple[int, int]:
        """
        Create payment sessions for APPROVED appointments that have no link.

        Returns:
            (fixed, failed) counts
        """
        stmt = select(appointments).where(
            appointments.c.status == AppointmentStatus.APPROVED.value,
            appointments.c.payment_link.is_(None),
            appointments.c.payment_status == PaymentStatus.UNPAID.value,
        )
        pending = [dict(row) for row in (await self.db.execute(stmt)).mappings()]

        fixed = failed = 0
        for appointment in pending:
            try:
                await self.payments.create_session(appointment)
                fixed += 1
            except (ExternalProviderError, InvalidTransition, PaymentAlreadyCompleted) as e:
                failed += 1
                logger.warning(
                    "payment_link_fill_failed",
                    appointment_id=str(appointment["id"]),
                    error=e.message,
                )

        logger.info("payment_links_filled", fixed=fixed, failed=failed)
        return fixed, failed

    async def expire_overdue_approvals(self) -> int:
        """
        Cancel APPROVED appointments whose payment deadline has passed unpaid.

        Returns:
            Number of appointments cancelled
        """
        stmt = select(appointments).where(
            appointments.c.status == AppointmentStatus.APPROVED.value,
            appointments.c.payment_status == PaymentStatus.UNPAID.value,
            appointments.c.payment_deadline < self.clock.now(),
        )
        overdue = [dict(row) for row in (await self.db.execute(stmt)).mappings()]

        expired = 0
        for appointment in overdue:
            try:
                cancelled = await self.state.transition(
                    appointment,
                    AppointmentStatus.CANCELLED,
                    expected_from=AppointmentStatus.APPROVED,
                )
                await self.db.commit()
            except InvalidTransition:
                # Paid or otherwise resolved in the meantime
                await self.db.rollback()
                continue

            expired += 1
            self._invalidate_slots(cancelled)
            await self._notify(
                cancelled["patient_id"],
                "appointment_cancelled",
                cancelled,
                "Your appointment was cancelled because the payment deadline passed",
            )

        logger.info("overdue_approvals_expired", count=expired)
        return expired
