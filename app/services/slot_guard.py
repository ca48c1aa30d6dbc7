"""Atomic slot reservation.

The partial unique index ``uq_appointments_doctor_slot`` allows at most one
appointment per (doctor, scheduled_for) among rows whose status still holds
the slot. Reserving is therefore a single INSERT: the database decides which
of two concurrent requests wins, and the loser gets an IntegrityError.
"""

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy import insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import Clock
from app.core.exceptions import DoctorUnavailable, SlotAlreadyBooked
from app.models.appointments import appointments
from app.schemas.appointments import AppointmentStatus, PaymentStatus

logger = structlog.get_logger(__name__)


class SlotConflictGuard:
    """Reserves a doctor's exact timestamp for one patient."""

    def __init__(
        self,
        db: AsyncSession,
        clock: Clock,
        lead: timedelta,
        default_fee: Decimal,
    ):
        """Initialize with session, clock, minimum lead time and fallback fee."""
        self.db = db
        self.clock = clock
        self.lead = lead
        self.default_fee = default_fee

    async def reserve(
        self,
        doctor: dict[str, Any],
        patient_id: UUID,
        scheduled_for: datetime,
        reason: str,
        phone: str | None = None,
        notes: str | None = None,
    ) -> dict[str, Any]:
        """
        Create a PENDING appointment if the slot is free.

        Args:
            doctor: Doctor row
            patient_id: Booking user
            scheduled_for: Requested timestamp, aware or clinic-local
            reason: Visit reason
            phone: Contact override for this booking
            notes: Free-text notes

        Returns:
            The new appointment row

        Raises:
            SchedulingValidationError: If the slot is not far enough in the future
            DoctorUnavailable: If the doctor takes no bookings
            SlotAlreadyBooked: If a live appointment already holds the slot
        """
        slot = self.clock.normalize(scheduled_for)
        self.clock.ensure_bookable(slot, self.lead)

        if not doctor["is_available"]:
            raise DoctorUnavailable(doctor["id"])

        now = self.clock.now()
        # Fee is copied now; later fee changes never touch this booking
        fee = doctor["consultation_fee"]
        values = {
            "patient_id": patient_id,
            "doctor_id": doctor["id"],
            "scheduled_for": slot,
            "reason": reason,
            "phone": phone,
            "notes": notes,
            "status": AppointmentStatus.PENDING.value,
            "payment_status": PaymentStatus.UNPAID.value,
            "amount": fee if fee is not None else self.default_fee,
            "currency": doctor["currency"],
            "created_at": now,
            "updated_at": now,
        }

        try:
            result = await self.db.execute(
                insert(appointments).values(**values).returning(appointments)
            )
            row = dict(result.mappings().one())
            await self.db.commit()
        except IntegrityError as e:
            # patient and doctor rows exist and ids are random: only the slot index can fail
            await self.db.rollback()
            logger.info(
                "slot_already_booked",
                doctor_id=str(doctor["id"]),
                scheduled_for=slot.isoformat(),
            )
            raise SlotAlreadyBooked(doctor["id"], slot) from e

        return row
