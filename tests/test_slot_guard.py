"""Tests for slot reservation and conflict-freedom."""

import asyncio
from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select, update

from app.core.exceptions import DoctorUnavailable, SchedulingValidationError, SlotAlreadyBooked
from app.models.appointments import appointments
from app.models.doctors import doctors
from app.schemas.appointments import AppointmentStatus
from app.services.appointment_state import AppointmentStateMachine
from app.services.slot_guard import SlotConflictGuard


def _guard(db, clock) -> SlotConflictGuard:
    return SlotConflictGuard(db, clock, timedelta(minutes=5), Decimal("20.00"))


@pytest.mark.asyncio
async def test_reserve_creates_pending_appointment(
    db_session, clock, doctor, patient, slot
) -> None:
    """A free slot becomes a PENDING, unpaid appointment with the doctor's fee."""
    row = await _guard(db_session, clock).reserve(
        doctor, patient["id"], slot, reason="Checkup", phone="+49 30 1234567"
    )

    assert row["status"] == "PENDING"
    assert row["payment_status"] == "unpaid"
    assert row["amount"] == Decimal("20.00")
    assert row["currency"] == "EUR"
    assert row["scheduled_for"] == slot
    assert row["created_at"] == clock.now()


@pytest.mark.asyncio
async def test_second_booking_of_same_slot_conflicts(
    db_session, clock, doctor, patient, other_patient, slot
) -> None:
    """Same doctor and timestamp cannot be booked twice."""
    guard = _guard(db_session, clock)
    first = await guard.reserve(doctor, patient["id"], slot, reason="Checkup")

    with pytest.raises(SlotAlreadyBooked):
        await guard.reserve(doctor, other_patient["id"], slot, reason="Flu")

    stored = (
        await db_session.execute(select(appointments).where(appointments.c.id == first["id"]))
    ).mappings().one()
    assert stored["status"] == "PENDING"


@pytest.mark.asyncio
async def test_adjacent_slot_is_free(db_session, clock, doctor, patient, other_patient, slot):
    """Slot identity is the exact timestamp."""
    guard = _guard(db_session, clock)
    await guard.reserve(doctor, patient["id"], slot, reason="Checkup")
    row = await guard.reserve(
        doctor, other_patient["id"], slot + timedelta(minutes=30), reason="Flu"
    )
    assert row["status"] == "PENDING"


@pytest.mark.asyncio
async def test_aware_and_naive_requests_for_same_slot_conflict(
    db_session, clock, doctor, patient, other_patient
) -> None:
    """10:00 Berlin and 08:00 UTC in June are the same slot."""
    guard = _guard(db_session, clock)
    await guard.reserve(doctor, patient["id"], datetime(2025, 6, 2, 10, 0), reason="Checkup")

    with pytest.raises(SlotAlreadyBooked):
        await guard.reserve(
            doctor,
            other_patient["id"],
            datetime.fromisoformat("2025-06-02T08:00:00+00:00"),
            reason="Flu",
        )


@pytest.mark.asyncio
async def test_concurrent_requests_exactly_one_wins(
    session_factory, clock, doctor, patient, other_patient, slot
) -> None:
    """Two simultaneous bookings: one PENDING appointment, one conflict."""
    async with session_factory() as first, session_factory() as second:
        results = await asyncio.gather(
            _guard(first, clock).reserve(doctor, patient["id"], slot, reason="A"),
            _guard(second, clock).reserve(doctor, other_patient["id"], slot, reason="B"),
            return_exceptions=True,
        )

    conflicts = [r for r in results if isinstance(r, SlotAlreadyBooked)]
    booked = [r for r in results if isinstance(r, dict)]
    assert len(conflicts) == 1
    assert len(booked) == 1

    async with session_factory() as check:
        rows = (
            await check.execute(
                select(appointments).where(
                    appointments.c.doctor_id == doctor["id"],
                    appointments.c.scheduled_for == slot,
                )
            )
        ).all()
    assert len(rows) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("release", [AppointmentStatus.CANCELLED, AppointmentStatus.DECLINED])
async def test_released_slot_is_bookable_again(
    db_session, clock, doctor, patient, other_patient, slot, release
) -> None:
    """Cancelled and declined appointments give their slot back."""
    guard = _guard(db_session, clock)
    first = await guard.reserve(doctor, patient["id"], slot, reason="Checkup")

    await AppointmentStateMachine(db_session, clock).transition(
        first, release, rejection_reason="schedule conflict"
    )
    await db_session.commit()

    again = await guard.reserve(doctor, other_patient["id"], slot, reason="Flu")
    assert again["status"] == "PENDING"
    assert again["id"] != first["id"]


@pytest.mark.asyncio
async def test_too_soon_is_rejected_before_conflict_check(
    db_session, clock, doctor, patient, other_patient
) -> None:
    """A 2-minute lead fails validation even if the slot is taken."""
    soon = clock.now() + timedelta(minutes=2)
    with pytest.raises(SchedulingValidationError) as exc_info:
        await _guard(db_session, clock).reserve(doctor, patient["id"], soon, reason="Now")
    assert exc_info.value.field == "scheduled_for"


@pytest.mark.asyncio
async def test_past_slot_is_rejected(db_session, clock, doctor, patient) -> None:
    """Past timestamps are never bookable."""
    with pytest.raises(SchedulingValidationError):
        await _guard(db_session, clock).reserve(
            doctor, patient["id"], clock.now() - timedelta(days=1), reason="Late"
        )


@pytest.mark.asyncio
async def test_unavailable_doctor_rejects_bookings(
    db_session, clock, doctor, patient, slot
) -> None:
    """Doctors switched off take no bookings."""
    await db_session.execute(
        update(doctors).where(doctors.c.id == doctor["id"]).values(is_available=False)
    )
    await db_session.commit()

    with pytest.raises(DoctorUnavailable):
        await _guard(db_session, clock).reserve(
            {**doctor, "is_available": False}, patient["id"], slot, reason="Checkup"
        )


@pytest.mark.asyncio
async def test_missing_fee_falls_back_to_default(db_session, clock, doctor, patient, slot):
    """Doctors without a fee are billed the clinic default."""
    guard = SlotConflictGuard(db_session, clock, timedelta(minutes=5), Decimal("35.00"))
    row = await guard.reserve(
        {**doctor, "consultation_fee": None}, patient["id"], slot, reason="Checkup"
    )
    assert row["amount"] == Decimal("35.00")
