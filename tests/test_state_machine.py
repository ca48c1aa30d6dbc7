"""Tests for appointment status transitions."""

from datetime import timedelta
from decimal import Decimal

import pytest

from app.core.exceptions import AlreadyInState, InvalidTransition
from app.schemas.appointments import AppointmentStatus, PaymentStatus
from app.services.appointment_state import (
    ALLOWED_TRANSITIONS,
    AppointmentStateMachine,
    check_transition,
)
from app.services.slot_guard import SlotConflictGuard


async def _reserve(db_session, clock, doctor, patient, slot) -> dict:
    guard = SlotConflictGuard(db_session, clock, timedelta(minutes=5), Decimal("20.00"))
    return await guard.reserve(doctor, patient["id"], slot, reason="Checkup")


def test_transition_table():
    """Only the documented edges exist."""
    S = AppointmentStatus
    assert check_transition(S.PENDING, S.APPROVED)
    assert check_transition(S.PENDING, S.DECLINED)
    assert check_transition(S.APPROVED, S.CONFIRMED)
    assert check_transition(S.CONFIRMED, S.COMPLETED)
    for status in (S.PENDING, S.APPROVED, S.CONFIRMED):
        assert check_transition(status, S.CANCELLED)

    with pytest.raises(InvalidTransition):
        check_transition(S.PENDING, S.CONFIRMED)
    with pytest.raises(InvalidTransition):
        check_transition(S.APPROVED, S.DECLINED)
    with pytest.raises(InvalidTransition):
        check_transition(S.COMPLETED, S.CANCELLED)
    with pytest.raises(InvalidTransition):
        check_transition(S.DECLINED, S.CANCELLED)


def test_terminal_statuses_have_no_exits():
    """COMPLETED, DECLINED and CANCELLED are final."""
    for status in (
        AppointmentStatus.COMPLETED,
        AppointmentStatus.DECLINED,
        AppointmentStatus.CANCELLED,
    ):
        assert ALLOWED_TRANSITIONS[status] == frozenset()


def test_repeated_cancel_is_a_no_op_and_other_repeats_fail():
    """Cancelling twice is fine, approving twice is not."""
    assert check_transition(AppointmentStatus.CANCELLED, AppointmentStatus.CANCELLED) is False
    with pytest.raises(AlreadyInState):
        check_transition(AppointmentStatus.APPROVED, AppointmentStatus.APPROVED)


@pytest.mark.asyncio
async def test_transition_sets_side_effect_fields(
    db_session, clock, doctor, patient, slot
) -> None:
    """Each transition stamps its timestamp."""
    machine = AppointmentStateMachine(db_session, clock)
    appointment = await _reserve(db_session, clock, doctor, patient, slot)

    approved = await machine.transition(appointment, AppointmentStatus.APPROVED)
    assert approved["status"] == "APPROVED"
    assert approved["approved_at"] == clock.now()

    confirmed = await machine.transition(
        approved, AppointmentStatus.CONFIRMED, amount_paid=Decimal("25.00")
    )
    assert confirmed["payment_status"] == PaymentStatus.PAID.value
    assert confirmed["amount"] == Decimal("25.00")
    assert confirmed["confirmed_at"] == clock.now()

    cancelled = await machine.transition(confirmed, AppointmentStatus.CANCELLED)
    await db_session.commit()
    assert cancelled["cancelled_at"] == clock.now()
    assert cancelled["payment_status"] == PaymentStatus.REFUNDED.value
    assert cancelled["payment_link"] is None
    assert cancelled["payment_session_id"] is None


@pytest.mark.asyncio
async def test_decline_records_reason(db_session, clock, doctor, patient, slot) -> None:
    """Declining keeps the doctor's reason."""
    machine = AppointmentStateMachine(db_session, clock)
    appointment = await _reserve(db_session, clock, doctor, patient, slot)

    declined = await machine.transition(
        appointment, AppointmentStatus.DECLINED, rejection_reason="Fully booked"
    )
    assert declined["rejection_reason"] == "Fully booked"
    assert declined["rejected_at"] == clock.now()


@pytest.mark.asyncio
async def test_stale_read_loses_to_concurrent_writer(
    session_factory, clock, doctor, patient, slot
) -> None:
    """A transition based on an outdated row re-checks what is stored."""
    async with session_factory() as first, session_factory() as second:
        appointment = await _reserve(first, clock, doctor, patient, slot)
        stale_copy = dict(appointment)

        # The patient cancels...
        await AppointmentStateMachine(first, clock).transition(
            appointment, AppointmentStatus.CANCELLED
        )
        await first.commit()

        # ...while the doctor still sees PENDING and tries to approve
        with pytest.raises(InvalidTransition) as exc_info:
            await AppointmentStateMachine(second, clock).transition(
                stale_copy, AppointmentStatus.APPROVED
            )
        await second.rollback()

    assert exc_info.value.current == "CANCELLED"
    assert exc_info.value.requested == "APPROVED"


@pytest.mark.asyncio
async def test_stale_cancel_after_concurrent_cancel_is_accepted(
    session_factory, clock, doctor, patient, slot
) -> None:
    """Two cancellations racing both succeed; only one writes."""
    async with session_factory() as first, session_factory() as second:
        appointment = await _reserve(first, clock, doctor, patient, slot)
        stale_copy = dict(appointment)

        await AppointmentStateMachine(first, clock).transition(
            appointment, AppointmentStatus.CANCELLED
        )
        await first.commit()

        result = await AppointmentStateMachine(second, clock).transition(
            stale_copy, AppointmentStatus.CANCELLED
        )
        await second.commit()

    assert result["status"] == "CANCELLED"


@pytest.mark.asyncio
async def test_pinned_source_status_is_not_re_evaluated(
    session_factory, clock, doctor, patient, slot
) -> None:
    """A transition pinned to APPROVED fails once a payment confirmed it."""
    async with session_factory() as first, session_factory() as second:
        appointment = await _reserve(first, clock, doctor, patient, slot)
        machine = AppointmentStateMachine(first, clock)
        approved = await machine.transition(appointment, AppointmentStatus.APPROVED)
        await first.commit()
        stale_copy = dict(approved)

        await machine.transition(approved, AppointmentStatus.CONFIRMED)
        await first.commit()

        with pytest.raises(InvalidTransition) as exc_info:
            await AppointmentStateMachine(second, clock).transition(
                stale_copy,
                AppointmentStatus.CANCELLED,
                expected_from=AppointmentStatus.APPROVED,
            )
        await second.rollback()

    assert exc_info.value.current == "CONFIRMED"
    assert exc_info.value.requested == "CANCELLED"


@pytest.mark.asyncio
async def test_pinned_source_status_must_match_input(
    db_session, clock, doctor, patient, slot
) -> None:
    machine = AppointmentStateMachine(db_session, clock)
    appointment = await _reserve(db_session, clock, doctor, patient, slot)

    with pytest.raises(InvalidTransition):
        await machine.transition(
            appointment,
            AppointmentStatus.CANCELLED,
            expected_from=AppointmentStatus.APPROVED,
        )
