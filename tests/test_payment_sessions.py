"""Tests for payment link creation and regeneration."""

from datetime import timedelta

import pytest
from sqlalchemy import select, update

from app.core.exceptions import (
    AppointmentAccessDenied,
    AppointmentNotApproved,
    ExternalProviderError,
    PaymentAlreadyCompleted,
)
from app.models.appointments import appointments
from app.schemas.appointments import AppointmentCreate
from app.services.payment_session_service import PROVIDER_MAX_EXPIRY


async def _book(service, doctor, patient, slot):
    created = await service.request_appointment(
        patient["id"],
        AppointmentCreate(doctor_id=doctor["id"], scheduled_for=slot, reason="Checkup"),
    )
    return created.appointment_id


async def _stored(db_session, appointment_id) -> dict:
    result = await db_session.execute(
        select(appointments).where(appointments.c.id == appointment_id)
    )
    return dict(result.mappings().one())


@pytest.mark.asyncio
async def test_approve_issues_link_and_deadline(
    service, gateway, clock, doctor, doctor_user, patient, slot
) -> None:
    """Approval opens a checkout session with a 24 hour window."""
    appointment_id = await _book(service, doctor, patient, slot)

    result = await service.approve_appointment(appointment_id, doctor_user)

    assert result.status.value == "APPROVED"
    assert result.payment_required is True
    assert result.payment_link == "https://checkout.stripe.test/pay/cs_test_1"
    assert result.payment_deadline == clock.now() + timedelta(hours=24)

    request = gateway.sessions[0]
    assert request.appointment_id == str(appointment_id)
    assert request.amount_minor == 2000
    assert request.currency == "EUR"
    # The provider refuses expiries beyond 24 hours
    provider_expiry = (clock.now() + PROVIDER_MAX_EXPIRY).replace(tzinfo=clock.tz)
    assert request.expires_at == int(provider_expiry.timestamp())


@pytest.mark.asyncio
async def test_approve_without_provider_confirms_directly(
    noop_service, doctor, doctor_user, patient, slot
) -> None:
    """Without Stripe the appointment skips payment."""
    appointment_id = await _book(noop_service, doctor, patient, slot)

    result = await noop_service.approve_appointment(appointment_id, doctor_user)

    assert result.status.value == "CONFIRMED"
    assert result.payment_required is False
    assert result.payment_link is None


@pytest.mark.asyncio
async def test_provider_failure_keeps_approval(
    service, gateway, db_session, doctor, doctor_user, patient, slot
) -> None:
    """A failed session leaves the appointment APPROVED without a link."""
    appointment_id = await _book(service, doctor, patient, slot)
    gateway.fail_next = True

    with pytest.raises(ExternalProviderError):
        await service.approve_appointment(appointment_id, doctor_user)

    stored = await _stored(db_session, appointment_id)
    assert stored["status"] == "APPROVED"
    assert stored["payment_link"] is None

    # The patient can retry
    link = await service.regenerate_payment_link(appointment_id, patient)
    assert link.payment_link is not None
    assert gateway.expired == []


@pytest.mark.asyncio
async def test_fill_missing_payment_links(
    service, gateway, doctor, doctor_user, patient, slot
) -> None:
    """The operator sweep issues links for linkless approvals."""
    appointment_id = await _book(service, doctor, patient, slot)
    gateway.fail_next = True
    with pytest.raises(ExternalProviderError):
        await service.approve_appointment(appointment_id, doctor_user)

    fixed, failed = await service.fill_missing_payment_links()

    assert (fixed, failed) == (1, 0)
    assert len(gateway.sessions) == 1


@pytest.mark.asyncio
async def test_regenerate_expires_superseded_session(
    service, gateway, doctor, doctor_user, patient, slot
) -> None:
    """The old checkout session is closed at the provider once replaced."""
    appointment_id = await _book(service, doctor, patient, slot)
    await service.approve_appointment(appointment_id, doctor_user)
    assert gateway.expired == []

    await service.regenerate_payment_link(appointment_id, patient)
    assert gateway.expired == ["cs_test_1"]

    await service.regenerate_payment_link(appointment_id, patient)
    assert gateway.expired == ["cs_test_1", "cs_test_2"]


@pytest.mark.asyncio
async def test_regenerate_keeps_old_session_when_provider_fails(
    service, gateway, db_session, doctor, doctor_user, patient, slot
) -> None:
    """Without a replacement link the current one stays payable."""
    appointment_id = await _book(service, doctor, patient, slot)
    await service.approve_appointment(appointment_id, doctor_user)
    gateway.fail_next = True

    with pytest.raises(ExternalProviderError):
        await service.regenerate_payment_link(appointment_id, patient)

    assert gateway.expired == []
    assert (await _stored(db_session, appointment_id))["payment_session_id"] == "cs_test_1"


@pytest.mark.asyncio
async def test_regenerate_moves_deadline_forward(
    service, clock, doctor, doctor_user, patient, slot
) -> None:
    """Each regeneration gives a new link and a later deadline."""
    appointment_id = await _book(service, doctor, patient, slot)
    approval = await service.approve_appointment(appointment_id, doctor_user)

    clock.advance(timedelta(hours=2))
    first = await service.regenerate_payment_link(appointment_id, patient)
    assert first.payment_link != approval.payment_link
    assert first.expires_at == clock.now() + timedelta(hours=24)
    assert first.expires_at > approval.payment_deadline

    # Same instant again: still strictly later
    second = await service.regenerate_payment_link(appointment_id, patient)
    assert second.expires_at == first.expires_at + timedelta(seconds=1)


@pytest.mark.asyncio
async def test_regenerate_rejects_pending(service, doctor, patient, slot) -> None:
    """Only approved appointments have a payment to make."""
    appointment_id = await _book(service, doctor, patient, slot)

    with pytest.raises(AppointmentNotApproved):
        await service.regenerate_payment_link(appointment_id, patient)


@pytest.mark.asyncio
async def test_regenerate_rejects_paid_whatever_the_status(
    service, db_session, doctor, doctor_user, patient, slot
) -> None:
    """Paid wins over every status check."""
    appointment_id = await _book(service, doctor, patient, slot)
    await service.approve_appointment(appointment_id, doctor_user)

    await db_session.execute(
        update(appointments)
        .where(appointments.c.id == appointment_id)
        .values(payment_status="paid")
    )
    await db_session.commit()
    with pytest.raises(PaymentAlreadyCompleted):
        await service.regenerate_payment_link(appointment_id, patient)

    await db_session.execute(
        update(appointments)
        .where(appointments.c.id == appointment_id)
        .values(status="CONFIRMED")
    )
    await db_session.commit()
    with pytest.raises(PaymentAlreadyCompleted):
        await service.regenerate_payment_link(appointment_id, patient)


@pytest.mark.asyncio
async def test_regenerate_is_patient_only(
    service, doctor, doctor_user, patient, other_patient, slot
) -> None:
    """Another patient cannot pull a link."""
    appointment_id = await _book(service, doctor, patient, slot)
    await service.approve_appointment(appointment_id, doctor_user)

    with pytest.raises(AppointmentAccessDenied):
        await service.regenerate_payment_link(appointment_id, other_patient)
