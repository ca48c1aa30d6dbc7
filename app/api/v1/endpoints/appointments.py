"""Patient-facing appointment endpoints."""

from datetime import date
from uuid import UUID

from fastapi import APIRouter, Query, status

from app.dependencies import CurrentUser, Scheduling
from app.schemas.appointments import (
    AppointmentCreate,
    AppointmentCreated,
    AppointmentListResponse,
    AppointmentResponse,
    AppointmentStatus,
    BookedSlotsResponse,
    PaymentLinkResponse,
    PaymentStatusResponse,
)

router = APIRouter()


@router.post(
    "/",
    response_model=AppointmentCreated,
    status_code=status.HTTP_201_CREATED,
    tags=["Appointments"],
    summary="Request an appointment",
)
async def request_appointment(
    data: AppointmentCreate,
    current_user: CurrentUser,
    service: Scheduling,
) -> AppointmentCreated:
    """
    Book a slot with a doctor for the authenticated patient.

    The appointment starts PENDING until the doctor decides on it.
    Returns 409 when the slot is already taken.
    """
    return await service.request_appointment(current_user["id"], data)


@router.get(
    "/my",
    response_model=AppointmentListResponse,
    status_code=status.HTTP_200_OK,
    tags=["Appointments"],
    summary="List my appointments",
)
async def list_my_appointments(
    current_user: CurrentUser,
    service: Scheduling,
    status_filter: AppointmentStatus | None = Query(None, alias="status"),
) -> AppointmentListResponse:
    """List the authenticated patient's appointments."""
    return await service.list_patient_appointments(current_user["id"], status_filter)


@router.get(
    "/booked-slots",
    response_model=BookedSlotsResponse,
    status_code=status.HTTP_200_OK,
    tags=["Appointments"],
    summary="List booked slots for a doctor",
)
async def list_booked_slots(
    service: Scheduling,
    doctor_id: UUID = Query(...),
    day: date = Query(..., alias="date"),
) -> BookedSlotsResponse:
    """
    List the timestamps already taken for a doctor on a clinic-local day.

    Cancelled and declined appointments do not occupy a slot.
    """
    slots = await service.list_booked_slots(doctor_id, day)
    return BookedSlotsResponse(doctor_id=doctor_id, day=day, booked_slots=slots)


@router.get(
    "/{appointment_id}",
    response_model=AppointmentResponse,
    status_code=status.HTTP_200_OK,
    tags=["Appointments"],
    summary="Get appointment by ID",
)
async def get_appointment(
    appointment_id: UUID,
    current_user: CurrentUser,
    service: Scheduling,
) -> AppointmentResponse:
    """
    Get a specific appointment by ID.

    Args:
        appointment_id: Appointment ID
        current_user: Authenticated user
        service: Scheduling service

    Returns:
        Appointment details
    """
    return await service.get_appointment(appointment_id, current_user)


@router.get(
    "/{appointment_id}/payment-status",
    response_model=PaymentStatusResponse,
    status_code=status.HTTP_200_OK,
    tags=["Appointments"],
    summary="Get payment status",
)
async def get_payment_status(
    appointment_id: UUID,
    current_user: CurrentUser,
    service: Scheduling,
) -> PaymentStatusResponse:
    """Payment state of an appointment, including whether its deadline passed."""
    return await service.get_payment_status(appointment_id, current_user)


@router.post(
    "/{appointment_id}/cancel",
    response_model=AppointmentResponse,
    status_code=status.HTTP_200_OK,
    tags=["Appointments"],
    summary="Cancel appointment",
)
async def cancel_appointment(
    appointment_id: UUID,
    current_user: CurrentUser,
    service: Scheduling,
) -> AppointmentResponse:
    """
    Cancel an appointment.

    Cancelling twice is accepted. Completed and declined appointments
    cannot be cancelled.
    """
    return await service.cancel_appointment(appointment_id, current_user)


@router.post(
    "/{appointment_id}/payment-link",
    response_model=PaymentLinkResponse,
    status_code=status.HTTP_200_OK,
    tags=["Appointments"],
    summary="Regenerate payment link",
)
async def regenerate_payment_link(
    appointment_id: UUID,
    current_user: CurrentUser,
    service: Scheduling,
) -> PaymentLinkResponse:
    """Issue a new payment link for an approved, unpaid appointment."""
    return await service.regenerate_payment_link(appointment_id, current_user)
