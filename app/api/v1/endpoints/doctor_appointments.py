"""Doctor-facing appointment endpoints."""

from uuid import UUID

from fastapi import APIRouter, status

from app.dependencies import CurrentDoctor, Scheduling
from app.schemas.appointments import (
    AppointmentDecline,
    AppointmentListResponse,
    AppointmentResponse,
    AppointmentStatus,
    ApprovalResponse,
)

router = APIRouter()


@router.get(
    "/pending",
    response_model=AppointmentListResponse,
    status_code=status.HTTP_200_OK,
    tags=["Doctor Appointments"],
    summary="List pending requests",
)
async def list_pending(
    current_doctor: CurrentDoctor,
    service: Scheduling,
) -> AppointmentListResponse:
    """List appointment requests awaiting the doctor's decision."""
    return await service.list_doctor_appointments(
        current_doctor,
        (AppointmentStatus.PENDING,),
    )


@router.get(
    "/refused",
    response_model=AppointmentListResponse,
    status_code=status.HTTP_200_OK,
    tags=["Doctor Appointments"],
    summary="List declined and cancelled appointments",
)
async def list_refused(
    current_doctor: CurrentDoctor,
    service: Scheduling,
) -> AppointmentListResponse:
    """List appointments the doctor declined or that were cancelled."""
    return await service.list_doctor_appointments(
        current_doctor,
        (AppointmentStatus.DECLINED, AppointmentStatus.CANCELLED),
    )


@router.post(
    "/{appointment_id}/approve",
    response_model=ApprovalResponse,
    status_code=status.HTTP_200_OK,
    tags=["Doctor Appointments"],
    summary="Approve appointment",
)
async def approve_appointment(
    appointment_id: UUID,
    current_doctor: CurrentDoctor,
    service: Scheduling,
) -> ApprovalResponse:
    """
    Approve a pending appointment.

    With payments enabled a checkout link is issued and the patient has a
    limited window to pay; otherwise the appointment is confirmed at once.
    A 502 means the approval stuck but no link could be created yet.
    """
    return await service.approve_appointment(appointment_id, current_doctor)


@router.post(
    "/{appointment_id}/decline",
    response_model=AppointmentResponse,
    status_code=status.HTTP_200_OK,
    tags=["Doctor Appointments"],
    summary="Decline appointment",
)
async def decline_appointment(
    appointment_id: UUID,
    data: AppointmentDecline,
    current_doctor: CurrentDoctor,
    service: Scheduling,
) -> AppointmentResponse:
    """Decline a pending appointment with a reason."""
    return await service.decline_appointment(appointment_id, current_doctor, data.reason)


@router.post(
    "/{appointment_id}/complete",
    response_model=AppointmentResponse,
    status_code=status.HTTP_200_OK,
    tags=["Doctor Appointments"],
    summary="Complete appointment",
)
async def complete_appointment(
    appointment_id: UUID,
    current_doctor: CurrentDoctor,
    service: Scheduling,
) -> AppointmentResponse:
    """Mark a confirmed appointment as completed."""
    return await service.complete_appointment(appointment_id, current_doctor)
