"""Appointment schemas for request/response validation."""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, Field, field_validator


class AppointmentStatus(str, Enum):
    """Appointment status enumeration."""

    PENDING = "PENDING"
    APPROVED = "APPROVED"
    CONFIRMED = "CONFIRMED"
    COMPLETED = "COMPLETED"
    DECLINED = "DECLINED"
    CANCELLED = "CANCELLED"


class PaymentStatus(str, Enum):
    """Payment status enumeration."""

    UNPAID = "unpaid"
    PAID = "paid"
    REFUNDED = "refunded"


def _validate_phone(v: str | None) -> str | None:
    if v is None:
        return v
    cleaned = (
        v.replace("-", "").replace(" ", "").replace("(", "").replace(")", "").replace("+", "")
    )
    if not cleaned.isdigit():
        raise ValueError("Phone number must contain only digits and separators")
    if len(cleaned) < 7:
        raise ValueError("Phone number must have at least 7 digits")
    return v


class AppointmentCreate(BaseModel):
    """Schema for a patient's booking request."""

    doctor_id: UUID
    scheduled_for: datetime
    reason: str = Field(..., min_length=1, max_length=500)
    phone: str | None = Field(None, max_length=20)
    notes: str | None = Field(None, max_length=1000)

    @field_validator("reason")
    @classmethod
    def validate_reason(cls, v: str) -> str:
        """Reject whitespace-only reasons."""
        if not v.strip():
            raise ValueError("Reason must not be blank")
        return v.strip()

    @field_validator("phone")
    @classmethod
    def validate_phone(cls, v: str | None) -> str | None:
        """Validate phone number format."""
        return _validate_phone(v)


class AppointmentCreated(BaseModel):
    """Schema returned after a successful booking request."""

    appointment_id: UUID
    status: AppointmentStatus


class AppointmentDecline(BaseModel):
    """Schema for a doctor's decline decision."""

    reason: str = Field(..., min_length=1, max_length=1000)


class AppointmentResponse(BaseModel):
    """Schema for appointment response."""

    id: UUID
    patient_id: UUID
    doctor_id: UUID
    scheduled_for: datetime
    reason: str
    phone: str | None = None
    notes: str | None = None
    status: AppointmentStatus
    rejection_reason: str | None = None
    payment_status: PaymentStatus
    amount: Decimal
    currency: str
    payment_link: str | None = None
    payment_deadline: datetime | None = None
    created_at: datetime
    updated_at: datetime
    approved_at: datetime | None = None
    rejected_at: datetime | None = None
    confirmed_at: datetime | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None

    model_config = {"from_attributes": True}


class AppointmentListResponse(BaseModel):
    """Schema for appointment list response."""

    total: int
    items: list[AppointmentResponse]


class ApprovalResponse(BaseModel):
    """Outcome of a doctor's approval."""

    appointment_id: UUID
    status: AppointmentStatus
    payment_link: str | None = None
    payment_deadline: datetime | None = None
    payment_required: bool


class PaymentLinkResponse(BaseModel):
    """Freshly issued payment link."""

    appointment_id: UUID
    status: AppointmentStatus
    payment_link: str | None = None
    expires_at: datetime | None = None


class PaymentStatusResponse(BaseModel):
    """Payment view of an appointment."""

    appointment_id: UUID
    status: AppointmentStatus
    payment_status: PaymentStatus
    amount: Decimal
    currency: str
    payment_link: str | None = None
    payment_deadline: datetime | None = None
    is_payment_overdue: bool


class BookedSlotsResponse(BaseModel):
    """Occupied timestamps for one doctor on one day."""

    doctor_id: UUID
    day: date
    booked_slots: list[datetime]


class WebhookAck(BaseModel):
    """Acknowledgement returned to the payment provider."""

    received: bool = True
    outcome: str
