"""Custom application exceptions."""

from uuid import UUID


class AppException(Exception):
    """Base application exception."""

    def __init__(self, message: str, status_code: int = 500):
        """Initialize exception with message and status code."""
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)


class NotFoundException(AppException):
    """Resource not found exception."""

    def __init__(self, message: str = "Resource not found"):
        """Initialize with 404 status code."""
        super().__init__(message, status_code=404)


class UnauthorizedException(AppException):
    """Unauthorized access exception."""

    def __init__(self, message: str = "Unauthorized"):
        """Initialize with 401 status code."""
        super().__init__(message, status_code=401)


class ForbiddenException(AppException):
    """Forbidden access exception."""

    def __init__(self, message: str = "Forbidden"):
        """Initialize with 403 status code."""
        super().__init__(message, status_code=403)


class BadRequestException(AppException):
    """Bad request exception."""

    def __init__(self, message: str = "Bad request"):
        """Initialize with 400 status code."""
        super().__init__(message, status_code=400)


class ConflictException(AppException):
    """Conflict exception."""

    def __init__(self, message: str = "Conflict"):
        """Initialize with 409 status code."""
        super().__init__(message, status_code=409)


class ValidationException(AppException):
    """Validation error exception."""

    def __init__(self, message: str = "Validation error", field: str | None = None):
        """Initialize with 422 status code and the offending field."""
        self.field = field
        super().__init__(message, status_code=422)


# ============================================================================
# Scheduling errors
# ============================================================================


class SchedulingValidationError(ValidationException):
    """Malformed or missing booking input."""


class SlotAlreadyBooked(ConflictException):
    """Another live appointment already holds this doctor and timestamp."""

    def __init__(self, doctor_id: UUID, scheduled_for: object):
        """Initialize with the contested slot."""
        self.doctor_id = doctor_id
        self.scheduled_for = scheduled_for
        super().__init__("This time slot is already booked, please pick another time")


class DoctorUnavailable(ConflictException):
    """Doctor is not accepting appointments at all."""

    def __init__(self, doctor_id: UUID):
        """Initialize with the doctor id."""
        self.doctor_id = doctor_id
        super().__init__("Doctor is not accepting appointments")


class PaymentAlreadyCompleted(ConflictException):
    """Payment link requested for an appointment that is already paid."""

    def __init__(self, appointment_id: UUID):
        """Initialize with the appointment id."""
        self.appointment_id = appointment_id
        super().__init__("This appointment has already been paid")


class InvalidTransition(ConflictException):
    """Requested status change is not allowed from the current status."""

    def __init__(self, current: str, requested: str, message: str | None = None):
        """Initialize with both statuses."""
        self.current = current
        self.requested = requested
        super().__init__(
            message or f"Cannot move appointment from {current} to {requested}",
        )


class AlreadyInState(InvalidTransition):
    """Requested status equals the current one."""

    def __init__(self, status: str):
        """Initialize with the repeated status."""
        super().__init__(status, status, f"Appointment is already {status}")


class AppointmentNotApproved(InvalidTransition):
    """Payment link requested for an appointment that is not APPROVED."""

    def __init__(self, current: str):
        """Initialize with the current status."""
        super().__init__(
            current,
            "APPROVED",
            f"Payment links are only available for approved appointments (status is {current})",
        )


class AppointmentNotFound(NotFoundException):
    """Appointment does not exist."""

    def __init__(self, appointment_id: UUID):
        """Initialize with the missing id."""
        self.appointment_id = appointment_id
        super().__init__("Appointment not found")


class DoctorNotFound(NotFoundException):
    """Doctor does not exist."""

    def __init__(self, doctor_id: UUID):
        """Initialize with the missing id."""
        self.doctor_id = doctor_id
        super().__init__("Doctor not found")


class AppointmentAccessDenied(ForbiddenException):
    """Actor neither owns nor administers the appointment."""

    def __init__(self, message: str = "Access denied to this appointment"):
        """Initialize with 403 status code."""
        super().__init__(message)


class ExternalProviderError(AppException):
    """Payment provider call failed."""

    def __init__(self, message: str = "Payment provider request failed"):
        """Initialize with 502 status code."""
        super().__init__(message, status_code=502)


class WebhookSignatureInvalid(BadRequestException):
    """Payment callback could not be authenticated."""

    def __init__(self, message: str = "Webhook signature verification failed"):
        """Initialize with 400 status code."""
        super().__init__(message)
