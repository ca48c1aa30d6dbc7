"""Database models."""

from app.models.appointments import appointments
from app.models.base import metadata
from app.models.bills import bill_items, bills, payment_history
from app.models.doctors import doctors
from app.models.notifications import notifications
from app.models.payment_events import payment_events
from app.models.users import users

__all__ = [
    "appointments",
    "bill_items",
    "bills",
    "doctors",
    "metadata",
    "notifications",
    "payment_events",
    "payment_history",
    "users",
]
