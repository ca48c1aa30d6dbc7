"""Clinic-local time source.

Every timestamp this service stores is a naive civil time in the clinic's
timezone (``CLINIC_TIMEZONE``). Slot identity is therefore the plain calendar
fields year/month/day/hour/minute/second; nothing is ever shifted to UTC on
the way to or from the database.
"""

from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

from app.core.exceptions import SchedulingValidationError


class Clock:
    """Supplies "now" and validates requested slots against it."""

    def __init__(self, timezone_name: str):
        """Initialize with the clinic's IANA timezone name."""
        self.tz = ZoneInfo(timezone_name)

    def now(self) -> datetime:
        """Current clinic-local civil time (naive)."""
        return datetime.now(self.tz).replace(tzinfo=None)

    def normalize(self, value: datetime) -> datetime:
        """
        Convert a requested timestamp into its stored representation.

        Aware values are converted into the clinic timezone first; naive
        values are already clinic-local. Sub-second precision is dropped.
        """
        if value.tzinfo is not None:
            value = value.astimezone(self.tz).replace(tzinfo=None)
        return value.replace(microsecond=0)

    def ensure_bookable(self, scheduled_for: datetime, lead: timedelta) -> None:
        """
        Reject slots that are not strictly later than now + lead.

        Args:
            scheduled_for: Normalized slot timestamp
            lead: Minimum distance from now

        Raises:
            SchedulingValidationError: If the slot is too soon or in the past
        """
        earliest = self.now() + lead
        if scheduled_for <= earliest:
            minutes = int(lead.total_seconds() // 60)
            raise SchedulingValidationError(
                f"Appointment must be scheduled at least {minutes} minutes in the future",
                field="scheduled_for",
            )


class FixedClock(Clock):
    """Clock pinned to a given instant; used by operator dry runs and tests."""

    def __init__(self, timezone_name: str, current: datetime):
        """Initialize with the instant to report."""
        super().__init__(timezone_name)
        self.current = current

    def now(self) -> datetime:
        """Return the pinned instant."""
        return self.current

    def advance(self, delta: timedelta) -> None:
        """Move the pinned instant forward."""
        self.current = self.current + delta
