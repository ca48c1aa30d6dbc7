"""Doctor lookups used by scheduling."""

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.doctors import doctors


class DoctorService:
    """Read-only access to doctor records."""

    @staticmethod
    async def get_doctor_by_id(db: AsyncSession, doctor_id: UUID) -> dict | None:
        """Get doctor by ID."""
        result = await db.execute(select(doctors).where(doctors.c.id == doctor_id))
        doctor = result.mappings().first()

        return dict(doctor) if doctor else None

    @staticmethod
    async def get_doctor_by_user_id(db: AsyncSession, user_id: UUID) -> dict | None:
        """Get doctor by user ID."""
        result = await db.execute(select(doctors).where(doctors.c.user_id == user_id))
        doctor = result.mappings().first()

        return dict(doctor) if doctor else None
